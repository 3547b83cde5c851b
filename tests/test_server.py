import pytest

from ratelimitsvc.models import Code, RateLimitRequest, RateLimitResponse
from ratelimitsvc.server import HttpReply, Server, new_json_handler
from ratelimitsvc.service import ServiceError
from ratelimitsvc.settings import Settings, grpc_unary_interceptor
from ratelimitsvc.stats import StatManager, Store
from ratelimitsvc.tracing import get_test_span_exporter

TEXT = "text/plain; charset=utf-8"
JSON = "application/json"


class FakeService:
    def __init__(self, outcome):
        self.outcome = outcome
        self.requests = []

    def should_rate_limit(self, request):
        self.requests.append(request)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def make_server(*options):
    return Server(Settings(), "ratelimit", StatManager(Store()), *options, handle_signals=False)


@pytest.mark.parametrize(
    "body, expected",
    [
        (b"", HttpReply(400, b"EOF\n", TEXT)),
        (b"}", HttpReply(400, b"invalid character '}' looking for beginning of value\n", TEXT)),
    ],
)
def test_json_handler_bad_request_body(body, expected):
    service = FakeService(RateLimitResponse())
    assert new_json_handler(service)(body) == expected
    assert service.requests == []


@pytest.mark.parametrize(
    "outcome, expected",
    [
        (RateLimitResponse(), HttpReply(500, b"{}", JSON)),
        (ServiceError("some error"), HttpReply(400, b"some error\n", TEXT)),
        (
            None,
            HttpReply(
                500, b"error marshaling proto3 to json: Marshal called with nil\n", TEXT
            ),
        ),
        (RateLimitResponse(overall_code=Code.OK), HttpReply(200, b'{"overallCode":"OK"}', JSON)),
        (
            RateLimitResponse(overall_code=Code.OVER_LIMIT),
            HttpReply(429, b'{"overallCode":"OVER_LIMIT"}', JSON),
        ),
    ],
)
def test_json_handler_service_outcomes(outcome, expected):
    service = FakeService(outcome)
    assert new_json_handler(service)(b'{"domain": "foo"}') == expected
    assert service.requests == [RateLimitRequest(domain="foo")]


def test_json_handler_records_span():
    exporter = get_test_span_exporter()
    exporter.reset()
    new_json_handler(FakeService(RateLimitResponse(overall_code=Code.OK)))(b'{"domain": "foo"}')
    names = [span.name for span in exporter.get_spans()]
    assert names == ["NewJsonHandler Remaining Execution"]


def test_healthcheck_route_follows_health_state():
    server = make_server()
    assert server.handle("/healthcheck", b"") == HttpReply(200, b"OK", TEXT)
    server.health_check_fail()
    assert server.handle("/healthcheck", b"").status == 500
    server.health_check_ok()
    assert server.handle("/healthcheck", b"").body == b"OK"


def test_unknown_route_is_not_found():
    server = make_server()
    assert server.handle("/nope", b"") == HttpReply(404, b"404 page not found\n", TEXT)


def test_json_route_registered_by_add_json_handler():
    server = make_server()
    assert server.handle("/json", b"{}").status == 404
    server.add_json_handler(FakeService(RateLimitResponse(overall_code=Code.OVER_LIMIT)))
    reply = server.handle("/json", b'{"domain": "foo"}')
    assert reply == HttpReply(429, b'{"overallCode":"OVER_LIMIT"}', JSON)


def test_debug_index_lists_endpoints_sorted():
    server = make_server()
    server.add_debug_http_endpoint("/rlconfig", "print out the config", lambda: "")
    assert server.debug_index() == "/rlconfig: print out the config\n/stats: print out stats\n"


def test_options_apply_to_a_copy_of_settings():
    settings = Settings()
    server = Server(
        settings, "ratelimit", StatManager(Store()), grpc_unary_interceptor("icpt"),
        handle_signals=False,
    )
    assert server.settings.grpc_unary_interceptor == "icpt"
    assert settings.grpc_unary_interceptor is None


def test_scope_is_named_after_server():
    store = Store()
    server = Server(Settings(), "ratelimit", StatManager(store), handle_signals=False)
    server.scope.new_counter("hits").inc()
    assert store.new_counter("ratelimit.hits").value() == 1


def test_stop_before_start_prevents_serving():
    server = make_server()
    server.stop()
    assert server.start() is None
    assert server.handle("/healthcheck", b"").status == 200