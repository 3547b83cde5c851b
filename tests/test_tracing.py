import pytest

from ratelimitsvc.tracing import InMemoryExporter, get_test_span_exporter, get_tracer


@pytest.fixture
def exporter():
    exp = get_test_span_exporter()
    exp.reset()
    yield exp
    exp.reset()


def test_test_exporter_is_shared(exporter):
    assert get_test_span_exporter() is exporter


def test_span_exported_on_end(exporter):
    tracer = get_tracer("ratelimit")
    span = tracer.start_span("ShouldRateLimit Execution", {"domain": "test-domain"})
    assert exporter.get_spans() == []
    span.end()
    spans = exporter.get_spans()
    assert len(spans) == 1
    assert spans[0].name == "ShouldRateLimit Execution"
    assert spans[0].attributes == {"domain": "test-domain"}
    assert spans[0].instrumentation_name == "ratelimit"


def test_end_twice_exports_once(exporter):
    span = get_tracer("ratelimit").start_span("Memcached Fetch Execution")
    span.end()
    span.end()
    assert len(exporter.get_spans()) == 1


def test_context_manager_ends_span(exporter):
    with get_tracer("ratelimit server").start_span("NewJsonHandler Remaining Execution") as span:
        assert not span.ended
    assert span.ended
    assert [s.name for s in exporter.get_spans()] == ["NewJsonHandler Remaining Execution"]


def test_reset_clears(exporter):
    get_tracer("ratelimit").start_span("a").end()
    assert len(exporter.get_spans()) == 1
    exporter.reset()
    assert exporter.get_spans() == []


def test_end_time_not_before_start(exporter):
    span = get_tracer("ratelimit").start_span("timed")
    span.end()
    assert span.end_time >= span.start_time


def test_attributes_are_copied(exporter):
    attributes = {"domain": "d"}
    span = get_tracer("ratelimit").start_span("copy", attributes)
    attributes["domain"] = "changed"
    span.end()
    assert exporter.get_spans()[0].attributes == {"domain": "d"}


def test_spans_kept_in_end_order(exporter):
    tracer = get_tracer("ratelimit")
    first = tracer.start_span("first")
    second = tracer.start_span("second")
    second.end()
    first.end()
    assert [s.name for s in exporter.get_spans()] == ["second", "first"]


def test_standalone_exporter_records_exported_spans():
    standalone = InMemoryExporter()
    span = get_tracer("ratelimit").start_span("direct")
    standalone.export(span)
    assert standalone.get_spans() == [span]
    standalone.reset()
    assert standalone.get_spans() == []