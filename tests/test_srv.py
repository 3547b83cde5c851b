import pytest

from ratelimitsvc.srv import (
    DnsSrvResolver,
    SrvRecord,
    lookup_server_strings_from_srv,
    parse_srv,
)


def mock_addrs_lookup(service, proto, name):
    return [SrvRecord("z", 1, 0, 0), SrvRecord("z", 0, 0, 0), SrvRecord("a", 9001, 0, 0)]


def test_lookup_server_strings_from_srv_returns_servers_sorted():
    targets = lookup_server_strings_from_srv("_something._tcp.example.org.", mock_addrs_lookup)
    assert targets == ["a:9001", "z:0", "z:1"]


def test_lookup_passes_parsed_parts():
    seen = []

    def lookup(service, proto, name):
        seen.append((service, proto, name))
        return []

    assert lookup_server_strings_from_srv("_something._tcp.example.org.", lookup) == []
    assert seen == [("something", "tcp", "example.org.")]


def test_parse_srv():
    assert parse_srv("_something._tcp.example.org.") == ("something", "tcp", "example.org.")


@pytest.mark.parametrize("bad", ["example.org", "_something.example.org", ""])
def test_parse_srv_rejects_invalid(bad):
    with pytest.raises(ValueError, match="could not parse"):
        parse_srv(bad)


def test_lookup_error_propagates():
    def failing(service, proto, name):
        raise LookupError("no such host")

    with pytest.raises(LookupError, match="no such host"):
        lookup_server_strings_from_srv("_something._tcp.example.org.", failing)


def test_lookup_rejects_invalid_before_lookup():
    calls = []

    def lookup(service, proto, name):
        calls.append(service)
        return []

    with pytest.raises(ValueError):
        lookup_server_strings_from_srv("not-an-srv", lookup)
    assert calls == []


def test_dns_resolver_rejects_invalid_name():
    with pytest.raises(ValueError, match="could not parse"):
        DnsSrvResolver().server_strings_from_srv("example.invalid")