import pytest

from ratelimitsvc.stats import Counter, StatManager, Store


class RecordingSink:
    def __init__(self):
        self.values = {}

    def flush_counter(self, name, value):
        self.values[name] = value


class CountingGenerator:
    def __init__(self, counter):
        self.counter = counter
        self.calls = 0

    def generate_stats(self):
        self.calls += 1
        self.counter.add(2)


def test_counter_add_and_inc():
    counter = Counter("c")
    counter.inc()
    counter.add(4)
    assert counter.value() == 5


def test_counter_rejects_negative():
    counter = Counter("c")
    with pytest.raises(ValueError):
        counter.add(-1)
    assert counter.value() == 0


def test_store_returns_same_counter():
    store = Store()
    assert store.new_counter("x") is store.new_counter("x")
    assert store.new_counter("x") is not store.new_counter("y")


def test_scope_prefixes_names():
    store = Store()
    counter = store.scope("a").scope("b").new_counter("c")
    counter.inc()
    assert store.new_counter("a.b.c") is counter
    assert store.new_counter("a.b.c").value() == 1


def test_tags_are_serialized_sorted():
    store = Store()
    counter = store.scope_with_tags("x", {"b": "2", "a": "1"}).new_counter("c")
    assert counter.name == "x.c.__a=1.__b=2"


def test_flush_sends_deltas_only():
    sink = RecordingSink()
    store = Store(sink)
    store.new_counter("hits").add(3)
    store.new_counter("idle")
    store.flush()
    assert sink.values == {"hits": 3}
    sink.values.clear()
    store.flush()
    assert sink.values == {}
    store.new_counter("hits").inc()
    store.flush()
    assert sink.values == {"hits": 1}


def test_flush_runs_generators_first():
    sink = RecordingSink()
    store = Store(sink)
    generator = CountingGenerator(store.new_counter("generated"))
    store.add_stat_generator(generator)
    store.flush()
    assert generator.calls == 1
    assert sink.values == {"generated": 2}


def test_new_stats_names_and_identity():
    store = Store()
    manager = StatManager(store)
    stats = manager.new_stats("foo")
    assert stats.key == "foo"
    assert stats.total_hits is store.new_counter("ratelimit.service.rate_limit.foo.total_hits")
    assert stats.shadow_mode is store.new_counter("ratelimit.service.rate_limit.foo.shadow_mode")
    again = manager.new_stats("foo")
    assert again.over_limit is stats.over_limit
    assert again == stats


def test_add_without_detailed_leaves_detailed_untouched():
    manager = StatManager(Store())
    stats = manager.new_stats("k")
    manager.add_total_hits(5, stats, "k")
    manager.add_over_limit(2, stats, "k")
    assert stats.total_hits.value() == 5
    assert stats.over_limit.value() == 2
    detailed = manager.new_detailed_stats("k")
    assert detailed.total_hits.value() == 0
    assert detailed.over_limit.value() == 0


def test_add_with_detailed_updates_both():
    store = Store()
    manager = StatManager(store, detailed=True)
    stats = manager.new_stats("k")
    manager.add_total_hits(5, stats, "k_v")
    manager.add_near_limit(1, stats, "k_v")
    manager.add_over_limit_with_local_cache(3, stats, "k_v")
    manager.add_within_limit(4, stats, "k_v")
    detailed = manager.new_detailed_stats("k_v")
    assert stats.total_hits.value() == detailed.total_hits.value() == 5
    assert stats.near_limit.value() == detailed.near_limit.value() == 1
    assert stats.over_limit_with_local_cache.value() == detailed.over_limit_with_local_cache.value() == 3
    assert stats.within_limit.value() == detailed.within_limit.value() == 4
    assert detailed.total_hits is store.new_counter(
        "ratelimit.service.rate_limit.detailed.k_v.total_hits"
    )


def test_service_stats_counters():
    store = Store()
    manager = StatManager(store)
    service = manager.new_service_stats()
    service.config_load_success.inc()
    service.should_rate_limit.service_error.inc()
    assert store.new_counter("ratelimit.service.config_load_success").value() == 1
    assert store.new_counter("ratelimit.service.call.should_rate_limit.service_error").value() == 1
    assert service.global_shadow_mode is store.new_counter("ratelimit.service.global_shadow_mode")


def test_should_rate_limit_stats_idempotent():
    manager = StatManager(Store())
    first = manager.new_should_rate_limit_stats()
    second = manager.new_should_rate_limit_stats()
    assert first.redis_error is second.redis_error
    assert first.service_error is second.service_error


def test_legacy_stats_names():
    store = Store()
    legacy = StatManager(store).new_should_rate_limit_legacy_stats()
    assert legacy.req_conversion_error is store.new_counter(
        "ratelimit.service.call.should_rate_limit_legacy.req_conversion_error"
    )
    assert legacy.should_rate_limit_error is store.new_counter(
        "ratelimit.service.call.should_rate_limit_legacy.should_rate_limit_error"
    )


def test_extra_tags_apply_to_manager_counters():
    sink = RecordingSink()
    store = Store(sink)
    manager = StatManager(store, extra_tags={"env": "test"})
    manager.new_service_stats().config_load_error.inc()
    store.flush()
    assert list(sink.values.values()) == [1]
    (name,) = sink.values
    assert name.startswith("ratelimit.service.config_load_error")
    assert name.endswith(".__env=test")