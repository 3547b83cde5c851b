"""Counters, scopes and the stat manager used to record rate limit statistics."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Mapping

logger = logging.getLogger(__name__)


class Counter:
    """A monotonically increasing counter."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._value = 0
        self._flushed = 0

    def add(self, amount: int) -> None:
        """Increase the counter by ``amount``."""
        if amount < 0:
            raise ValueError(f"counter {self.name} cannot decrease by {amount}")
        with self._lock:
            self._value += amount

    def inc(self) -> None:
        """Increase the counter by one."""
        self.add(1)

    def value(self) -> int:
        """Return the total recorded so far."""
        with self._lock:
            return self._value

    def _latch(self) -> int:
        with self._lock:
            delta = self._value - self._flushed
            self._flushed = self._value
            return delta


def _serialize(name: str, tags: Mapping[str, str]) -> str:
    return name + "".join(f".__{key}={tags[key]}" for key in sorted(tags))


class Scope:
    """A named prefix, with optional tags, under which counters are created."""

    def __init__(self, store: "Store", prefix: str, tags: Mapping[str, str]) -> None:
        self._store = store
        self._prefix = prefix
        self._tags = dict(tags)

    def scope(self, name: str) -> "Scope":
        """Return a child scope named ``name``."""
        return Scope(self._store, f"{self._prefix}.{name}", self._tags)

    def new_counter(self, name: str) -> Counter:
        """Return the counter ``name`` within this scope."""
        return self._store._counter(f"{self._prefix}.{name}", self._tags)


class Store:
    """Root of the stats tree; owns all counters and flushes them to a sink.

    A sink is any object with a ``flush_counter(name, value)`` method.
    """

    def __init__(self, sink: Any = None) -> None:
        self._sink = sink
        self._lock = threading.Lock()
        self._counters: dict[str, Counter] = {}
        self._generators: list[Any] = []

    def scope(self, name: str) -> Scope:
        """Return a scope named ``name``."""
        return Scope(self, name, {})

    def scope_with_tags(self, name: str, tags: Mapping[str, str] | None) -> Scope:
        """Return a scope named ``name`` whose counters carry ``tags``."""
        return Scope(self, name, tags or {})

    def new_counter(self, name: str) -> Counter:
        """Return the counter ``name``, creating it on first use."""
        return self._counter(name, {})

    def _counter(self, name: str, tags: Mapping[str, str]) -> Counter:
        full_name = _serialize(name, tags)
        with self._lock:
            counter = self._counters.get(full_name)
            if counter is None:
                counter = self._counters[full_name] = Counter(full_name)
            return counter

    def add_stat_generator(self, generator: Any) -> None:
        """Register an object whose ``generate_stats()`` runs before each flush."""
        with self._lock:
            self._generators.append(generator)

    def flush(self) -> None:
        """Run stat generators and send counter increments since the last flush."""
        with self._lock:
            generators = list(self._generators)
        for generator in generators:
            generator.generate_stats()
        with self._lock:
            counters = list(self._counters.items())
        for name, counter in counters:
            delta = counter._latch()
            if delta and self._sink is not None:
                self._sink.flush_counter(name, delta)


@dataclass(frozen=True)
class RateLimitStats:
    """Counters for one rate limit configuration entry."""

    key: str
    total_hits: Counter
    over_limit: Counter
    near_limit: Counter
    over_limit_with_local_cache: Counter
    within_limit: Counter
    shadow_mode: Counter


@dataclass(frozen=True)
class ShouldRateLimitStats:
    """Counters for errors caught while answering a request."""

    redis_error: Counter
    service_error: Counter


@dataclass(frozen=True)
class ShouldRateLimitLegacyStats:
    """Counters for the legacy request path."""

    req_conversion_error: Counter
    resp_conversion_error: Counter
    should_rate_limit_error: Counter


@dataclass(frozen=True)
class ServiceStats:
    """Counters for configuration loads and service-wide events."""

    config_load_success: Counter
    config_load_error: Counter
    should_rate_limit: ShouldRateLimitStats
    global_shadow_mode: Counter


class StatManager:
    """Creates the stat structures of the service under one store."""

    def __init__(
        self,
        store: Store,
        extra_tags: Mapping[str, str] | None = None,
        detailed: bool = False,
    ) -> None:
        self.store = store
        self.detailed = detailed
        service_scope = store.scope_with_tags("ratelimit", extra_tags).scope("service")
        self._service_scope = service_scope
        self._rl_scope = service_scope.scope("rate_limit")
        self._legacy_scope = service_scope.scope("call.should_rate_limit_legacy")
        self._detailed_scope = service_scope.scope("rate_limit").scope("detailed")

    def _add(self, field: str, amount: int, rl_stats: RateLimitStats, key: str) -> None:
        getattr(rl_stats, field).add(amount)
        if self.detailed:
            getattr(self.new_detailed_stats(key), field).add(amount)

    def add_total_hits(self, amount: int, rl_stats: RateLimitStats, key: str) -> None:
        self._add("total_hits", amount, rl_stats, key)

    def add_over_limit(self, amount: int, rl_stats: RateLimitStats, key: str) -> None:
        self._add("over_limit", amount, rl_stats, key)

    def add_near_limit(self, amount: int, rl_stats: RateLimitStats, key: str) -> None:
        self._add("near_limit", amount, rl_stats, key)

    def add_over_limit_with_local_cache(
        self, amount: int, rl_stats: RateLimitStats, key: str
    ) -> None:
        self._add("over_limit_with_local_cache", amount, rl_stats, key)

    def add_within_limit(self, amount: int, rl_stats: RateLimitStats, key: str) -> None:
        self._add("within_limit", amount, rl_stats, key)

    @staticmethod
    def _stats_in(scope: Scope, key: str) -> RateLimitStats:
        return RateLimitStats(
            key=key,
            total_hits=scope.new_counter(key + ".total_hits"),
            over_limit=scope.new_counter(key + ".over_limit"),
            near_limit=scope.new_counter(key + ".near_limit"),
            over_limit_with_local_cache=scope.new_counter(key + ".over_limit_with_local_cache"),
            within_limit=scope.new_counter(key + ".within_limit"),
            shadow_mode=scope.new_counter(key + ".shadow_mode"),
        )

    def new_stats(self, key: str) -> RateLimitStats:
        """Return the stats for the fully resolved descriptor ``key``."""
        logger.debug("Creating stats for key: '%s'", key)
        return self._stats_in(self._rl_scope, key)

    def new_detailed_stats(self, key: str) -> RateLimitStats:
        """Return the detailed-metrics stats for descriptor ``key``."""
        logger.debug("Creating detailed stats for key: '%s'", key)
        return self._stats_in(self._detailed_scope, key)

    def new_should_rate_limit_legacy_stats(self) -> ShouldRateLimitLegacyStats:
        scope = self._legacy_scope
        return ShouldRateLimitLegacyStats(
            req_conversion_error=scope.new_counter("req_conversion_error"),
            resp_conversion_error=scope.new_counter("resp_conversion_error"),
            should_rate_limit_error=scope.new_counter("should_rate_limit_error"),
        )

    def new_should_rate_limit_stats(self) -> ShouldRateLimitStats:
        scope = self._service_scope.scope("call.should_rate_limit")
        return ShouldRateLimitStats(
            redis_error=scope.new_counter("redis_error"),
            service_error=scope.new_counter("service_error"),
        )

    def new_service_stats(self) -> ServiceStats:
        scope = self._service_scope
        return ServiceStats(
            config_load_success=scope.new_counter("config_load_success"),
            config_load_error=scope.new_counter("config_load_error"),
            should_rate_limit=self.new_should_rate_limit_stats(),
            global_shadow_mode=scope.new_counter("global_shadow_mode"),
        )