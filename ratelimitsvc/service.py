"""The rate limit service: reloads configuration and answers rate limit requests."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from ratelimitsvc.models import (
    Code,
    DescriptorStatus,
    HeaderValue,
    RateLimit,
    RateLimitRequest,
    RateLimitResponse,
)
from ratelimitsvc.settings import Settings, new_settings
from ratelimitsvc.stats import StatManager
from ratelimitsvc.tracing import get_tracer
from ratelimitsvc.utils import calculate_reset

logger = logging.getLogger(__name__)

tracer = get_tracer("ratelimit")

MAX_UINT32 = 2**32 - 1


class ServiceError(Exception):
    """A request could not be served, e.g. it was malformed or no config is loaded."""


class CacheError(Exception):
    """The cache backend failed while counting hits."""


class ConfigError(Exception):
    """A rate limit configuration could not be loaded."""


@dataclass(frozen=True)
class ConfigToLoad:
    """One configuration file taken from the runtime snapshot."""

    name: str
    file_bytes: str


@dataclass(frozen=True)
class _HeaderNames:
    limit: str
    remaining: str
    reset: str


class RateLimitService:
    """Checks requests against the current configuration using a cache backend.

    ``runtime`` provides ``snapshot()`` (with ``keys()`` and ``get(key)``) and
    ``add_update_callback(callback)``; ``config_loader.load(files, stats_manager,
    merge)`` returns a config with ``get_limit(domain, descriptor)``; and
    ``cache.do_limit(request, limits)`` returns one status per limit.
    """

    def __init__(
        self,
        runtime: Any,
        cache: Any,
        config_loader: Any,
        stats_manager: StatManager,
        runtime_watch_root: bool,
        clock: Any,
        shadow_mode: bool,
        settings_factory: Callable[[], Settings] = new_settings,
    ) -> None:
        self._runtime = runtime
        self._cache = cache
        self._config_loader = config_loader
        self._stats_manager = stats_manager
        self._stats = stats_manager.new_service_stats()
        self._runtime_watch_root = runtime_watch_root
        self._clock = clock
        self._settings_factory = settings_factory
        self._lock = threading.RLock()
        self._config: Any = None
        self._global_shadow_mode = shadow_mode
        self._headers: _HeaderNames | None = None

        runtime.add_update_callback(self._on_runtime_update)
        self.reload_config()

    def _on_runtime_update(self, *_: Any) -> None:
        logger.debug("got runtime update and reloading config")
        self.reload_config()

    def reload_config(self) -> None:
        """Load the configuration from the runtime; keep the old one on ``ConfigError``."""
        try:
            snapshot = self._runtime.snapshot()
            files = [
                ConfigToLoad(key, snapshot.get(key))
                for key in snapshot.keys()
                if not self._runtime_watch_root or key.startswith("config.")
            ]
            settings = self._settings_factory()
            new_config = self._config_loader.load(
                files, self._stats_manager, settings.merge_domain_configurations
            )
        except ConfigError as exc:
            self._stats.config_load_error.inc()
            logger.error("error loading new configuration from runtime: %s", exc)
            return

        self._stats.config_load_success.inc()
        with self._lock:
            self._config = new_config
            self._global_shadow_mode = settings.global_shadow_mode
            if settings.rate_limit_response_headers_enabled:
                self._headers = _HeaderNames(
                    settings.header_ratelimit_limit,
                    settings.header_ratelimit_remaining,
                    settings.header_ratelimit_reset,
                )

    def current_config(self) -> Any:
        """Return the configuration now in use, or ``None`` before the first load."""
        with self._lock:
            return self._config

    def _limits_to_check(
        self, request: RateLimitRequest
    ) -> tuple[list[RateLimit | None], list[bool]]:
        config = self.current_config()
        if config is None:
            raise ServiceError("no rate limit configuration loaded")

        limits: list[RateLimit | None] = []
        unlimited: list[bool] = []
        replacing: set[str] = set()

        for descriptor in request.descriptors:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "got descriptor: %s",
                    ",".join(f"({e.key}={e.value})" for e in descriptor.entries),
                )
            limit = config.get_limit(request.domain, descriptor)
            if limit is None:
                logger.debug("descriptor does not match any limit, no limits applied")
                limits.append(None)
                unlimited.append(False)
                continue
            replacing.update(limit.replaces)
            if limit.unlimited:
                logger.debug("descriptor is unlimited, not passing to the cache")
                limits.append(None)
                unlimited.append(True)
            else:
                logger.debug(
                    "applying limit: %d requests per %s, shadow_mode: %s",
                    limit.limit.requests_per_unit,
                    limit.limit.unit.name,
                    limit.shadow_mode,
                )
                limits.append(limit)
                unlimited.append(False)

        for index, limit in enumerate(limits):
            if limit is not None and limit.name and limit.name in replacing:
                logger.debug("replacing %s", limit.name)
                limits[index] = None
        return limits, unlimited

    def _headers_for(self, names: _HeaderNames, status: DescriptorStatus) -> list[HeaderValue]:
        limit = status.current_limit
        return [
            HeaderValue(names.limit, str(limit.requests_per_unit)),
            HeaderValue(names.remaining, str(status.limit_remaining)),
            HeaderValue(names.reset, str(calculate_reset(limit.unit, self._clock))),
        ]

    def _answer(self, request: RateLimitRequest) -> RateLimitResponse:
        if not request.domain:
            raise ServiceError("rate limit domain must not be empty")
        if not request.descriptors:
            raise ServiceError("rate limit descriptor list must not be empty")

        limits, unlimited = self._limits_to_check(request)
        statuses = list(self._cache.do_limit(request, limits))
        if len(statuses) != len(limits):
            raise AssertionError("cache returned a status count different from the limits")

        with self._lock:
            headers = self._headers
            global_shadow_mode = self._global_shadow_mode

        response = RateLimitResponse()
        final_code = Code.OK
        min_remaining = MAX_UINT32
        closest: DescriptorStatus | None = None

        for status, is_unlimited in zip(statuses, unlimited):
            if (
                headers is not None
                and status.current_limit is not None
                and status.limit_remaining < min_remaining
            ):
                closest = status
                min_remaining = status.limit_remaining

            if is_unlimited:
                response.statuses.append(
                    DescriptorStatus(code=Code.OK, limit_remaining=MAX_UINT32)
                )
            else:
                response.statuses.append(status)
                if status.code == Code.OVER_LIMIT:
                    final_code = status.code
                    closest = status
                    min_remaining = 0

        if headers is not None and closest is not None:
            response.response_headers_to_add = self._headers_for(headers, closest)

        if final_code == Code.OVER_LIMIT and global_shadow_mode:
            final_code = Code.OK
            self._stats.global_shadow_mode.inc()

        response.overall_code = final_code
        return response

    def should_rate_limit(self, request: RateLimitRequest) -> RateLimitResponse:
        """Check ``request``; raise ``ServiceError`` or ``CacheError`` when it cannot be served."""
        attributes = {"domain": request.domain, "request string": str(request)}
        with tracer.start_span("ShouldRateLimit Execution", attributes):
            try:
                response = self._answer(request)
            except CacheError:
                logger.debug("caught error during call")
                self._stats.should_rate_limit.redis_error.inc()
                raise
            except ServiceError:
                logger.debug("caught error during call")
                self._stats.should_rate_limit.service_error.inc()
                raise
            logger.debug("returning normal response")
            return response