"""Service settings read from environment variables."""

from __future__ import annotations

import os
import re
import ssl
from dataclasses import dataclass, field, fields
from datetime import timedelta
from fractions import Fraction
from typing import Any, Callable, Mapping

from ratelimitsvc.utils import CAType, tls_config_from_files

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|h|m|s)")
_UNIT_NANOS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_OCTAL = re.compile(r"^[+-]?0[0-7]+$")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"24h"``, ``"1h30m"`` or ``"150us"``."""
    rest = text
    negative = False
    if rest[:1] in ("-", "+"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f"invalid duration {text!r}")
    total = Fraction(0)
    position = 0
    while position < len(rest):
        match = _DURATION_PART.match(rest, position)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        number, unit = match.groups()
        total += Fraction(number) * _UNIT_NANOS[unit]
        position = match.end()
    micros = int(total / 1000)
    return timedelta(microseconds=-micros if negative else micros)


def _parse_bool(value: str) -> bool:
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid syntax for bool: {value!r}")


def _parse_int(value: str) -> int:
    if _OCTAL.match(value):
        return int(value, 8)
    return int(value, 0)


def _parse_float(value: str) -> float:
    return float(value)


def _parse_list(value: str) -> list[str]:
    if not value.strip():
        return []
    return value.split(",")


def _parse_map(value: str) -> dict[str, str]:
    result: dict[str, str] = {}
    if not value.strip():
        return result
    for pair in value.split(","):
        parts = pair.split(":")
        if len(parts) != 2:
            raise ValueError(f"invalid map item: {pair!r}")
        result[parts[0]] = parts[1]
    return result


def _env(name: str, parse: Callable[[str], Any], default: Any) -> Any:
    return field(default=default, metadata={"env": name, "parse": parse})


def _env_factory(name: str, parse: Callable[[str], Any], factory: Callable[[], Any]) -> Any:
    return field(default_factory=factory, metadata={"env": name, "parse": parse})


@dataclass
class Settings:
    """All runtime options of the rate limit service."""

    # Server listen addresses
    host: str = _env("HOST", str, "0.0.0.0")
    port: int = _env("PORT", _parse_int, 8080)
    debug_host: str = _env("DEBUG_HOST", str, "0.0.0.0")
    debug_port: int = _env("DEBUG_PORT", _parse_int, 6070)

    # gRPC server
    grpc_host: str = _env("GRPC_HOST", str, "0.0.0.0")
    grpc_port: int = _env("GRPC_PORT", _parse_int, 8081)
    grpc_max_connection_age: timedelta = _env(
        "GRPC_MAX_CONNECTION_AGE", parse_duration, timedelta(hours=24)
    )
    grpc_max_connection_age_grace: timedelta = _env(
        "GRPC_MAX_CONNECTION_AGE_GRACE", parse_duration, timedelta(hours=1)
    )
    grpc_server_use_tls: bool = _env("GRPC_SERVER_USE_TLS", _parse_bool, False)
    grpc_server_tls_cert: str = _env("GRPC_SERVER_TLS_CERT", str, "")
    grpc_server_tls_key: str = _env("GRPC_SERVER_TLS_KEY", str, "")
    grpc_client_tls_cacert: str = _env("GRPC_CLIENT_TLS_CACERT", str, "")
    grpc_client_tls_san: str = _env("GRPC_CLIENT_TLS_SAN", str, "")

    # Logging
    log_level: str = _env("LOG_LEVEL", str, "WARN")
    log_format: str = _env("LOG_FORMAT", str, "text")

    # Stats
    use_statsd: bool = _env("USE_STATSD", _parse_bool, True)
    statsd_host: str = _env("STATSD_HOST", str, "localhost")
    statsd_port: int = _env("STATSD_PORT", _parse_int, 8125)
    extra_tags: dict[str, str] = _env_factory("EXTRA_TAGS", _parse_map, dict)
    detailed_metrics: bool = _env("DETAILED_METRICS_MODE", _parse_bool, False)

    # Rate limit configuration runtime
    runtime_path: str = _env("RUNTIME_ROOT", str, "/srv/runtime_data/current")
    runtime_subdirectory: str = _env("RUNTIME_SUBDIRECTORY", str, "")
    runtime_ignore_dot_files: bool = _env("RUNTIME_IGNOREDOTFILES", _parse_bool, False)
    runtime_watch_root: bool = _env("RUNTIME_WATCH_ROOT", _parse_bool, True)

    # All cache types
    expiration_jitter_max_seconds: int = _env(
        "EXPIRATION_JITTER_MAX_SECONDS", _parse_int, 300
    )
    local_cache_size_in_bytes: int = _env("LOCAL_CACHE_SIZE_IN_BYTES", _parse_int, 0)
    near_limit_ratio: float = _env("NEAR_LIMIT_RATIO", _parse_float, 0.8)
    cache_key_prefix: str = _env("CACHE_KEY_PREFIX", str, "")
    backend_type: str = _env("BACKEND_TYPE", str, "redis")

    # Response headers
    rate_limit_response_headers_enabled: bool = _env(
        "LIMIT_RESPONSE_HEADERS_ENABLED", _parse_bool, False
    )
    header_ratelimit_limit: str = _env("LIMIT_LIMIT_HEADER", str, "RateLimit-Limit")
    header_ratelimit_remaining: str = _env(
        "LIMIT_REMAINING_HEADER", str, "RateLimit-Remaining"
    )
    header_ratelimit_reset: str = _env("LIMIT_RESET_HEADER", str, "RateLimit-Reset")

    # Redis
    redis_socket_type: str = _env("REDIS_SOCKET_TYPE", str, "unix")
    redis_type: str = _env("REDIS_TYPE", str, "SINGLE")
    redis_url: str = _env("REDIS_URL", str, "/var/run/nutcracker/ratelimit.sock")
    redis_pool_size: int = _env("REDIS_POOL_SIZE", _parse_int, 10)
    redis_auth: str = _env("REDIS_AUTH", str, "")
    redis_tls: bool = _env("REDIS_TLS", _parse_bool, False)
    redis_tls_client_cert: str = _env("REDIS_TLS_CLIENT_CERT", str, "")
    redis_tls_client_key: str = _env("REDIS_TLS_CLIENT_KEY", str, "")
    redis_tls_cacert: str = _env("REDIS_TLS_CACERT", str, "")
    redis_pipeline_window: timedelta = _env(
        "REDIS_PIPELINE_WINDOW", parse_duration, timedelta(0)
    )
    redis_pipeline_limit: int = _env("REDIS_PIPELINE_LIMIT", _parse_int, 0)
    redis_per_second: bool = _env("REDIS_PERSECOND", _parse_bool, False)
    redis_per_second_socket_type: str = _env("REDIS_PERSECOND_SOCKET_TYPE", str, "unix")
    redis_per_second_type: str = _env("REDIS_PERSECOND_TYPE", str, "SINGLE")
    redis_per_second_url: str = _env(
        "REDIS_PERSECOND_URL", str, "/var/run/nutcracker/ratelimitpersecond.sock"
    )
    redis_per_second_pool_size: int = _env("REDIS_PERSECOND_POOL_SIZE", _parse_int, 10)
    redis_per_second_auth: str = _env("REDIS_PERSECOND_AUTH", str, "")
    redis_per_second_tls: bool = _env("REDIS_PERSECOND_TLS", _parse_bool, False)
    redis_per_second_pipeline_window: timedelta = _env(
        "REDIS_PERSECOND_PIPELINE_WINDOW", parse_duration, timedelta(0)
    )
    redis_per_second_pipeline_limit: int = _env(
        "REDIS_PERSECOND_PIPELINE_LIMIT", _parse_int, 0
    )
    redis_health_check_active_connection: bool = _env(
        "REDIS_HEALTH_CHECK_ACTIVE_CONNECTION", _parse_bool, False
    )

    # Memcache
    memcache_host_port: list[str] = _env_factory("MEMCACHE_HOST_PORT", _parse_list, list)
    memcache_max_idle_conns: int = _env("MEMCACHE_MAX_IDLE_CONNS", _parse_int, 2)
    memcache_srv: str = _env("MEMCACHE_SRV", str, "")
    memcache_srv_refresh: timedelta = _env("MEMCACHE_SRV_REFRESH", parse_duration, timedelta(0))

    # Behaviour
    global_shadow_mode: bool = _env("SHADOW_MODE", _parse_bool, False)
    merge_domain_configurations: bool = _env("MERGE_DOMAIN_CONFIG", _parse_bool, False)

    # Tracing
    tracing_enabled: bool = _env("TRACING_ENABLED", _parse_bool, False)
    tracing_service_name: str = _env("TRACING_SERVICE_NAME", str, "RateLimit")
    tracing_service_namespace: str = _env("TRACING_SERVICE_NAMESPACE", str, "")
    tracing_service_instance_id: str = _env("TRACING_SERVICE_INSTANCE_ID", str, "")
    tracing_exporter_protocol: str = _env("TRACING_EXPORTER_PROTOCOL", str, "http")

    # Set in code rather than from the environment
    grpc_unary_interceptor: Any = None
    grpc_server_tls_config: ssl.SSLContext | None = None
    redis_tls_config: ssl.SSLContext | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from ``environ`` (default: the process environment)."""
        if environ is None:
            environ = os.environ
        values: dict[str, Any] = {}
        for spec in fields(cls):
            env_name = spec.metadata.get("env")
            if env_name is None:
                continue
            raw = environ.get(env_name)
            if raw is None:
                continue
            try:
                values[spec.name] = spec.metadata["parse"](raw)
            except ValueError as exc:
                raise ValueError(
                    f"assigning {env_name} to {spec.name}: "
                    f"converting '{raw}' to type {spec.type}. details: {exc}"
                ) from exc
        return cls(**values)


Option = Callable[[Settings], None]


def redis_tls_config(redis_tls: bool) -> Option:
    """Option that sets the TLS context used to reach redis."""

    def apply(settings: Settings) -> None:
        settings.redis_tls_config = ssl.create_default_context()
        if redis_tls:
            settings.redis_tls_config = tls_config_from_files(
                settings.redis_tls_client_cert,
                settings.redis_tls_client_key,
                settings.redis_tls_cacert,
                CAType.SERVER,
            )

    return apply


def grpc_server_tls_config() -> Option:
    """Option that sets the gRPC server's TLS context when TLS is enabled."""

    def apply(settings: Settings) -> None:
        if not settings.grpc_server_use_tls:
            return
        context = tls_config_from_files(
            settings.grpc_server_tls_cert,
            settings.grpc_server_tls_key,
            settings.grpc_client_tls_cacert,
            CAType.CLIENT,
        )
        context.verify_mode = (
            ssl.CERT_REQUIRED if settings.grpc_client_tls_cacert else ssl.CERT_NONE
        )
        settings.grpc_server_tls_config = context

    return apply


def grpc_unary_interceptor(interceptor: Any) -> Option:
    """Option that installs a unary interceptor for the gRPC server."""

    def apply(settings: Settings) -> None:
        settings.grpc_unary_interceptor = interceptor

    return apply


def new_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Read settings from the environment and derive the TLS contexts."""
    settings = Settings.from_env(environ)
    redis_tls_config(settings.redis_tls or settings.redis_per_second_tls)(settings)
    grpc_server_tls_config()(settings)
    return settings