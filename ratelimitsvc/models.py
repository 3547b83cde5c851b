"""Request, response and limit types of the rate limit service, with JSON codecs."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from ratelimitsvc.stats import RateLimitStats
from ratelimitsvc.utils import Unit

_MAX_UINT32 = 2**32 - 1


class Code(enum.IntEnum):
    """Outcome of a rate limit check."""

    UNKNOWN = 0
    OK = 1
    OVER_LIMIT = 2


@dataclass(frozen=True)
class DescriptorEntry:
    """One key/value pair of a descriptor."""

    key: str
    value: str = ""


@dataclass(frozen=True)
class RateLimitValue:
    """A number of requests allowed per time unit."""

    requests_per_unit: int
    unit: Unit
    name: str = ""

    def _to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.name:
            out["name"] = self.name
        if self.requests_per_unit:
            out["requestsPerUnit"] = self.requests_per_unit
        if self.unit != Unit.UNKNOWN:
            out["unit"] = Unit(self.unit).name
        return out


@dataclass(frozen=True)
class Descriptor:
    """An ordered list of entries, optionally carrying a limit override."""

    entries: tuple[DescriptorEntry, ...] = ()
    limit: RateLimitValue | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", tuple(self.entries))


def _decode_error(text: str, exc: json.JSONDecodeError) -> ValueError:
    if exc.msg == "Expecting value":
        if exc.pos < len(text):
            return ValueError(
                f"invalid character '{text[exc.pos]}' looking for beginning of value"
            )
        return ValueError("unexpected end of JSON input")
    return ValueError(f"invalid JSON: {exc.msg}")


def _fields(obj: Any, aliases: Mapping[str, str], where: str) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise ValueError(f"{where} must be a JSON object")
    values: dict[str, Any] = {}
    for name, value in obj.items():
        canonical = aliases.get(name)
        if canonical is None:
            raise ValueError(f"unknown field {name!r} in {where}")
        if value is not None:
            values[canonical] = value
    return values


def _string(value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{where} must be a string")
    return value


def _uint32(value: Any, where: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{where} must be an unsigned integer")
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or not 0 <= value <= _MAX_UINT32:
        raise ValueError(f"{where} must be an unsigned 32-bit integer")
    return value


def _unit(value: Any) -> Unit:
    try:
        if isinstance(value, str):
            return Unit[value]
        if isinstance(value, int) and not isinstance(value, bool):
            return Unit(value)
    except (KeyError, ValueError):
        pass
    raise ValueError(f"invalid rate limit unit {value!r}")


def _list(value: Any, where: str) -> list[Any]:
    if not isinstance(value, list):
        raise ValueError(f"{where} must be a JSON array")
    return value


def _parse_override(obj: Any) -> RateLimitValue:
    values = _fields(
        obj,
        {
            "requestsPerUnit": "requests_per_unit",
            "requests_per_unit": "requests_per_unit",
            "unit": "unit",
        },
        "limit",
    )
    return RateLimitValue(
        _uint32(values.get("requests_per_unit", 0), "limit.requestsPerUnit"),
        _unit(values.get("unit", Unit.UNKNOWN.name)),
    )


def _parse_entry(obj: Any) -> DescriptorEntry:
    values = _fields(obj, {"key": "key", "value": "value"}, "descriptor entry")
    return DescriptorEntry(
        _string(values.get("key", ""), "entry.key"),
        _string(values.get("value", ""), "entry.value"),
    )


def _parse_descriptor(obj: Any) -> Descriptor:
    values = _fields(obj, {"entries": "entries", "limit": "limit"}, "descriptor")
    entries = tuple(_parse_entry(item) for item in _list(values.get("entries", []), "entries"))
    limit = _parse_override(values["limit"]) if "limit" in values else None
    return Descriptor(entries, limit)


@dataclass(frozen=True)
class RateLimitRequest:
    """A request to check and count hits against the limits of a domain."""

    domain: str = ""
    descriptors: tuple[Descriptor, ...] = ()
    hits_addend: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "descriptors", tuple(self.descriptors))

    @classmethod
    def from_json(cls, text: str | bytes) -> "RateLimitRequest":
        """Decode a request from its JSON form; raise ``ValueError`` when malformed."""
        if isinstance(text, bytes):
            text = text.decode("utf-8")
        if not text.strip():
            raise ValueError("EOF")
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise _decode_error(text, exc) from None
        values = _fields(
            document,
            {
                "domain": "domain",
                "descriptors": "descriptors",
                "hitsAddend": "hits_addend",
                "hits_addend": "hits_addend",
            },
            "request",
        )
        return cls(
            domain=_string(values.get("domain", ""), "domain"),
            descriptors=tuple(
                _parse_descriptor(item)
                for item in _list(values.get("descriptors", []), "descriptors")
            ),
            hits_addend=_uint32(values.get("hits_addend", 0), "hitsAddend"),
        )


@dataclass(frozen=True)
class DescriptorStatus:
    """Result of checking one descriptor."""

    code: Code = Code.UNKNOWN
    current_limit: RateLimitValue | None = None
    limit_remaining: int = 0
    duration_until_reset: int | None = None

    def _to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.code != Code.UNKNOWN:
            out["code"] = Code(self.code).name
        if self.current_limit is not None:
            out["currentLimit"] = self.current_limit._to_json()
        if self.limit_remaining:
            out["limitRemaining"] = self.limit_remaining
        if self.duration_until_reset is not None:
            out["durationUntilReset"] = f"{self.duration_until_reset}s"
        return out


@dataclass(frozen=True)
class HeaderValue:
    """A response header to add."""

    key: str
    value: str

    def _to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.key:
            out["key"] = self.key
        if self.value:
            out["value"] = self.value
        return out


@dataclass
class RateLimitResponse:
    """The overall answer to a request, with one status per descriptor."""

    overall_code: Code = Code.UNKNOWN
    statuses: list[DescriptorStatus] = field(default_factory=list)
    response_headers_to_add: list[HeaderValue] = field(default_factory=list)

    def to_json(self) -> str:
        """Encode compactly, omitting fields that hold their zero value."""
        out: dict[str, Any] = {}
        if self.overall_code != Code.UNKNOWN:
            out["overallCode"] = Code(self.overall_code).name
        if self.statuses:
            out["statuses"] = [status._to_json() for status in self.statuses]
        if self.response_headers_to_add:
            out["responseHeadersToAdd"] = [h._to_json() for h in self.response_headers_to_add]
        return json.dumps(out, separators=(",", ":"))


@dataclass
class RateLimit:
    """A configured limit matched for a descriptor."""

    limit: RateLimitValue
    stats: RateLimitStats | None = None
    unlimited: bool = False
    shadow_mode: bool = False
    name: str = ""
    replaces: tuple[str, ...] = ()
    full_key: str = ""

    def __post_init__(self) -> None:
        self.replaces = tuple(self.replaces)


def new_rate_limit_request(
    domain: str,
    descriptors: Iterable[Sequence[tuple[str, str]]],
    hits_addend: int,
) -> RateLimitRequest:
    """Build a request from lists of ``(key, value)`` pairs."""
    return RateLimitRequest(
        domain=domain,
        descriptors=tuple(
            Descriptor(tuple(DescriptorEntry(key, value) for key, value in descriptor))
            for descriptor in descriptors
        ),
        hits_addend=hits_addend,
    )