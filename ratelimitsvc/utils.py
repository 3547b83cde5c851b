"""Time, unit, random-source and TLS helpers shared by the rate limit service."""

from __future__ import annotations

import enum
import random
import ssl
import threading
import time
from pathlib import Path
from typing import Protocol


class Unit(enum.IntEnum):
    """Time unit of a rate limit."""

    UNKNOWN = 0
    SECOND = 1
    MINUTE = 2
    HOUR = 3
    DAY = 4


_DIVIDERS = {
    Unit.SECOND: 1,
    Unit.MINUTE: 60,
    Unit.HOUR: 60 * 60,
    Unit.DAY: 60 * 60 * 24,
}


class _TimeSource(Protocol):
    def unix_now(self) -> int: ...


class SystemTimeSource:
    """Time source backed by the system clock."""

    def unix_now(self) -> int:
        """Return the current unix time in whole seconds."""
        return int(time.time())


class LockedRandom:
    """A thread-safe seeded pseudo-random source used for expiration jitter."""

    def __init__(self, seed: int) -> None:
        self._lock = threading.Lock()
        self._rng = random.Random(seed)

    def int63(self) -> int:
        """Return a non-negative pseudo-random 63-bit integer."""
        with self._lock:
            return self._rng.getrandbits(63)

    def seed(self, seed: int) -> None:
        """Reset the generator to a deterministic state."""
        with self._lock:
            self._rng.seed(seed)


class CAType(enum.Enum):
    """Which side's certificates a CA file is used to verify."""

    CLIENT = 0
    SERVER = 1


def unit_to_divider(unit: Unit | int) -> int:
    """Return the number of seconds in one ``unit``."""
    try:
        return _DIVIDERS[Unit(unit)]
    except (KeyError, ValueError):
        raise ValueError(f"unsupported rate limit unit: {unit!r}") from None


def calculate_reset(unit: Unit | int, time_source: _TimeSource) -> int:
    """Return the seconds left until the current ``unit`` window resets."""
    divider = unit_to_divider(unit)
    now = time_source.unix_now()
    return divider - now % divider


def mask_credentials_in_url(url: str) -> str:
    """Hide credentials in a comma separated list of redis URLs."""
    masked = []
    for part in url.split(","):
        pieces = part.split("@")
        if len(pieces) > 1 and pieces[0].startswith("redis://"):
            part = "redis://*****@" + pieces[-1]
        masked.append(part)
    return ",".join(masked)


def _read_file(name: str) -> str:
    try:
        return Path(name).read_text(encoding="latin-1")
    except OSError as exc:
        raise ValueError(f"failed to read file: {name}: {exc}") from exc


def tls_config_from_files(
    cert_file: str, key_file: str, ca_cert_file: str, ca_type: CAType
) -> ssl.SSLContext:
    """Build a TLS context from a key pair and an optional CA bundle.

    ``CAType.CLIENT`` yields a server-side context whose CA verifies clients;
    ``CAType.SERVER`` yields a client-side context whose CA verifies servers.
    """
    ca_type = CAType(ca_type)
    purpose = ssl.Purpose.CLIENT_AUTH if ca_type is CAType.CLIENT else ssl.Purpose.SERVER_AUTH
    context = ssl.create_default_context(purpose)
    if cert_file and key_file:
        try:
            context.load_cert_chain(cert_file, key_file)
        except OSError as exc:
            raise ValueError(
                f"failed to load TLS key pair ({cert_file},{key_file}): {exc}"
            ) from exc
    if ca_cert_file:
        ca_data = _read_file(ca_cert_file)
        try:
            context.load_verify_locations(cadata=ca_data)
        except (ssl.SSLError, ValueError) as exc:
            raise ValueError(
                f"failed to load the provided TLS CA certificate: {ca_cert_file}"
            ) from exc
    return context