"""Health state of the service and verification of client certificates."""

from __future__ import annotations

import enum
import logging
import signal
import ssl
import threading
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

logger = logging.getLogger(__name__)


class ServingStatus(enum.Enum):
    """Health status reported for a service."""

    UNKNOWN = 0
    SERVING = 1
    NOT_SERVING = 2


class HealthChecker:
    """Tracks whether the service is healthy, over HTTP and per service name.

    The overall service ``""`` and ``name`` both start as serving. When
    ``handle_sigterm`` is true, receiving SIGTERM marks ``name`` as not serving.
    """

    def __init__(self, name: str, handle_sigterm: bool = True) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._ok = True
        self._statuses: dict[str, ServingStatus] = {
            "": ServingStatus.SERVING,
            name: ServingStatus.SERVING,
        }
        if handle_sigterm:
            self._install_sigterm_handler()

    def _install_sigterm_handler(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("not on the main thread; SIGTERM is not watched")
            return
        previous = signal.getsignal(signal.SIGTERM)

        def on_sigterm(signum: int, frame: Any) -> None:
            self.fail()
            if callable(previous):
                previous(signum, frame)

        signal.signal(signal.SIGTERM, on_sigterm)

    def _set(self, ok: bool) -> None:
        with self._lock:
            self._ok = ok
            self._statuses[self.name] = (
                ServingStatus.SERVING if ok else ServingStatus.NOT_SERVING
            )

    def fail(self) -> None:
        """Mark the service as unhealthy."""
        self._set(False)

    def ok(self) -> None:
        """Mark the service as healthy."""
        self._set(True)

    def status(self, service: str) -> ServingStatus:
        """Return the status of ``service``; raise ``LookupError`` if it is unknown."""
        with self._lock:
            try:
                return self._statuses[service]
            except KeyError:
                raise LookupError(f"unknown service {service!r}") from None

    def handle_http(self) -> tuple[int, bytes]:
        """Return the HTTP status and body of a health check request."""
        with self._lock:
            healthy = self._ok
        return (200, b"OK") if healthy else (500, b"")


def _san_matches(pattern: str, name: str) -> bool:
    pattern = pattern.lower().rstrip(".")
    name = name.lower().rstrip(".")
    if pattern == name:
        return True
    if pattern.startswith("*."):
        head, _, rest = name.partition(".")
        return bool(head) and rest == pattern[2:]
    return False


PeerCertificate = Mapping[str, Any]


def verify_client(
    client_ca_file: str, client_san: str
) -> Callable[[Sequence[Sequence[PeerCertificate]]], None]:
    """Return a check that each verified client chain's leaf is valid for ``client_san``.

    Chain trust is established by the TLS layer using ``client_ca_file``; the
    returned callable takes the verified chains, each a sequence of certificate
    mappings as returned by ``SSLSocket.getpeercert()``, leaf first, and raises
    ``ssl.CertificateError`` when a chain is empty or its leaf does not carry
    ``client_san`` among its DNS subject alternative names.
    """
    if client_ca_file and not Path(client_ca_file).is_file():
        raise ValueError(f"failed to read file: {client_ca_file}")

    def verify(verified_chains: Sequence[Sequence[PeerCertificate]]) -> None:
        for chain in verified_chains:
            if len(chain) < 1:
                raise ssl.CertificateError("missing client cert")
            leaf = chain[0]
            names = [
                value for kind, value in leaf.get("subjectAltName", ()) if kind == "DNS"
            ]
            if not any(_san_matches(name, client_san) for name in names):
                message = f"certificate is not valid for {client_san}"
                logger.warning("error validating client: %s", message)
                raise ssl.CertificateError(message)

    return verify