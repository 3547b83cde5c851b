"""HTTP front end of the rate limit service: JSON endpoint, health check and debug port."""

from __future__ import annotations

import dataclasses
import gc
import json
import logging
import signal
import socket
import sys
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable
from urllib.parse import urlsplit

from ratelimitsvc.health import HealthChecker
from ratelimitsvc.models import Code, RateLimitRequest
from ratelimitsvc.settings import Option, Settings
from ratelimitsvc.stats import StatManager
from ratelimitsvc.tracing import get_tracer

logger = logging.getLogger(__name__)

tracer = get_tracer("ratelimit server")

_TEXT = "text/plain; charset=utf-8"
_JSON = "application/json"


@dataclass(frozen=True)
class HttpReply:
    """Status, body and content type of an HTTP response."""

    status: int
    body: bytes = b""
    content_type: str | None = None


def _error(status: int, message: str) -> HttpReply:
    return HttpReply(status, (message + "\n").encode("utf-8"), _TEXT)


def new_json_handler(service: Any) -> Callable[[bytes], HttpReply]:
    """Return a handler that answers JSON rate limit requests using ``service``."""

    def handle(body: bytes) -> HttpReply:
        try:
            request = RateLimitRequest.from_json(body)
        except ValueError as exc:
            logger.warning("error: %s", exc)
            return _error(400, str(exc))

        try:
            response = service.should_rate_limit(request)
        except Exception as exc:  # any service failure becomes a client-visible error
            logger.warning("error: %s", exc)
            return _error(400, str(exc))

        attributes = {"response": "" if response is None else str(response)}
        with tracer.start_span("NewJsonHandler Remaining Execution", attributes):
            logger.debug("resp:%s", response)
            if response is None:
                message = "error marshaling proto3 to json: Marshal called with nil"
                logger.error(message)
                return _error(500, message)
            payload = response.to_json().encode("utf-8")
            if response.overall_code == Code.UNKNOWN:
                status = 500
            elif response.overall_code == Code.OVER_LIMIT:
                status = 429
            else:
                status = 200
            return HttpReply(status, payload, _JSON)

    return handle


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _process_stats() -> str:
    values = {"cmdline": sys.argv, "gc": gc.get_stats()}
    return "".join(f"{key}: {json.dumps(values[key])}\n" for key in sorted(values))


class _ReusePortHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def server_bind(self) -> None:
        if hasattr(socket, "SO_REUSEPORT"):
            try:
                self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            except OSError:
                logger.debug("SO_REUSEPORT not supported")
        super().server_bind()


def _make_http_server(
    address: tuple[str, int], dispatch: Callable[[str, bytes], HttpReply]
) -> ThreadingHTTPServer:
    class Handler(BaseHTTPRequestHandler):
        def _serve(self) -> None:
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length) if length > 0 else b""
            reply = dispatch(urlsplit(self.path).path, body)
            self.send_response(reply.status)
            if reply.content_type:
                self.send_header("Content-Type", reply.content_type)
            self.send_header("Content-Length", str(len(reply.body)))
            self.end_headers()
            self.wfile.write(reply.body)

        do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = _serve

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug(format, *args)

    server_class = type(
        "_Server",
        (_ReusePortHTTPServer,),
        {"address_family": socket.AF_INET6 if ":" in address[0] else socket.AF_INET},
    )
    return server_class(address, Handler)


class Server:
    """Serves the main HTTP port and the debug port of the service."""

    def __init__(
        self,
        settings: Settings,
        name: str,
        stats_manager: StatManager,
        *options: Option,
        handle_signals: bool = True,
    ) -> None:
        settings = dataclasses.replace(settings)
        for option in options:
            option(settings)
        self.settings = settings
        self._http_address = (settings.host, settings.port)
        self._debug_address = (settings.debug_host, settings.debug_port)
        self.store = stats_manager.store
        self.scope = self.store.scope_with_tags(name, settings.extra_tags)
        self._handle_signals = handle_signals

        self._lock = threading.Lock()
        self._http_server: ThreadingHTTPServer | None = None
        self._debug_server: ThreadingHTTPServer | None = None
        self._stopped = False
        self._exit_requested = False

        self.health = HealthChecker("ratelimit", handle_sigterm=handle_signals)
        self._routes: dict[str, Callable[[bytes], HttpReply]] = {
            "/healthcheck": self._healthcheck,
        }
        self._debug_endpoints: dict[str, str] = {}
        self._debug_handlers: dict[str, Callable[[], str | bytes]] = {}
        self.add_debug_http_endpoint("/stats", "print out stats", _process_stats)

    def _healthcheck(self, body: bytes) -> HttpReply:
        status, payload = self.health.handle_http()
        return HttpReply(status, payload, _TEXT if payload else None)

    def add_debug_http_endpoint(
        self, path: str, help_text: str, handler: Callable[[], str | bytes]
    ) -> None:
        """Serve ``handler``'s text at ``path`` on the debug port."""
        with self._lock:
            self._debug_handlers[path] = handler
            self._debug_endpoints[path] = help_text

    def add_json_handler(self, service: Any) -> None:
        """Serve JSON rate limit requests for ``service`` at ``/json``."""
        handler = new_json_handler(service)
        with self._lock:
            self._routes["/json"] = handler

    def debug_index(self) -> str:
        """Return the sorted list of debug endpoints with their help texts."""
        with self._lock:
            endpoints = dict(self._debug_endpoints)
        return "".join(f"{path}: {endpoints[path]}\n" for path in sorted(endpoints))

    def handle(self, path: str, body: bytes) -> HttpReply:
        """Answer a request on the main HTTP port."""
        with self._lock:
            route = self._routes.get(path)
        if route is None:
            return _error(404, "404 page not found")
        return route(body)

    def _handle_debug(self, path: str, body: bytes) -> HttpReply:
        with self._lock:
            handler = self._debug_handlers.get(path)
            if handler is None:
                subtrees = [p for p in self._debug_handlers if p.endswith("/") and path.startswith(p)]
                if subtrees:
                    handler = self._debug_handlers[max(subtrees, key=len)]
        text = handler() if handler is not None else self.debug_index()
        if isinstance(text, str):
            text = text.encode("utf-8")
        return HttpReply(200, text, _TEXT)

    def _serve_debug(self) -> None:
        logger.warning("Listening for debug on '%s'", _join_host_port(*self._debug_address))
        try:
            httpd = _make_http_server(self._debug_address, self._handle_debug)
        except OSError as exc:
            logger.error("Failed to open debug HTTP listener: '%s'", exc)
            return
        with self._lock:
            if self._stopped:
                httpd.server_close()
                return
            self._debug_server = httpd
        httpd.serve_forever()
        httpd.server_close()

    def _install_signal_handlers(self) -> None:
        if not self._handle_signals:
            return
        if threading.current_thread() is not threading.main_thread():
            logger.debug("not on the main thread; shutdown signals are not watched")
            return
        names = ("SIGINT", "SIGTERM", "SIGHUP")
        for sig in (getattr(signal, n) for n in names if hasattr(signal, n)):
            previous = signal.getsignal(sig)

            def on_signal(signum: int, frame: Any, previous: Any = previous) -> None:
                logger.info(
                    "Ratelimit server received %s, shutting down gracefully",
                    signal.Signals(signum).name,
                )
                if callable(previous) and previous is not signal.default_int_handler:
                    previous(signum, frame)
                self._exit_requested = True
                threading.Thread(target=self.stop, daemon=True).start()

            signal.signal(sig, on_signal)

    def start(self) -> None:
        """Serve the debug port in the background and the HTTP port until stopped.

        After a shutdown signal the process exits with status 0.
        """
        threading.Thread(target=self._serve_debug, daemon=True).start()
        self._install_signal_handlers()

        logger.warning("Listening for HTTP on '%s'", _join_host_port(*self._http_address))
        httpd = _make_http_server(self._http_address, self.handle)
        with self._lock:
            if self._stopped:
                httpd.server_close()
                return
            self._http_server = httpd
        httpd.serve_forever()
        httpd.server_close()
        if self._exit_requested:
            raise SystemExit(0)

    def stop(self) -> None:
        """Stop serving both ports."""
        with self._lock:
            self._stopped = True
            servers = [self._debug_server, self._http_server]
            self._debug_server = None
            self._http_server = None
        for server in servers:
            if server is not None:
                server.shutdown()

    def health_check_fail(self) -> None:
        """Report the service as unhealthy."""
        self.health.fail()

    def health_check_ok(self) -> None:
        """Report the service as healthy."""
        self.health.ok()