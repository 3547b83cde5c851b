"""A small tracing facility: tracers, spans and an in-memory span exporter."""

from __future__ import annotations

import threading
import time
from typing import Any, Mapping, Protocol


class _Exporter(Protocol):
    def export(self, span: "Span") -> None: ...


class Span:
    """A timed, named unit of work; exported once when ended."""

    def __init__(
        self,
        name: str,
        attributes: Mapping[str, Any],
        instrumentation_name: str,
        exporter: _Exporter | None,
    ) -> None:
        self.name = name
        self.attributes = dict(attributes)
        self.instrumentation_name = instrumentation_name
        self.start_time = time.time_ns()
        self.end_time: int | None = None
        self._exporter = exporter
        self._lock = threading.Lock()

    @property
    def ended(self) -> bool:
        return self.end_time is not None

    def end(self) -> None:
        """Finish the span and hand it to the exporter; later calls do nothing."""
        with self._lock:
            if self.end_time is not None:
                return
            self.end_time = time.time_ns()
        if self._exporter is not None:
            self._exporter.export(self)

    def __enter__(self) -> "Span":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.end()

    def __repr__(self) -> str:
        return f"Span(name={self.name!r}, attributes={self.attributes!r})"


class InMemoryExporter:
    """Keeps finished spans in memory, in the order they ended."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._spans: list[Span] = []

    def export(self, span: Span) -> None:
        with self._lock:
            self._spans.append(span)

    def get_spans(self) -> list[Span]:
        with self._lock:
            return list(self._spans)

    def reset(self) -> None:
        with self._lock:
            self._spans.clear()


class _Registry:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.exporter: _Exporter | None = None
        self.test_exporter: InMemoryExporter | None = None


_registry = _Registry()


class Tracer:
    """Starts spans that go to the globally installed exporter."""

    def __init__(self, name: str) -> None:
        self.name = name

    def start_span(self, name: str, attributes: Mapping[str, Any] | None = None) -> Span:
        """Start a span named ``name`` carrying ``attributes``."""
        with _registry.lock:
            exporter = _registry.exporter
        return Span(name, attributes or {}, self.name, exporter)


def get_tracer(name: str) -> Tracer:
    """Return a tracer identified by ``name``."""
    return Tracer(name)


def get_test_span_exporter() -> InMemoryExporter:
    """Install, once, an in-memory exporter for all tracers and return it."""
    with _registry.lock:
        if _registry.test_exporter is None:
            _registry.test_exporter = InMemoryExporter()
            _registry.exporter = _registry.test_exporter
        return _registry.test_exporter