"""
Tracers handed to engine components.

Components never call OpenTelemetry directly. Each one takes an optional
``tracer`` and otherwise builds one with ``create_tracer``:

    >>> self._tracer = tracer or create_tracer(__name__, enable_tracing)
    >>> with self._tracer.span("ccmigrate.backup.create", {ATTR_MIGRATION_ID: "mig-1"}):
    ...     ...

``span`` yields the live OpenTelemetry span, or None when nothing is
recorded, so callers guard ``span.set_attribute`` with ``if span``.
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Span


@runtime_checkable
class Tracer(Protocol):
    """Creates spans named ``ccmigrate.<component>.<operation>``."""

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]: ...

    @property
    def enabled(self) -> bool:
        """True when spans are actually recorded."""
        ...


class NullTracer:
    """Tracer used when tracing is disabled; spans cost nothing."""

    @contextlib.contextmanager
    def span(self, name: str, attributes: dict[str, Any] | None = None) -> Iterator[None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Spans are exported only when the application configures an SDK
    TracerProvider; otherwise the API hands out non-recording spans.
    Exceptions escaping a span are recorded on it and set its status.
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(name, attributes=attributes or {})

    @property
    def enabled(self) -> bool:
        return True


@dataclass
class MockTracer:
    """
    Tracer for tests; remembers every span opened through it.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("ccmigrate.rollback.step", {"ccmigrate.component": "Users"}):
        ...     pass
        >>> tracer.span_names
        ['ccmigrate.rollback.step']
    """

    spans: list[tuple[str, dict[str, Any] | None]] = field(default_factory=list)

    @contextlib.contextmanager
    def span(self, name: str, attributes: dict[str, Any] | None = None) -> Iterator[None]:
        self.spans.append((name, attributes))
        yield None

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def attributes_of(self, name: str) -> list[dict[str, Any]]:
        """Attributes of every recorded span called ``name``, in order."""
        return [attrs or {} for span_name, attrs in self.spans if span_name == name]

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    Build the tracer for a component.

    Args:
        name: Instrumentation scope, usually the module ``__name__``
        enable_tracing: False yields a NullTracer

    Returns:
        OpenTelemetryTracer or NullTracer
    """
    return OpenTelemetryTracer(name) if enable_tracing else NullTracer()


__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "Tracer",
    "create_tracer",
]
