"""
Telemetry — structured events for state-store calls and resource operations.

Every instrumented operation emits exactly one TelemetryEvent. Events
carry names, durations, types and error classes. They never carry prop
values, outputs or secret material.

Event names:
    statestore.<op>        one per state store call (get, set, ...)
    resource.<operation>   one per applied/deleted resource
    resource.error         a resource operation failed
    scope.finalize         end-of-run sweep
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Protocol

from stateplane.core.observability.metrics import MetricsRegistry

logger = logging.getLogger(__name__)


@dataclass
class TelemetryEvent:
    """A single telemetry event."""

    event: str
    duration_ms: float = 0.0
    store: str = ""              # concrete state store class name
    resource: str = ""           # resource type tag
    status: str = ""
    error_type: str | None = None
    error: str | None = None
    ts: float = field(default_factory=time.time)

    @property
    def failed(self) -> bool:
        return self.error_type is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "event": self.event,
            "duration_ms": round(self.duration_ms, 3),
            "ts": self.ts,
        }
        for key in ("store", "resource", "status", "error_type", "error"):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data

    @classmethod
    def from_error(cls, event: str, duration_ms: float, error: BaseException | None, **kwargs: Any) -> TelemetryEvent:
        if error is None:
            return cls(event=event, duration_ms=duration_ms, **kwargs)
        return cls(
            event=event,
            duration_ms=duration_ms,
            error_type=type(error).__name__,
            error=str(error),
            **kwargs,
        )


class TelemetrySink(Protocol):
    """Anything that can receive telemetry events."""

    def emit(self, event: TelemetryEvent) -> None: ...


class NullTelemetry:
    """Sink that drops everything."""

    def emit(self, event: TelemetryEvent) -> None:
        return None


class MetricsTelemetry:
    """Sink that folds events into a MetricsRegistry.

    Durations go to a histogram per event name (labelled by store or
    resource type). Failures increment ``<event>.errors``. The most
    recent events are kept in a bounded buffer for health checks.
    """

    def __init__(self, registry: MetricsRegistry | None = None, buffer_size: int = 500):
        self.registry = registry or MetricsRegistry()
        self._events: deque[TelemetryEvent] = deque(maxlen=buffer_size)
        self._lock = threading.Lock()

    @property
    def events(self) -> list[TelemetryEvent]:
        with self._lock:
            return list(self._events)

    def emit(self, event: TelemetryEvent) -> None:
        labels = {}
        if event.store:
            labels["store"] = event.store
        if event.resource:
            labels["resource"] = event.resource

        self.registry.histogram(event.event, **labels).observe(event.duration_ms)
        if event.failed:
            self.registry.counter(f"{event.event}.errors", **labels).inc()

        with self._lock:
            self._events.append(event)

        logger.debug(
            "telemetry %s %.1fms%s",
            event.event,
            event.duration_ms,
            f" ({event.error_type})" if event.failed else "",
        )

    def recent_errors(self) -> list[TelemetryEvent]:
        return [e for e in self.events if e.failed]
