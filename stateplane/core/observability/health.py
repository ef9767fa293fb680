"""
Health checker — aggregate system health from components.

Reports the health of the state store, recent telemetry, the run
ledger, and the overall system. Used by the CLI `health` command.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from stateplane.core.observability.telemetry import MetricsTelemetry
from stateplane.core.persistence.audit import AuditWriter
from stateplane.core.persistence.base import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ComponentHealth:
    """Health of a single component."""

    name: str
    status: str = "unknown"  # healthy, degraded, unhealthy, unknown
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class SystemHealth:
    """Aggregate health of the entire system."""

    status: str = "healthy"
    timestamp: str = ""
    components: list[ComponentHealth] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(UTC).isoformat()

    def add(self, component: ComponentHealth) -> None:
        self.components.append(component)
        self._recalculate()

    def _recalculate(self) -> None:
        """Recalculate overall status from components."""
        statuses = [c.status for c in self.components]
        if any(s == "unhealthy" for s in statuses):
            self.status = "unhealthy"
        elif any(s == "degraded" for s in statuses):
            self.status = "degraded"
        elif all(s == "healthy" for s in statuses):
            self.status = "healthy"
        else:
            self.status = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "components": [c.to_dict() for c in self.components],
        }


def check_state_store(store: StateStore) -> ComponentHealth:
    """Check that the state store answers a listing."""
    try:
        store.init()
        count = store.count()
    except Exception as e:
        return ComponentHealth(
            name="state_store",
            status="unhealthy",
            message=f"{type(e).__name__}: {e}",
            details={"scope": store.scope},
        )

    return ComponentHealth(
        name="state_store",
        status="healthy",
        message=f"{count} record(s) in {store.scope}",
        details={"scope": store.scope, "records": count},
    )


def check_telemetry(telemetry: MetricsTelemetry) -> ComponentHealth:
    """Check the recent event buffer for failures."""
    events = telemetry.events
    errors = telemetry.recent_errors()

    if not events:
        return ComponentHealth(name="telemetry", status="healthy", message="No events recorded")

    if errors:
        status = "degraded"
        message = f"{len(errors)}/{len(events)} recent events failed"
    else:
        status = "healthy"
        message = f"{len(events)} recent events, no failures"

    return ComponentHealth(
        name="telemetry",
        status=status,
        message=message,
        details={
            "events": len(events),
            "errors": [e.to_dict() for e in errors[-5:]],
        },
    )


def check_audit(writer: AuditWriter) -> ComponentHealth:
    """Check the last recorded run."""
    recent = writer.read_recent(1)
    if not recent:
        return ComponentHealth(name="audit", status="healthy", message="No runs recorded")

    last = recent[0]
    status = "degraded" if last.status in ("failed", "partial") else "healthy"
    return ComponentHealth(
        name="audit",
        status=status,
        message=f"Last run {last.run_id} ({last.phase}): {last.status}",
        details=last.model_dump(mode="json"),
    )


def check_system_health(
    store: StateStore | None = None,
    telemetry: MetricsTelemetry | None = None,
    audit: AuditWriter | None = None,
) -> SystemHealth:
    """Run all health checks and return aggregate status."""
    health = SystemHealth()

    if store is not None:
        health.add(check_state_store(store))

    if telemetry is not None:
        health.add(check_telemetry(telemetry))

    if audit is not None:
        health.add(check_audit(audit))

    return health
