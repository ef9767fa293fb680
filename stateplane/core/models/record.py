"""
StateRecord — the persisted fact about one managed resource.

One record per resource path (``app/stage/Type/id``). A record exists
if and only if the physical resource is believed to exist, and its
``input_hash`` reflects exactly the props that produced ``output``.

Records are serialized with camelCase keys so every backend writes the
same shape::

    {
      "type": "Queue", "id": "jobs", "seq": 3,
      "inputHash": "9f2c…", "status": "committed",
      "output": {...}, "secretFields": ["output.token"],
      "dependsOn": ["app/dev/Bucket/assets"],
      "pendingDeletions": [], "error": null,
      "updatedAt": "2026-10-19T08:00:00+00:00"
    }

``output`` and ``pendingDeletions`` hold the serialized form: secrets
appear only as ``{"@secret": <envelope>}``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = 1


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ResourceStatus(StrEnum):
    """Lifecycle status of a recorded resource."""

    PENDING = "pending"        # update dispatched, not yet settled
    COMMITTED = "committed"    # last operation succeeded
    ERROR = "error"            # last operation failed, prior output kept


class StateRecord(BaseModel):
    """Persisted record for a single resource path."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    # ── Identity ─────────────────────────────────────────────────
    type: str
    id: str
    seq: int = 0                 # creation order within the scope

    # ── Reconciliation ───────────────────────────────────────────
    input_hash: str = ""
    status: ResourceStatus = ResourceStatus.COMMITTED
    output: dict[str, Any] = Field(default_factory=dict)
    secret_fields: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)

    # Serialized outputs of replaced resources awaiting deletion
    pending_deletions: list[dict[str, Any]] = Field(default_factory=list)

    # ── Bookkeeping ──────────────────────────────────────────────
    error: str | None = None
    updated_at: str = Field(default_factory=_now_iso)

    @property
    def committed(self) -> bool:
        return self.status == ResourceStatus.COMMITTED

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()

    def to_json(self) -> dict[str, Any]:
        """Backend-agnostic JSON shape (camelCase keys)."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> StateRecord:
        return cls.model_validate(data)
