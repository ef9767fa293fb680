"""
Project configuration — what stateplane.yml declares.

Identity (app + stage), where state lives, how secrets are keyed and
how runs are audited. Key material itself is never part of the file:
``secrets.password_env`` names the environment variable holding it.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from stateplane.core.models.declaration import validate_name


class StoreConfig(BaseModel):
    """Which state backend to use and where."""

    backend: Literal["file", "memory"] = "file"
    root: str = ".stateplane"     # state directory for the file backend


class SecretsConfig(BaseModel):
    """How the run's key material is found."""

    password_env: str = "STATEPLANE_PASSWORD"
    kdf_iterations: int = Field(default=480_000, ge=1)


class ConcurrencyConfig(BaseModel):
    """Limits for parallel groups and parallel orphan deletion."""

    max_workers: int = Field(default=8, ge=1)
    destroy_strategy: Literal["sequential", "parallel"] = "sequential"


class AuditConfig(BaseModel):
    """Append-only run ledger."""

    enabled: bool = True
    path: str | None = None       # default: <state root>/audit.ndjson


class ProjectConfig(BaseModel):
    """Root configuration — loaded from stateplane.yml."""

    version: int = 1

    app: str
    stage: str = "dev"
    description: str = ""

    state: StoreConfig = Field(default_factory=StoreConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @field_validator("app", "stage")
    @classmethod
    def _valid_segment(cls, value: str) -> str:
        return validate_name(value, "Scope name")

    @property
    def scope(self) -> str:
        """The ``app/stage`` namespace for resource paths."""
        return f"{self.app}/{self.stage}"
