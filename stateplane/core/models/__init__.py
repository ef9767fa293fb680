"""
Domain models — the types that cross the engine's boundaries.

All models are re-exported here for convenient access:

    from stateplane.core.models import Declaration, ResourceOutput, StateRecord
"""

from stateplane.core.models.declaration import (
    Declaration,
    Operation,
    Phase,
    ResourceOutput,
    validate_name,
)
from stateplane.core.models.project import (
    AuditConfig,
    ConcurrencyConfig,
    ProjectConfig,
    SecretsConfig,
    StoreConfig,
)
from stateplane.core.models.record import (
    SCHEMA_VERSION,
    ResourceStatus,
    StateRecord,
)

__all__ = [
    # declaration.py
    "Declaration",
    "Operation",
    "Phase",
    "ResourceOutput",
    "validate_name",
    # project.py
    "AuditConfig",
    "ConcurrencyConfig",
    "ProjectConfig",
    "SecretsConfig",
    "StoreConfig",
    # record.py
    "ResourceStatus",
    "SCHEMA_VERSION",
    "StateRecord",
]
