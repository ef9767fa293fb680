"""
Store factory — build the configured backend, wrapped for telemetry.
"""

from __future__ import annotations

import logging
from pathlib import Path

from stateplane.core.models.project import StoreConfig
from stateplane.core.observability.telemetry import TelemetrySink
from stateplane.core.persistence.base import StateStore
from stateplane.core.persistence.file_store import FileSystemStateStore
from stateplane.core.persistence.instrumented import InstrumentedStateStore
from stateplane.core.persistence.memory_store import MemoryStateStore

logger = logging.getLogger(__name__)


def create_store(
    scope: str,
    config: StoreConfig | None = None,
    base_dir: Path | None = None,
) -> StateStore:
    """Create the raw backend described by *config*.

    Args:
        scope: ``app/stage`` the store is bound to.
        config: Backend selection. Defaults to the file backend.
        base_dir: Directory a relative ``config.root`` resolves against.
    """
    config = config or StoreConfig()

    if config.backend == "memory":
        return MemoryStateStore(scope)

    root = Path(config.root)
    if not root.is_absolute() and base_dir is not None:
        root = base_dir / root
    logger.debug("Using file state store at %s", root)
    return FileSystemStateStore(scope, root=root)


def create_instrumented_store(
    scope: str,
    config: StoreConfig | None = None,
    telemetry: TelemetrySink | None = None,
    base_dir: Path | None = None,
) -> InstrumentedStateStore:
    """Create the configured backend behind an InstrumentedStateStore."""
    return InstrumentedStateStore(create_store(scope, config, base_dir), telemetry)
