"""
State store base — the contract every persistence backend implements.

A store is scoped to one ``app/stage`` and maps resource paths
(``app/stage/Type/id``) to StateRecords. The engine only talks to
stores through this interface, usually behind the InstrumentedStateStore.

Contract:
    - ``init`` / ``deinit`` bracket any connection and are idempotent.
      ``deinit`` without ``init`` is a no-op.
    - Every operation is atomic for a single record. There are no
      cross-record transactions.
    - Concurrent writes to different paths must be safe.
    - Backend failures surface as StoreIOError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable

from stateplane.core.models.record import StateRecord


class StateStore(ABC):
    """Abstract base class for state backends."""

    def __init__(self, scope: str):
        self._scope = scope.strip("/")

    @property
    def scope(self) -> str:
        """The ``app/stage`` prefix this store is bound to."""
        return self._scope

    def owns(self, path: str) -> bool:
        """Whether *path* lives under this store's scope."""
        return path.startswith(self._scope + "/")

    def _check_path(self, path: str) -> None:
        if not self.owns(path):
            raise ValueError(f"Path '{path}' is outside scope '{self._scope}'")

    # ── Lifecycle ────────────────────────────────────────────────

    def init(self) -> None:
        """Acquire any underlying connection. Default: nothing to do."""

    def deinit(self) -> None:
        """Release the connection. Default: nothing to do."""

    # ── Record operations ────────────────────────────────────────

    @abstractmethod
    def get(self, path: str) -> StateRecord | None:
        """Return the record at *path*, or None."""

    def get_batch(self, paths: Iterable[str]) -> dict[str, StateRecord | None]:
        """Look up several paths. Missing paths map to None."""
        return {path: self.get(path) for path in paths}

    @abstractmethod
    def set(self, path: str, record: StateRecord) -> None:
        """Write (or overwrite) the record at *path*."""

    @abstractmethod
    def delete(self, path: str) -> None:
        """Remove the record at *path*. Missing paths are ignored."""

    @abstractmethod
    def list(self) -> list[str]:
        """All recorded paths in this scope, sorted."""

    def count(self) -> int:
        return len(self.list())

    def all(self) -> dict[str, StateRecord]:
        """Every record in this scope, keyed by path."""
        found = self.get_batch(self.list())
        return {path: record for path, record in found.items() if record is not None}

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} scope={self._scope!r}>"
