"""
In-memory state store — for tests and throwaway runs.

Records are deep-copied on the way in and out, so callers get the same
isolation a serializing backend would give them.
"""

from __future__ import annotations

import threading

from stateplane.core.models.record import StateRecord
from stateplane.core.persistence.base import StateStore


class MemoryStateStore(StateStore):
    """Dict-backed store guarded by a lock."""

    def __init__(self, scope: str):
        super().__init__(scope)
        self._records: dict[str, StateRecord] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> StateRecord | None:
        self._check_path(path)
        with self._lock:
            record = self._records.get(path)
            return record.model_copy(deep=True) if record is not None else None

    def set(self, path: str, record: StateRecord) -> None:
        self._check_path(path)
        with self._lock:
            self._records[path] = record.model_copy(deep=True)

    def delete(self, path: str) -> None:
        self._check_path(path)
        with self._lock:
            self._records.pop(path, None)

    def list(self) -> list[str]:
        with self._lock:
            return sorted(self._records)

    def count(self) -> int:
        with self._lock:
            return len(self._records)
