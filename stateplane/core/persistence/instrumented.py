"""
Instrumented state store — times every call on a wrapped backend.

Wraps any object satisfying the StateStore contract and forwards each
call unchanged. Around every call it records the start time and, in a
``finally`` block, emits one ``statestore.<op>`` event with the
backend's class name and the elapsed time. Errors are attached to the
event and re-raised as-is: return values, exception types and call
order are exactly those of the wrapped store.

``init`` / ``deinit`` are optional on the wrapped store; when absent
they are no-ops and emit nothing.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from stateplane.core.models.record import StateRecord
from stateplane.core.observability.telemetry import NullTelemetry, TelemetryEvent, TelemetrySink
from stateplane.core.persistence.base import StateStore

T = TypeVar("T")


class InstrumentedStateStore(StateStore):
    """Telemetry decorator over another state store."""

    def __init__(self, inner: Any, telemetry: TelemetrySink | None = None):
        super().__init__(inner.scope)
        self._inner = inner
        self._store_class = type(inner).__name__
        self._telemetry = telemetry or NullTelemetry()

    @property
    def inner(self) -> Any:
        return self._inner

    def _call(self, op: str, fn: Callable[[], T]) -> T:
        start = time.perf_counter()
        error: BaseException | None = None
        try:
            return fn()
        except BaseException as e:
            error = e
            raise
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self._telemetry.emit(
                TelemetryEvent.from_error(
                    f"statestore.{op}", elapsed_ms, error, store=self._store_class
                )
            )

    # ── Lifecycle ────────────────────────────────────────────────

    def init(self) -> None:
        fn = getattr(self._inner, "init", None)
        if fn is None:
            return
        self._call("init", fn)

    def deinit(self) -> None:
        fn = getattr(self._inner, "deinit", None)
        if fn is None:
            return
        self._call("deinit", fn)

    # ── Record operations ────────────────────────────────────────

    def get(self, path: str) -> StateRecord | None:
        return self._call("get", lambda: self._inner.get(path))

    def get_batch(self, paths: Iterable[str]) -> dict[str, StateRecord | None]:
        paths = list(paths)
        return self._call("get_batch", lambda: self._inner.get_batch(paths))

    def set(self, path: str, record: StateRecord) -> None:
        self._call("set", lambda: self._inner.set(path, record))

    def delete(self, path: str) -> None:
        self._call("delete", lambda: self._inner.delete(path))

    def list(self) -> list[str]:
        return self._call("list", self._inner.list)

    def count(self) -> int:
        return self._call("count", self._inner.count)

    def all(self) -> dict[str, StateRecord]:
        return self._call("all", self._inner.all)

    def __repr__(self) -> str:
        return f"<InstrumentedStateStore wrapping {self._inner!r}>"
