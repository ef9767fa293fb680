"""
Mock provider — in-memory "cloud" for tests and dry experiments.

Keeps a table of physical resources keyed by physical name, records
every call it receives, and can be told to fail a given operation on a
given resource id. Useful anywhere a real provider would need network
access.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from typing import Any

from stateplane.adapters.base import Provider, ProviderContext
from stateplane.core.errors import (
    AlreadyExistsError,
    NotFoundError,
    ProviderError,
    ReplaceRequested,
)


@dataclass(frozen=True)
class ProviderCall:
    """One call received by a MockProvider."""

    operation: str
    id: str
    path: str


class MockProvider(Provider):
    """Universal mock provider for testing.

    By default every operation succeeds. Outputs look like::

        {"name": "app-dev-jobs", "arn": "arn:mock:queue:app-dev-jobs",
         "version": 1, "props": {...}}

    Args:
        type_name: Type tag to register under.
        replace_on: Prop keys whose change cannot be applied in place;
            ``update`` raises ReplaceRequested when one of them differs.
    """

    def __init__(self, type_name: str = "Mock", replace_on: set[str] | None = None):
        self._type = type_name
        self._replace_on = set(replace_on or ())
        self._physical: dict[str, dict[str, Any]] = {}
        self._failures: dict[tuple[str, str], BaseException] = {}
        self._calls: list[ProviderCall] = []
        self._lock = threading.Lock()

    @property
    def type(self) -> str:
        return self._type

    # ── Inspection ───────────────────────────────────────────────

    @property
    def calls(self) -> list[ProviderCall]:
        """All calls this mock has received, in order."""
        with self._lock:
            return list(self._calls)

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self._calls)

    def calls_for(self, operation: str) -> list[ProviderCall]:
        return [c for c in self.calls if c.operation == operation]

    @property
    def physical(self) -> dict[str, dict[str, Any]]:
        """Snapshot of the physical resources that currently exist."""
        with self._lock:
            return copy.deepcopy(self._physical)

    def exists(self, physical_name: str) -> bool:
        with self._lock:
            return physical_name in self._physical

    # ── Configuration ────────────────────────────────────────────

    def seed(self, physical_name: str, output: dict[str, Any]) -> None:
        """Pretend a physical resource already exists (created out of band)."""
        with self._lock:
            self._physical[physical_name] = dict(output)

    def set_failure(
        self,
        operation: str,
        resource_id: str,
        error: BaseException | str = "Mock failure",
    ) -> None:
        """Configure *operation* on *resource_id* to raise."""
        if isinstance(error, str):
            error = ProviderError(error)
        with self._lock:
            self._failures[(operation, resource_id)] = error

    def clear_failure(self, operation: str, resource_id: str) -> None:
        with self._lock:
            self._failures.pop((operation, resource_id), None)

    def reset(self) -> None:
        """Clear call log and configured failures (physical table is kept)."""
        with self._lock:
            self._calls.clear()
            self._failures.clear()

    # ── Provider contract ────────────────────────────────────────

    def _record(self, operation: str, ctx: ProviderContext) -> None:
        with self._lock:
            self._calls.append(ProviderCall(operation=operation, id=ctx.id, path=ctx.path))
            failure = self._failures.get((operation, ctx.id))
        if failure is not None:
            raise failure

    def _output(self, name: str, props: dict[str, Any], version: int) -> dict[str, Any]:
        return {
            "name": name,
            "arn": f"arn:mock:{self._type.lower()}:{name}",
            "version": version,
            "props": copy.deepcopy(props),
        }

    def create(self, ctx: ProviderContext, props: dict[str, Any]) -> dict[str, Any]:
        self._record("create", ctx)
        name = ctx.physical_name
        with self._lock:
            if name in self._physical and not ctx.replacing:
                raise AlreadyExistsError(f"{self._type} '{name}' already exists")
            if ctx.replacing:
                name = f"{name}-r{ctx.seq}-{len(self._calls)}"
            output = self._output(name, props, 1)
            self._physical[name] = output
        return copy.deepcopy(output)

    def update(
        self,
        ctx: ProviderContext,
        props: dict[str, Any],
        prior_output: dict[str, Any],
    ) -> dict[str, Any]:
        self._record("update", ctx)
        prior_props = prior_output.get("props", {})
        for key in self._replace_on:
            if prior_props.get(key) != props.get(key):
                raise ReplaceRequested()
        name = prior_output.get("name", ctx.physical_name)
        with self._lock:
            if name not in self._physical:
                raise NotFoundError(f"{self._type} '{name}' does not exist")
            output = self._output(name, props, int(prior_output.get("version", 0)) + 1)
            self._physical[name] = output
        return copy.deepcopy(output)

    def delete(self, ctx: ProviderContext, prior_output: dict[str, Any]) -> None:
        self._record("delete", ctx)
        name = prior_output.get("name", ctx.physical_name)
        with self._lock:
            self._physical.pop(name, None)

    def adopt(self, ctx: ProviderContext, props: dict[str, Any]) -> dict[str, Any]:
        self._record("adopt", ctx)
        name = ctx.physical_name
        with self._lock:
            existing = self._physical.get(name)
            if existing is None:
                raise NotFoundError(f"{self._type} '{name}' not found")
            output = self._output(name, props, int(existing.get("version", 0)) + 1)
            self._physical[name] = output
        return copy.deepcopy(output)
