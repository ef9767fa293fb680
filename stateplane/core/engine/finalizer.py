"""
Finalizer — delete what the run no longer declares.

After a successful run, every record in the scope whose path was not
touched is an orphan. Orphans are deleted through their providers and
their records removed. Ordering follows recorded dependencies: a
resource is deleted only after every orphan that depends on it is
gone. Among resources that are ready at the same time, the one
declared last (highest seq) goes first.

A failed delete leaves its record in place for the next run and
blocks deletion of anything it depends on. Other orphans carry on.

Before orphans are swept, old resources queued by replacements
(``pending_deletions``) are deleted and dropped from their records.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Literal

from stateplane.adapters.base import ProviderContext
from stateplane.adapters.registry import ProviderRegistry
from stateplane.core.errors import DecryptionError, StoreIOError
from stateplane.core.models.declaration import Operation
from stateplane.core.models.record import StateRecord
from stateplane.core.observability.telemetry import NullTelemetry, TelemetryEvent, TelemetrySink
from stateplane.core.persistence.base import StateStore
from stateplane.core.secrets.codec import SecretCodec
from stateplane.core.secrets.serde import deserialize

logger = logging.getLogger(__name__)

DestroyStrategy = Literal["sequential", "parallel"]


@dataclass
class SweepReport:
    """Result of one orphan sweep."""

    scope: str
    deleted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    blocked: list[str] = field(default_factory=list)
    replaced_cleaned: list[str] = field(default_factory=list)
    skipped: bool = False
    reason: str = ""
    duration_ms: float = 0.0

    @property
    def all_ok(self) -> bool:
        return not self.failed and not self.blocked

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        return "ok" if self.all_ok else "partial"

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "status": self.status,
            "deleted": list(self.deleted),
            "failed": dict(self.failed),
            "blocked": list(self.blocked),
            "replaced_cleaned": list(self.replaced_cleaned),
            "skipped": self.skipped,
            "reason": self.reason,
            "duration_ms": round(self.duration_ms, 3),
        }


class Finalizer:
    """Deletes orphaned resources of one scope."""

    def __init__(
        self,
        store: StateStore,
        codec: SecretCodec,
        providers: ProviderRegistry,
        telemetry: TelemetrySink | None = None,
        *,
        app: str,
        stage: str,
        strategy: DestroyStrategy = "sequential",
        max_workers: int = 8,
    ):
        self._store = store
        self._codec = codec
        self._providers = providers
        self._telemetry = telemetry or NullTelemetry()
        self._app = app
        self._stage = stage
        self._strategy = strategy
        self._max_workers = max(1, max_workers)

    # ── Public API ───────────────────────────────────────────────

    def sweep(self, touched: set[str] | frozenset[str]) -> SweepReport:
        """Delete every record in the store whose path is not in *touched*.

        Raises:
            DecryptionError: A record's output cannot be decrypted.
            StoreIOError: The state backend failed.
        """
        start = time.perf_counter()
        report = SweepReport(scope=self._store.scope)

        records = self._store.all()
        self._clean_replaced(records, report)

        orphans = {path: rec for path, rec in records.items() if path not in touched}
        if orphans:
            logger.info("Sweeping %d orphan(s) from %s", len(orphans), self._store.scope)
            self._delete_orphans(orphans, report)

        report.duration_ms = (time.perf_counter() - start) * 1000
        return report

    # ── Replaced resources ───────────────────────────────────────

    def _clean_replaced(self, records: dict[str, StateRecord], report: SweepReport) -> None:
        for path, record in records.items():
            if not record.pending_deletions:
                continue
            remaining: list[dict[str, Any]] = []
            for old_output in record.pending_deletions:
                error = self._delete_one(path, record, old_output)
                if error is None:
                    if path not in report.replaced_cleaned:
                        report.replaced_cleaned.append(path)
                else:
                    remaining.append(old_output)
                    report.failed[path] = error
            updated = record.model_copy(update={"pending_deletions": remaining})
            updated.touch()
            self._store.set(path, updated)
            records[path] = updated

    # ── Orphans ──────────────────────────────────────────────────

    def _delete_orphans(self, orphans: dict[str, StateRecord], report: SweepReport) -> None:
        # dependents[x] = orphans that must be gone before x can be deleted
        dependents: dict[str, set[str]] = {path: set() for path in orphans}
        for path, record in orphans.items():
            for dep in record.depends_on:
                if dep in dependents:
                    dependents[dep].add(path)

        alive = set(orphans)
        # An orphan whose replaced predecessor could not be deleted keeps its record
        failed = {p for p, rec in orphans.items() if rec.pending_deletions}
        attempted = set(failed)

        while True:
            ready = [
                p for p in alive - attempted
                if not (dependents[p] & alive)
            ]
            if not ready:
                ready = self._break_cycle(orphans, alive - attempted, failed)
                if not ready:
                    break

            ready.sort(key=lambda p: (-orphans[p].seq, p))
            for path, error in self._run_wave(ready, orphans):
                attempted.add(path)
                if error is None:
                    alive.discard(path)
                    report.deleted.append(path)
                else:
                    failed.add(path)
                    report.failed[path] = error

        report.blocked = sorted(alive - attempted)
        for path in report.blocked:
            logger.warning("⊘ %s not deleted: a dependent resource failed to delete", path)

    def _break_cycle(
        self,
        orphans: dict[str, StateRecord],
        stuck: set[str],
        failed: set[str],
    ) -> list[str]:
        """Pick the next orphan when no orphan is free of live dependents.

        Orphans held back by a failed delete stay blocked. Anything
        else still stuck sits on a dependency cycle; the highest seq
        goes first.
        """
        blocked: set[str] = set()
        frontier = list(failed)
        while frontier:
            for dep in orphans[frontier.pop()].depends_on:
                if dep in orphans and dep not in blocked:
                    blocked.add(dep)
                    frontier.append(dep)

        candidates = stuck - blocked
        if not candidates:
            return []
        chosen = max(candidates, key=lambda p: (orphans[p].seq, p))
        logger.warning("Dependency cycle among orphans, deleting %s by declaration order", chosen)
        return [chosen]

    def _run_wave(
        self,
        wave: list[str],
        orphans: dict[str, StateRecord],
    ) -> list[tuple[str, str | None]]:
        if self._strategy == "parallel" and len(wave) > 1:
            workers = min(self._max_workers, len(wave))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stateplane-delete") as pool:
                futures = [(p, pool.submit(self._delete_orphan, p, orphans[p])) for p in wave]
                return [(p, f.result()) for p, f in futures]
        return [(p, self._delete_orphan(p, orphans[p])) for p in wave]

    def _delete_orphan(self, path: str, record: StateRecord) -> str | None:
        error = self._delete_one(path, record, record.output)
        if error is None:
            self._store.delete(path)
        return error

    # ── Single delete ────────────────────────────────────────────

    def _delete_one(self, path: str, record: StateRecord, stored_output: dict[str, Any]) -> str | None:
        """Delete one physical resource. Returns an error message, or None."""
        start = time.perf_counter()
        provider = self._providers.get(record.type)
        if provider is None:
            message = f"no provider registered for type '{record.type}'"
            logger.error("✗ %s → %s", path, message)
            return message

        prior_output = deserialize(stored_output, self._codec)
        ctx = ProviderContext(
            app=self._app,
            stage=self._stage,
            type=record.type,
            id=record.id,
            path=path,
            operation=Operation.DELETE.value,
            seq=record.seq,
        )

        error: Exception | None = None
        try:
            provider.delete(ctx, prior_output)
        except (DecryptionError, StoreIOError):
            raise
        except Exception as e:
            error = e

        elapsed_ms = (time.perf_counter() - start) * 1000
        self._telemetry.emit(
            TelemetryEvent.from_error("resource.delete", elapsed_ms, error, resource=record.type)
        )
        if error is not None:
            logger.error("✗ %s → delete failed: %s", path, error)
            return str(error) or type(error).__name__
        logger.info("✓ %s → deleted", path)
        return None
