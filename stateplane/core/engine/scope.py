"""
Scope — one run of one ``app/stage``.

A Scope is the run context. It owns the state store, the secret codec
and the provider registry for the run, assigns declaration order,
remembers which paths were touched, and on ``finalize`` hands the
untouched ones to the Finalizer.

Typical use:

    with open_scope("shop", "prod", key_material=password, providers=registry) as scope:
        queue = scope.declare(Declaration(type="Queue", id="jobs", props={...}))
        scope.declare(Declaration(type="Worker", id="w1", props={"queue": queue["arn"]}))
        scope.finalize()

Any failed declaration marks the scope failed. A failed scope never
finalizes: deleting orphans after a partial run could remove resources
the caller still wants.
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any

from stateplane.adapters.registry import ProviderRegistry
from stateplane.core.engine.finalizer import DestroyStrategy, Finalizer, SweepReport
from stateplane.core.engine.runtime import ApplyResult, ResourceRuntime
from stateplane.core.errors import (
    DecryptionError,
    InvalidResourceError,
    ParallelGroupError,
    StateplaneError,
    StoreIOError,
)
from stateplane.core.models.declaration import Declaration, Phase, ResourceOutput, validate_name
from stateplane.core.models.project import ProjectConfig, StoreConfig
from stateplane.core.observability.telemetry import MetricsTelemetry, TelemetryEvent, TelemetrySink
from stateplane.core.persistence.audit import DEFAULT_AUDIT_FILE, AuditWriter, RunAuditEntry
from stateplane.core.persistence.base import StateStore
from stateplane.core.persistence.factory import create_store
from stateplane.core.persistence.instrumented import InstrumentedStateStore
from stateplane.core.secrets.codec import KDF_ITERATIONS, SecretCodec

logger = logging.getLogger(__name__)

# Errors after which no further declaration in the run can be trusted
_FATAL = (DecryptionError, StoreIOError)


class Scope:
    """Run context for one ``app/stage``.

    Args:
        app: Application name (first path segment).
        stage: Stage name (second path segment).
        store: State backend bound to ``app/stage``. Wrapped for
            telemetry unless it already is.
        codec: Secret codec holding the run's key material.
        providers: Registry resolving type tags to providers.
        phase: ``up`` reconciles, ``read`` only returns recorded outputs.
        force: Dispatch ``update`` for every existing resource.
        telemetry: Sink for resource and store events.
        max_workers: Thread limit for parallel groups and deletes.
        destroy_strategy: Delete orphans one at a time or in parallel waves.
        audit: Ledger receiving one entry per finalize/destroy.
    """

    def __init__(
        self,
        app: str,
        stage: str,
        store: StateStore,
        codec: SecretCodec,
        providers: ProviderRegistry,
        *,
        phase: Phase = Phase.UP,
        force: bool = False,
        telemetry: TelemetrySink | None = None,
        max_workers: int = 8,
        destroy_strategy: DestroyStrategy = "sequential",
        audit: AuditWriter | None = None,
    ):
        self._app = validate_name(app, "Scope name")
        self._stage = validate_name(stage, "Scope name")
        if store.scope != self.name:
            raise ValueError(f"Store is bound to '{store.scope}', not '{self.name}'")

        self._telemetry = telemetry or MetricsTelemetry()
        if not isinstance(store, InstrumentedStateStore):
            store = InstrumentedStateStore(store, self._telemetry)
        self._store = store
        self._codec = codec
        self._providers = providers
        self._phase = Phase(phase)
        self._force = force
        self._max_workers = max(1, max_workers)
        self._destroy_strategy = destroy_strategy
        self._audit = audit

        self._runtime = ResourceRuntime(store, codec, providers, self._telemetry)
        self._run_id = uuid.uuid4().hex[:12]
        self._started = time.perf_counter()

        self._lock = threading.Lock()
        self._seq = 0
        self._declared: set[str] = set()
        self._touched: set[str] = set()
        self._results: dict[str, ApplyResult] = {}
        self._errors: dict[str, str] = {}
        self._failed = False
        self._fatal: BaseException | None = None
        self._opened = False
        self._report: SweepReport | None = None

    # ── Properties ───────────────────────────────────────────────

    @property
    def app(self) -> str:
        return self._app

    @property
    def stage(self) -> str:
        return self._stage

    @property
    def name(self) -> str:
        """``app/stage``."""
        return f"{self._app}/{self._stage}"

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def force(self) -> bool:
        return self._force

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def codec(self) -> SecretCodec:
        return self._codec

    @property
    def telemetry(self) -> TelemetrySink:
        return self._telemetry

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def touched(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._touched)

    @property
    def results(self) -> list[ApplyResult]:
        """Applied declarations, in completion order."""
        with self._lock:
            return list(self._results.values())

    def path_for(self, type: str, id: str) -> str:
        return f"{self.name}/{type}/{id}"

    def is_applied(self, path: str) -> bool:
        with self._lock:
            return path in self._touched

    def fail(self) -> None:
        """Mark the run failed. Finalize becomes a no-op."""
        self._failed = True

    # ── Lifecycle ────────────────────────────────────────────────

    def open(self) -> Scope:
        if not self._opened:
            self._store.init()
            # Continue after the highest recorded seq so creation order spans runs
            with self._lock:
                self._seq = max((r.seq for r in self._store.all().values()), default=0)
            self._opened = True
            logger.debug("Opened scope %s (run %s, phase %s)", self.name, self._run_id, self._phase)
        return self

    def close(self) -> None:
        if self._opened:
            self._opened = False
            self._store.deinit()

    def __enter__(self) -> Scope:
        return self.open()

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc is not None:
            self.fail()
            if self._report is None:
                self.finalize()
        self.close()

    # ── Declarations ─────────────────────────────────────────────

    def _reserve(self, declaration: Declaration) -> tuple[str, int]:
        """Claim a seq number and the declaration's path."""
        if self._fatal is not None:
            raise StateplaneError(f"Run aborted after fatal error: {self._fatal}")
        declaration.validate_identity()
        path = self.path_for(declaration.type, declaration.id)
        with self._lock:
            if path in self._declared:
                raise InvalidResourceError(f"{path} is declared more than once in this run")
            self._declared.add(path)
            self._seq += 1
            return path, self._seq

    def _apply(self, declaration: Declaration, path: str, seq: int) -> ResourceOutput:
        try:
            result = self._runtime.apply(self, declaration, seq)
        except Exception as e:
            with self._lock:
                self._errors[path] = str(e)
                if isinstance(e, _FATAL) and self._fatal is None:
                    self._fatal = e
            self.fail()
            raise
        with self._lock:
            self._touched.add(path)
            self._results[path] = result
        return result.output

    def declare(self, declaration: Declaration) -> ResourceOutput:
        """Apply one declaration and return its output.

        Any exception marks the scope failed and propagates.
        """
        try:
            path, seq = self._reserve(declaration)
        except Exception:
            self.fail()
            raise
        return self._apply(declaration, path, seq)

    def parallel(self, declarations: list[Declaration]) -> list[ResourceOutput]:
        """Apply independent declarations concurrently.

        Every member runs to completion. Outputs are returned in input
        order; if any member failed, ParallelGroupError carries every
        failure once all members have settled.
        """
        if not declarations:
            return []

        reserved: list[tuple[Declaration, str, int]] = []
        try:
            for declaration in declarations:
                path, seq = self._reserve(declaration)
                reserved.append((declaration, path, seq))
        except Exception:
            self.fail()
            raise

        workers = min(self._max_workers, len(reserved))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stateplane") as pool:
            futures = [
                (path, pool.submit(self._apply, declaration, path, seq))
                for declaration, path, seq in reserved
            ]
            wait([f for _, f in futures])

        errors: dict[str, BaseException] = {}
        outputs: list[ResourceOutput] = []
        for path, future in futures:
            error = future.exception()
            if error is not None:
                errors[path] = error
            else:
                outputs.append(future.result())

        if errors:
            raise ParallelGroupError(errors)
        return outputs

    # ── Finalization ─────────────────────────────────────────────

    def finalize(self) -> SweepReport:
        """Delete orphans of this scope, once.

        Skipped (and reported as such) when the run failed or in the
        ``read`` phase. Calling again returns the first report.
        """
        if self._report is not None:
            return self._report

        if self._failed:
            report = SweepReport(scope=self.name, skipped=True, reason="run failed")
            logger.warning("⊘ Skipping finalize for %s: run failed", self.name)
        elif self._phase == Phase.READ:
            report = SweepReport(scope=self.name, skipped=True, reason="read phase")
        else:
            report = self._sweep(self.touched)

        self._report = report
        self._record_run(report)
        return report

    def destroy(self) -> SweepReport:
        """Delete every resource recorded in this scope.

        Honours the destroy strategy. Refused in the ``read`` phase.
        """
        if self._phase == Phase.READ:
            raise StateplaneError("Cannot destroy a scope opened in the read phase")
        logger.info("Destroying all resources in %s", self.name)
        report = self._sweep(frozenset())
        self._report = report
        self._record_run(report, destroy=True)
        return report

    def _sweep(self, touched: frozenset[str]) -> SweepReport:
        finalizer = Finalizer(
            self._store,
            self._codec,
            self._providers,
            self._telemetry,
            app=self._app,
            stage=self._stage,
            strategy=self._destroy_strategy,
            max_workers=self._max_workers,
        )
        start = time.perf_counter()
        error: BaseException | None = None
        try:
            return finalizer.sweep(touched)
        except BaseException as e:
            error = e
            self.fail()
            raise
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self._telemetry.emit(TelemetryEvent.from_error("scope.finalize", elapsed_ms, error))

    def _record_run(self, report: SweepReport, *, destroy: bool = False) -> None:
        if self._audit is None:
            return
        with self._lock:
            operations = Counter(r.operation.value for r in self._results.values())
            errors = [f"{path}: {msg}" for path, msg in self._errors.items()]
        errors += [f"{path}: {msg}" for path, msg in report.failed.items()]

        if self._failed:
            status = "failed"
        elif report.skipped:
            status = "skipped"
        else:
            status = report.status

        self._audit.write(
            RunAuditEntry(
                run_id=self._run_id,
                scope=self.name,
                phase="destroy" if destroy else self._phase.value,
                status=status,
                operations=dict(operations),
                deleted=list(report.deleted),
                delete_failed=sorted(report.failed),
                duration_ms=int((time.perf_counter() - self._started) * 1000),
                errors=errors,
                context={"force": self._force, "blocked": list(report.blocked)},
            )
        )

    def __repr__(self) -> str:
        return f"Scope({self.name!r}, phase={self._phase.value!r}, run={self._run_id!r})"


# ── Entry points ─────────────────────────────────────────────────────


def open_scope(
    app: str,
    stage: str,
    store_config: StoreConfig | None = None,
    key_material: str | None = None,
    *,
    providers: ProviderRegistry,
    phase: Phase = Phase.UP,
    force: bool = False,
    telemetry: TelemetrySink | None = None,
    base_dir: Path | None = None,
    kdf_iterations: int = KDF_ITERATIONS,
    max_workers: int = 8,
    destroy_strategy: DestroyStrategy = "sequential",
    audit_path: Path | None = None,
) -> Scope:
    """Build a Scope over the configured backend and open it.

    ``key_material`` may be omitted for runs that never touch a Secret;
    the first secret to be encrypted or decrypted then fails.
    """
    validate_name(app, "Scope name")
    validate_name(stage, "Scope name")
    name = f"{app}/{stage}"

    telemetry = telemetry or MetricsTelemetry()
    store = InstrumentedStateStore(create_store(name, store_config, base_dir), telemetry)
    scope = Scope(
        app,
        stage,
        store,
        SecretCodec(key_material, kdf_iterations),
        providers,
        phase=phase,
        force=force,
        telemetry=telemetry,
        max_workers=max_workers,
        destroy_strategy=destroy_strategy,
        audit=AuditWriter(audit_path) if audit_path is not None else None,
    )
    return scope.open()


def audit_path_for(config: ProjectConfig, base_dir: Path) -> Path:
    """Where the run ledger for *config* lives."""
    if config.audit.path:
        path = Path(config.audit.path)
    else:
        path = Path(config.state.root) / DEFAULT_AUDIT_FILE
    return path if path.is_absolute() else base_dir / path


def open_project_scope(
    config: ProjectConfig,
    providers: ProviderRegistry,
    *,
    base_dir: Path | None = None,
    key_material: str | None = None,
    env: dict[str, str] | None = None,
    **kwargs: Any,
) -> Scope:
    """Open a scope as described by a loaded stateplane.yml.

    Key material comes from *key_material* or else from the
    environment variable named by ``secrets.password_env``.
    """
    base_dir = base_dir or Path.cwd()
    environ = os.environ if env is None else env
    if key_material is None:
        key_material = environ.get(config.secrets.password_env)

    return open_scope(
        config.app,
        config.stage,
        config.state,
        key_material,
        providers=providers,
        base_dir=base_dir,
        kdf_iterations=config.secrets.kdf_iterations,
        max_workers=config.concurrency.max_workers,
        destroy_strategy=config.concurrency.destroy_strategy,
        audit_path=audit_path_for(config, base_dir) if config.audit.enabled else None,
        **kwargs,
    )
