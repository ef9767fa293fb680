"""
Resource runtime — reconcile one declaration against recorded state.

This is the heart of the engine. For each declaration it reads the
prior record, hashes the new props, picks an operation, calls the
provider and commits the result:

    no record,  adopt unset        → create
    no record,  adopt set          → adopt (ConflictError if nothing found)
    committed,  same hash          → no-op, stored output returned
    otherwise                      → update (or replace, if the provider asks)

Failure policy: provider errors are never retried here and never
leave a half-applied record. A failed create writes nothing (a created
resource whose output cannot be stored is deleted again); a failed
update keeps the previous hash and output and marks the record
``error`` so the next run retries the same update.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from stateplane.adapters.base import Provider, ProviderContext
from stateplane.adapters.registry import ProviderRegistry
from stateplane.core.engine.hashing import fingerprint_props
from stateplane.core.errors import (
    AlreadyExistsError,
    ConflictError,
    DependencyError,
    NotFoundError,
    ProviderError,
    ReplaceRequested,
    SecretError,
    StateNotFoundError,
    StateplaneError,
    StoreIOError,
)
from stateplane.core.models.declaration import Declaration, Operation, Phase, ResourceOutput
from stateplane.core.models.record import ResourceStatus, StateRecord
from stateplane.core.observability.telemetry import NullTelemetry, TelemetryEvent, TelemetrySink
from stateplane.core.persistence.base import StateStore
from stateplane.core.secrets.codec import SecretCodec
from stateplane.core.secrets.serde import deserialize, serialize

if TYPE_CHECKING:
    from stateplane.core.engine.scope import Scope

logger = logging.getLogger(__name__)

T = TypeVar("T")

_VERBS = {
    Operation.CREATE: "created",
    Operation.UPDATE: "updated",
    Operation.ADOPT: "adopted",
    Operation.REPLACE: "replaced",
    Operation.NOOP: "unchanged",
    Operation.READ: "read",
}


@dataclass
class ApplyResult:
    """Outcome of applying one declaration."""

    path: str
    operation: Operation
    output: ResourceOutput
    duration_ms: float = 0.0

    @property
    def changed(self) -> bool:
        return self.operation not in (Operation.NOOP, Operation.READ)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "operation": self.operation.value,
            "duration_ms": round(self.duration_ms, 3),
        }


def materialize(value: Any) -> Any:
    """Replace ResourceOutputs nested in props with plain dicts."""
    if isinstance(value, ResourceOutput):
        return materialize(value.attributes)
    if isinstance(value, Mapping):
        return {k: materialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [materialize(v) for v in value]
    return value


def dependency_paths(declaration: Declaration, from_props: list[str]) -> list[str]:
    """Props-derived dependencies plus explicit ``depends_on`` entries, deduplicated."""
    paths = list(from_props)
    for dep in declaration.depends_on:
        path = dep.path if isinstance(dep, ResourceOutput) else str(dep)
        if path not in paths:
            paths.append(path)
    return paths


class ResourceRuntime:
    """Applies declarations through providers and the state store."""

    def __init__(
        self,
        store: StateStore,
        codec: SecretCodec,
        providers: ProviderRegistry,
        telemetry: TelemetrySink | None = None,
    ):
        self._store = store
        self._codec = codec
        self._providers = providers
        self._telemetry = telemetry or NullTelemetry()

    # ── Public API ───────────────────────────────────────────────

    def apply(self, scope: Scope, declaration: Declaration, seq: int = 0) -> ApplyResult:
        """Reconcile *declaration* within *scope* and return its output.

        Raises:
            InvalidResourceError: Malformed type tag or id.
            UnknownResourceTypeError: No provider for the type tag.
            DependencyError: A referenced resource was not applied yet.
            ConflictError: Adopt found nothing, or create collided.
            ProviderError: The provider call failed.
            DecryptionError: Recorded secrets cannot be decrypted.
            StoreIOError: The state backend failed.
        """
        start = time.perf_counter()
        declaration.validate_identity()
        provider = self._providers.resolve(declaration.type)
        path = scope.path_for(declaration.type, declaration.id)

        try:
            result = self._apply(scope, declaration, provider, path, seq)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self._telemetry.emit(
                TelemetryEvent.from_error(
                    "resource.error", elapsed_ms, e, resource=declaration.type, status="failed"
                )
            )
            logger.error("✗ %s → %s", path, e)
            raise

        result.duration_ms = (time.perf_counter() - start) * 1000
        self._telemetry.emit(
            TelemetryEvent(
                event=f"resource.{result.operation.value}",
                duration_ms=result.duration_ms,
                resource=declaration.type,
                status=ResourceStatus.COMMITTED.value,
            )
        )
        marker = "⊘" if not result.changed else "✓"
        logger.info("%s %s → %s", marker, path, _VERBS[result.operation])
        return result

    # ── Decision + dispatch ──────────────────────────────────────

    def _apply(
        self,
        scope: Scope,
        declaration: Declaration,
        provider: Provider,
        path: str,
        seq: int,
    ) -> ApplyResult:
        new_hash, walked = fingerprint_props(declaration.props, self._codec)
        depends_on = dependency_paths(declaration, walked.dependencies)
        for dep in depends_on:
            if dep == path:
                raise DependencyError(f"{path} cannot depend on itself")
            if not scope.is_applied(dep):
                raise DependencyError(
                    f"{path} references {dep}, which has not been applied in this run"
                )

        record = self._store.get(path)

        if scope.phase == Phase.READ:
            if record is None:
                raise StateNotFoundError(f"No recorded state for {path}")
            return ApplyResult(path, Operation.READ, self.output_of(path, record))

        forced = scope.force or declaration.always_update
        if record is None:
            operation = Operation.ADOPT if declaration.adopt else Operation.CREATE
        elif record.committed and record.input_hash == new_hash and not forced:
            if record.depends_on != depends_on:
                record = record.model_copy(update={"depends_on": depends_on})
                self._store.set(path, record)
            return ApplyResult(path, Operation.NOOP, self.output_of(path, record))
        else:
            operation = Operation.UPDATE

        props = materialize(declaration.props)
        ctx = ProviderContext(
            app=scope.app,
            stage=scope.stage,
            type=declaration.type,
            id=declaration.id,
            path=path,
            operation=operation.value,
            seq=seq,
        )

        pending_deletions: list[dict[str, Any]] = []
        if operation == Operation.CREATE:
            output = self._create(provider, ctx, props)
        elif operation == Operation.ADOPT:
            output = self._adopt(provider, ctx, props)
        else:
            assert record is not None
            operation, output, pending_deletions = self._update(provider, ctx, props, record)

        try:
            stored = serialize(output, self._codec, root="output")
        except (TypeError, ValueError, SecretError) as e:
            self._discard(provider, ctx, operation, output, record, e)
            raise ProviderError(
                f"output cannot be recorded: {e}", path=path, operation=operation.value
            ) from e

        committed = StateRecord(
            type=declaration.type,
            id=declaration.id,
            seq=record.seq if record else seq,
            input_hash=new_hash,
            status=ResourceStatus.COMMITTED,
            output=stored.value,
            secret_fields=stored.secret_fields,
            depends_on=depends_on,
            pending_deletions=(record.pending_deletions if record else []) + pending_deletions,
        )
        self._store.set(path, committed)
        return ApplyResult(path, operation, self.output_of(path, committed))

    def _create(self, provider: Provider, ctx: ProviderContext, props: dict[str, Any]) -> dict[str, Any]:
        try:
            return self._invoke("create", ctx.path, lambda: provider.create(ctx, props))
        except AlreadyExistsError as e:
            raise ConflictError(
                f"{ctx.path} already exists as a physical resource; "
                "declare it with adopt=True to manage it",
                path=ctx.path,
            ) from e

    def _adopt(self, provider: Provider, ctx: ProviderContext, props: dict[str, Any]) -> dict[str, Any]:
        try:
            return self._invoke("adopt", ctx.path, lambda: provider.adopt(ctx, props))
        except NotFoundError as e:
            raise ConflictError(
                f"adopt requested for {ctx.path} but no matching physical resource was found",
                path=ctx.path,
            ) from e

    def _update(
        self,
        provider: Provider,
        ctx: ProviderContext,
        props: dict[str, Any],
        record: StateRecord,
    ) -> tuple[Operation, dict[str, Any], list[dict[str, Any]]]:
        prior_output = deserialize(record.output, self._codec)

        pending = record.model_copy(update={"status": ResourceStatus.PENDING, "error": None})
        self._store.set(ctx.path, pending)

        try:
            try:
                output = self._invoke(
                    "update", ctx.path, lambda: provider.update(ctx, props, prior_output)
                )
                return Operation.UPDATE, output, []
            except ReplaceRequested as signal:
                logger.info("↻ %s requires replacement", ctx.path)
                if signal.force:
                    delete_ctx = ctx.model_copy(update={"operation": Operation.DELETE.value})
                    self._invoke("delete", ctx.path, lambda: provider.delete(delete_ctx, prior_output))
                    queued = []
                else:
                    queued = [record.output]
                create_ctx = ctx.model_copy(
                    update={"operation": Operation.CREATE.value, "replacing": True}
                )
                output = self._invoke("create", ctx.path, lambda: provider.create(create_ctx, props))
                return Operation.REPLACE, output, queued
        except Exception as e:
            self._mark_failed(ctx.path, record, e)
            raise

    def _discard(
        self,
        provider: Provider,
        ctx: ProviderContext,
        operation: Operation,
        output: dict[str, Any],
        record: StateRecord | None,
        error: BaseException,
    ) -> None:
        """Undo a provider result whose output could not be stored.

        A freshly created resource is deleted again. Adopted resources
        were never ours to remove. An existing record is marked failed
        so the next run retries.
        """
        if operation in (Operation.CREATE, Operation.REPLACE):
            delete_ctx = ctx.model_copy(update={"operation": Operation.DELETE.value})
            try:
                provider.delete(delete_ctx, output)
            except Exception as e:
                logger.error("Could not roll back %s after %s: %s", ctx.path, operation.value, e)
        if record is not None:
            self._mark_failed(ctx.path, record, error)

    def _mark_failed(self, path: str, record: StateRecord, error: BaseException) -> None:
        """Keep the prior hash, output and updatedAt, flag the record for retry."""
        failed = record.model_copy(update={"status": ResourceStatus.ERROR, "error": str(error)})
        try:
            self._store.set(path, failed)
        except StoreIOError as e:
            logger.error("Could not record failure for %s: %s", path, e)

    def _invoke(self, operation: str, path: str, fn: Callable[[], T]) -> T:
        """Call a provider, attaching the resource path to any failure."""
        try:
            result = fn()
        except ReplaceRequested:
            raise
        except ProviderError as e:
            e.path = e.path or path
            e.operation = e.operation or operation
            raise
        except StateplaneError:
            raise
        except Exception as e:
            raise ProviderError(str(e) or type(e).__name__, path=path, operation=operation) from e

        if operation != "delete" and not isinstance(result, Mapping):
            raise ProviderError(
                f"provider returned {type(result).__name__}, expected a mapping",
                path=path,
                operation=operation,
            )
        return result

    # ── Outputs ──────────────────────────────────────────────────

    def output_of(self, path: str, record: StateRecord) -> ResourceOutput:
        """Decrypt a record's stored output into a ResourceOutput."""
        return ResourceOutput(path, record.type, record.id, deserialize(record.output, self._codec))
