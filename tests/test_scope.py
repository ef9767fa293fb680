"""
Tests for the run scope — parallel groups, lifecycle, audit, entry points.
"""

import json
import threading
from pathlib import Path

import pytest

from stateplane.adapters.mock import MockProvider
from stateplane.adapters.registry import ProviderRegistry
from stateplane.core.engine.scope import Scope, open_project_scope, open_scope
from stateplane.core.errors import InvalidResourceError, ParallelGroupError, StateplaneError
from stateplane.core.models.declaration import Declaration
from stateplane.core.models.project import ProjectConfig, StoreConfig
from stateplane.core.persistence.audit import AuditWriter
from stateplane.core.persistence.instrumented import InstrumentedStateStore
from stateplane.core.persistence.memory_store import MemoryStateStore
from stateplane.core.secrets.secret import Secret

from tests.conftest import TEST_ITERATIONS


class GateProvider(MockProvider):
    """Creates block until ``parties`` creates are in flight at once."""

    def __init__(self, parties: int):
        super().__init__("Gate")
        self.barrier = threading.Barrier(parties, timeout=5)

    def create(self, ctx, props):
        self.barrier.wait()
        return super().create(ctx, props)


def gate(id: str) -> Declaration:
    return Declaration(type="Gate", id=id)


# ── Identity ─────────────────────────────────────────────────────────


class TestScopeIdentity:
    def test_paths(self, new_run):
        run = new_run()
        assert run.name == "shop/dev"
        assert run.path_for("Queue", "jobs") == "shop/dev/Queue/jobs"

    def test_store_is_wrapped(self, new_run):
        assert isinstance(new_run().store, InstrumentedStateStore)

    def test_store_for_other_scope_rejected(self, codec, registry):
        with pytest.raises(ValueError, match="bound to"):
            Scope("shop", "dev", MemoryStateStore("shop/prod"), codec, registry)

    def test_invalid_scope_name(self, codec, registry):
        with pytest.raises(InvalidResourceError):
            Scope("sh/op", "dev", MemoryStateStore("sh/op/dev"), codec, registry)


# ── Parallel groups ──────────────────────────────────────────────────


class TestParallel:
    def test_members_run_concurrently(self, new_run, registry):
        registry.register(GateProvider(3))
        run = new_run(max_workers=3)

        outputs = run.parallel([gate("a"), gate("b"), gate("c")])

        assert [o.id for o in outputs] == ["a", "b", "c"]
        assert run.touched == {"shop/dev/Gate/a", "shop/dev/Gate/b", "shop/dev/Gate/c"}

    def test_failure_reported_after_all_settle(self, new_run, queues, store):
        queues.set_failure("create", "b", "quota exceeded")
        run = new_run()

        with pytest.raises(ParallelGroupError) as exc_info:
            run.parallel([
                Declaration(type="Queue", id="a"),
                Declaration(type="Queue", id="b"),
                Declaration(type="Queue", id="c"),
            ])

        assert set(exc_info.value.errors) == {"shop/dev/Queue/b"}
        assert store.get("shop/dev/Queue/a") is not None
        assert store.get("shop/dev/Queue/c") is not None
        assert store.get("shop/dev/Queue/b") is None
        assert run.failed
        assert run.finalize().skipped

    def test_group_may_reference_earlier_outputs(self, new_run, store):
        run = new_run()
        jobs = run.declare(Declaration(type="Queue", id="jobs"))

        run.parallel([
            Declaration(type="Worker", id="w1", props={"queue": jobs}),
            Declaration(type="Worker", id="w2", props={"queue": jobs}),
        ])

        assert store.get("shop/dev/Worker/w2").depends_on == ["shop/dev/Queue/jobs"]

    def test_duplicate_in_group_rejected(self, new_run, queues):
        run = new_run()
        with pytest.raises(InvalidResourceError):
            run.parallel([Declaration(type="Queue", id="a"), Declaration(type="Queue", id="a")])
        assert queues.call_count == 0

    def test_empty_group(self, new_run):
        assert new_run().parallel([]) == []


# ── Lifecycle ────────────────────────────────────────────────────────


class TestLifecycle:
    def test_finalize_is_idempotent(self, new_run, queues):
        first = new_run()
        first.declare(Declaration(type="Queue", id="a"))
        first.declare(Declaration(type="Queue", id="b"))
        first.finalize()

        run = new_run()
        run.declare(Declaration(type="Queue", id="a"))
        report = run.finalize()
        again = run.finalize()

        assert again is report
        assert len(queues.calls_for("delete")) == 1

    def test_context_manager_marks_failure(self, store, codec, registry, tmp_path):
        audit = AuditWriter(tmp_path / "audit.ndjson")
        with pytest.raises(RuntimeError):
            with Scope("shop", "dev", store, codec, registry, audit=audit) as run:
                run.declare(Declaration(type="Queue", id="a"))
                raise RuntimeError("caller bug")

        assert run.failed
        entries = audit.read_all()
        assert len(entries) == 1
        assert entries[0].status == "failed"
        assert store.get("shop/dev/Queue/a") is not None

    def test_destroy_removes_everything(self, new_run, queues, workers, store):
        run = new_run()
        jobs = run.declare(Declaration(type="Queue", id="jobs"))
        run.declare(Declaration(type="Worker", id="w1", props={"queue": jobs}))
        run.finalize()

        report = new_run().destroy()

        assert report.deleted == ["shop/dev/Worker/w1", "shop/dev/Queue/jobs"]
        assert store.count() == 0
        assert queues.physical == {}
        assert workers.physical == {}

    def test_results_record_operations(self, new_run):
        run = new_run()
        run.declare(Declaration(type="Queue", id="a"))
        assert [r.to_dict()["operation"] for r in run.results] == ["create"]

    def test_seq_continues_across_runs(self, new_run, store):
        first = new_run()
        first.declare(Declaration(type="Queue", id="a"))
        first.declare(Declaration(type="Queue", id="b"))

        second = new_run()
        second.declare(Declaration(type="Queue", id="c"))
        second.declare(Declaration(type="Queue", id="a", props={"size": 2}))

        assert store.get("shop/dev/Queue/c").seq == 3
        # Updates keep the seq of the original create
        assert store.get("shop/dev/Queue/a").seq == 1
        assert store.get("shop/dev/Queue/b").seq == 2


# ── Audit ────────────────────────────────────────────────────────────


class TestAudit:
    def test_finalize_writes_entry(self, store, codec, registry, tmp_path):
        audit = AuditWriter(tmp_path / "audit.ndjson")

        first = Scope("shop", "dev", store, codec, registry, audit=audit).open()
        first.declare(Declaration(type="Queue", id="a"))
        first.declare(Declaration(type="Queue", id="b"))
        first.finalize()

        second = Scope("shop", "dev", store, codec, registry, audit=audit).open()
        second.declare(Declaration(type="Queue", id="a"))
        second.finalize()

        entries = audit.read_all()
        assert [e.operations for e in entries] == [{"create": 2}, {"noop": 1}]
        assert entries[1].deleted == ["shop/dev/Queue/b"]
        assert entries[1].status == "ok"
        assert entries[1].run_id == second.run_id

    def test_errors_carry_no_secret_values(self, store, codec, registry, queues, tmp_path):
        audit = AuditWriter(tmp_path / "audit.ndjson")
        queues.set_failure("create", "a", "denied")

        run = Scope("shop", "dev", store, codec, registry, audit=audit).open()
        with pytest.raises(StateplaneError):
            run.declare(Declaration(type="Queue", id="a", props={"token": Secret("s3cr3t")}))
        run.finalize()

        raw = (tmp_path / "audit.ndjson").read_text()
        assert "s3cr3t" not in raw
        assert "denied" in raw


# ── Entry points ─────────────────────────────────────────────────────


class TestOpenScope:
    def test_file_backend_persists_between_runs(self, tmp_path: Path, registry, queues):
        config = StoreConfig(backend="file", root=str(tmp_path / ".stateplane"))

        with open_scope("shop", "dev", config, "pw", providers=registry,
                        kdf_iterations=TEST_ITERATIONS) as run:
            run.declare(Declaration(type="Queue", id="a", props={"token": Secret("s3cr3t")}))
            run.finalize()
        queues.reset()

        with open_scope("shop", "dev", config, "pw", providers=registry,
                        kdf_iterations=TEST_ITERATIONS) as run:
            out = run.declare(Declaration(type="Queue", id="a", props={"token": Secret("s3cr3t")}))
            run.finalize()

        assert queues.call_count == 0
        assert out["props"]["token"].get_secret_value() == "s3cr3t"
        files = list((tmp_path / ".stateplane" / "shop" / "dev").glob("*.json"))
        assert len(files) == 1
        assert "s3cr3t" not in files[0].read_text()

    def test_project_scope_reads_key_from_env(self, tmp_path: Path, registry):
        config = ProjectConfig.model_validate({
            "app": "shop",
            "stage": "prod",
            "state": {"backend": "file"},
            "secrets": {"password_env": "SHOP_KEY", "kdf_iterations": TEST_ITERATIONS},
        })

        run = open_project_scope(config, registry, base_dir=tmp_path, env={"SHOP_KEY": "k"})
        run.declare(Declaration(type="Queue", id="a", props={"token": Secret("x")}))
        run.finalize()
        run.close()

        assert run.codec.has_key
        assert (tmp_path / ".stateplane" / "shop" / "prod").is_dir()
        entries = AuditWriter(tmp_path / ".stateplane" / "audit.ndjson").read_all()
        assert entries[0].scope == "shop/prod"

    def test_missing_key_fails_only_on_secrets(self, registry):
        run = open_scope("shop", "dev", StoreConfig(backend="memory"), None, providers=registry)
        run.declare(Declaration(type="Queue", id="plain"))
        with pytest.raises(StateplaneError, match="key material"):
            run.declare(Declaration(type="Queue", id="secret", props={"t": Secret("x")}))

    def test_summary_is_json_serializable(self, new_run):
        run = new_run()
        run.declare(Declaration(type="Queue", id="a"))
        assert json.dumps(run.finalize().to_dict())

    def test_custom_registry(self, store, codec):
        only = ProviderRegistry([MockProvider("Bucket")])
        run = Scope("shop", "dev", store, codec, only).open()
        assert run.declare(Declaration(type="Bucket", id="b"))["name"] == "shop-dev-b"
