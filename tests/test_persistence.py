"""
Tests for persistence — state store backends, telemetry wrapper, audit ledger.
"""

import json
import threading
import time
from pathlib import Path

import pytest

from stateplane.core.errors import StoreIOError
from stateplane.core.models.project import StoreConfig
from stateplane.core.models.record import ResourceStatus, StateRecord
from stateplane.core.observability.telemetry import MetricsTelemetry
from stateplane.core.persistence.audit import AuditWriter, RunAuditEntry
from stateplane.core.persistence.factory import create_instrumented_store, create_store
from stateplane.core.persistence.file_store import FileSystemStateStore, _locked
from stateplane.core.persistence.instrumented import InstrumentedStateStore
from stateplane.core.persistence.memory_store import MemoryStateStore

SCOPE = "shop/dev"


def record(id: str, **kwargs) -> StateRecord:
    return StateRecord(type="Queue", id=id, **kwargs)


@pytest.fixture(params=["memory", "file"])
def backend(request, tmp_path: Path):
    if request.param == "memory":
        store = MemoryStateStore(SCOPE)
    else:
        store = FileSystemStateStore(SCOPE, root=tmp_path / ".stateplane")
    store.init()
    yield store
    store.deinit()


# ── Contract (every backend) ─────────────────────────────────────────


class TestStoreContract:
    def test_get_missing(self, backend):
        assert backend.get("shop/dev/Queue/nope") is None

    def test_set_and_get(self, backend):
        backend.set("shop/dev/Queue/a", record("a", input_hash="sha256:1", output={"arn": "x"}))
        got = backend.get("shop/dev/Queue/a")
        assert got.id == "a"
        assert got.input_hash == "sha256:1"
        assert got.output == {"arn": "x"}

    def test_overwrite(self, backend):
        backend.set("shop/dev/Queue/a", record("a", seq=1))
        backend.set("shop/dev/Queue/a", record("a", seq=2))
        assert backend.get("shop/dev/Queue/a").seq == 2
        assert backend.count() == 1

    def test_delete(self, backend):
        backend.set("shop/dev/Queue/a", record("a"))
        backend.delete("shop/dev/Queue/a")
        assert backend.get("shop/dev/Queue/a") is None
        backend.delete("shop/dev/Queue/a")  # missing is fine

    def test_list_sorted(self, backend):
        for id in ("c", "a", "b"):
            backend.set(f"shop/dev/Queue/{id}", record(id))
        assert backend.list() == ["shop/dev/Queue/a", "shop/dev/Queue/b", "shop/dev/Queue/c"]
        assert backend.count() == 3

    def test_get_batch_and_all(self, backend):
        backend.set("shop/dev/Queue/a", record("a"))
        batch = backend.get_batch(["shop/dev/Queue/a", "shop/dev/Queue/b"])
        assert batch["shop/dev/Queue/a"].id == "a"
        assert batch["shop/dev/Queue/b"] is None
        assert list(backend.all()) == ["shop/dev/Queue/a"]

    def test_path_outside_scope(self, backend):
        with pytest.raises(ValueError, match="outside scope"):
            backend.set("shop/prod/Queue/a", record("a"))

    def test_init_is_idempotent(self, backend):
        backend.init()
        backend.init()
        backend.set("shop/dev/Queue/a", record("a"))
        assert backend.count() == 1

    def test_returned_records_are_copies(self, backend):
        backend.set("shop/dev/Queue/a", record("a", output={"n": 1}))
        got = backend.get("shop/dev/Queue/a")
        got.output["n"] = 2
        assert backend.get("shop/dev/Queue/a").output == {"n": 1}

    def test_concurrent_writes_to_different_paths(self, backend):
        def write(i: int) -> None:
            backend.set(f"shop/dev/Queue/q{i}", record(f"q{i}", seq=i))

        threads = [threading.Thread(target=write, args=(i,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert backend.count() == 16
        assert backend.get("shop/dev/Queue/q7").seq == 7


# ── File backend ─────────────────────────────────────────────────────


class TestFileStore:
    def test_layout(self, tmp_path: Path):
        store = FileSystemStateStore(SCOPE, root=tmp_path)
        store.init()
        store.set("shop/dev/Queue/jobs", record("jobs"))

        files = sorted(p.name for p in (tmp_path / "shop" / "dev").iterdir())
        assert "Queue%2Fjobs.json" in files

    def test_camel_case_on_disk(self, tmp_path: Path):
        store = FileSystemStateStore(SCOPE, root=tmp_path)
        store.set("shop/dev/Queue/jobs", record("jobs", input_hash="sha256:1", depends_on=["x"]))

        data = json.loads((tmp_path / "shop" / "dev" / "Queue%2Fjobs.json").read_text())
        assert data["inputHash"] == "sha256:1"
        assert data["dependsOn"] == ["x"]
        assert data["status"] == "committed"

    def test_no_temp_files_left(self, tmp_path: Path):
        store = FileSystemStateStore(SCOPE, root=tmp_path)
        for i in range(3):
            store.set("shop/dev/Queue/a", record("a", seq=i))
        assert list((tmp_path / "shop" / "dev").glob("*.tmp")) == []

    def test_delete_removes_lock_file(self, tmp_path: Path):
        store = FileSystemStateStore(SCOPE, root=tmp_path)
        store.set("shop/dev/Queue/a", record("a"))
        store.delete("shop/dev/Queue/a")
        assert list((tmp_path / "shop" / "dev").iterdir()) == []

    def test_writer_blocked_by_delete_uses_fresh_lock(self, tmp_path: Path):
        store = FileSystemStateStore(SCOPE, root=tmp_path)
        store.set("shop/dev/Queue/a", record("a"))
        file = store.directory / "Queue%2Fa.json"
        lock = file.with_name(file.name + ".lock")
        started = threading.Event()

        def write():
            started.set()
            store.set("shop/dev/Queue/a", record("a", seq=9))

        writer = threading.Thread(target=write)
        with _locked(file, remove=True):
            file.unlink()
            writer.start()
            started.wait(5)
            time.sleep(0.1)
            assert store.get("shop/dev/Queue/a") is None
        writer.join(5)

        assert not writer.is_alive()
        assert store.get("shop/dev/Queue/a").seq == 9
        assert lock.exists()

    def test_corrupt_record_raises(self, tmp_path: Path):
        store = FileSystemStateStore(SCOPE, root=tmp_path)
        store.init()
        (tmp_path / "shop" / "dev" / "Queue%2Fa.json").write_text("not json {{{")
        with pytest.raises(StoreIOError, match="Corrupt"):
            store.get("shop/dev/Queue/a")

    def test_list_before_init(self, tmp_path: Path):
        assert FileSystemStateStore(SCOPE, root=tmp_path / "missing").list() == []

    def test_unwritable_root(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        store = FileSystemStateStore(SCOPE, root=blocker)
        with pytest.raises(StoreIOError):
            store.init()

    def test_deinit_without_init(self, tmp_path: Path):
        FileSystemStateStore(SCOPE, root=tmp_path).deinit()


# ── Telemetry wrapper ────────────────────────────────────────────────


class TestInstrumentedStore:
    def test_results_identical(self):
        plain = MemoryStateStore(SCOPE)
        wrapped = InstrumentedStateStore(MemoryStateStore(SCOPE), MetricsTelemetry())

        for store in (plain, wrapped):
            store.set("shop/dev/Queue/b", record("b"))
            store.set("shop/dev/Queue/a", record("a", status=ResourceStatus.ERROR))
            store.delete("shop/dev/Queue/b")

        assert wrapped.list() == plain.list()
        assert wrapped.get("shop/dev/Queue/a").status == plain.get("shop/dev/Queue/a").status
        assert wrapped.get("shop/dev/Queue/b") is None

    def test_one_event_per_operation(self):
        telemetry = MetricsTelemetry()
        store = InstrumentedStateStore(MemoryStateStore(SCOPE), telemetry)

        store.set("shop/dev/Queue/a", record("a"))
        store.get("shop/dev/Queue/a")
        store.delete("shop/dev/Queue/a")

        assert [e.event for e in telemetry.events] == [
            "statestore.set",
            "statestore.get",
            "statestore.delete",
        ]
        assert {e.store for e in telemetry.events} == {"MemoryStateStore"}
        assert all(e.duration_ms >= 0 for e in telemetry.events)

    def test_errors_reraised_unchanged(self, tmp_path: Path):
        telemetry = MetricsTelemetry()
        inner = FileSystemStateStore(SCOPE, root=tmp_path)
        inner.init()
        (tmp_path / "shop" / "dev" / "Queue%2Fa.json").write_text("{{{")
        store = InstrumentedStateStore(inner, telemetry)

        with pytest.raises(StoreIOError):
            store.get("shop/dev/Queue/a")

        event = telemetry.events[-1]
        assert event.event == "statestore.get"
        assert event.store == "FileSystemStateStore"
        assert event.error_type == "StoreIOError"
        assert telemetry.registry.counter(
            "statestore.get.errors", store="FileSystemStateStore"
        ).value == 1

    def test_missing_lifecycle_is_noop(self):
        class Minimal:
            scope = SCOPE

            def list(self):
                return []

        telemetry = MetricsTelemetry()
        store = InstrumentedStateStore(Minimal(), telemetry)
        store.init()
        store.deinit()

        assert telemetry.events == []
        assert store.list() == []
        assert telemetry.events[0].store == "Minimal"


# ── Factory ──────────────────────────────────────────────────────────


class TestFactory:
    def test_memory(self):
        assert isinstance(create_store(SCOPE, StoreConfig(backend="memory")), MemoryStateStore)

    def test_file_relative_to_base_dir(self, tmp_path: Path):
        store = create_store(SCOPE, StoreConfig(root=".state"), base_dir=tmp_path)
        assert isinstance(store, FileSystemStateStore)
        assert store.directory == tmp_path / ".state" / "shop" / "dev"

    def test_instrumented(self):
        store = create_instrumented_store(SCOPE, StoreConfig(backend="memory"))
        assert isinstance(store.inner, MemoryStateStore)
        assert store.scope == SCOPE


# ── Audit ledger ─────────────────────────────────────────────────────


class TestAuditWriter:
    """Tests for the run ledger."""

    def test_write_and_read(self, tmp_path: Path):
        writer = AuditWriter(path=tmp_path / "audit.ndjson")
        writer.write(RunAuditEntry(run_id="r1", scope=SCOPE, status="ok", operations={"create": 3}))

        entries = writer.read_all()
        assert len(entries) == 1
        assert entries[0].run_id == "r1"
        assert entries[0].operations == {"create": 3}

    def test_read_recent(self, tmp_path: Path):
        writer = AuditWriter(path=tmp_path / "audit.ndjson")
        for i in range(10):
            writer.write(RunAuditEntry(run_id=f"r{i:03d}"))

        recent = writer.read_recent(3)
        assert [e.run_id for e in recent] == ["r007", "r008", "r009"]
        assert writer.read_recent(0) == []

    def test_entry_count(self, tmp_path: Path):
        writer = AuditWriter(path=tmp_path / "audit.ndjson")
        assert writer.entry_count() == 0
        writer.write(RunAuditEntry(run_id="r1"))
        writer.write(RunAuditEntry(run_id="r2"))
        assert writer.entry_count() == 2

    def test_corrupt_lines_skipped(self, tmp_path: Path):
        path = tmp_path / "audit.ndjson"
        writer = AuditWriter(path=path)
        writer.write(RunAuditEntry(run_id="good"))
        with path.open("a") as f:
            f.write("garbage line\n")
        writer.write(RunAuditEntry(run_id="also-good"))

        assert [e.run_id for e in writer.read_all()] == ["good", "also-good"]

    def test_creates_parent_directories(self, tmp_path: Path):
        writer = AuditWriter(path=tmp_path / "deep" / "nested" / "audit.ndjson")
        writer.write(RunAuditEntry(run_id="r1"))
        assert writer.path.is_file()
