"""
File state store — one JSON file per resource, atomic writes.

Layout under the state root::

    .stateplane/
      <app>/<stage>/
        Queue%2Fjobs.json          # record for app/stage/Queue/jobs
        Queue%2Fjobs.json.lock     # writer lock sidecar

Writes go to a temp file in the same directory and are renamed into
place, so a crash mid-write never leaves a half-written record.
Writers to the same record serialize on an ``fcntl`` exclusive lock
held on a sidecar file; writers to different records never contend.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import quote, unquote

from pydantic import ValidationError

from stateplane.core.errors import StoreIOError
from stateplane.core.models.record import StateRecord
from stateplane.core.persistence.base import StateStore

logger = logging.getLogger(__name__)

# Default state directory (relative to project root)
DEFAULT_STATE_DIR = ".stateplane"

_SUFFIX = ".json"
_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked(path: Path, *, remove: bool = False) -> Iterator[None]:
    """Hold an exclusive lock on the sidecar of *path*.

    With ``remove`` the sidecar is unlinked while still held. A waiter
    that wakes up on an unlinked sidecar retries on a fresh one, so two
    writers never hold locks on different inodes for the same record.
    """
    lock_path = path.with_name(path.name + _LOCK_SUFFIX)
    while True:
        handle = lock_path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                current = os.stat(lock_path).st_ino
            except FileNotFoundError:
                current = None
            if current != os.fstat(handle.fileno()).st_ino:
                continue
            try:
                yield
            finally:
                if remove:
                    lock_path.unlink(missing_ok=True)
            return
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()


class FileSystemStateStore(StateStore):
    """State store backed by a directory of JSON files."""

    def __init__(self, scope: str, root: Path | str = DEFAULT_STATE_DIR):
        super().__init__(scope)
        self._root = Path(root)
        self._dir = self._root.joinpath(*self.scope.split("/"))
        self._initialized = False

    @property
    def directory(self) -> Path:
        return self._dir

    def init(self) -> None:
        if self._initialized:
            return
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreIOError(f"Cannot create state directory {self._dir}: {e}") from e
        self._initialized = True
        logger.debug("File state store ready at %s", self._dir)

    def deinit(self) -> None:
        self._initialized = False

    # ── Path mapping ─────────────────────────────────────────────

    def _file_for(self, path: str) -> Path:
        self._check_path(path)
        relative = path[len(self.scope) + 1:]
        return self._dir / (quote(relative, safe="") + _SUFFIX)

    def _path_for(self, file: Path) -> str:
        relative = unquote(file.name[: -len(_SUFFIX)])
        return f"{self.scope}/{relative}"

    # ── Record operations ────────────────────────────────────────

    def get(self, path: str) -> StateRecord | None:
        file = self._file_for(path)
        if not file.is_file():
            return None
        try:
            data = json.loads(file.read_text(encoding="utf-8"))
            return StateRecord.from_json(data)
        except FileNotFoundError:
            # Deleted between the existence check and the read
            return None
        except OSError as e:
            raise StoreIOError(f"Cannot read state record {file}: {e}") from e
        except (json.JSONDecodeError, ValidationError) as e:
            raise StoreIOError(f"Corrupt state record {file}: {e}") from e

    def set(self, path: str, record: StateRecord) -> None:
        file = self._file_for(path)
        content = json.dumps(record.to_json(), indent=2, ensure_ascii=False) + "\n"
        try:
            file.parent.mkdir(parents=True, exist_ok=True)
            with _locked(file):
                fd, tmp_path = tempfile.mkstemp(
                    dir=file.parent,
                    prefix=f".{file.name}.",
                    suffix=".tmp",
                )
                tmp = Path(tmp_path)
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.write(content)
                    os.replace(tmp, file)
                except Exception:
                    tmp.unlink(missing_ok=True)
                    raise
        except OSError as e:
            logger.error("Failed to save state record %s: %s", path, e)
            raise StoreIOError(f"Cannot write state record {file}: {e}") from e
        logger.debug("State record saved: %s", path)

    def delete(self, path: str) -> None:
        file = self._file_for(path)
        try:
            if file.parent.is_dir():
                with _locked(file, remove=True):
                    file.unlink(missing_ok=True)
        except OSError as e:
            raise StoreIOError(f"Cannot delete state record {file}: {e}") from e
        logger.debug("State record deleted: %s", path)

    def list(self) -> list[str]:
        if not self._dir.is_dir():
            return []
        try:
            files = [f for f in self._dir.iterdir() if f.name.endswith(_SUFFIX) and f.is_file()]
        except OSError as e:
            raise StoreIOError(f"Cannot list state directory {self._dir}: {e}") from e
        return sorted(self._path_for(f) for f in files)
