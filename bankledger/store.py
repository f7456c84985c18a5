"""
store.py - Durable stores for ledger snapshots

A store persists one opaque byte string (the encoded ledger) and hands back
the latest one. Two implementations:

    MemoryStore: in-process, keeps the current and previous generation
    FileStore:   a single file written atomically, with one .bak generation
"""

from __future__ import annotations
from typing import Optional, Protocol
import logging
import os
import shutil
import tempfile

from .core import NotFound, PersistenceError

log = logging.getLogger(__name__)


class DurableStore(Protocol):
    """Anything that can save and load one snapshot."""

    def save(self, data: bytes) -> None:
        ...

    def load(self) -> bytes:
        ...


def _check_bytes(data: bytes) -> None:
    if not isinstance(data, (bytes, bytearray)):
        raise PersistenceError(f"Store expects bytes, got {type(data).__name__}")


class MemoryStore:
    """Snapshot store held in memory. Useful for tests and dry runs."""

    def __init__(self):
        self._current: Optional[bytes] = None
        self._previous: Optional[bytes] = None
        self.saves = 0

    def save(self, data: bytes) -> None:
        _check_bytes(data)
        self._previous = self._current
        self._current = bytes(data)
        self.saves += 1

    def load(self) -> bytes:
        if self._current is None:
            raise NotFound("Nothing has been saved to this store")
        return self._current

    def load_backup(self) -> bytes:
        if self._previous is None:
            raise NotFound("No previous snapshot in this store")
        return self._previous


class FileStore:
    """
    Snapshot store backed by one file.

    save() writes to a temporary file in the same directory and renames it
    over the target, so a crash leaves either the old or the new snapshot.
    Before that rename the current snapshot is copied (not moved) to
    <path>.bak, so <path> exists at every point of a save.
    """

    def __init__(self, path: str):
        self.path = os.fspath(path)
        self.backup_path = self.path + ".bak"

    def __repr__(self) -> str:
        return f"FileStore({self.path!r})"

    def save(self, data: bytes) -> None:
        _check_bytes(data)
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=".snapshot-", dir=directory)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            if os.path.exists(self.path):
                self._copy_to_backup(directory)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        log.info("snapshot written to %s (%d bytes)", self.path, len(data))

    def _copy_to_backup(self, directory: str) -> None:
        fd, tmp_path = tempfile.mkstemp(prefix=".backup-", dir=directory)
        try:
            with os.fdopen(fd, "wb") as handle, open(self.path, "rb") as current:
                shutil.copyfileobj(current, handle)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.backup_path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _read(self, path: str) -> bytes:
        try:
            with open(path, "rb") as handle:
                return handle.read()
        except FileNotFoundError:
            raise NotFound(f"No snapshot at {path}") from None

    def load(self) -> bytes:
        return self._read(self.path)

    def load_backup(self) -> bytes:
        return self._read(self.backup_path)
