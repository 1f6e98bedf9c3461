"""Persistent key-value store shared by the reconciliation loop and the directory refresh.

`DirStore` keeps one file per key under a directory and guards every operation with a
`filelock.FileLock`; `replace` holds it across both the delete and the put, so a second
bot process pointed at the same path never reads between them. `LockedStore` adds the
in-process discipline: one short exclusive acquisition per read, or per replace.
"""

from __future__ import annotations

import os
import re
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from filelock import FileLock, Timeout

from .errors import db_error

_KEY_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


class KeyValueStore(Protocol):
    """Minimal byte-oriented key-value interface."""

    def get(self, key: str) -> bytes | None: ...

    def put(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...

    def replace(self, key: str, value: bytes) -> None: ...


class MemoryStore:
    """Dict-backed store, used when no persistence is wanted (and in tests)."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def replace(self, key: str, value: bytes) -> None:
        self.delete(key)
        self.put(key, value)


class DirStore:
    """One-file-per-key store rooted at `root`.

    Writes go to a temporary file that is then renamed over the key file, so readers
    never observe a half-written value.
    """

    def __init__(self, root: Path, *, lock_timeout_s: float = 10.0) -> None:
        self._root = root
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise db_error("Unable to create store directory") from exc
        self._file_lock = FileLock(str(self._root / ".lock"), timeout=lock_timeout_s)

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise db_error(f"Invalid store key: {key!r}")
        return self._root / key

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            with self._file_lock:
                yield
        except Timeout as exc:
            raise db_error("Timed out waiting for store lock") from exc

    def _write(self, path: Path, key: str, value: bytes) -> None:
        tmp_name: str | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=f".{key}.")
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(value)
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise db_error(f"Unable to write {key}") from exc

    def _remove(self, path: Path, key: str) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise db_error(f"Unable to delete {key}") from exc

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        with self._locked():
            try:
                return path.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as exc:
                raise db_error(f"Unable to read {key}") from exc

    def put(self, key: str, value: bytes) -> None:
        path = self._path(key)
        with self._locked():
            self._write(path, key, value)

    def delete(self, key: str) -> None:
        path = self._path(key)
        with self._locked():
            self._remove(path, key)

    def replace(self, key: str, value: bytes) -> None:
        """Delete then put `key` while holding the file lock once."""
        path = self._path(key)
        with self._locked():
            self._remove(path, key)
            self._write(path, key, value)


class LockedStore:
    """Serializes access to a `KeyValueStore` shared between tasks and threads.

    Hold the lock only around store operations, never across a network call.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._lock = threading.RLock()

    def read(self, key: str) -> bytes | None:
        with self._lock:
            return self._store.get(key)

    @contextmanager
    def write(self) -> Iterator[KeyValueStore]:
        """Exclusive access for a group of operations committed together."""
        with self._lock:
            yield self._store

    def replace(self, key: str, value: bytes) -> None:
        """Delete then put `key` in one exclusive acquisition."""
        with self.write() as store:
            store.replace(key, value)
