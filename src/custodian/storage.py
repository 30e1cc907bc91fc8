"""Key-value stores injected into policy, escrow and audit components.

Values are JSON-compatible dicts so the same component code runs against the
in-memory store (service deployments, tests) and the file-backed store (CLI
invocations that must see each other's state).

``transaction()`` gives exclusive access for a read-modify-write sequence.
Calls made outside a transaction are individually atomic.
"""

from __future__ import annotations

import copy
import fcntl
import json
import os
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol


_SAFE_ID_RE = re.compile(r"[^a-zA-Z0-9._-]")


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def sanitize_identifier(value: str) -> str:
    """Return a filesystem-safe identifier."""
    return _SAFE_ID_RE.sub("_", value)


class KeyValueStore(Protocol):
    def get(self, namespace: str, key: str) -> Optional[dict]: ...

    def put(self, namespace: str, key: str, value: dict) -> None: ...

    def delete(self, namespace: str, key: str) -> None: ...

    def items(self, namespace: str) -> list[tuple[str, dict]]: ...

    def transaction(self): ...


class MemoryStore:
    """Volatile store guarded by a single re-entrant lock."""

    def __init__(self):
        self._data: dict[str, dict[str, dict]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            yield

    def get(self, namespace: str, key: str) -> Optional[dict]:
        with self._lock:
            value = self._data.get(namespace, {}).get(key)
            return copy.deepcopy(value)

    def put(self, namespace: str, key: str, value: dict) -> None:
        with self._lock:
            self._data.setdefault(namespace, {})[key] = copy.deepcopy(value)

    def delete(self, namespace: str, key: str) -> None:
        with self._lock:
            self._data.get(namespace, {}).pop(key, None)

    def items(self, namespace: str) -> list[tuple[str, dict]]:
        with self._lock:
            return [(k, copy.deepcopy(v)) for k, v in self._data.get(namespace, {}).items()]


class JsonFileStore:
    """Single-file JSON store with flock-based cross-process exclusion.

    Inside ``transaction()`` the file is read once, mutated in memory and
    written back atomically on exit. A failing transaction writes nothing.
    """

    def __init__(self, path: Path):
        self.path = path
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / f".{sanitize_identifier(self.path.name)}.lock"
        ensure_private_file(self._lock_path)
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._state: Optional[dict[str, dict[str, Any]]] = None
        if not self.path.exists():
            self._save_state({})

    def _load_state(self) -> dict[str, dict[str, Any]]:
        with open(self.path, encoding="utf-8") as f:
            raw = f.read()
        return json.loads(raw) if raw.strip() else {}

    def _save_state(self, state: dict) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + f".tmp.{os.getpid()}")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
        ensure_private_file(self.path)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._thread_lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            with open(self._lock_path, "r+") as lockf:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
                try:
                    self._state = self._load_state()
                    self._depth = 1
                    try:
                        yield
                    except BaseException:
                        self._state = None
                        raise
                    self._save_state(self._state)
                finally:
                    self._depth = 0
                    self._state = None
                    fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def get(self, namespace: str, key: str) -> Optional[dict]:
        with self.transaction():
            assert self._state is not None
            return copy.deepcopy(self._state.get(namespace, {}).get(key))

    def put(self, namespace: str, key: str, value: dict) -> None:
        with self.transaction():
            assert self._state is not None
            self._state.setdefault(namespace, {})[key] = copy.deepcopy(value)

    def delete(self, namespace: str, key: str) -> None:
        with self.transaction():
            assert self._state is not None
            self._state.get(namespace, {}).pop(key, None)

    def items(self, namespace: str) -> list[tuple[str, dict]]:
        with self.transaction():
            assert self._state is not None
            return [(k, copy.deepcopy(v)) for k, v in self._state.get(namespace, {}).items()]
