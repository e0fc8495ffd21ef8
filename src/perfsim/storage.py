"""Shared state that survives across stateless request workers.

Two backends implement the same :class:`StateStore` contract:

* :class:`MemoryStateStore` keeps entries in a dict guarded by one lock per
  key.  Suitable when every worker is a thread of one long-lived process,
  and for tests.
* :class:`FileStateStore` keeps one JSON file per key and serialises
  writers with an OS-level ``portalocker`` lock, so separate processes
  (CLI invocations, pre-fork workers) observe one consistent state.

Both enforce TTL lazily: an expired entry reads exactly like an absent key
whether or not anything has physically removed it yet.  Reads never raise;
a broken medium degrades to returning the caller's default.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import portalocker

from perfsim.core import StorageError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Modifier = Callable[[Any], Any]

_UNSET = object()


def _expires_at(ttl: float, now: float) -> float | None:
    return now + ttl if ttl and ttl > 0 else None


def _is_expired(expires_at: float | None, now: float) -> bool:
    return expires_at is not None and now >= expires_at


class StateStore(ABC):
    """Atomic, TTL-capable key/value storage."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock: Clock = clock or time.time

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if absent, expired or unreadable."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float = 0) -> None:
        """Store *value* under *key*.  ``ttl`` of 0 keeps it forever."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove *key*.  Deleting a missing key is a no-op."""

    @abstractmethod
    def modify(self, key: str, modifier: Modifier, default: Any = None, ttl: float = 0) -> Any:
        """Apply ``modifier(current) -> new`` atomically and return the new value.

        No other ``set``/``delete``/``modify`` on *key* can interleave with the
        read-modify-write, so concurrent callers never lose updates.
        """

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """Return live keys starting with *prefix*."""

    def increment(self, key: str, delta: int = 1) -> int:
        """Atomically add *delta* to an integer counter and return the result."""
        return int(self.modify(key, lambda current: int(current or 0) + delta, 0))

    def now(self) -> float:
        return self._clock()


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class MemoryStateStore(StateStore):
    """Thread-safe in-process store.

    Values are deep-copied on the way in and out so callers get the same
    value semantics a serialising medium would give them: mutating a value
    returned by :meth:`get` never changes what is stored.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        super().__init__(clock)
        self._data: dict[str, tuple[Any, float | None]] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    def _read(self, key: str) -> tuple[bool, Any]:
        entry = self._data.get(key)
        if entry is None:
            return False, None
        value, expires_at = entry
        if _is_expired(expires_at, self.now()):
            self._data.pop(key, None)
            return False, None
        return True, value

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock_for(key):
            found, value = self._read(key)
        return copy.deepcopy(value) if found else default

    def set(self, key: str, value: Any, ttl: float = 0) -> None:
        stored = copy.deepcopy(value)
        with self._lock_for(key):
            self._data[key] = (stored, _expires_at(ttl, self.now()))

    def delete(self, key: str) -> None:
        with self._lock_for(key):
            self._data.pop(key, None)

    def modify(self, key: str, modifier: Modifier, default: Any = None, ttl: float = 0) -> Any:
        with self._lock_for(key):
            found, current = self._read(key)
            current = copy.deepcopy(current) if found else copy.deepcopy(default)
            new_value = modifier(current)
            self._data[key] = (copy.deepcopy(new_value), _expires_at(ttl, self.now()))
        return new_value

    def keys(self, prefix: str = "") -> list[str]:
        now = self.now()
        with self._registry_lock:
            snapshot = list(self._data.copy().items())
        return sorted(
            key
            for key, (_, expires_at) in snapshot
            if key.startswith(prefix) and not _is_expired(expires_at, now)
        )


# ---------------------------------------------------------------------------
# File backend
# ---------------------------------------------------------------------------

class FileStateStore(StateStore):
    """Cross-process store backed by one JSON document per key.

    Each key ``k`` lives in ``store_<md5(k)>.json`` next to a
    ``store_<md5(k)>.lock`` file.  Writers hold an exclusive portalocker lock
    on the lock file for the whole read-modify-write; documents are replaced
    atomically with :func:`os.replace` so readers never need the lock.
    """

    def __init__(
        self,
        directory: str | Path,
        clock: Clock | None = None,
        lock_timeout: float = 5.0,
    ) -> None:
        super().__init__(clock)
        self.directory = Path(directory)
        self.lock_timeout = lock_timeout

    # -- paths ---------------------------------------------------------------

    def _stem(self, key: str) -> str:
        return "store_" + hashlib.md5(key.encode("utf-8")).hexdigest()  # noqa: S324

    def _data_path(self, key: str) -> Path:
        return self.directory / f"{self._stem(key)}.json"

    def _lock_path(self, key: str) -> Path:
        return self.directory / f"{self._stem(key)}.lock"

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            lock = portalocker.Lock(
                str(self._lock_path(key)),
                mode="a",
                timeout=self.lock_timeout,
                flags=portalocker.LOCK_EX | portalocker.LOCK_NB,
            )
            lock.acquire()
        except (OSError, portalocker.exceptions.LockException) as exc:
            raise StorageError(f"could not lock {key!r}: {exc}") from exc
        try:
            yield
        finally:
            lock.release()

    # -- raw documents -------------------------------------------------------

    def _load(self, key: str) -> tuple[bool, Any]:
        path = self._data_path(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False, None
        except OSError as exc:
            raise StorageError(f"could not read {key!r}: {exc}") from exc
        try:
            envelope = json.loads(raw)
            value = envelope["value"]
            expires_at = envelope.get("expires_at")
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageError(f"corrupt entry for {key!r}: {exc}") from exc
        if _is_expired(expires_at, self.now()):
            return False, None
        return True, value

    def _dump(self, key: str, value: Any, ttl: float) -> None:
        envelope = {
            "key": key,
            "value": value,
            "expires_at": _expires_at(ttl, self.now()),
        }
        try:
            payload = json.dumps(envelope, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise StorageError(f"value for {key!r} is not serialisable: {exc}") from exc
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=self.directory, prefix=".tmp_", suffix=".json"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp_name, self._data_path(key))
        except OSError as exc:
            raise StorageError(f"could not write {key!r}: {exc}") from exc

    def _remove(self, key: str) -> None:
        try:
            self._data_path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"could not delete {key!r}: {exc}") from exc

    # -- contract ------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        try:
            found, value = self._load(key)
        except StorageError as exc:
            logger.warning("Shared storage read failed, using default: %s", exc)
            return default
        return value if found else default

    def set(self, key: str, value: Any, ttl: float = 0) -> None:
        try:
            with self._locked(key):
                self._dump(key, value, ttl)
        except StorageError as exc:
            logger.warning("Shared storage write dropped: %s", exc)

    def delete(self, key: str) -> None:
        try:
            with self._locked(key):
                self._remove(key)
        except StorageError as exc:
            logger.warning("Shared storage delete dropped: %s", exc)

    def modify(self, key: str, modifier: Modifier, default: Any = None, ttl: float = 0) -> Any:
        new_value: Any = _UNSET
        try:
            with self._locked(key):
                try:
                    found, current = self._load(key)
                except StorageError as exc:
                    logger.warning("Discarding unreadable entry: %s", exc)
                    found, current = False, None
                new_value = modifier(current if found else copy.deepcopy(default))
                self._dump(key, new_value, ttl)
        except StorageError as exc:
            logger.warning("Shared storage modify not persisted: %s", exc)
            if new_value is _UNSET:
                new_value = modifier(copy.deepcopy(default))
        return new_value

    def keys(self, prefix: str = "") -> list[str]:
        found: list[str] = []
        try:
            paths = list(self.directory.glob("store_*.json"))
        except OSError:
            return found
        now = self.now()
        for path in paths:
            try:
                envelope = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            key = envelope.get("key") if isinstance(envelope, dict) else None
            if not isinstance(key, str) or not key.startswith(prefix):
                continue
            if _is_expired(envelope.get("expires_at"), now):
                continue
            found.append(key)
        return sorted(found)


__all__ = ["FileStateStore", "MemoryStateStore", "StateStore"]
