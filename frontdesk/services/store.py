"""Key-value store for sessions and call contexts.

Design decisions
────────────────
• **One abstraction, two backings.**  ``InMemoryStore`` for a single process
  and the test-suite; ``RedisStore`` when several workers must see the same
  calls (the media socket and the status webhook may land on different
  processes).
• **Per-key atomicity, not global serialisation.**  ``update`` runs the
  read-modify-write under a lock scoped to that one key, so callbacks for
  different calls never wait on each other.
• **Explicit expiry.**  Every entry carries a TTL (refreshed on write) and the
  in-memory backing also caps the entry count, evicting least-recently-used
  entries first.
• **pydantic values.**  Models round-trip through JSON in Redis; the
  in-memory backing keeps the objects themselves, so a value fetched twice is
  the *same* object.

Usage
─────
>>> store = InMemoryStore(max_entries=1000, default_ttl=3600)
>>> store.put("session:abc", session)
>>> store.update("session:abc", lambda s: s.model_copy(update={"call_status": "busy"}))
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import Any

import redis
from pydantic import BaseModel
from redis.exceptions import LockError, LockNotOwnedError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10_000
# A conversation turn holds its session lock across EMR retries, a Twilio
# call and the model reply; the lock must outlive the slowest such turn
LOCK_TIMEOUT_SECONDS = 600
LOCK_WAIT_SECONDS = 10


class KeyValueStore(ABC):
    """Minimal store contract used by the correlator and the session engine."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the value for *key*, or ``None`` if absent or expired."""

    @abstractmethod
    def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Insert or overwrite *key*.  ``ttl=None`` uses the store default."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove *key*.  Returns ``True`` if it existed."""

    @abstractmethod
    def locked(self, key: str) -> AbstractContextManager[None]:
        """Context manager holding the exclusive lock for *key*."""

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """Live keys starting with *prefix*."""

    def update(self, key: str, fn: Callable[[Any], Any]) -> Any | None:
        """Atomically replace the value at *key* with ``fn(value)``.

        Returns the new value, or ``None`` (without calling *fn*) when the
        key is absent.
        """
        with self.locked(key):
            current = self.get(key)
            if current is None:
                return None
            new_value = fn(current)
            self.put(key, new_value)
            return new_value

    def count(self, prefix: str = "") -> int:
        return len(self.keys(prefix))


# ── In-memory backing ────────────────────────────────────────────────


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class InMemoryStore(KeyValueStore):
    """Thread-safe LRU store with per-entry TTL."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: float | None = None,
    ) -> None:
        self._max_entries = max_entries
        self._default_ttl = default_ttl
        # key → (value, expires_at monotonic or None)
        self._data: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()
        self._lock = threading.Lock()
        # key → lock, kept only while someone holds or waits on it
        self._key_locks: dict[str, _KeyLock] = {}

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= time.monotonic():
                self._drop(key)
                logger.debug("Store: %s expired", key)
                return None
            self._data.move_to_end(key)
            return value

    def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        expires_at = time.monotonic() + ttl if ttl else None
        with self._lock:
            self._data[key] = (value, expires_at)
            self._data.move_to_end(key)
            while len(self._data) > self._max_entries:
                evicted, _ = self._data.popitem(last=False)
                logger.debug("Store: evicted %s", evicted)

    def delete(self, key: str) -> bool:
        with self._lock:
            if key in self._data:
                self._drop(key)
                return True
            return False

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        with self._lock:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._key_locks[key]

    def keys(self, prefix: str = "") -> list[str]:
        now = time.monotonic()
        with self._lock:
            return [
                k for k, (_, exp) in self._data.items()
                if k.startswith(prefix) and (exp is None or exp > now)
            ]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    # ── Internal ─────────────────────────────────────────────────────

    def _drop(self, key: str) -> None:
        # Caller holds self._lock
        self._data.pop(key, None)

    @property
    def entry_count(self) -> int:
        return len(self._data)


# ── Redis backing ────────────────────────────────────────────────────


class RedisStore(KeyValueStore):
    """Networked store over a ``redis.Redis`` client.

    Values are pydantic models from *models* (looked up by class name on the
    way back) or plain JSON values.  Per-key locking uses Redis' own lock
    primitive so it holds across processes.
    """

    def __init__(
        self,
        client,
        *,
        namespace: str = "frontdesk:",
        models: tuple[type[BaseModel], ...] = (),
        default_ttl: float | None = None,
    ) -> None:
        self._client = client
        self._ns = namespace
        self._models = {m.__name__: m for m in models}
        self._default_ttl = default_ttl

    # ── Codec ────────────────────────────────────────────────────────

    def _encode(self, value: Any) -> str:
        if isinstance(value, BaseModel):
            name = type(value).__name__
            if name not in self._models:
                raise TypeError(f"RedisStore has no codec registered for {name}")
            return json.dumps({"model": name, "data": value.model_dump(mode="json")})
        return json.dumps({"value": value})

    def _decode(self, raw: bytes | str) -> Any:
        envelope = json.loads(raw)
        if "model" in envelope:
            return self._models[envelope["model"]].model_validate(envelope["data"])
        return envelope.get("value")

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        raw = self._client.get(self._ns + key)
        if raw is None:
            return None
        return self._decode(raw)

    def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        self._client.set(
            self._ns + key,
            self._encode(value),
            ex=int(ttl) if ttl else None,
        )

    def delete(self, key: str) -> bool:
        return bool(self._client.delete(self._ns + key))

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        lock = self._client.lock(
            f"{self._ns}lock:{key}",
            timeout=LOCK_TIMEOUT_SECONDS,
            blocking_timeout=LOCK_WAIT_SECONDS,
        )
        if not lock.acquire():
            raise LockError(f"Timed out waiting for the lock on {key}")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockNotOwnedError:
                # The work already finished; only the lock had expired
                logger.warning("Lock on %s expired before it was released", key)

    def keys(self, prefix: str = "") -> list[str]:
        start = len(self._ns)
        found = []
        for raw in self._client.scan_iter(match=f"{self._ns}{prefix}*"):
            key = raw.decode() if isinstance(raw, bytes) else raw
            if not key[start:].startswith("lock:"):
                found.append(key[start:])
        return found


def build_store(
    backend: str,
    *,
    redis_url: str = "",
    models: tuple[type[BaseModel], ...] = (),
    namespace: str = "frontdesk:",
    default_ttl: float | None = None,
    max_entries: int = DEFAULT_MAX_ENTRIES,
) -> KeyValueStore:
    """Create the configured backing (``memory`` or ``redis``)."""
    if backend == "redis":
        logger.info("Using Redis store at %s (namespace %s)", redis_url, namespace)
        return RedisStore(
            redis.Redis.from_url(redis_url),
            namespace=namespace,
            models=models,
            default_ttl=default_ttl,
        )
    if backend != "memory":
        raise ValueError(f"Unknown store backend: {backend!r}")
    return InMemoryStore(max_entries=max_entries, default_ttl=default_ttl)
