"""Call context correlator.

The inbound webhook, the media-stream socket and the provider's status
callbacks arrive independently and carry different identifiers: our minted
``context_key`` (in the stream URL) and the provider's CallSid (in
callbacks).  All of them must land on the same :class:`CallContext`.

The record is stored once under its canonical key; every other identifier
is a pointer to that key.  Aliasing therefore never copies the record, and
a change made through one key is visible through all of them, on either
store backing.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from frontdesk.models import CallContext
from frontdesk.services.store import KeyValueStore

logger = logging.getLogger(__name__)

_CTX = "ctx:"
_ALIAS = "alias:"


def mint_context_key(direction: str, record_id: str | None = None) -> str:
    """Return ``{direction}_{suffix}``.

    The suffix is the call-log record id when logging succeeded, otherwise
    the current time in milliseconds.
    """
    suffix = record_id or str(int(time.time() * 1000))
    return f"{direction}_{suffix}"


class CallContextStore:
    """Shared, multi-key view of live call contexts.

    The record lists its own aliases, and every write re-puts them next to
    it, so a CallSid stays resolvable (TTL and LRU alike) for as long as the
    record it points to.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def _resolve(self, key: str) -> str | None:
        if self._store.get(_CTX + key) is not None:
            return key
        return self._store.get(_ALIAS + key)

    def _write(self, canonical: str, context: CallContext) -> None:
        # Caller holds the record's lock
        self._store.put(_CTX + canonical, context)
        for alias in context.aliases:
            self._store.put(_ALIAS + alias, canonical)

    # ── Contract ─────────────────────────────────────────────────────

    def put(self, key: str, context: CallContext) -> None:
        with self._store.locked(_CTX + key):
            existing = self._store.get(_CTX + key)
            if existing is not None:
                context.aliases = list(dict.fromkeys([*existing.aliases, *context.aliases]))
            self._write(key, context)
        logger.debug("Call context stored under %s", key)

    def alias(self, existing_key: str, new_key: str) -> None:
        """Make *new_key* resolve to the same record as *existing_key*.

        Raises:
            KeyError: if *existing_key* is unknown.
        """
        canonical = self._resolve(existing_key)
        if canonical is None:
            raise KeyError(existing_key)
        if new_key == canonical:
            return
        with self._store.locked(_CTX + canonical):
            context = self._store.get(_CTX + canonical)
            if context is None:
                raise KeyError(existing_key)
            if new_key not in context.aliases:
                context.aliases.append(new_key)
            self._write(canonical, context)
        logger.debug("Call context alias %s → %s", new_key, canonical)

    def get(self, key: str) -> CallContext | None:
        canonical = self._resolve(key)
        if canonical is None:
            return None
        return self._store.get(_CTX + canonical)

    # ── Atomic mutation ──────────────────────────────────────────────

    def update(self, key: str, mutate: Callable[[CallContext], None]) -> CallContext | None:
        """Apply *mutate* to the record behind *key* under its lock.

        Returns the updated record, or ``None`` if *key* is unknown.
        """
        canonical = self._resolve(key)
        if canonical is None:
            return None

        with self._store.locked(_CTX + canonical):
            context = self._store.get(_CTX + canonical)
            if context is None:
                return None
            mutate(context)
            self._write(canonical, context)
        return context

    def attach_provider_call_id(self, key: str, call_sid: str) -> CallContext | None:
        """Record the provider's CallSid and register it as an alias.

        Both writes happen while the record's lock is held, so a status
        callback racing with the stream ``start`` event never sees the alias
        without the id (or the reverse).
        """
        canonical = self._resolve(key)
        if canonical is None:
            logger.warning("Cannot attach CallSid %s: unknown context %s", call_sid, key)
            return None

        with self._store.locked(_CTX + canonical):
            context = self._store.get(_CTX + canonical)
            if context is None:
                return None
            context.provider_call_id = call_sid
            if call_sid != canonical and call_sid not in context.aliases:
                context.aliases.append(call_sid)
            self._write(canonical, context)
        logger.info("Context %s linked to CallSid %s", canonical, call_sid)
        return context
