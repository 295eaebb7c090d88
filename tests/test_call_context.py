"""Tests for the call context correlator."""

from __future__ import annotations

import threading
from unittest.mock import patch

import pytest

from frontdesk.models import CallContext
from frontdesk.services.call_context import CallContextStore, mint_context_key
from frontdesk.services.store import InMemoryStore, RedisStore


def _context(key: str = "inbound_comm-1", **kwargs) -> CallContext:
    return CallContext(direction="inbound", context_key=key, caller="+15551234567", **kwargs)


class _FakeLock:
    def acquire(self):
        return True

    def release(self):
        pass


class _FakeRedis:
    def __init__(self):
        self.data: dict[str, str] = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = value

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    def lock(self, name, timeout=None, blocking_timeout=None):
        return _FakeLock()

    def scan_iter(self, match):
        prefix = match.rstrip("*")
        return [k for k in self.data if k.startswith(prefix)]


@pytest.fixture(params=["memory", "redis"])
def contexts(request) -> CallContextStore:
    if request.param == "memory":
        return CallContextStore(InMemoryStore())
    return CallContextStore(RedisStore(_FakeRedis(), models=(CallContext,)))


class TestMintContextKey:
    def test_uses_record_id_when_available(self):
        assert mint_context_key("outbound", "comm-42") == "outbound_comm-42"

    def test_falls_back_to_milliseconds(self):
        with patch("frontdesk.services.call_context.time.time", return_value=1700000000.5):
            assert mint_context_key("inbound") == "inbound_1700000000500"


class TestPutAndGet:
    def test_get_by_primary_key(self, contexts):
        contexts.put("inbound_comm-1", _context())
        assert contexts.get("inbound_comm-1").caller == "+15551234567"

    def test_unknown_key(self, contexts):
        assert contexts.get("nope") is None


class TestAlias:
    def test_alias_resolves_to_the_same_record(self, contexts):
        contexts.put("inbound_comm-1", _context())
        contexts.alias("inbound_comm-1", "CA123")
        assert contexts.get("CA123").context_key == "inbound_comm-1"

    def test_alias_of_unknown_key_raises(self, contexts):
        with pytest.raises(KeyError):
            contexts.alias("missing", "CA123")

    def test_alias_of_alias_points_at_the_canonical_record(self, contexts):
        contexts.put("inbound_comm-1", _context())
        contexts.alias("inbound_comm-1", "CA123")
        contexts.alias("CA123", "other-id")
        contexts.update("other-id", lambda c: setattr(c, "status", "ringing"))
        assert contexts.get("inbound_comm-1").status == "ringing"

    def test_update_through_one_key_is_visible_through_the_other(self, contexts):
        # Status callbacks (by CallSid) and the stream (by context key)
        contexts.put("inbound_comm-1", _context())
        contexts.alias("inbound_comm-1", "CA123")

        contexts.update("CA123", lambda c: setattr(c, "caller_verified", True))
        assert contexts.get("inbound_comm-1").caller_verified is True

        contexts.update("inbound_comm-1", lambda c: setattr(c, "caller_name", "Ann"))
        assert contexts.get("CA123").caller_name == "Ann"

    def test_in_memory_alias_shares_the_object(self):
        contexts = CallContextStore(InMemoryStore())
        contexts.put("ctx_1", _context("ctx_1"))
        contexts.alias("ctx_1", "CA123")
        contexts.get("CA123").status = "answered"
        assert contexts.get("ctx_1").status == "answered"

    def test_put_after_alias_keeps_the_alias(self, contexts):
        contexts.put("inbound_comm-1", _context())
        contexts.alias("inbound_comm-1", "CA123")
        contexts.put("inbound_comm-1", _context(status="in-progress"))
        assert contexts.get("CA123").status == "in-progress"


class TestUpdate:
    def test_update_of_unknown_key_returns_none(self, contexts):
        assert contexts.update("nope", lambda c: None) is None

    def test_update_returns_the_new_record(self, contexts):
        contexts.put("k", _context("k"))
        updated = contexts.update("k", lambda c: setattr(c, "duration_seconds", 42))
        assert updated.duration_seconds == 42


class TestAttachProviderCallId:
    def test_sets_id_and_alias(self, contexts):
        contexts.put("outbound_comm-9", _context("outbound_comm-9"))
        attached = contexts.attach_provider_call_id("outbound_comm-9", "CA999")

        assert attached.provider_call_id == "CA999"
        assert contexts.get("CA999").provider_call_id == "CA999"
        assert contexts.get("outbound_comm-9").provider_call_id == "CA999"

    def test_unknown_key_returns_none(self, contexts):
        assert contexts.attach_provider_call_id("missing", "CA1") is None
        assert contexts.get("CA1") is None

    def test_attaching_twice_is_harmless(self, contexts):
        contexts.put("k", _context("k"))
        contexts.attach_provider_call_id("k", "CA1")
        contexts.attach_provider_call_id("CA1", "CA1")
        assert contexts.get("k").provider_call_id == "CA1"


class TestConcurrency:
    def test_concurrent_updates_through_different_keys(self):
        contexts = CallContextStore(InMemoryStore())
        contexts.put("k", _context("k", metadata={"events": 0}))
        contexts.alias("k", "CA1")

        def _bump(key):
            for _ in range(100):
                contexts.update(key, lambda c: c.metadata.update(events=c.metadata["events"] + 1))

        threads = [threading.Thread(target=_bump, args=(k,)) for k in ("k", "CA1") * 3]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert contexts.get("CA1").metadata["events"] == 600


class TestAliasLifetime:
    def test_alias_lives_as_long_as_the_record(self):
        contexts = CallContextStore(InMemoryStore(default_ttl=100))
        clock = patch("frontdesk.services.store.time.monotonic")
        with clock as monotonic:
            monotonic.return_value = 0.0
            contexts.put("k", _context("k"))
            contexts.attach_provider_call_id("k", "CA1")

            monotonic.return_value = 80.0
            contexts.update("k", lambda c: setattr(c, "status", "in-progress"))

            monotonic.return_value = 150.0
            assert contexts.get("CA1").status == "in-progress"

    def test_alias_is_not_evicted_ahead_of_its_record(self):
        contexts = CallContextStore(InMemoryStore(max_entries=4))
        contexts.put("k", _context("k"))
        contexts.alias("k", "CA1")
        contexts.put("x1", _context("x1"))
        contexts.put("x2", _context("x2"))

        contexts.update("k", lambda c: setattr(c, "status", "ringing"))
        contexts.put("x3", _context("x3"))

        assert contexts.get("x1") is None
        assert contexts.get("CA1").status == "ringing"

    def test_record_lists_its_aliases(self, contexts):
        contexts.put("k", _context("k"))
        contexts.alias("k", "CA1")
        contexts.attach_provider_call_id("CA1", "CA1")
        contexts.alias("CA1", "k")
        assert contexts.get("k").aliases == ["CA1"]
