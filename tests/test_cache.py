"""Tests for the TTL caches and cache warming.

Warming runs every query in an executor so a slow store never stalls the
event loop; these tests check that along with cache semantics and the
invalidation the conversation store performs on membership changes.
"""

import asyncio
import time
import unittest.mock

import pytest

from parley import conversations, db
from parley.cache import (
    TTLCache,
    clear_all_caches,
    identity_hash_cache,
    identity_key,
    participant_cache,
    participants_key,
    warm_caches,
)
from parley.metrics import metrics
from parley.testing import make_identities


class TestTTLCache:
    def test_miss_then_hit(self):
        cache = TTLCache(name="test")
        assert cache.get("k") == (False, None)

        cache.set("k", "v")
        assert cache.get("k") == (True, "v")

        stats = metrics.to_dict()["cache"]["test"]
        assert stats["hits"] == 1
        assert stats["misses"] == 1

    def test_cached_none_is_a_hit(self):
        cache = TTLCache(name="test")
        cache.set("k", None)
        assert cache.get("k") == (True, None)

    def test_expiry(self):
        cache = TTLCache(name="test", default_ttl=10)
        cache.set("k", "v")

        with unittest.mock.patch("parley.cache.time.time", return_value=time.time() + 11):
            assert cache.get("k") == (False, None)
        assert cache.stats()["size"] == 0

    def test_zero_ttl_never_expires(self):
        cache = TTLCache(name="test")
        cache.set("k", "v", ttl=0)

        with unittest.mock.patch("parley.cache.time.time", return_value=time.time() + 10**9):
            assert cache.get("k") == (True, "v")

    def test_lru_eviction(self):
        cache = TTLCache(name="test", max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("b") == (False, None)
        assert cache.get("a") == (True, 1)
        assert cache.get("c") == (True, 3)

    def test_delete_and_prefix_invalidation(self):
        cache = TTLCache(name="test")
        cache.set_bulk({"p:1": 1, "p:2": 2, "q:1": 3})

        assert cache.delete("q:1") is True
        assert cache.delete("q:1") is False
        assert cache.invalidate_prefix("p:") == 2
        assert cache.stats()["size"] == 0


class TestParticipantInvalidation:
    def test_membership_change_is_visible(self):
        ids = make_identities(["Alice", "Bob", "Carol", "Dave"])
        group = conversations.create_group(ids["alice"], [ids["bob"], ids["carol"]], name="Team")
        cid = group["conversation_id"]

        assert conversations.participant_ids(cid) == {ids["alice"], ids["bob"], ids["carol"]}
        assert participant_cache.get(participants_key(cid))[0] is True

        conversations.add_participant(ids["alice"], cid, ids["dave"])

        assert participant_cache.get(participants_key(cid))[0] is False
        assert ids["dave"] in conversations.participant_ids(cid)


class TestWarming:
    @pytest.mark.asyncio
    async def test_warm_caches_populates_caches(self):
        ids = make_identities(["Alice", "Bob", "Carol"])
        group = conversations.create_group(ids["alice"], [ids["bob"], ids["carol"]], name="Team")
        clear_all_caches()

        results = await warm_caches()

        assert results["conversations"] >= 1
        assert results["identities"] >= 3
        hit, members = participant_cache.get(participants_key(group["conversation_id"]))
        assert hit
        assert members == frozenset(ids.values())
        hit, secret_hash = identity_hash_cache.get(identity_key(ids["alice"]))
        assert hit
        assert secret_hash

    @pytest.mark.asyncio
    async def test_warm_caches_does_not_block_event_loop(self):
        make_identities(["Alice"])
        clear_all_caches()

        event_loop_responsive = False

        async def check_responsiveness():
            nonlocal event_loop_responsive
            event_loop_responsive = True

        await asyncio.gather(warm_caches(), check_responsiveness())

        assert event_loop_responsive

    @pytest.mark.asyncio
    async def test_warm_caches_timeout_on_slow_connection(self):
        original_get_connection = db.get_connection

        def hanging_get_connection(*args, **kwargs):
            time.sleep(2)
            return original_get_connection(*args, **kwargs)

        with unittest.mock.patch("parley.db.get_connection", side_effect=hanging_get_connection):
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(warm_caches(), timeout=0.2)
