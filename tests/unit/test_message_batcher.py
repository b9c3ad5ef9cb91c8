"""
Unit tests for message_batcher.py - per-contact debounce with leader election.

Tests coverage:
- Disabled debounce returns every message immediately
- Rapid messages coalesce into one batch; only the first caller leads
- Every message restarts the quiet period
- Contacts are debounced independently
- Persistence: in-memory and Redis stores, recovery after a crash
- flush_all() on shutdown
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from agent.batching.message_batcher import (
    BATCH_KEY_PREFIX,
    Batch,
    InMemoryDebounceStore,
    MessageDebouncer,
    RedisDebounceStore,
)

QUIET = 0.05


# ============================================================================
# Batch
# ============================================================================


class TestBatch:
    def test_combined_text_skips_blank_messages(self):
        batch = Batch(contact_id="c1", messages=["hi", "  ", "", "here's the photo "])
        assert batch.combined_text == "hi\n\nhere's the photo"

    def test_latest_payload(self):
        assert Batch(contact_id="c1").latest_payload == {}
        batch = Batch(contact_id="c1", payloads=[{"n": 1}, {"n": 2}])
        assert batch.latest_payload == {"n": 2}

    def test_dict_round_trip_keeps_received_at(self):
        batch = Batch(contact_id="c1", messages=["a"], payloads=[{}])
        assert Batch.from_dict(batch.to_dict()) == batch


# ============================================================================
# Debouncer
# ============================================================================


class TestMessageDebouncer:
    @pytest.mark.asyncio
    async def test_disabled_returns_immediately(self):
        debouncer = MessageDebouncer(quiet_seconds=0)
        batch = await debouncer.submit("c1", "hello", {"a": 1})

        assert batch.messages == ["hello"]
        assert batch.latest_payload == {"a": 1}
        assert debouncer.pending_count == 0

    @pytest.mark.asyncio
    async def test_rapid_messages_coalesce_first_caller_leads(self):
        debouncer = MessageDebouncer(quiet_seconds=QUIET)

        async def send(text, delay):
            await asyncio.sleep(delay)
            return await debouncer.submit("c1", text, {"text": text})

        results = await asyncio.gather(send("one", 0), send("two", 0.01), send("three", 0.02))

        assert results[1] is None and results[2] is None
        leader = results[0]
        assert leader.messages == ["one", "two", "three"]
        assert leader.latest_payload == {"text": "three"}
        assert debouncer.pending_count == 0

    @pytest.mark.asyncio
    async def test_each_message_restarts_quiet_period(self):
        debouncer = MessageDebouncer(quiet_seconds=0.2)
        leader = asyncio.create_task(debouncer.submit("c1", "one"))

        # keep talking for longer than one quiet period in total
        followers = []
        for text in ("two", "three", "four"):
            await asyncio.sleep(0.1)
            assert not leader.done()
            followers.append(asyncio.create_task(debouncer.submit("c1", text)))

        batch = await leader
        assert batch.messages == ["one", "two", "three", "four"]
        assert await asyncio.gather(*followers) == [None, None, None]

    @pytest.mark.asyncio
    async def test_contacts_are_independent(self):
        debouncer = MessageDebouncer(quiet_seconds=QUIET)

        first, second = await asyncio.gather(
            debouncer.submit("c1", "hi"), debouncer.submit("c2", "hola")
        )

        assert first.contact_id == "c1"
        assert second.contact_id == "c2"

    @pytest.mark.asyncio
    async def test_batch_size_while_pending(self):
        debouncer = MessageDebouncer(quiet_seconds=QUIET)
        task = asyncio.create_task(debouncer.submit("c1", "one"))
        await asyncio.sleep(0)

        assert debouncer.get_batch_size("c1") == 1
        assert debouncer.get_batch_size("other") == 0
        await task

    @pytest.mark.asyncio
    async def test_flush_all_releases_leaders(self):
        debouncer = MessageDebouncer(quiet_seconds=60)
        tasks = [
            asyncio.create_task(debouncer.submit("c1", "one")),
            asyncio.create_task(debouncer.submit("c1", "two")),
            asyncio.create_task(debouncer.submit("c2", "three")),
        ]
        await asyncio.sleep(0)

        released = await debouncer.flush_all()
        results = await asyncio.gather(*tasks)

        assert released == 2
        assert results[0].messages == ["one", "two"]
        assert results[1] is None
        assert results[2].messages == ["three"]


# ============================================================================
# Persistence
# ============================================================================


class TestPersistence:
    @pytest.mark.asyncio
    async def test_pending_batch_is_persisted_until_cleared(self):
        store = InMemoryDebounceStore()
        debouncer = MessageDebouncer(quiet_seconds=QUIET, store=store)

        task = asyncio.create_task(debouncer.submit("c1", "one", {"n": 1}))
        await asyncio.sleep(0)
        assert store.batches["c1"]["messages"] == ["one"]

        await task
        assert "c1" in store.batches
        await debouncer.clear_persisted("c1")
        assert store.batches == {}

    @pytest.mark.asyncio
    async def test_store_failure_does_not_block(self):
        store = AsyncMock()
        store.save.side_effect = ConnectionError("redis down")
        debouncer = MessageDebouncer(quiet_seconds=QUIET, store=store)

        batch = await debouncer.submit("c1", "one")

        assert batch.messages == ["one"]

    @pytest.mark.asyncio
    async def test_recover_processes_and_clears(self):
        store = InMemoryDebounceStore()
        await store.save(Batch(contact_id="c1", messages=["lost"]))
        await store.save(Batch(contact_id="c2", messages=["also lost"]))
        debouncer = MessageDebouncer(quiet_seconds=QUIET, store=store)

        seen = []

        async def callback(batch):
            if batch.contact_id == "c2":
                raise RuntimeError("crm down")
            seen.append(batch.combined_text)

        recovered = await debouncer.recover_pending_batches(callback)

        assert recovered == 1
        assert seen == ["lost"]
        assert store.batches == {}

    @pytest.mark.asyncio
    async def test_recover_without_store(self):
        debouncer = MessageDebouncer(quiet_seconds=QUIET)
        assert await debouncer.recover_pending_batches(AsyncMock()) == 0


class TestRedisDebounceStore:
    @pytest.mark.asyncio
    async def test_save_sets_ttl(self):
        redis = AsyncMock()
        store = RedisDebounceStore(redis, ttl_seconds=120)

        await store.save(Batch(contact_id="c1", messages=["hi"]))

        key, raw = redis.set.call_args.args
        assert key == f"{BATCH_KEY_PREFIX}c1"
        assert json.loads(raw)["messages"] == ["hi"]
        assert redis.set.call_args.kwargs == {"ex": 120}

    @pytest.mark.asyncio
    async def test_load_all_scans_and_skips_garbage(self):
        good = Batch(contact_id="c1", messages=["hi"])
        values = {
            f"{BATCH_KEY_PREFIX}c1": json.dumps(good.to_dict()),
            f"{BATCH_KEY_PREFIX}c2": "{broken",
            f"{BATCH_KEY_PREFIX}c3": None,
        }
        redis = AsyncMock()
        redis.scan.side_effect = [
            (7, [f"{BATCH_KEY_PREFIX}c1"]),
            (0, [f"{BATCH_KEY_PREFIX}c2", f"{BATCH_KEY_PREFIX}c3"]),
        ]
        redis.get.side_effect = lambda key: values[key]

        batches = await RedisDebounceStore(redis).load_all()

        assert batches == [good]
        assert redis.scan.call_count == 2
