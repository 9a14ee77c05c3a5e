"""
Tests for the durable index and the active handle cache.
"""

import asyncio

import pytest

from btpk.backends.local_index import LOAD, SEED, ActiveHandle, ActiveHandleCache, LocalIndex, index_key
from btpk.core.errors import InvalidArgument, NotFound
from btpk.core.states import ContentState
from btpk.p2p.swarm import SwarmHandle


@pytest.fixture
def index(tmp_path):
    return LocalIndex(tmp_path / "index.db")


def make_active(tmp_path, logical_id="a" * 40):
    handle = SwarmHandle(infohash="b" * 40, name="bundle", folder=tmp_path)
    return ActiveHandle(logical_id=logical_id, kind="infohash", own=True, folder=tmp_path, handle=handle)


class TestLocalIndex:
    """Durable key-value storage."""

    def test_get_put_delete(self, index):
        assert index.get(SEED, "address", "abc") is None

        index.put(SEED, "address", "abc", {"dir": "x1", "infohash": "c" * 40})
        assert index.get(SEED, "address", "abc") == {"dir": "x1", "infohash": "c" * 40}

        assert index.delete(SEED, "address", "abc")
        assert not index.delete(SEED, "address", "abc")
        assert index.get(SEED, "address", "abc") is None

    def test_overwrite(self, index):
        index.put(LOAD, "infohash", "abc", {"dir": "x1"})
        index.put(LOAD, "infohash", "abc", {"dir": "x2"})

        assert index.get(LOAD, "infohash", "abc") == {"dir": "x2"}
        assert index.count() == 1

    def test_key_layout(self):
        assert index_key(SEED, "address", "abc") == "seed-address-abc"

    @pytest.mark.parametrize("namespace,kind", [("other", "address"), (SEED, "torrent")])
    def test_rejects_unknown_key_parts(self, index, namespace, kind):
        with pytest.raises(InvalidArgument):
            index.put(namespace, kind, "abc", {})

    def test_namespaces_are_isolated(self, index):
        index.put(SEED, "address", "abc", {"n": "seed"})
        index.put(LOAD, "address", "abc", {"n": "load"})

        assert index.get(SEED, "address", "abc") == {"n": "seed"}
        assert index.get(LOAD, "address", "abc") == {"n": "load"}

    def test_scan_is_ordered_and_scoped(self, index):
        index.put(SEED, "address", "ccc", {"n": 3})
        index.put(SEED, "address", "aaa", {"n": 1})
        index.put(SEED, "address", "bbb", {"n": 2})
        index.put(SEED, "infohash", "aaa", {"n": 9})
        index.put(LOAD, "address", "aaa", {"n": 8})

        assert index.scan(SEED, "address") == [("aaa", {"n": 1}), ("bbb", {"n": 2}), ("ccc", {"n": 3})]
        assert index.scan(LOAD, "message") == []

    def test_scan_namespace(self, index):
        index.put(SEED, "message", "m1", {})
        index.put(SEED, "address", "a1", {})
        index.put(LOAD, "infohash", "i1", {})

        assert [(kind, i) for kind, i, _ in index.scan_namespace(SEED)] == [("address", "a1"), ("message", "m1")]

    def test_replace_retires_old_entry(self, index):
        index.put(LOAD, "address", "abc", {"dir": "x1"})

        index.replace((LOAD, "address", "abc"), (SEED, "address", "abc"), {"dir": "x2"})

        assert index.get(LOAD, "address", "abc") is None
        assert index.get(SEED, "address", "abc") == {"dir": "x2"}

    def test_replace_same_key(self, index):
        index.put(SEED, "address", "abc", {"dir": "x1"})
        index.replace((SEED, "address", "abc"), (SEED, "address", "abc"), {"dir": "x2"})

        assert index.get(SEED, "address", "abc") == {"dir": "x2"}

    def test_nested_and_binary_values(self, index):
        value = {"record": {"sequence": 3, "salt": b"\x00\x01"}, "stuff": {"name": "site"}, "private": False}
        index.put(SEED, "address", "abc", value)

        assert index.get(SEED, "address", "abc") == value

    def test_persists_across_instances(self, tmp_path):
        LocalIndex(tmp_path / "index.db").put(SEED, "address", "abc", {"dir": "x1"})

        assert LocalIndex(tmp_path / "index.db").get(SEED, "address", "abc") == {"dir": "x1"}


class TestActiveHandleCache:
    """Per-id coalescing and claims."""

    def test_put_get_pop(self, tmp_path):
        cache = ActiveHandleCache()
        active = make_active(tmp_path)

        cache.put(active)
        assert cache.get(active.logical_id) is active
        assert cache.state_of(active.logical_id) is ContentState.ACTIVE
        assert cache.active_handles() == [active]

        assert cache.pop(active.logical_id) is active
        assert cache.get(active.logical_id) is None

    def test_absent_state_clears(self):
        cache = ActiveHandleCache()
        cache.set_state("x", ContentState.RESOLVING)
        assert cache.state_of("x") is ContentState.RESOLVING

        cache.set_state("x", ContentState.ABSENT)
        assert cache.state_of("x") is ContentState.ABSENT

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_run(self, tmp_path):
        cache = ActiveHandleCache()
        runs = 0

        async def factory():
            nonlocal runs
            runs += 1
            await asyncio.sleep(0.05)
            return make_active(tmp_path)

        results = await asyncio.gather(*(cache.coalesce("a" * 40, factory) for _ in range(5)))

        assert runs == 1
        assert all(result is results[0] for result in results)
        assert cache.get("a" * 40) is results[0]
        assert cache.pending("a" * 40) is None

    @pytest.mark.asyncio
    async def test_failure_reaches_every_caller(self):
        cache = ActiveHandleCache()

        async def factory():
            await asyncio.sleep(0.01)
            raise NotFound("nothing there")

        results = await asyncio.gather(
            cache.coalesce("x", factory),
            cache.coalesce("x", factory),
            return_exceptions=True
        )

        assert all(isinstance(result, NotFound) for result in results)
        assert not cache.is_busy("x")

    @pytest.mark.asyncio
    async def test_abandoned_caller_does_not_cancel_load(self, tmp_path):
        cache = ActiveHandleCache()
        finished = asyncio.Event()

        async def factory():
            await asyncio.sleep(0.05)
            finished.set()
            return make_active(tmp_path)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(cache.coalesce("a" * 40, factory), timeout=0.01)

        assert cache.is_busy("a" * 40)
        await asyncio.wait_for(finished.wait(), timeout=1)
        await asyncio.sleep(0)

        assert cache.get("a" * 40) is not None
        assert not cache.is_busy("a" * 40)

    @pytest.mark.asyncio
    async def test_claims_serialize_and_mark_busy(self):
        cache = ActiveHandleCache()
        order = []

        async def mutate(tag):
            async with cache.claim("x"):
                order.append(f"{tag}-start")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-end")

        first = asyncio.create_task(mutate("one"))
        await asyncio.sleep(0)
        assert cache.is_busy("x")

        await asyncio.gather(first, mutate("two"))

        assert order == ["one-start", "one-end", "two-start", "two-end"]
        assert not cache.is_busy("x")

    @pytest.mark.asyncio
    async def test_cancel_pending(self):
        cache = ActiveHandleCache()

        async def factory():
            await asyncio.sleep(10)

        waiter = asyncio.create_task(cache.coalesce("x", factory))
        await asyncio.sleep(0)

        tasks = cache.cancel_pending()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert len(results) == 1
        assert isinstance(results[0], asyncio.CancelledError)

        with pytest.raises(asyncio.CancelledError):
            await waiter

    @pytest.mark.asyncio
    async def test_detach_cancels_and_forgets(self):
        cache = ActiveHandleCache()

        async def factory():
            await asyncio.sleep(10)

        waiter = asyncio.create_task(cache.coalesce("x", factory))
        await asyncio.sleep(0)

        task = cache.detach("x")
        assert cache.pending("x") is None
        assert cache.detach("x") is None

        results = await asyncio.gather(task, return_exceptions=True)
        assert isinstance(results[0], asyncio.CancelledError)
        assert not cache.is_busy("x")

        with pytest.raises(asyncio.CancelledError):
            await waiter

    @pytest.mark.asyncio
    async def test_load_after_detach_starts_fresh(self, tmp_path):
        cache = ActiveHandleCache()
        runs = 0

        async def factory():
            nonlocal runs
            runs += 1
            if runs == 1:
                await asyncio.sleep(10)
            return make_active(tmp_path)

        first = asyncio.create_task(cache.coalesce("a" * 40, factory))
        await asyncio.sleep(0.01)
        old = cache.detach("a" * 40)

        active = await cache.coalesce("a" * 40, factory)
        await asyncio.gather(old, first, return_exceptions=True)

        assert runs == 2
        assert cache.get("a" * 40) is active
        assert cache.pending("a" * 40) is None

    @pytest.mark.asyncio
    async def test_claim_is_reentrant_within_a_task(self):
        cache = ActiveHandleCache()

        async with cache.claim("x"):
            async with cache.claim("x"):
                assert cache.is_busy("x")
            assert cache.is_busy("x")

        assert not cache.is_busy("x")
