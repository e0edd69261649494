"""QueryCache: shared fetches, staleness, invalidation, eviction, polling."""

import asyncio

import pytest

from donation_core.cache import PollPolicy, QueryCache, freeze
from donation_core.errors import NetworkUnavailable


KEY = ("donation", "7")


class Counter:
    """Fetcher that counts calls and returns whatever ``values`` yields next."""

    def __init__(self, *values, gate=None):
        self.values = list(values)
        self.calls = 0
        self.gate = gate

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return self.values.pop(0) if len(self.values) > 1 else self.values[0]


async def wait_for(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def test_freeze_ignores_order_and_none():
    assert freeze({"b": 2, "a": 1, "c": None}) == freeze({"a": 1, "b": 2})
    assert freeze(None) == ()


class TestReads:
    @pytest.mark.asyncio
    async def test_concurrent_readers_share_one_fetch(self):
        cache = QueryCache()
        gate = asyncio.Event()
        fetcher = Counter("v1", gate=gate)

        readers = [asyncio.ensure_future(cache.fetch(KEY, fetcher, stale_after=60)) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()

        assert await asyncio.gather(*readers) == ["v1"] * 3
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_fresh_value_is_served_from_cache(self):
        now = [100.0]
        cache = QueryCache(clock=lambda: now[0])
        fetcher = Counter("v1", "v2")

        assert await cache.fetch(KEY, fetcher, stale_after=10) == "v1"
        now[0] = 105.0
        assert await cache.fetch(KEY, fetcher, stale_after=10) == "v1"
        assert fetcher.calls == 1

        now[0] = 111.0
        assert await cache.fetch(KEY, fetcher, stale_after=10) == "v2"
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_force_bypasses_freshness(self):
        cache = QueryCache()
        fetcher = Counter("v1", "v2")
        await cache.fetch(KEY, fetcher, stale_after=60)
        assert await cache.fetch(KEY, fetcher, stale_after=60, force=True) == "v2"

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_previous_value(self):
        cache = QueryCache()
        await cache.fetch(KEY, Counter("v1"), stale_after=0)

        async def failing():
            raise NetworkUnavailable()

        with pytest.raises(NetworkUnavailable):
            await cache.fetch(KEY, failing, stale_after=0)
        assert cache.peek(KEY) == "v1"
        assert isinstance(cache.entry(KEY).error, NetworkUnavailable)

    @pytest.mark.asyncio
    async def test_merge_sees_cached_value(self):
        cache = QueryCache()
        await cache.fetch(KEY, Counter(1), stale_after=0, merge=max)
        assert await cache.fetch(KEY, Counter(0), stale_after=0, merge=max) == 1


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_marks_stale(self):
        cache = QueryCache()
        fetcher = Counter("v1", "v2")
        await cache.fetch(KEY, fetcher, stale_after=60)

        assert cache.invalidate(("donation",)) == [KEY]
        assert cache.entry(KEY).invalidated
        assert await cache.fetch(KEY, fetcher, stale_after=60) == "v2"

    @pytest.mark.asyncio
    async def test_prefix_only_touches_matching_keys(self):
        cache = QueryCache()
        await cache.fetch(("donations", ()), Counter("list"), stale_after=60)
        await cache.fetch(KEY, Counter("item"), stale_after=60)

        cache.invalidate(("donations",))

        assert cache.entry(("donations", ())).invalidated
        assert not cache.entry(KEY).invalidated

    @pytest.mark.asyncio
    async def test_result_of_orphaned_fetch_is_dropped(self):
        cache = QueryCache()
        gate = asyncio.Event()
        old = asyncio.ensure_future(cache.fetch(KEY, Counter("old", gate=gate), stale_after=60))
        await asyncio.sleep(0)

        cache.invalidate(KEY)
        assert await cache.fetch(KEY, Counter("new"), stale_after=60) == "new"

        gate.set()
        await old
        assert cache.peek(KEY) == "new"

    @pytest.mark.asyncio
    async def test_subscribed_entry_refetches_immediately(self):
        cache = QueryCache()
        fetcher = Counter("v1", "v2")
        seen = []
        cache.subscribe(KEY, seen.append)
        await cache.fetch(KEY, fetcher, stale_after=60)

        cache.invalidate(KEY)
        await wait_for(lambda: fetcher.calls == 2)
        await wait_for(lambda: cache.peek(KEY) == "v2")

        assert seen == ["v1", "v2"]


class TestEviction:
    @pytest.mark.asyncio
    async def test_subscribers_see_none(self):
        cache = QueryCache()
        seen = []
        cache.subscribe(KEY, seen.append)
        await cache.fetch(KEY, Counter("v1"), stale_after=60)

        cache.evict(KEY)

        assert seen == ["v1", None]
        assert cache.peek(KEY) is None
        assert not cache.entry(KEY).has_value

    @pytest.mark.asyncio
    async def test_unsubscribed_entry_is_dropped(self):
        cache = QueryCache()
        await cache.fetch(KEY, Counter("v1"), stale_after=60)
        assert cache.evict(KEY) is True
        assert cache.entry(KEY) is None
        assert cache.evict(KEY) is False

    @pytest.mark.asyncio
    async def test_clear_notifies_everyone(self):
        cache = QueryCache()
        seen = []
        cache.subscribe(("a",), seen.append)
        cache.subscribe(("b",), seen.append)
        await cache.fetch(("a",), Counter(1), stale_after=60)
        await cache.fetch(("b",), Counter(2), stale_after=60)

        cache.clear()

        assert seen.count(None) == 2


class TestPolling:
    @pytest.mark.asyncio
    async def test_polls_only_while_subscribed(self):
        cache = QueryCache()
        fetcher = Counter("v")
        policy = lambda _value: PollPolicy.every(0.01)

        await cache.fetch(KEY, fetcher, stale_after=60, policy=policy)
        entry = cache.entry(KEY)
        assert entry.poll.enabled
        assert not entry.is_polling

        unsubscribe = cache.subscribe(KEY, lambda _v: None)
        assert entry.is_polling
        await wait_for(lambda: fetcher.calls >= 3)

        unsubscribe()
        assert not entry.is_polling
        calls = fetcher.calls
        await asyncio.sleep(0.05)
        assert fetcher.calls == calls

    @pytest.mark.asyncio
    async def test_policy_recomputed_after_each_fetch(self):
        cache = QueryCache()
        fetcher = Counter("pending", "pending", "done")
        policy = lambda value: PollPolicy.every(0.01) if value == "pending" else PollPolicy.disabled()
        cache.subscribe(KEY, lambda _v: None)

        await cache.fetch(KEY, fetcher, stale_after=60, policy=policy)
        entry = cache.entry(KEY)
        assert entry.is_polling

        await wait_for(lambda: cache.peek(KEY) == "done")
        await wait_for(lambda: not entry.is_polling)
        assert not entry.poll.enabled
        assert fetcher.calls == 3

    @pytest.mark.asyncio
    async def test_poll_survives_fetch_errors(self, monkeypatch):
        monkeypatch.setattr("donation_core.cache.POLL_ERROR_BACKOFF_SEC", 0.01)
        cache = QueryCache()
        outcomes = ["initial", NetworkUnavailable(), "recovered"]

        async def flaky():
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        cache.subscribe(KEY, lambda _v: None)
        await cache.fetch(KEY, flaky, stale_after=60, policy=lambda _v: PollPolicy.every(0.01))
        entry = cache.entry(KEY)

        await wait_for(lambda: cache.peek(KEY) == "recovered")
        assert entry.error is None
        cache.evict(KEY)
        assert not entry.is_polling
