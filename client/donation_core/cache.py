"""
QueryCache — shared, keyed, staleness-tracked records with polling.

Keys are tuples, e.g. ("donation", 7), ("donations", (("status", "PENDING"),)),
("paymentStatus", 7). The reconciliation layer is the only writer; consumers
read values and subscribe to changes.

Reads:        missing or stale entry → one fetch; concurrent readers share it.
Invalidate:   marks stale, orphans any in-flight fetch (its result is dropped),
              and refetches right away when the entry has subscribers.
Evict:        drops the value outright; subscribers are told ``None``.
Polling:      each entry carries a PollPolicy recomputed after every fetch;
              a poll task runs only while the policy is enabled AND the entry
              has at least one subscriber.
"""

import time
import asyncio
from dataclasses import dataclass
from typing import Optional

from .config import log
from .constants import POLL_ERROR_BACKOFF_SEC
from .errors import PortalError
from .events import EventEmitter


@dataclass(frozen=True)
class PollPolicy:
    enabled: bool = False
    interval: Optional[float] = None

    @classmethod
    def every(cls, seconds):
        return cls(enabled=True, interval=seconds)

    @classmethod
    def disabled(cls):
        return cls()


def freeze(mapping):
    """Hashable, order-independent form of a filter mapping."""
    return tuple(sorted((k, v) for k, v in (mapping or {}).items() if v is not None))


class CacheEntry:
    def __init__(self, key, stale_after=0.0):
        self.key = key
        self.value = None
        self.has_value = False
        self.fetched_at = None
        self.stale_after = stale_after
        self.poll = PollPolicy.disabled()
        self.error = None
        self.invalidated = False
        self.generation = 0
        self.events = EventEmitter(f"cache{key!r}")

        self.fetcher = None
        self.policy_fn = None
        self.merge_fn = None
        self._inflight = None
        self._poll_task = None

    @property
    def subscriber_count(self):
        return len(self.events)

    @property
    def is_fetching(self):
        return self._inflight is not None and not self._inflight.done()

    @property
    def is_polling(self):
        return self._poll_task is not None and not self._poll_task.done()

    def is_stale(self, now):
        if not self.has_value or self.invalidated or self.fetched_at is None:
            return True
        return now - self.fetched_at >= self.stale_after

    def __repr__(self):
        return (f"CacheEntry(key={self.key!r}, has_value={self.has_value}, "
                f"subscribers={self.subscriber_count}, poll={self.poll})")


class QueryCache:
    def __init__(self, clock=time.monotonic):
        self._entries = {}
        self._clock = clock

    # ─── Inspection ──────────────────────────────────────────

    def entry(self, key):
        return self._entries.get(key)

    def peek(self, key):
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def keys(self, prefix=()):
        return [k for k in self._entries if k[:len(prefix)] == prefix]

    # ─── Reads ───────────────────────────────────────────────

    async def fetch(self, key, fetcher, *, stale_after, policy=None, merge=None, force=False):
        """
        Return the cached value, fetching when missing/stale (or ``force``).

        fetcher  zero-arg coroutine function producing the value
        policy   value → PollPolicy, recomputed after every fetch
        merge    (cached, fetched) → value to store
        """
        entry = self._entry_for(key)
        entry.fetcher = fetcher
        entry.stale_after = stale_after
        entry.policy_fn = policy
        entry.merge_fn = merge

        if not force and not entry.is_stale(self._clock()):
            return entry.value
        return await self._load(entry)

    async def _load(self, entry):
        if not entry.is_fetching:
            entry._inflight = asyncio.ensure_future(self._run_fetch(entry, entry.generation, entry.fetcher))
            entry._inflight.add_done_callback(_retrieve_exception)
        return await asyncio.shield(entry._inflight)

    async def _run_fetch(self, entry, generation, fetcher):
        try:
            fetched = await fetcher()
        except Exception as e:
            if self._is_current(entry, generation):
                entry.error = e
            raise

        if not self._is_current(entry, generation):
            log.debug("Dropping result for %r: entry changed while the fetch was in flight", entry.key)
            return fetched

        self._store(entry, fetched)
        entry.fetched_at = self._clock()
        entry.invalidated = False
        entry.error = None
        self._recompute_policy(entry)
        return entry.value

    def _is_current(self, entry, generation):
        return self._entries.get(entry.key) is entry and entry.generation == generation

    # ─── Writes (layer only) ─────────────────────────────────

    def put(self, key, value, *, merge=None):
        """Store a value obtained outside a fetch (e.g. a mutation response)."""
        entry = self._entry_for(key)
        self._store(entry, value, merge or entry.merge_fn)
        entry.fetched_at = self._clock()
        entry.invalidated = False
        self._recompute_policy(entry)
        return entry.value

    def update(self, key, fn):
        """Apply ``fn(value)`` to a cached value, if there is one."""
        entry = self._entries.get(key)
        if entry is None or not entry.has_value:
            return None
        new = fn(entry.value)
        if new != entry.value:
            entry.value = new
            entry.events.emit(new)
            self._recompute_policy(entry)
        return entry.value

    def invalidate(self, prefix):
        """Mark every entry under ``prefix`` stale. Returns the keys touched."""
        touched = []
        for key in self.keys(prefix):
            entry = self._entries[key]
            entry.invalidated = True
            entry.generation += 1
            entry._inflight = None      # orphaned; its result will be dropped
            touched.append(key)
            if entry.subscriber_count and entry.fetcher is not None:
                self._refetch_in_background(entry)
        if touched:
            log.debug("Invalidated %d cache entries under %r", len(touched), prefix)
        return touched

    def evict(self, key):
        """Drop the value outright. Subscribers immediately see ``None``."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        had_value = entry.has_value
        entry.generation += 1
        entry._inflight = None
        entry.value = None
        entry.has_value = False
        entry.fetched_at = None
        entry.poll = PollPolicy.disabled()
        self._stop_polling(entry)
        if entry.subscriber_count:
            if had_value:
                entry.events.emit(None)
        else:
            del self._entries[key]
        return True

    def clear(self):
        """Forget everything (e.g. on logout). Subscribers are told ``None``."""
        for key in list(self._entries):
            self.evict(key)

    # ─── Subscriptions ───────────────────────────────────────

    def subscribe(self, key, listener):
        """``listener(value)`` on every change. Returns the unsubscribe callable."""
        entry = self._entry_for(key)
        unsubscribe = entry.events.subscribe(listener)
        self._sync_polling(entry)

        def detach():
            unsubscribe()
            if entry.subscriber_count == 0:
                self._stop_polling(entry)

        return detach

    # ─── Polling ─────────────────────────────────────────────

    def _sync_polling(self, entry):
        wanted = entry.poll.enabled and entry.subscriber_count > 0 and entry.fetcher is not None
        if wanted and not entry.is_polling:
            entry._poll_task = asyncio.ensure_future(self._poll(entry))
            log.info("Polling %r every %ss", entry.key, entry.poll.interval)
        elif not wanted and entry.is_polling and entry._poll_task is not asyncio.current_task():
            self._stop_polling(entry)

    def _recompute_policy(self, entry):
        if entry.policy_fn is not None:
            entry.poll = entry.policy_fn(entry.value)
        self._sync_polling(entry)

    def _stop_polling(self, entry):
        task = entry._poll_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            log.info("Stopped polling %r", entry.key)
        entry._poll_task = None

    async def _poll(self, entry):
        try:
            while entry.poll.enabled and entry.subscriber_count > 0:
                await asyncio.sleep(entry.poll.interval)
                if not (entry.poll.enabled and entry.subscriber_count > 0):
                    break
                if self._entries.get(entry.key) is not entry:
                    break
                try:
                    await self._load(entry)
                except PortalError as e:
                    log.warning("Poll of %r failed: %s", entry.key, e)
                    await asyncio.sleep(POLL_ERROR_BACKOFF_SEC)
                except Exception as e:
                    log.error("Poll of %r crashed: %s", entry.key, e, exc_info=True)
                    await asyncio.sleep(POLL_ERROR_BACKOFF_SEC)
        finally:
            if entry._poll_task is asyncio.current_task():
                entry._poll_task = None
                log.info("Polling %r finished", entry.key)

    # ─── Internals ───────────────────────────────────────────

    def _entry_for(self, key):
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = CacheEntry(key)
        return entry

    def _store(self, entry, fetched, merge=None):
        merge = merge if merge is not None else entry.merge_fn
        if merge is not None and entry.has_value and entry.value is not None and fetched is not None:
            new = merge(entry.value, fetched)
        else:
            new = fetched
        changed = not entry.has_value or new != entry.value
        entry.value = new
        entry.has_value = True
        if changed:
            entry.events.emit(new)

    def _refetch_in_background(self, entry):
        async def _refetch():
            try:
                await self._load(entry)
            except PortalError as e:
                log.warning("Background refetch of %r failed: %s", entry.key, e)
            except Exception as e:
                log.error("Background refetch of %r crashed: %s", entry.key, e, exc_info=True)

        asyncio.ensure_future(_refetch())


def _retrieve_exception(task):
    if not task.cancelled():
        task.exception()
