"""
Read-through cache orchestration with background delta refresh.

Every cached resource family goes through `SyncEngine.get_or_refresh`:

- hit: return the cached value now; if the family supports delta fetches and a
  sync marker exists, refresh in a background task and merge by identity.
- miss: full fetch through the retry executor, index, store, return.
- miss with a failing fetch: serve the expired entry if one existed, else raise.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .cache_store import MISSING, CacheEntry, CacheStore
from .retry import with_retry

logger = logging.getLogger(__name__)

FetchAll = Callable[[], Awaitable[Any]]
FetchDelta = Callable[[str], Awaitable[Any]]
Merge = Callable[[Any, Any], Any]
Index = Callable[[Any], Any]


class SyncError(RuntimeError):
    """A read or mutation failed and no cached data could stand in for it."""

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


@dataclass(frozen=True)
class ReadResult:
    data: Any
    source: str  # "cache", "remote" or "stale"

    @property
    def stale(self) -> bool:
        return self.source == "stale"


def format_marker(timestamp: float) -> str:
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _default_identity(item: Any) -> Any:
    return item["id"]


def merge_by_identity(
    cached: Iterable[Any] | None,
    delta: Iterable[Any] | None,
    identity: Callable[[Any], Any] = _default_identity,
) -> list[Any]:
    """
    Merge `delta` into `cached`. Delta items replace cached items with the same
    identity in place; new delta items are appended in delta order.
    """
    delta_by_id: dict[Any, Any] = {}
    for item in delta or ():
        delta_by_id[identity(item)] = item

    merged: list[Any] = []
    seen: set[Any] = set()
    for item in cached or ():
        item_id = identity(item)
        if item_id in seen:
            continue
        seen.add(item_id)
        merged.append(delta_by_id.get(item_id, item))
    for item_id, item in delta_by_id.items():
        if item_id not in seen:
            seen.add(item_id)
            merged.append(item)
    return merged


class SyncEngine:
    """Owns the per-key sync markers and the background refresh tasks."""

    def __init__(
        self,
        store: CacheStore,
        *,
        retry: Callable[..., Awaitable[Any]] = with_retry,
        clock: Callable[[], float] = time.time,
        dedupe_inflight: bool = False,
    ):
        self._store = store
        self._retry = retry
        self._clock = clock
        self._dedupe_inflight = dedupe_inflight

        self._sync_markers: dict[str, str] = {}
        self._stale_keys: set[str] = set()
        # Expired entries already served once stay available for later failures.
        self._fallbacks: dict[str, CacheEntry] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._delta_tasks: dict[str, asyncio.Task[None]] = {}
        # Bumped whenever a key is refilled or dropped; deltas started under an
        # older generation are discarded.
        self._generations: dict[str, int] = {}
        self._inflight: dict[str, asyncio.Task[Any]] = {}

        self._hits = 0
        self._misses = 0
        self._full_fetches = 0
        self._delta_refreshes = 0
        self._delta_failures = 0
        self._stale_served = 0

    @property
    def store(self) -> CacheStore:
        return self._store

    def get_sync_marker(self, key: str) -> str | None:
        # Persisted entries keep their marker across restarts.
        return self._sync_markers.get(key) or self._store.get_last_sync_marker(key)

    def is_stale(self, key: str) -> bool:
        return key in self._stale_keys

    def _bump(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._generations[key] = self._generations.get(key, 0) + 1

    async def get_or_refresh(
        self,
        key: str,
        ttl: float,
        fetch_all: FetchAll,
        fetch_delta: FetchDelta | None = None,
        merge: Merge | None = None,
        index: Index | None = None,
    ) -> ReadResult:
        stale_entry = self._store.peek(key) or self._fallbacks.get(key)
        cached = self._store.get(key, ttl)

        if cached is not MISSING:
            self._hits += 1
            logger.debug("Cache hit for %s", key)
            if fetch_delta is not None:
                marker = self.get_sync_marker(key)
                if marker:
                    self._schedule_delta(key, marker, fetch_delta, merge or merge_by_identity, index)
            return ReadResult(cached, "cache")

        self._misses += 1
        try:
            data = await self._fetch_full(key, fetch_all, index)
        except Exception as exc:
            if stale_entry is None:
                raise SyncError(f"fetch {key}", exc) from exc
            self._fallbacks[key] = stale_entry
            self._stale_keys.add(key)
            self._stale_served += 1
            logger.warning("Serving stale cache for %s after fetch failure: %s", key, exc)
            return ReadResult(stale_entry.data, "stale")
        return ReadResult(data, "remote")

    async def _fetch_full(self, key: str, fetch_all: FetchAll, index: Index | None) -> Any:
        if not self._dedupe_inflight:
            return await self._do_fetch_full(key, fetch_all, index)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._do_fetch_full(key, fetch_all, index))
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget_inflight(key, done))
        else:
            logger.debug("Joining in-flight fetch for %s", key)
        return await asyncio.shield(task)

    def _forget_inflight(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _do_fetch_full(self, key: str, fetch_all: FetchAll, index: Index | None) -> Any:
        started = self._clock()
        data = await self._retry(fetch_all, description=key)
        self._full_fetches += 1
        if index is not None:
            data = index(data)
        marker = format_marker(started)
        self._bump([key])
        self._store.set(key, data, marker)
        self._sync_markers[key] = marker
        self._stale_keys.discard(key)
        self._fallbacks.pop(key, None)
        return data

    def _schedule_delta(
        self,
        key: str,
        marker: str,
        fetch_delta: FetchDelta,
        merge: Merge,
        index: Index | None,
    ) -> None:
        running = self._delta_tasks.get(key)
        if running is not None and not running.done():
            return
        task = asyncio.create_task(
            self._run_delta(
                key, marker, self._generations.get(key, 0), fetch_delta, merge, index
            ),
            name=f"linear-sync-delta:{key}",
        )
        self._delta_tasks[key] = task
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        for key, running in list(self._delta_tasks.items()):
            if running is task:
                del self._delta_tasks[key]

    async def _run_delta(
        self,
        key: str,
        marker: str,
        generation: int,
        fetch_delta: FetchDelta,
        merge: Merge,
        index: Index | None,
    ) -> None:
        started = self._clock()
        try:
            delta = await self._retry(lambda: fetch_delta(marker), description=f"delta {key}")
            entry = self._store.peek(key)
            if entry is None or self._generations.get(key, 0) != generation:
                logger.debug("Dropping delta for %s; entry was replaced during refresh", key)
                return
            merged = merge(entry.data, delta)
            if index is not None:
                merged = index(merged)
            new_marker = format_marker(started)
            self._store.set(key, merged, new_marker)
            self._sync_markers[key] = new_marker
            self._stale_keys.discard(key)
            self._delta_refreshes += 1
            logger.info("Delta refresh for %s merged %d changed items", key, len(delta or ()))
        except Exception:
            self._delta_failures += 1
            logger.exception("Background delta refresh failed for %s", key)

    async def mutate(
        self,
        description: str,
        operation: Callable[[], Awaitable[Any]],
        *,
        invalidate_prefixes: Iterable[str] = (),
        invalidate_keys: Iterable[str] = (),
    ) -> Any:
        """Run a remote mutation, then invalidate. Nothing is invalidated on failure."""
        try:
            result = await self._retry(operation, description=description)
        except Exception as exc:
            raise SyncError(description, exc) from exc
        for prefix in invalidate_prefixes:
            self.invalidate(prefix)
        for key in invalidate_keys:
            self.delete(key)
        return result

    def invalidate(self, prefix: str) -> list[str]:
        removed = self._store.invalidate_by_prefix(prefix)
        self._bump({*removed, *(k for k in self._delta_tasks if k.startswith(prefix))})
        for key in [k for k in self._sync_markers if k.startswith(prefix)]:
            del self._sync_markers[key]
        self._stale_keys = {k for k in self._stale_keys if not k.startswith(prefix)}
        for key in [k for k in self._fallbacks if k.startswith(prefix)]:
            del self._fallbacks[key]
        if removed:
            logger.info("Invalidated %d cache entries with prefix %r", len(removed), prefix)
        return removed

    def delete(self, key: str) -> None:
        self._store.delete(key)
        self._bump([key])
        self._sync_markers.pop(key, None)
        self._stale_keys.discard(key)
        self._fallbacks.pop(key, None)

    def clear(self) -> None:
        self._bump({*self._store.keys(), *self._delta_tasks})
        self._store.clear()
        self._sync_markers.clear()
        self._stale_keys.clear()
        self._fallbacks.clear()
        logger.info("Cache cleared")

    async def drain(self) -> None:
        """Wait for every background refresh, including ones scheduled meanwhile."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def get_health(self) -> dict[str, Any]:
        return {
            "hits": self._hits,
            "misses": self._misses,
            "fullFetches": self._full_fetches,
            "deltaRefreshes": self._delta_refreshes,
            "deltaFailures": self._delta_failures,
            "staleServed": self._stale_served,
            "staleKeys": sorted(self._stale_keys),
            "pendingBackgroundTasks": len(self._background),
            "syncMarkers": len(self._sync_markers),
            "dedupeInflight": self._dedupe_inflight,
            "store": self._store.get_health(),
        }
