from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

from .errors import StaleDataWarning, ValidationError
from .filters import NormalizedFilters, normalize_filters
from .models import CacheEntry, CacheProvenance
from .service import MetricsService

logger = logging.getLogger(__name__)


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat()


@dataclass(frozen=True)
class CachedOverview:
    payload: Dict[str, Any]
    provenance: CacheProvenance
    computed_at: float
    fingerprint: str
    warning: Optional[StaleDataWarning] = None

    def as_dict(self) -> Dict[str, Any]:
        body = dict(self.payload)
        body["_meta"] = {
            "source": self.provenance,
            "computedAt": _iso(self.computed_at),
            "cacheKey": self.fingerprint,
            "warning": str(self.warning) if self.warning else None,
        }
        return body


class MetricsCache:
    """
    TTL cache in front of :class:`MetricsService`, keyed by the canonical
    filter fingerprint.

    One instance is created at startup and shared by the request handlers.
    Concurrent misses on the same key await a single computation. When a
    recomputation fails the last good payload is served as ``stale-fallback``.
    """

    def __init__(
        self,
        service: MetricsService,
        ttl_seconds: float = 60.0,
        min_ttl_seconds: float = 10.0,
        common_filters: Optional[Sequence[Mapping[str, Any]]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds < min_ttl_seconds:
            raise ValidationError(f"TTL must be at least {min_ttl_seconds} seconds.")
        self.service = service
        self.ttl_seconds = float(ttl_seconds)
        self.min_ttl_seconds = float(min_ttl_seconds)
        self.common_filters: List[Mapping[str, Any]] = list(common_filters or [])
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._generation = 0
        self._refreshing = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()

    async def get_or_compute(self, filters: NormalizedFilters) -> CachedOverview:
        key = filters.cache_fingerprint()
        entry = self._entries.get(key)
        if entry is not None and self._clock() - entry.computed_at < self.ttl_seconds:
            entry.hits += 1
            return CachedOverview(
                payload=entry.payload,
                provenance="cache-hit",
                computed_at=entry.computed_at,
                fingerprint=key,
            )
        return await self._recompute(key, filters)

    async def force_refresh(self, filters: NormalizedFilters) -> CachedOverview:
        return await self._recompute(filters.cache_fingerprint(), filters)

    async def _recompute(self, key: str, filters: NormalizedFilters) -> CachedOverview:
        try:
            entry = await self._compute_shared(key, filters)
        except ValidationError:
            raise
        except Exception as exc:
            stale = self._entries.get(key)
            if stale is None:
                raise
            warning = StaleDataWarning(
                f"Serving cached metrics from {_iso(stale.computed_at)}; recomputation failed: {exc}"
            )
            logger.warning("Stale fallback for %s: %s", key, warning)
            return CachedOverview(
                payload=stale.payload,
                provenance="stale-fallback",
                computed_at=stale.computed_at,
                fingerprint=key,
                warning=warning,
            )
        return CachedOverview(
            payload=entry.payload,
            provenance="computed",
            computed_at=entry.computed_at,
            fingerprint=key,
        )

    async def _compute_shared(self, key: str, filters: NormalizedFilters) -> CacheEntry:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._compute(key, filters))
            self._inflight[key] = task
            task.add_done_callback(lambda _: self._inflight.pop(key, None))
        # Shielded so a caller timing out does not cancel the shared computation.
        return await asyncio.shield(task)

    async def _compute(self, key: str, filters: NormalizedFilters) -> CacheEntry:
        logger.info("Computing metrics for %s", key)
        generation = self._generation
        result = await self.service.get_overview(filters)
        previous = self._entries.get(key)
        entry = CacheEntry(
            fingerprint=key,
            payload=result.as_dict(),
            computed_at=self._clock(),
            hits=previous.hits if previous else 0,
        )
        if generation == self._generation:
            self._entries[key] = entry
        else:
            logger.debug("Cache cleared while computing %s; result not stored", key)
        return entry

    # Background refresh

    async def refresh_common(self) -> int:
        """
        Recompute every common filter set. Returns how many succeeded, or 0
        when another cycle is still running.
        """

        if self._refreshing:
            logger.info("Metrics refresh already running; skipping this cycle")
            return 0
        self._refreshing = True
        refreshed = 0
        try:
            for raw in self.common_filters:
                try:
                    filters = normalize_filters(raw)
                    await self._recompute(filters.cache_fingerprint(), filters)
                    refreshed += 1
                except Exception as exc:
                    logger.warning("Background refresh failed for %s: %s", dict(raw), exc)
            logger.info("Metrics refresh finished: %d/%d filter sets", refreshed, len(self.common_filters))
            return refreshed
        finally:
            self._refreshing = False

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ttl_seconds)
            cycle = asyncio.create_task(self.refresh_common())
            self._cycle_tasks.add(cycle)
            cycle.add_done_callback(self._cycle_tasks.discard)

    def start(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())
            logger.info("Metrics cache refresh started (every %ss)", self.ttl_seconds)

    async def stop(self) -> None:
        tasks = list(self._cycle_tasks)
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
            self._refresh_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Metrics cache refresh stopped")

    @property
    def running(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    # Admin

    def clear(self) -> int:
        cleared = len(self._entries)
        self._entries.clear()
        self._generation += 1
        logger.info("Metrics cache cleared (%d entries)", cleared)
        return cleared

    def set_ttl(self, seconds: float) -> None:
        if seconds < self.min_ttl_seconds:
            raise ValidationError(f"Interval must be at least {self.min_ttl_seconds:g} seconds.")
        self.ttl_seconds = float(seconds)
        logger.info("Metrics cache TTL set to %ss", self.ttl_seconds)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "size": len(self._entries),
            "ttlSeconds": self.ttl_seconds,
            "isUpdating": self._refreshing,
            "entries": {
                key: {
                    "computedAt": _iso(entry.computed_at),
                    "ageSeconds": round(now - entry.computed_at, 3),
                    "hits": entry.hits,
                }
                for key, entry in sorted(self._entries.items())
            },
        }
