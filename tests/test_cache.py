from __future__ import annotations

import asyncio
from datetime import date
from typing import Any, Dict, List, Optional

import pytest

from yerba_insights.cache import MetricsCache
from yerba_insights.errors import StaleDataWarning, UpstreamQueryError, ValidationError
from yerba_insights.filters import NormalizedFilters, normalize_filters

TODAY = date(2024, 6, 12)


class _Overview:
    def __init__(self, payload: Dict[str, Any]) -> None:
        self.payload = payload

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.payload)


class FakeService:
    """Counts calls; can be told to fail or to block until released."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def get_overview(self, filters: NormalizedFilters) -> _Overview:
        self.calls.append(filters.cache_fingerprint())
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return _Overview({"activeUsers": len(self.calls)})


def _filters(raw=None) -> NormalizedFilters:
    return normalize_filters(raw or {}, today=TODAY)


@pytest.fixture()
def service() -> FakeService:
    return FakeService()


@pytest.fixture()
def cache(service, clock) -> MetricsCache:
    return MetricsCache(service, ttl_seconds=60, min_ttl_seconds=10, clock=clock)


class TestGetOrCompute:
    @pytest.mark.asyncio
    async def test_second_read_within_ttl_is_a_hit(self, cache, service, clock) -> None:
        first = await cache.get_or_compute(_filters())
        clock.advance(30)
        second = await cache.get_or_compute(_filters({"timePeriod": "mes"}))

        assert first.provenance == "computed"
        assert second.provenance == "cache-hit"
        assert second.payload == first.payload
        assert len(service.calls) == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_recomputed(self, cache, service, clock) -> None:
        await cache.get_or_compute(_filters())
        clock.advance(61)
        result = await cache.get_or_compute(_filters())

        assert result.provenance == "computed"
        assert result.payload == {"activeUsers": 2}

    @pytest.mark.asyncio
    async def test_failed_recompute_serves_stale_entry(self, cache, service, clock) -> None:
        await cache.get_or_compute(_filters())
        clock.advance(120)
        service.error = UpstreamQueryError("store down")

        result = await cache.get_or_compute(_filters())

        assert result.provenance == "stale-fallback"
        assert result.payload == {"activeUsers": 1}
        assert isinstance(result.warning, StaleDataWarning)
        meta = result.as_dict()["_meta"]
        assert meta["source"] == "stale-fallback"
        assert "store down" in meta["warning"]

    @pytest.mark.asyncio
    async def test_failure_without_entry_propagates(self, cache, service) -> None:
        service.error = UpstreamQueryError("store down")
        with pytest.raises(UpstreamQueryError):
            await cache.get_or_compute(_filters())

    @pytest.mark.asyncio
    async def test_validation_error_is_never_masked(self, cache, service, clock) -> None:
        await cache.get_or_compute(_filters())
        clock.advance(120)
        service.error = ValidationError("bad window")
        with pytest.raises(ValidationError):
            await cache.get_or_compute(_filters())

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_computation(self, cache, service) -> None:
        service.gate = asyncio.Event()
        waiters = [asyncio.create_task(cache.get_or_compute(_filters())) for _ in range(5)]
        await asyncio.sleep(0)
        service.gate.set()
        results = await asyncio.gather(*waiters)

        assert len(service.calls) == 1
        assert {result.provenance for result in results} == {"computed"}

    @pytest.mark.asyncio
    async def test_distinct_filters_get_distinct_entries(self, cache, service) -> None:
        await cache.get_or_compute(_filters({"gender": "femenino"}))
        await cache.get_or_compute(_filters({"gender": "masculino"}))
        assert len(service.calls) == 2
        assert cache.stats()["size"] == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_fresh_entry(self, cache, service) -> None:
        await cache.get_or_compute(_filters())
        result = await cache.force_refresh(_filters())
        assert result.provenance == "computed"
        assert len(service.calls) == 2


class TestAdmin:
    @pytest.mark.asyncio
    async def test_stats_report_hits_and_age(self, cache, clock) -> None:
        await cache.get_or_compute(_filters())
        clock.advance(5)
        await cache.get_or_compute(_filters())

        stats = cache.stats()
        [entry] = stats["entries"].values()
        assert stats["ttlSeconds"] == 60
        assert stats["isUpdating"] is False
        assert entry["hits"] == 1
        assert entry["ageSeconds"] == 5

    @pytest.mark.asyncio
    async def test_clear_drops_every_entry(self, cache, service) -> None:
        await cache.get_or_compute(_filters())
        assert cache.clear() == 1
        await cache.get_or_compute(_filters())
        assert len(service.calls) == 2

    @pytest.mark.asyncio
    async def test_clear_discards_computation_in_flight(self, cache, service) -> None:
        service.gate = asyncio.Event()
        pending = asyncio.create_task(cache.get_or_compute(_filters()))
        while not service.calls:
            await asyncio.sleep(0)

        assert cache.clear() == 0
        service.gate.set()
        result = await pending

        assert result.provenance == "computed"
        assert cache.stats()["size"] == 0

    def test_ttl_below_minimum_is_rejected(self, cache) -> None:
        with pytest.raises(ValidationError):
            cache.set_ttl(5)
        assert cache.ttl_seconds == 60
        cache.set_ttl(20)
        assert cache.ttl_seconds == 20

    def test_constructor_enforces_minimum(self, service) -> None:
        with pytest.raises(ValidationError):
            MetricsCache(service, ttl_seconds=1, min_ttl_seconds=10)


class TestBackgroundRefresh:
    @pytest.mark.asyncio
    async def test_refresh_common_recomputes_every_set(self, service, clock) -> None:
        cache = MetricsCache(
            service,
            common_filters=[{}, {"timePeriod": "semana"}, {"timePeriod": "quincena"}],
            clock=clock,
        )
        assert await cache.refresh_common() == 2
        assert cache.stats()["size"] == 2

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, service, clock) -> None:
        cache = MetricsCache(service, common_filters=[{}], clock=clock)
        service.gate = asyncio.Event()
        running = asyncio.create_task(cache.refresh_common())
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert cache.stats()["isUpdating"] is True
        assert await cache.refresh_common() == 0

        service.gate.set()
        assert await running == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, cache) -> None:
        cache.start()
        assert cache.running
        await cache.stop()
        assert not cache.running
