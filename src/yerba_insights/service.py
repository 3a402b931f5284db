from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .activity import ActivityCounter, TemporalActivityCounter
from .breakdown import CategoryBreakdownAggregator
from .discovery import DiscoveryRateCalculator
from .errors import UpstreamQueryError, ValidationError
from .filters import NormalizedFilters
from .models import (
    ActivitySummary,
    BreakdownResult,
    DiscoveryResult,
    NotesTopResult,
    OverviewResult,
    TemporalActivity,
)
from .movers import TopMoversEngine
from .notes import FlavorNotesRanker
from .periods import generate_buckets, utc_now
from .repository import AnalyticsRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Filter-option type -> record attribute. Spanish names are the ones the
# legacy admin panel requests.
FILTER_OPTION_ATTRIBUTES: Dict[str, str] = {
    "countries": "nationality",
    "product-types": "category",
    "tipos-yerba": "category",
    "brands": "brand",
    "marcas": "brand",
    "origins": "origin",
    "origenes": "origin",
    "producer-countries": "producer_country",
    "paises-prod": "producer_country",
    "drying-methods": "drying_method",
    "tipos-secado": "drying_method",
}


class MetricsService:
    """
    Builds the dashboard overview for one filter set.

    Sub-computations run concurrently. A failing one degrades to its empty
    value and is listed under ``degraded``; store failures abort the whole
    overview so the cache can fall back.
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.clock = clock or utc_now
        self.activity = ActivityCounter(repository)
        self.temporal = TemporalActivityCounter(repository)
        self.discovery = DiscoveryRateCalculator(repository)
        self.breakdown = CategoryBreakdownAggregator(repository)
        self.movers = TopMoversEngine(repository)
        self.notes = FlavorNotesRanker(repository)

    async def get_overview(self, filters: NormalizedFilters) -> OverviewResult:
        resolved = filters.resolve(now=self.clock())
        window = resolved.window
        user_predicate = filters.user_predicate()
        product_predicate = filters.product_predicate()
        buckets = generate_buckets(window, resolved.granularity)
        degraded: List[str] = []

        empty_temporal = TemporalActivity(
            granularity=resolved.granularity,
            period_label=resolved.label,
            time_period=resolved.time_period,
            points=[],
        )

        results = await asyncio.gather(
            self._guarded(
                "activeUsers",
                lambda: self.activity.compute(user_predicate, product_predicate, window),
                ActivitySummary(),
                degraded,
            ),
            self._guarded(
                "discoveryRate",
                lambda: self.discovery.compute(user_predicate, product_predicate, window),
                DiscoveryResult(),
                degraded,
            ),
            self._guarded(
                "temporalActivity",
                lambda: self.temporal.compute(
                    user_predicate,
                    product_predicate,
                    buckets,
                    resolved.granularity,
                    resolved.label,
                    resolved.time_period,
                ),
                empty_temporal,
                degraded,
            ),
            self._guarded(
                "typeBreakdown",
                lambda: self.breakdown.compute(user_predicate, product_predicate, window),
                BreakdownResult(),
                degraded,
            ),
            self._guarded(
                "topMovers",
                lambda: self.movers.compute(user_predicate, product_predicate, window),
                [],
                degraded,
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        activity, discovery, temporal, breakdown, movers = results

        logger.info(
            "Overview %s: %d active users, %d buckets, %d movers",
            filters.cache_fingerprint(),
            activity.active_users,
            len(temporal.points),
            len(movers),
        )
        return OverviewResult(
            window=window,
            activity=activity,
            discovery=discovery,
            temporal_activity=temporal,
            breakdown=breakdown,
            top_movers=movers,
            degraded=sorted(degraded),
        )

    @staticmethod
    async def _guarded(
        name: str,
        factory: Callable[[], Awaitable[T]],
        default: T,
        degraded: List[str],
    ) -> T:
        try:
            return await factory()
        except (UpstreamQueryError, ValidationError):
            raise
        except Exception as exc:
            logger.warning("Overview field %s failed, using default: %s", name, exc, exc_info=True)
            degraded.append(name)
            return default

    async def get_notes_top(self, filters: NormalizedFilters, limit: Optional[int] = None) -> NotesTopResult:
        resolved = filters.resolve(now=self.clock())
        result = await self.notes.compute(filters.user_predicate(), filters.product_predicate(), resolved.window)
        if limit is not None:
            result = replace(result, notes=list(result.notes)[:limit])
        return result

    async def get_filter_options(self, filter_type: str) -> List[Dict[str, Any]]:
        attribute = FILTER_OPTION_ATTRIBUTES.get(filter_type)
        if attribute is None:
            return []
        values = await self.repository.distinct_values(attribute)
        return [{"value": value, "label": value} for value in values]
