"""
Top movers: products whose popularity changed most between the current window
and the equally long window right before it.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Iterable, List, Optional, Tuple

from .activity import author_scope, load_dataset
from .dataset import CatalogDataset
from .errors import ComputationError
from .filters import ProductPredicate, UserPredicate
from .models import ChangeType, PopularityCounters, TimeWindow, TopMover
from .repository import AnalyticsRepository

logger = logging.getLogger(__name__)

REVIEW_WEIGHT = 10
LIKE_WEIGHT = 2
REPLY_WEIGHT = 3
RATING_WEIGHT = 5

STABLE_BAND_PCT = 5.0
DELTA_CLAMP_PCT = 200.0
NEW_DELTA_PCT = 100.0
INACTIVE_DELTA_PCT = -100.0
CURRENT_SCORE_WEIGHT = 0.1
SHORT_WINDOW = timedelta(hours=24)
TOP_N = 5


def popularity_score(counters: PopularityCounters) -> float:
    if min(counters.review_count, counters.total_likes, counters.total_replies) < 0:
        raise ComputationError(f"Negative popularity counters: {counters}")
    if not 0 <= counters.avg_rating <= 5:
        raise ComputationError(f"Average rating out of range: {counters.avg_rating}")
    return (
        REVIEW_WEIGHT * counters.review_count
        + LIKE_WEIGHT * counters.total_likes
        + REPLY_WEIGHT * counters.total_replies
        + RATING_WEIGHT * counters.avg_rating
    )


def classify_change(current: float, previous: float) -> Optional[Tuple[float, ChangeType]]:
    """
    Return ``(delta_pct, change_type)`` or ``None`` when both scores are zero.
    """

    if current > 0 and previous > 0:
        delta = (current - previous) / previous * 100
        delta = max(-DELTA_CLAMP_PCT, min(DELTA_CLAMP_PCT, delta))
        delta = round(delta, 1)
        if delta > STABLE_BAND_PCT:
            return delta, "increasing"
        if delta < -STABLE_BAND_PCT:
            return delta, "decreasing"
        return delta, "stable"
    if current > 0:
        return NEW_DELTA_PCT, "new"
    if previous > 0:
        return INACTIVE_DELTA_PCT, "inactive"
    return None


def _magnitude(mover: TopMover) -> float:
    return abs(mover.delta_pct) + CURRENT_SCORE_WEIGHT * mover.current_score


def rank_movers(rows: Iterable[TopMover], window_duration: timedelta, limit: int = TOP_N) -> List[TopMover]:
    """
    Order movers and keep the first ``limit``.

    Windows up to a day favour products with current activity and positive
    change before magnitude. Longer windows rank on magnitude alone. The
    0.1 current-score weight and the one-day cutoff are unconfirmed heuristics.
    """

    if window_duration <= SHORT_WINDOW:
        def key(mover: TopMover):
            return (
                -int(mover.current_score > 0),
                -int(mover.delta_pct > 0),
                -_magnitude(mover),
                mover.product_id,
            )
    else:
        def key(mover: TopMover):
            return (-_magnitude(mover), mover.product_id)

    return sorted(rows, key=key)[:limit]


class TopMoversEngine:
    def __init__(self, repository: AnalyticsRepository) -> None:
        self.repository = repository

    async def compute(
        self,
        user_predicate: UserPredicate,
        product_predicate: ProductPredicate,
        window: TimeWindow,
    ) -> List[TopMover]:
        dataset = await load_dataset(self.repository, user_predicate, product_predicate)
        return self.calculate(dataset, user_predicate, window)

    @staticmethod
    def calculate(
        dataset: CatalogDataset,
        user_predicate: UserPredicate,
        window: TimeWindow,
    ) -> List[TopMover]:
        authors = author_scope(dataset, user_predicate)
        current = dataset.popularity_counters(window, authors)
        previous = dataset.popularity_counters(window.previous(), authors)

        movers: List[TopMover] = []
        for product_id in sorted(set(current) | set(previous)):
            product = dataset.product_index.get(product_id)
            if product is None or not product.name or not product.brand:
                logger.debug("Skipping product %s without name/brand", product_id)
                continue
            current_score = popularity_score(current.get(product_id, PopularityCounters()))
            previous_score = popularity_score(previous.get(product_id, PopularityCounters()))
            change = classify_change(current_score, previous_score)
            if change is None:
                continue
            delta_pct, change_type = change
            movers.append(
                TopMover(
                    product_id=product_id,
                    label=f"{product.brand} {product.name}",
                    name=product.name,
                    brand=product.brand,
                    delta_pct=delta_pct,
                    current_score=current_score,
                    previous_score=previous_score,
                    change_type=change_type,
                )
            )

        return rank_movers(movers, window.duration)
