from __future__ import annotations

import logging
from typing import AbstractSet, Optional, Sequence, Set

from .dataset import CatalogDataset
from .filters import ProductPredicate, UserPredicate
from .models import ActivitySummary, TemporalActivity, TemporalPoint, TimeBucket, TimeWindow
from .repository import AnalyticsRepository

logger = logging.getLogger(__name__)


async def load_dataset(
    repository: AnalyticsRepository,
    user_predicate: UserPredicate,
    product_predicate: ProductPredicate,
) -> CatalogDataset:
    users = await repository.find_users(user_predicate)
    products = await repository.find_products(product_predicate)
    return CatalogDataset(users=users, products=products)


def author_scope(dataset: CatalogDataset, user_predicate: UserPredicate) -> Optional[Set[str]]:
    """Author ids allowed by the user filter, or ``None`` when unrestricted."""

    if user_predicate.is_empty:
        return None
    return set(dataset.user_ids)


def product_scope(dataset: CatalogDataset, product_predicate: ProductPredicate) -> Optional[AbstractSet[str]]:
    """
    Product ids allowed by the product filter, or ``None`` when unrestricted.

    Tastings of products missing from the catalog only count when no product
    filter is set.
    """

    if product_predicate.is_empty:
        return None
    return dataset.product_ids


class ActivityCounter:
    """
    Distinct active users and raw event volume for a window.

    A user counts once however many channels (review, reply, tasting) they
    were active through; ``sample_events`` keeps the raw per-channel total.
    """

    def __init__(self, repository: AnalyticsRepository) -> None:
        self.repository = repository

    async def compute(
        self,
        user_predicate: UserPredicate,
        product_predicate: ProductPredicate,
        window: TimeWindow,
    ) -> ActivitySummary:
        dataset = await load_dataset(self.repository, user_predicate, product_predicate)
        return self.summarize(dataset, user_predicate, product_predicate, window)

    @staticmethod
    def summarize(
        dataset: CatalogDataset,
        user_predicate: UserPredicate,
        product_predicate: ProductPredicate,
        window: TimeWindow,
    ) -> ActivitySummary:
        authors = author_scope(dataset, user_predicate)
        products = product_scope(dataset, product_predicate)

        reviewers = set()
        review_count = 0
        for _, review in dataset.iter_reviews(window.start, window.end, authors):
            reviewers.add(review.author_id)
            review_count += 1

        repliers = set()
        reply_count = 0
        for _, _, reply in dataset.iter_replies(window.start, window.end, authors):
            repliers.add(reply.author_id)
            reply_count += 1

        tasters = set()
        tasting_count = 0
        for user, _ in dataset.iter_tasted(window.start, window.end, products):
            tasters.add(user.id)
            tasting_count += 1

        active = reviewers | repliers | tasters
        logger.debug(
            "Activity %s..%s: %d reviewers, %d repliers, %d tasters, %d distinct",
            window.start,
            window.end,
            len(reviewers),
            len(repliers),
            len(tasters),
            len(active),
        )
        return ActivitySummary(
            active_users=len(active),
            sample_events=review_count + reply_count + tasting_count,
            reviews=review_count,
            replies=reply_count,
            tastings=tasting_count,
        )


class TemporalActivityCounter:
    """Tasted shelf items per bucket, in bucket order."""

    def __init__(self, repository: AnalyticsRepository) -> None:
        self.repository = repository

    async def compute(
        self,
        user_predicate: UserPredicate,
        product_predicate: ProductPredicate,
        buckets: Sequence[TimeBucket],
        granularity: str,
        period_label: str,
        time_period: Optional[str] = None,
    ) -> TemporalActivity:
        dataset = await load_dataset(self.repository, user_predicate, product_predicate)
        products = product_scope(dataset, product_predicate)
        points = []
        for bucket in buckets:
            events = sum(1 for _ in dataset.iter_tasted(bucket.start, bucket.end, products))
            points.append(TemporalPoint(bucket=bucket, events=events))
        return TemporalActivity(
            granularity=granularity,
            period_label=period_label,
            time_period=time_period,
            points=points,
        )
