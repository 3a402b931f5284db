from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import AbstractSet, Dict, Iterator, Optional, Sequence, Tuple

from .models import PopularityCounters, ProductRecord, Reply, Review, ShelfItem, TimeWindow, UserRecord


def _in_range(moment: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and moment < start:
        return False
    if end is not None and moment >= end:
        return False
    return True


@dataclass
class _CounterAccumulator:
    reviews: int = 0
    likes: int = 0
    replies: int = 0
    rating_sum: float = 0.0

    def freeze(self) -> PopularityCounters:
        avg = self.rating_sum / self.reviews if self.reviews else 0.0
        return PopularityCounters(
            review_count=self.reviews,
            total_likes=self.likes,
            total_replies=self.replies,
            avg_rating=avg,
        )


@dataclass
class CatalogDataset:
    """
    In-memory view over users (with shelves) and products (with review threads).

    Nested review -> reply -> like collections are flattened here with plain
    loops so every calculator counts them the same way.
    """

    users: Sequence[UserRecord]
    products: Sequence[ProductRecord]

    def __post_init__(self) -> None:
        self.users = tuple(self.users)
        self.products = tuple(sorted(self.products, key=lambda product: product.id))
        self.product_index: Dict[str, ProductRecord] = {product.id: product for product in self.products}
        self.user_ids = frozenset(user.id for user in self.users)

    @property
    def product_ids(self) -> AbstractSet[str]:
        return self.product_index.keys()

    def iter_tasted(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        product_ids: Optional[AbstractSet[str]] = None,
    ) -> Iterator[Tuple[UserRecord, ShelfItem]]:
        """
        Yield ``(user, item)`` for tasted shelf items added in ``[start, end)``.

        ``product_ids=None`` means any product; otherwise only listed products count.
        """

        for user in self.users:
            for item in user.shelf:
                if item.status != "tasted":
                    continue
                if product_ids is not None and item.product_id not in product_ids:
                    continue
                if not _in_range(item.added_at, start, end):
                    continue
                yield user, item

    def iter_reviews(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        author_ids: Optional[AbstractSet[str]] = None,
    ) -> Iterator[Tuple[ProductRecord, Review]]:
        for product in self.products:
            for review in product.reviews:
                if author_ids is not None and review.author_id not in author_ids:
                    continue
                if _in_range(review.created_at, start, end):
                    yield product, review

    def iter_replies(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        author_ids: Optional[AbstractSet[str]] = None,
    ) -> Iterator[Tuple[ProductRecord, Review, Reply]]:
        # Replies are selected on their own timestamp, independent of the parent review.
        for product in self.products:
            for review in product.reviews:
                for reply in review.replies:
                    if author_ids is not None and reply.author_id not in author_ids:
                        continue
                    if _in_range(reply.created_at, start, end):
                        yield product, review, reply

    def tasted_products_by_user(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        product_ids: Optional[AbstractSet[str]] = None,
    ) -> Dict[str, set]:
        grouped: Dict[str, set] = defaultdict(set)
        for user, item in self.iter_tasted(start=start, end=end, product_ids=product_ids):
            grouped[user.id].add(item.product_id)
        return dict(grouped)

    def popularity_counters(
        self,
        window: TimeWindow,
        author_ids: Optional[AbstractSet[str]] = None,
    ) -> Dict[str, PopularityCounters]:
        """
        Per-product review/like/reply/rating counters for one window.

        Likes are counted on reviews created inside the window; replies are
        counted by their own creation time.
        """

        totals: Dict[str, _CounterAccumulator] = defaultdict(_CounterAccumulator)
        for product, review in self.iter_reviews(window.start, window.end, author_ids):
            bucket = totals[product.id]
            bucket.reviews += 1
            bucket.likes += len(review.likes)
            bucket.rating_sum += review.rating
        for product, _, _ in self.iter_replies(window.start, window.end, author_ids):
            totals[product.id].replies += 1
        return {product_id: accumulator.freeze() for product_id, accumulator in totals.items()}

    def category_of(self, product_id: str, default: str = "unclassified") -> str:
        product = self.product_index.get(product_id)
        if product is None or not product.category:
            return default
        return product.category