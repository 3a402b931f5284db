from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import AbstractSet, Dict, List, Optional

from .activity import load_dataset, product_scope
from .dataset import CatalogDataset
from .errors import safe_ratio
from .filters import ProductPredicate, UserPredicate
from .models import BreakdownProvenance, BreakdownResult, CategoryShare, TimeWindow
from .repository import AnalyticsRepository

logger = logging.getLogger(__name__)

UNCLASSIFIED = "unclassified"
FALLBACK_NOTE = "Sin catas en el período seleccionado; se muestran datos históricos."


def count_by_category(
    dataset: CatalogDataset,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    product_ids: Optional[AbstractSet[str]] = None,
) -> Dict[str, int]:
    """Tastings per category; products missing from the catalog count as unclassified."""

    counts: Counter = Counter()
    for _, item in dataset.iter_tasted(start, end, product_ids):
        counts[dataset.category_of(item.product_id, UNCLASSIFIED)] += 1
    return dict(counts)


def build_rows(
    counts: Dict[str, int],
    provenance: BreakdownProvenance,
    note: Optional[str] = None,
) -> List[CategoryShare]:
    total = sum(counts.values())
    rows = [
        CategoryShare(
            label=label,
            count=count,
            share=round(safe_ratio(count, total) * 100, 2),
            period=provenance,
            note=note,
        )
        for label, count in counts.items()
        if count > 0
    ]
    rows.sort(key=lambda row: (-row.count, row.label))
    return rows


class CategoryBreakdownAggregator:
    """
    Tastings per product category.

    When the window has no tastings at all the whole result switches to
    all-time counts; a response is never a mix of the two.
    """

    def __init__(self, repository: AnalyticsRepository) -> None:
        self.repository = repository

    async def compute(
        self,
        user_predicate: UserPredicate,
        product_predicate: ProductPredicate,
        window: TimeWindow,
    ) -> BreakdownResult:
        dataset = await load_dataset(self.repository, user_predicate, product_predicate)
        return self.calculate(dataset, product_predicate, window)

    @staticmethod
    def calculate(
        dataset: CatalogDataset,
        product_predicate: ProductPredicate,
        window: TimeWindow,
    ) -> BreakdownResult:
        products = product_scope(dataset, product_predicate)
        current = count_by_category(dataset, window.start, window.end, products)
        if sum(current.values()) > 0:
            return BreakdownResult(rows=build_rows(current, "current-period"), provenance="current-period")

        historical = count_by_category(dataset, product_ids=products)
        if sum(historical.values()) == 0:
            return BreakdownResult(rows=[], provenance="current-period")

        logger.info("No tastings in window %s..%s; using all-time category counts", window.start, window.end)
        return BreakdownResult(
            rows=build_rows(historical, "all-time-fallback", note=FALLBACK_NOTE),
            provenance="all-time-fallback",
        )
