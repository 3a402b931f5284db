from __future__ import annotations

import logging

from .activity import load_dataset, product_scope
from .dataset import CatalogDataset
from .errors import safe_ratio
from .filters import ProductPredicate, UserPredicate
from .models import DiscoveryResult, TimeWindow
from .repository import AnalyticsRepository

logger = logging.getLogger(__name__)


class DiscoveryRateCalculator:
    """
    Share of tasting users who tried at least one product in the window that
    they had never tasted before it.

    The population is only the users who tasted something in the window, not
    every active user. Both the in-window and the before-window product sets
    go through the same product filter.
    """

    def __init__(self, repository: AnalyticsRepository) -> None:
        self.repository = repository

    async def compute(
        self,
        user_predicate: UserPredicate,
        product_predicate: ProductPredicate,
        window: TimeWindow,
    ) -> DiscoveryResult:
        dataset = await load_dataset(self.repository, user_predicate, product_predicate)
        return self.calculate(dataset, product_predicate, window)

    @staticmethod
    def calculate(
        dataset: CatalogDataset,
        product_predicate: ProductPredicate,
        window: TimeWindow,
    ) -> DiscoveryResult:
        allowed = product_scope(dataset, product_predicate)
        in_window = dataset.tasted_products_by_user(window.start, window.end, allowed)
        if not in_window:
            return DiscoveryResult()

        before_window = dataset.tasted_products_by_user(None, window.start, allowed)
        discoverers = 0
        discovery_events = 0
        for user_id, products in in_window.items():
            new_products = products - before_window.get(user_id, set())
            if new_products:
                discoverers += 1
                discovery_events += len(new_products)

        population = len(in_window)
        rate = safe_ratio(discoverers, population)
        logger.debug("Discovery: %d of %d users, %d new products", discoverers, population, discovery_events)
        return DiscoveryResult(
            rate=rate,
            discoverers=discoverers,
            population=population,
            discovery_events=discovery_events,
        )
