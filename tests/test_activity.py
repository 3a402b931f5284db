from __future__ import annotations

import pytest

from factories import NOW, at, make_product, make_reply, make_review, make_user, pending, tasted
from yerba_insights.activity import ActivityCounter, TemporalActivityCounter
from yerba_insights.breakdown import FALLBACK_NOTE, CategoryBreakdownAggregator
from yerba_insights.discovery import DiscoveryRateCalculator
from yerba_insights.filters import ProductPredicate, UserPredicate
from yerba_insights.periods import generate_buckets, resolve_window
from yerba_insights.repository import InMemoryRepository

WINDOW = resolve_window("semana", now=NOW).window
NO_USERS = UserPredicate()
NO_PRODUCTS = ProductPredicate()


def _multi_channel_repository() -> InMemoryRepository:
    reply = make_reply("r1", "u1", at(2024, 6, 9))
    products = [
        make_product(
            "p1",
            reviews=[
                make_review("rv1", "u1", 5, at(2024, 6, 8), replies=[reply]),
                make_review("rv2", "u2", 4, at(2024, 5, 1)),
            ],
        ),
        make_product("p2", category="Compuesta"),
    ]
    users = [
        make_user("u1", shelf=[tasted("p1", at(2024, 6, 7))]),
        make_user("u2", shelf=[pending("p2", at(2024, 6, 7))], nationality="Uruguay"),
        make_user("u3", shelf=[tasted("p2", at(2024, 6, 10))], nationality="Uruguay"),
    ]
    return InMemoryRepository(users=users, products=products)


class TestActivityCounter:
    @pytest.mark.asyncio
    async def test_user_active_on_several_channels_counts_once(self) -> None:
        summary = await ActivityCounter(_multi_channel_repository()).compute(NO_USERS, NO_PRODUCTS, WINDOW)
        assert summary.active_users == 2
        assert summary.sample_events == 4
        assert (summary.reviews, summary.replies, summary.tastings) == (1, 1, 2)

    @pytest.mark.asyncio
    async def test_user_filter_restricts_every_channel(self) -> None:
        summary = await ActivityCounter(_multi_channel_repository()).compute(
            UserPredicate(nationality="Uruguay"), NO_PRODUCTS, WINDOW
        )
        assert summary.active_users == 1
        assert summary.sample_events == 1

    @pytest.mark.asyncio
    async def test_product_filter_restricts_every_channel(self) -> None:
        summary = await ActivityCounter(_multi_channel_repository()).compute(
            NO_USERS, ProductPredicate(category="Compuesta"), WINDOW
        )
        assert summary.active_users == 1
        assert summary.tastings == 1
        assert summary.reviews == 0

    @pytest.mark.asyncio
    async def test_empty_store(self, empty_repository) -> None:
        summary = await ActivityCounter(empty_repository).compute(NO_USERS, NO_PRODUCTS, WINDOW)
        assert summary.active_users == 0
        assert summary.sample_events == 0


class TestTemporalActivity:
    @pytest.mark.asyncio
    async def test_counts_tastings_per_bucket_in_order(self) -> None:
        resolved = resolve_window("semana", now=NOW)
        buckets = generate_buckets(resolved.window, resolved.granularity)
        result = await TemporalActivityCounter(_multi_channel_repository()).compute(
            NO_USERS, NO_PRODUCTS, buckets, resolved.granularity, resolved.label, resolved.time_period
        )
        by_key = {point.bucket.key: point.events for point in result.points}
        assert by_key["2024-06-07"] == 1
        assert by_key["2024-06-10"] == 1
        assert sum(by_key.values()) == 2
        assert [point.bucket.start for point in result.points] == [bucket.start for bucket in buckets]


class TestDiscoveryRate:
    @pytest.mark.asyncio
    async def test_first_time_tasting_is_full_discovery(self) -> None:
        repository = InMemoryRepository(
            users=[make_user("u1", shelf=[tasted("p1", at(2024, 6, 8))])],
            products=[make_product("p1")],
        )
        result = await DiscoveryRateCalculator(repository).compute(NO_USERS, NO_PRODUCTS, WINDOW)
        assert result.rate == 1.0
        assert result.discovery_events == 1

    @pytest.mark.asyncio
    async def test_repeat_tasting_is_not_a_discovery(self) -> None:
        users = [
            make_user("u1", shelf=[tasted("p1", at(2024, 5, 1)), tasted("p2", at(2024, 6, 8))]),
            make_user("u2", shelf=[tasted("p1", at(2024, 5, 1)), tasted("p1", at(2024, 6, 9))]),
        ]
        repository = InMemoryRepository(users=users, products=[make_product("p1"), make_product("p2")])
        result = await DiscoveryRateCalculator(repository).compute(NO_USERS, NO_PRODUCTS, WINDOW)
        assert result.population == 2
        assert result.discoverers == 1
        assert result.rate == 0.5

    @pytest.mark.asyncio
    async def test_product_filter_applies_to_both_sides(self) -> None:
        users = [
            make_user("u1", shelf=[tasted("p1", at(2024, 5, 1)), tasted("p2", at(2024, 6, 8))]),
            make_user("u2", shelf=[tasted("p1", at(2024, 6, 8))]),
        ]
        products = [make_product("p1", category="Compuesta"), make_product("p2", category="Tradicional")]
        repository = InMemoryRepository(users=users, products=products)
        result = await DiscoveryRateCalculator(repository).compute(
            NO_USERS, ProductPredicate(category="Compuesta"), WINDOW
        )
        # u1 has no Compuesta tasting in the window, so only u2 qualifies.
        assert result.population == 1
        assert result.rate == 1.0

    @pytest.mark.asyncio
    async def test_empty_population_rate_is_zero(self, empty_repository) -> None:
        result = await DiscoveryRateCalculator(empty_repository).compute(NO_USERS, NO_PRODUCTS, WINDOW)
        assert result.rate == 0.0
        assert result.population == 0


class TestCategoryBreakdown:
    @pytest.mark.asyncio
    async def test_current_period_shares(self) -> None:
        users = [
            make_user("u1", shelf=[tasted("p1", at(2024, 6, 7)), tasted("p2", at(2024, 6, 8))]),
            make_user("u2", shelf=[tasted("p1", at(2024, 6, 9)), tasted("p3", at(2024, 6, 9))]),
        ]
        products = [
            make_product("p1", category="Tradicional"),
            make_product("p2", category="Compuesta"),
            make_product("p3", category=None),
        ]
        result = await CategoryBreakdownAggregator(InMemoryRepository(users=users, products=products)).compute(
            NO_USERS, NO_PRODUCTS, WINDOW
        )
        assert result.provenance == "current-period"
        assert [(row.label, row.count) for row in result.rows] == [
            ("Tradicional", 2),
            ("Compuesta", 1),
            ("unclassified", 1),
        ]
        assert sum(row.share for row in result.rows) == pytest.approx(100.0)
        assert {row.period for row in result.rows} == {"current-period"}

    @pytest.mark.asyncio
    async def test_falls_back_to_all_time_when_window_is_empty(self) -> None:
        users = [make_user("u1", shelf=[tasted("p1", at(2024, 1, 7)), tasted("p2", at(2023, 11, 2))])]
        products = [make_product("p1", category="Tradicional"), make_product("p2", category="Despalada")]
        result = await CategoryBreakdownAggregator(InMemoryRepository(users=users, products=products)).compute(
            NO_USERS, NO_PRODUCTS, WINDOW
        )
        assert result.provenance == "all-time-fallback"
        assert {row.period for row in result.rows} == {"all-time-fallback"}
        assert all(row.note == FALLBACK_NOTE for row in result.rows)
        assert [row.label for row in result.rows] == ["Despalada", "Tradicional"]

    @pytest.mark.asyncio
    async def test_no_tastings_at_all_is_empty(self) -> None:
        users = [make_user("u1", shelf=[pending("p1", at(2024, 6, 8))])]
        result = await CategoryBreakdownAggregator(
            InMemoryRepository(users=users, products=[make_product("p1")])
        ).compute(NO_USERS, NO_PRODUCTS, WINDOW)
        assert result.rows == []


class TestProductsMissingFromCatalog:
    def setup_method(self) -> None:
        self.repository = InMemoryRepository(users=[make_user("u1", shelf=[tasted("ghost", at(2024, 6, 8))])])

    @pytest.mark.asyncio
    async def test_still_count_without_product_filter(self) -> None:
        summary = await ActivityCounter(self.repository).compute(NO_USERS, NO_PRODUCTS, WINDOW)
        discovery = await DiscoveryRateCalculator(self.repository).compute(NO_USERS, NO_PRODUCTS, WINDOW)
        breakdown = await CategoryBreakdownAggregator(self.repository).compute(NO_USERS, NO_PRODUCTS, WINDOW)

        assert (summary.active_users, summary.tastings) == (1, 1)
        assert discovery.rate == 1.0
        assert [(row.label, row.count) for row in breakdown.rows] == [("unclassified", 1)]

    @pytest.mark.asyncio
    async def test_still_count_in_temporal_series(self) -> None:
        resolved = resolve_window("semana", now=NOW)
        result = await TemporalActivityCounter(self.repository).compute(
            NO_USERS,
            NO_PRODUCTS,
            generate_buckets(resolved.window, resolved.granularity),
            resolved.granularity,
            resolved.label,
        )
        assert sum(point.events for point in result.points) == 1

    @pytest.mark.asyncio
    async def test_excluded_once_a_product_filter_is_set(self) -> None:
        summary = await ActivityCounter(self.repository).compute(
            NO_USERS, ProductPredicate(category="Tradicional"), WINDOW
        )
        assert summary.active_users == 0
