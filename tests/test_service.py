from __future__ import annotations

import asyncio
from datetime import date

import pytest

from factories import at, make_product, make_review, make_user, tasted
from yerba_insights.errors import UpstreamQueryError
from yerba_insights.filters import normalize_filters
from yerba_insights.repository import InMemoryRepository

TODAY = date(2024, 6, 12)


def _filters(raw=None):
    return normalize_filters(raw or {}, today=TODAY)


class _UnreachableRepository(InMemoryRepository):
    async def find_users(self, predicate):
        raise UpstreamQueryError("connection refused")


class _StaggeredOutageRepository(InMemoryRepository):
    """Every read fails, each one a little later than the previous."""

    def __init__(self) -> None:
        super().__init__()
        self.started = 0
        self.failed = 0

    async def find_users(self, predicate):
        self.started += 1
        await asyncio.sleep(0.01 * self.started)
        self.failed += 1
        raise UpstreamQueryError(f"connection refused ({self.failed})")


class TestGetOverview:
    @pytest.mark.asyncio
    async def test_single_first_tasting(self, service_for) -> None:
        repository = InMemoryRepository(
            users=[make_user("u1", shelf=[tasted("p1", at(2024, 6, 10))])],
            products=[make_product("p1", category="Compuesta")],
        )
        payload = (await service_for(repository).get_overview(_filters())).as_dict()

        assert payload["discoveryRate"] == 1.0
        assert payload["activeUsers"] == 1
        assert payload["usersWithTasting"] == 1
        assert [(row["label"], row["count"], row["share"]) for row in payload["typeBreakdown"]] == [
            ("Compuesta", 1, 100.0)
        ]
        assert payload["typeBreakdownSource"] == "current-period"
        assert payload["degraded"] == []

    @pytest.mark.asyncio
    async def test_top_mover_between_windows(self, service_for) -> None:
        product = make_product(
            "p1",
            reviews=[
                make_review("c1", "u1", 4, at(2024, 6, 10), likes={"u3"}),
                make_review("c2", "u2", 5, at(2024, 6, 11)),
                make_review("old", "u3", 3, at(2024, 6, 1)),
            ],
        )
        payload = (
            await service_for(InMemoryRepository(products=[product])).get_overview(_filters({"timePeriod": "semana"}))
        ).as_dict()

        [mover] = payload["topMovers"]
        assert mover["productId"] == "p1"
        assert mover["previousScore"] == pytest.approx(25.0)
        assert mover["deltaPct"] == 78.0
        assert mover["changeType"] == "increasing"

    @pytest.mark.asyncio
    async def test_empty_store(self, service_for, empty_repository) -> None:
        for period in ("dia", "semana", "mes", "año"):
            payload = (await service_for(empty_repository).get_overview(_filters({"timePeriod": period}))).as_dict()
            assert payload["activeUsers"] == 0
            assert payload["discoveryRate"] == 0.0
            assert payload["typeBreakdown"] == []
            assert payload["topMovers"] == []
            assert all(point["events"] == 0 for point in payload["temporalActivity"]["data"])

    @pytest.mark.asyncio
    async def test_payload_carries_window_and_series(self, service_for, empty_repository) -> None:
        payload = (await service_for(empty_repository).get_overview(_filters({"timePeriod": "semana"}))).as_dict()
        assert payload["window"] == {
            "start": "2024-06-06T00:00:00+00:00",
            "end": "2024-06-13T00:00:00+00:00",
        }
        series = payload["temporalActivity"]
        assert series["granularity"] == "day"
        assert series["timePeriod"] == "semana"
        assert len(series["data"]) == 7

    @pytest.mark.asyncio
    async def test_failing_sub_computation_degrades_one_field(self, service_for, monkeypatch) -> None:
        repository = InMemoryRepository(
            users=[make_user("u1", shelf=[tasted("p1", at(2024, 6, 10))])],
            products=[make_product("p1")],
        )
        service = service_for(repository)

        async def broken(*args, **kwargs):
            raise RuntimeError("bad product document")

        monkeypatch.setattr(service.movers, "compute", broken)
        payload = (await service.get_overview(_filters())).as_dict()

        assert payload["topMovers"] == []
        assert payload["degraded"] == ["topMovers"]
        assert payload["activeUsers"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_aborts_overview(self, service_for) -> None:
        with pytest.raises(UpstreamQueryError):
            await service_for(_UnreachableRepository()).get_overview(_filters())

    @pytest.mark.asyncio
    async def test_store_failure_waits_for_every_field(self, service_for) -> None:
        repository = _StaggeredOutageRepository()

        with pytest.raises(UpstreamQueryError, match=r"\(1\)"):
            await service_for(repository).get_overview(_filters())

        assert repository.started == 5
        assert repository.failed == 5


class TestFilterOptions:
    @pytest.mark.asyncio
    async def test_options_are_sorted_value_label_pairs(self, service_for) -> None:
        repository = InMemoryRepository(
            users=[make_user("u1", nationality="Uruguay"), make_user("u2"), make_user("u3", nationality=None)],
            products=[make_product("p1", brand="Taragüi"), make_product("p2", brand="Canarias")],
        )
        service = service_for(repository)

        assert await service.get_filter_options("countries") == [
            {"value": "Argentina", "label": "Argentina"},
            {"value": "Uruguay", "label": "Uruguay"},
        ]
        assert [option["value"] for option in await service.get_filter_options("marcas")] == ["Canarias", "Taragüi"]

    @pytest.mark.asyncio
    async def test_unknown_type_is_empty(self, service_for, empty_repository) -> None:
        assert await service_for(empty_repository).get_filter_options("sabores") == []
