from __future__ import annotations

from datetime import date

import pytest

from factories import at, make_product, make_reply, make_review, make_user
from yerba_insights.dataset import CatalogDataset
from yerba_insights.filters import UserPredicate, normalize_filters
from yerba_insights.models import TimeWindow
from yerba_insights.notes import FlavorNotesRanker, note_label
from yerba_insights.repository import InMemoryRepository

TODAY = date(2024, 6, 12)
WEEK = TimeWindow(start=at(2024, 6, 6), end=at(2024, 6, 13))


def _product():
    return make_product(
        "p1",
        reviews=[
            make_review(
                "r1",
                "u1",
                5,
                at(2024, 6, 10),
                likes={"u2", "u3"},
                replies=[make_reply("x1", "u2", at(2024, 6, 1))],
                notes=["dulce_natural", "citrico"],
            ),
            make_review("r2", "u2", 4, at(2024, 6, 11), notes=["dulce_natural"]),
            make_review("r3", "u3", 3, at(2024, 6, 9), likes={"u1"}, notes=["citrico"]),
            make_review("r4", "u1", 4, at(2024, 6, 11), likes={"u2"}, notes=["terroso"]),
            make_review("r5", "u2", 2, at(2024, 6, 10)),
            make_review("old", "u4", 5, at(2024, 6, 1), notes=["terroso"]),
        ],
    )


def _users():
    return [make_user("u1"), make_user("u2"), make_user("u3", nationality="Uruguay"), make_user("u4")]


class TestFlavorNotesRanker:
    def test_notes_ranked_by_interactions_per_review(self) -> None:
        dataset = CatalogDataset(users=_users(), products=[_product()])
        result = FlavorNotesRanker.calculate(dataset, UserPredicate(), WEEK)

        citrico, dulce = result.notes
        assert (citrico.note, citrico.label) == ("citrico", "Cítrico")
        assert citrico.interaction_score == 11
        assert citrico.normalized_score == 5.5
        assert citrico.share == 1.0
        assert (citrico.review_count, citrico.user_count) == (2, 2)
        assert (citrico.avg_likes, citrico.avg_replies) == (1.5, 0.5)

        assert dulce.note == "dulce_natural"
        assert dulce.interaction_score == 9
        assert dulce.normalized_score == 4.5
        assert dulce.share == pytest.approx(4.5 / 5.5)

    def test_note_from_a_single_author_is_dropped(self) -> None:
        dataset = CatalogDataset(users=_users(), products=[_product()])
        result = FlavorNotesRanker.calculate(dataset, UserPredicate(), WEEK)

        assert "terroso" not in {row.note for row in result.notes}
        assert result.total_reviews == 4
        assert result.unique_users == 3

    def test_user_filter_restricts_authors(self) -> None:
        dataset = CatalogDataset(users=[make_user("u1"), make_user("u2")], products=[_product()])
        result = FlavorNotesRanker.calculate(dataset, UserPredicate(nationality="Argentina"), WEEK)

        assert [(row.note, row.share) for row in result.notes] == [("dulce_natural", 1.0)]

    def test_empty_window(self) -> None:
        dataset = CatalogDataset(users=[], products=[_product()])
        result = FlavorNotesRanker.calculate(dataset, UserPredicate(), TimeWindow(at(2023, 1, 1), at(2023, 1, 2)))

        payload = result.as_dict()
        assert payload["notes"] == []
        assert payload["sample"] == {"nEvents": 0, "nRatings": 0, "kAnonymityOk": False}


class TestNotesTopService:
    @pytest.mark.asyncio
    async def test_payload_and_limit(self, service_for) -> None:
        service = service_for(InMemoryRepository(users=_users(), products=[_product()]))
        filters = normalize_filters({"timePeriod": "semana"}, today=TODAY)

        payload = (await service.get_notes_top(filters)).as_dict()
        limited = (await service.get_notes_top(filters, limit=1)).as_dict()

        assert [row["note"] for row in payload["notes"]] == ["citrico", "dulce_natural"]
        assert payload["notes"][0]["interactionScore"] == 11
        assert payload["sample"] == {"nEvents": 4, "nRatings": 4, "kAnonymityOk": True}
        assert payload["_meta"]["source"] == "interaction_based"
        assert [row["note"] for row in limited["notes"]] == ["citrico"]


def test_unknown_note_keeps_its_key() -> None:
    assert note_label("yerba_buena") == "yerba_buena"
    assert note_label("sin_palo_limpio") == "Sin palo, limpio"
