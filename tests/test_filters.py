from __future__ import annotations

from datetime import date

import pytest

from factories import make_product, make_user
from yerba_insights.errors import ValidationError
from yerba_insights.filters import ProductPredicate, UserPredicate, normalize_filters, parse_age_bucket

TODAY = date(2024, 6, 12)


class TestNormalizeFilters:
    def test_spanish_aliases_map_to_canonical_fields(self) -> None:
        filters = normalize_filters(
            {"tipoYerba": "Compuesta", "marca": "Taragüi", "origen": "Corrientes", "secado": "natural"},
            today=TODAY,
        )
        assert filters.product_type == "Compuesta"
        assert filters.brand == "Taragüi"
        assert filters.origin == "Corrientes"
        assert filters.drying_method == "natural"

    @pytest.mark.parametrize("key", ["producerCountry", "paisProd", "originCountry", "pais"])
    def test_producer_and_origin_country_populate_each_other(self, key) -> None:
        filters = normalize_filters({key: "Uruguay"}, today=TODAY)
        assert filters.producer_country == "Uruguay"
        assert filters.origin_country == "Uruguay"
        assert filters.product_predicate().producer_country == "Uruguay"

    def test_conflicting_country_aliases_are_rejected(self) -> None:
        with pytest.raises(ValidationError):
            normalize_filters({"paisProd": "Uruguay", "originCountry": "Brasil"}, today=TODAY)

    def test_unknown_and_empty_keys_are_dropped(self) -> None:
        filters = normalize_filters({"foo": "bar", "country": "", "gender": "  ", "brand": None}, today=TODAY)
        assert filters.user_predicate().is_empty
        assert filters.product_predicate().is_empty

    def test_age_bucket_becomes_birth_year_range(self) -> None:
        filters = normalize_filters({"ageBucket": "26-35"}, today=TODAY)
        assert filters.user_predicate() == UserPredicate(birth_year_min=1989, birth_year_max=1998)

    def test_invalid_time_period_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            normalize_filters({"timePeriod": "trimestre"}, today=TODAY)

    def test_lone_start_date_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            normalize_filters({"startDate": "2024-06-01"}, today=TODAY)


class TestAgeBucket:
    def test_closed_range(self) -> None:
        assert parse_age_bucket("18-25", 2024) == (1999, 2006)

    def test_open_range(self) -> None:
        assert parse_age_bucket("56+", 2024) == (1924, 1968)

    @pytest.mark.parametrize("bucket", ["adult", "35-26", "18-", "+56", ""])
    def test_malformed(self, bucket) -> None:
        with pytest.raises(ValidationError):
            parse_age_bucket(bucket, 2024)


class TestCacheFingerprint:
    def test_independent_of_key_order_and_alias(self) -> None:
        first = normalize_filters({"country": "Argentina", "marca": "Rosamonte", "timePeriod": "semana"}, today=TODAY)
        second = normalize_filters({"timePeriod": "semana", "brand": "Rosamonte", "country": "Argentina"}, today=TODAY)
        assert first.cache_fingerprint() == second.cache_fingerprint()

    def test_missing_fields_use_sentinel(self) -> None:
        fingerprint = normalize_filters({}, today=TODAY).cache_fingerprint()
        parts = fingerprint.split("|")
        assert len(parts) == 11
        assert parts[2] == "mes"
        assert [part for index, part in enumerate(parts) if index != 2] == ["all"] * 10

    def test_default_period_shares_key_with_explicit_mes(self) -> None:
        implicit = normalize_filters({}, today=TODAY)
        explicit = normalize_filters({"timePeriod": "mes"}, today=TODAY)
        assert implicit.cache_fingerprint() == explicit.cache_fingerprint()

    def test_different_filters_produce_different_keys(self) -> None:
        male = normalize_filters({"gender": "masculino"}, today=TODAY)
        female = normalize_filters({"gender": "femenino"}, today=TODAY)
        assert male.cache_fingerprint() != female.cache_fingerprint()


class TestPredicates:
    def test_user_predicate_matches_demographics(self) -> None:
        predicate = UserPredicate(nationality="Argentina", gender="femenino", birth_year_min=1985, birth_year_max=1995)
        assert predicate.matches(make_user("u1", gender="femenino", birth_date="1990-02-03"))
        assert not predicate.matches(make_user("u2", gender="masculino", birth_date="1990-02-03"))
        assert not predicate.matches(make_user("u3", gender="femenino", birth_date="1970-02-03"))
        assert not predicate.matches(make_user("u4", gender="femenino", birth_date=None))

    def test_product_predicate_matches_all_set_attributes(self) -> None:
        predicate = ProductPredicate(category="Tradicional", brand="Playadito")
        assert predicate.matches(make_product("p1"))
        assert not predicate.matches(make_product("p2", brand="Kurupi"))
        assert ProductPredicate().matches(make_product("p3", category=None))
