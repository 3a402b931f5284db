"""
Request filters for the overview endpoints.

Raw query parameters arrive with English or legacy Spanish keys. They are
normalized once into :class:`NormalizedFilters`, which yields the user and
product predicates and the fingerprint used as the cache key.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ValidationError
from .models import ProductRecord, UserRecord
from .periods import DEFAULT_TIME_PERIOD, ResolvedPeriod, normalize_time_period, parse_date_boundary, resolve_window

# Request key -> canonical field. Legacy Spanish keys are still sent by the
# dashboard frontend.
FILTER_ALIASES: Dict[str, str] = {
    "startDate": "start_date",
    "endDate": "end_date",
    "timePeriod": "time_period",
    "country": "country",
    "ageBucket": "age_bucket",
    "gender": "gender",
    "productType": "product_type",
    "tipoYerba": "product_type",
    "brand": "brand",
    "marca": "brand",
    "origin": "origin",
    "origen": "origin",
    "producerCountry": "producer_country",
    "paisProd": "producer_country",
    "originCountry": "producer_country",
    "pais": "producer_country",
    "dryingMethod": "drying_method",
    "secado": "drying_method",
}

CACHE_KEY_SENTINEL = "all"

_AGE_RANGE = re.compile(r"^(\d{1,3})-(\d{1,3})$")
_AGE_OPEN = re.compile(r"^(\d{1,3})\+$")
_OPEN_BUCKET_MAX_AGE = 100


@dataclass(frozen=True)
class UserPredicate:
    nationality: Optional[str] = None
    gender: Optional[str] = None
    birth_year_min: Optional[int] = None
    birth_year_max: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, item.name) is None for item in fields(self))

    def matches(self, user: UserRecord) -> bool:
        if self.nationality is not None and user.nationality != self.nationality:
            return False
        if self.gender is not None and user.gender != self.gender:
            return False
        if self.birth_year_min is not None or self.birth_year_max is not None:
            year = user.birth_year
            if year is None:
                return False
            if self.birth_year_min is not None and year < self.birth_year_min:
                return False
            if self.birth_year_max is not None and year > self.birth_year_max:
                return False
        return True


@dataclass(frozen=True)
class ProductPredicate:
    category: Optional[str] = None
    brand: Optional[str] = None
    origin: Optional[str] = None
    producer_country: Optional[str] = None
    drying_method: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, item.name) is None for item in fields(self))

    def matches(self, product: ProductRecord) -> bool:
        for item in fields(self):
            expected = getattr(self, item.name)
            if expected is not None and getattr(product, item.name) != expected:
                return False
        return True


@dataclass(frozen=True)
class NormalizedFilters:
    """
    Canonical filter set. ``producer_country`` is the single slot behind every
    producer/origin country alias; ``origin_country`` reads the same value.
    """

    start_date: Optional[str] = None
    end_date: Optional[str] = None
    time_period: Optional[str] = None
    country: Optional[str] = None
    age_bucket: Optional[str] = None
    gender: Optional[str] = None
    product_type: Optional[str] = None
    brand: Optional[str] = None
    origin: Optional[str] = None
    producer_country: Optional[str] = None
    drying_method: Optional[str] = None
    birth_years: Optional[Tuple[int, int]] = None

    @property
    def origin_country(self) -> Optional[str]:
        return self.producer_country

    @property
    def has_explicit_dates(self) -> bool:
        return bool(self.start_date and self.end_date)

    def resolve(self, now: Optional[datetime] = None) -> ResolvedPeriod:
        return resolve_window(self.time_period, self.start_date, self.end_date, now=now)

    def user_predicate(self) -> UserPredicate:
        low, high = self.birth_years or (None, None)
        return UserPredicate(
            nationality=self.country,
            gender=self.gender,
            birth_year_min=low,
            birth_year_max=high,
        )

    def product_predicate(self) -> ProductPredicate:
        return ProductPredicate(
            category=self.product_type,
            brand=self.brand,
            origin=self.origin,
            producer_country=self.producer_country,
            drying_method=self.drying_method,
        )

    def cache_fingerprint(self) -> str:
        time_period = self.time_period
        if time_period is None and not self.has_explicit_dates:
            time_period = DEFAULT_TIME_PERIOD
        parts = (
            self.start_date,
            self.end_date,
            time_period,
            self.country,
            self.age_bucket,
            self.gender,
            self.product_type,
            self.brand,
            self.origin,
            self.producer_country,
            self.drying_method,
        )
        return "|".join(part or CACHE_KEY_SENTINEL for part in parts)

    def as_query(self) -> Dict[str, str]:
        """Inverse of :func:`normalize_filters` using the camelCase keys."""

        payload = {
            "startDate": self.start_date,
            "endDate": self.end_date,
            "timePeriod": self.time_period,
            "country": self.country,
            "ageBucket": self.age_bucket,
            "gender": self.gender,
            "productType": self.product_type,
            "brand": self.brand,
            "origin": self.origin,
            "producerCountry": self.producer_country,
            "dryingMethod": self.drying_method,
        }
        return {key: value for key, value in payload.items() if value}


def parse_age_bucket(bucket: str, current_year: int) -> Tuple[int, int]:
    """
    Decode ``"26-35"`` or ``"56+"`` into an inclusive ``(min, max)`` birth-year range.
    """

    value = bucket.strip()
    closed = _AGE_RANGE.match(value)
    if closed:
        youngest, oldest = int(closed.group(1)), int(closed.group(2))
        if youngest > oldest:
            raise ValidationError(f"Invalid ageBucket '{bucket}': lower bound exceeds upper bound.")
        return current_year - oldest, current_year - youngest
    open_ended = _AGE_OPEN.match(value)
    if open_ended:
        youngest = int(open_ended.group(1))
        return current_year - _OPEN_BUCKET_MAX_AGE, current_year - youngest
    raise ValidationError(f"Invalid ageBucket '{bucket}': expected 'A-B' or 'A+'.")


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_filters(raw: Optional[Mapping[str, Any]], today: Optional[date] = None) -> NormalizedFilters:
    values: Dict[str, str] = {}
    for key, raw_value in (raw or {}).items():
        canonical = FILTER_ALIASES.get(key)
        if canonical is None:
            continue
        value = _clean(raw_value)
        if value is None:
            continue
        existing = values.get(canonical)
        if existing is not None and existing != value:
            raise ValidationError(f"Conflicting values for {canonical}: '{existing}' and '{value}'.")
        values[canonical] = value

    if "time_period" in values:
        values["time_period"] = normalize_time_period(values["time_period"])
    if "start_date" in values:
        parse_date_boundary(values["start_date"], is_end=False, field_name="startDate")
    if "end_date" in values:
        parse_date_boundary(values["end_date"], is_end=True, field_name="endDate")
    if ("start_date" in values) != ("end_date" in values):
        raise ValidationError("startDate and endDate must be supplied together.")

    birth_years = None
    if "age_bucket" in values:
        year = (today or date.today()).year
        birth_years = parse_age_bucket(values["age_bucket"], year)

    return NormalizedFilters(birth_years=birth_years, **values)
