"""
Trend alerts: significant shifts between the last two weeks and the two weeks
before them.

Five detectors read the same raw event log the aggregator does: category
interest per producer country, average rating per brand, flavor-note
mentions, activity per user country, and the view to shelf conversion rate.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .aggregator import RATE_EVENTS, SHELF_EVENTS, VIEW_EVENTS
from .models import ActivityEvent, ProductRecord, TrendAlert, UserRecord
from .periods import ensure_utc, utc_now
from .repository import AnalyticsRepository

logger = logging.getLogger(__name__)

INTEREST_EVENTS = VIEW_EVENTS | SHELF_EVENTS | RATE_EVENTS

SIGNIFICANCE_THRESHOLD = 0.15
MIN_SAMPLE_SIZE = 30
MIN_RATING_SHIFT = 0.3
MIN_CONVERSION_CHANGE = 0.10


def relative_change(current: float, previous: float) -> float:
    return (current - previous) / previous


def _pct(change: float) -> str:
    return f"{abs(change) * 100:.1f}%"


def _direction(change: float, up: str, down: str) -> str:
    return up if change > 0 else down


class AlertsService:
    """
    Compares ``[now - 2w, now)`` against ``[now - 4w, now - 2w)``.

    A count-based alert needs at least ``min_sample_size`` events in the
    recent window, some activity in the earlier one, and a relative change of
    ``significance_threshold`` or more.
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        significance_threshold: float = SIGNIFICANCE_THRESHOLD,
        min_sample_size: int = MIN_SAMPLE_SIZE,
        window_days: int = 14,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.significance_threshold = significance_threshold
        self.min_sample_size = min_sample_size
        self.window_days = window_days
        self.clock = clock or utc_now

    async def detect_trend_changes(self, now: Optional[datetime] = None) -> List[TrendAlert]:
        now = ensure_utc(now or self.clock())
        middle = now - timedelta(days=self.window_days)
        start = middle - timedelta(days=self.window_days)

        events = await self.repository.find_events(start, now)
        users = await self.repository.find_users_by_ids({event.user_id for event in events})
        products = await self.repository.find_products_by_ids(
            {event.product_id for event in events if event.product_id}
        )
        previous = [event for event in events if ensure_utc(event.timestamp) < middle]
        current = [event for event in events if ensure_utc(event.timestamp) >= middle]
        logger.info("Comparing %d recent events against %d earlier events", len(current), len(previous))

        user_index = {user.id: user for user in users}
        product_index = {product.id: product for product in products}
        alerts: List[TrendAlert] = []
        alerts += self.category_interest_changes(previous, current, product_index, now)
        alerts += self.rating_changes(previous, current, product_index, now)
        alerts += self.flavor_changes(previous, current, now)
        alerts += self.geographic_changes(previous, current, user_index, now)
        alerts += self.behavior_changes(previous, current, now)
        alerts.sort(key=lambda alert: abs(alert.change_pct), reverse=True)
        return alerts

    def _significant(self, previous_count: int, current_count: int) -> Optional[float]:
        if current_count < self.min_sample_size or previous_count <= 0:
            return None
        change = relative_change(current_count, previous_count)
        if abs(change) < self.significance_threshold:
            return None
        return change

    def category_interest_changes(
        self,
        previous: Sequence[ActivityEvent],
        current: Sequence[ActivityEvent],
        products: Mapping[str, ProductRecord],
        now: datetime,
    ) -> List[TrendAlert]:
        def count(events: Sequence[ActivityEvent]) -> Counter:
            counts: Counter = Counter()
            for event in events:
                if event.event_type not in INTEREST_EVENTS or not event.product_id:
                    continue
                product = products.get(event.product_id)
                if product is None or not product.category or not product.producer_country:
                    continue
                counts[(product.category, product.producer_country)] += 1
            return counts

        before, after = count(previous), count(current)
        alerts = []
        for (category, country), current_count in sorted(after.items()):
            change = self._significant(before[(category, country)], current_count)
            if change is None:
                continue
            alerts.append(
                TrendAlert(
                    kind="trend_change",
                    category="category_interest",
                    title=f"Cambio en interés por {category}",
                    description=(
                        f"{_direction(change, 'Aumento', 'Disminución')} del {_pct(change)} "
                        f"en interés por {category} en {country}"
                    ),
                    change_pct=change,
                    severity="high" if abs(change) > 0.3 else "medium",
                    detected_at=now,
                    data={
                        "category": category,
                        "producerCountry": country,
                        "previousCount": before[(category, country)],
                        "currentCount": current_count,
                    },
                )
            )
        return alerts

    def rating_changes(
        self,
        previous: Sequence[ActivityEvent],
        current: Sequence[ActivityEvent],
        products: Mapping[str, ProductRecord],
        now: datetime,
    ) -> List[TrendAlert]:
        def averages(events: Sequence[ActivityEvent]) -> Dict[str, Tuple[float, int]]:
            scores: Dict[str, List[int]] = defaultdict(list)
            for event in events:
                if event.event_type not in RATE_EVENTS or event.score is None or not event.product_id:
                    continue
                product = products.get(event.product_id)
                if product is None or not product.brand:
                    continue
                scores[product.brand].append(event.score)
            return {
                brand: (sum(values) / len(values), len(values))
                for brand, values in scores.items()
                if len(values) >= self.min_sample_size
            }

        before, after = averages(previous), averages(current)
        alerts = []
        for brand, (current_avg, current_count) in sorted(after.items()):
            if brand not in before or before[brand][0] <= 0:
                continue
            previous_avg = before[brand][0]
            shift = current_avg - previous_avg
            if abs(shift) < MIN_RATING_SHIFT:
                continue
            change = relative_change(current_avg, previous_avg)
            alerts.append(
                TrendAlert(
                    kind="rating_change",
                    category="perceived_quality",
                    title=f"Cambio en rating de {brand}",
                    description=(
                        f"Rating promedio {_direction(shift, 'aumentó', 'disminuyó')} "
                        f"{abs(shift):.2f} puntos ({_pct(change)})"
                    ),
                    change_pct=change,
                    severity="high" if abs(shift) > 0.5 else "medium",
                    detected_at=now,
                    data={
                        "brand": brand,
                        "previousRating": round(previous_avg, 2),
                        "currentRating": round(current_avg, 2),
                        "absoluteChange": round(shift, 2),
                        "currentCount": current_count,
                    },
                )
            )
        return alerts

    def flavor_changes(
        self,
        previous: Sequence[ActivityEvent],
        current: Sequence[ActivityEvent],
        now: datetime,
    ) -> List[TrendAlert]:
        def count(events: Sequence[ActivityEvent]) -> Counter:
            return Counter(note for event in events if event.event_type in RATE_EVENTS for note in event.notes)

        before, after = count(previous), count(current)
        alerts = []
        for note, current_count in sorted(after.items()):
            change = self._significant(before[note], current_count)
            if change is None:
                continue
            alerts.append(
                TrendAlert(
                    kind="flavor_trend",
                    category="flavor_notes",
                    title=f'Cambio en popularidad de "{note}"',
                    description=(
                        f'La nota "{note}" {_direction(change, "aumentó", "disminuyó")} '
                        f"{_pct(change)} en popularidad"
                    ),
                    change_pct=change,
                    severity="high" if abs(change) > 0.4 else "medium",
                    detected_at=now,
                    data={"note": note, "previousCount": before[note], "currentCount": current_count},
                )
            )
        return alerts

    def geographic_changes(
        self,
        previous: Sequence[ActivityEvent],
        current: Sequence[ActivityEvent],
        users: Mapping[str, UserRecord],
        now: datetime,
    ) -> List[TrendAlert]:
        def count(events: Sequence[ActivityEvent]) -> Tuple[Counter, Dict[str, set]]:
            counts: Counter = Counter()
            people: Dict[str, set] = defaultdict(set)
            for event in events:
                user = users.get(event.user_id)
                if event.event_type not in INTEREST_EVENTS or user is None or not user.nationality:
                    continue
                counts[user.nationality] += 1
                people[user.nationality].add(user.id)
            return counts, people

        (before, _), (after, people) = count(previous), count(current)
        alerts = []
        for country, current_count in sorted(after.items()):
            change = self._significant(before[country], current_count)
            if change is None:
                continue
            alerts.append(
                TrendAlert(
                    kind="geographic_change",
                    category="geographic_reach",
                    title=f"Cambio en actividad en {country}",
                    description=f"Actividad en {country} {_direction(change, 'aumentó', 'disminuyó')} {_pct(change)}",
                    change_pct=change,
                    severity="high" if abs(change) > 0.3 else "medium",
                    detected_at=now,
                    data={
                        "country": country,
                        "previousCount": before[country],
                        "currentCount": current_count,
                        "uniqueUsers": len(people[country]),
                    },
                )
            )
        return alerts

    def behavior_changes(
        self,
        previous: Sequence[ActivityEvent],
        current: Sequence[ActivityEvent],
        now: datetime,
    ) -> List[TrendAlert]:
        def conversion(events: Sequence[ActivityEvent]) -> float:
            views = sum(1 for event in events if event.event_type in VIEW_EVENTS)
            adds = sum(1 for event in events if event.event_type in SHELF_EVENTS)
            return adds / views if views else 0.0

        before, after = conversion(previous), conversion(current)
        if before <= 0:
            return []
        change = relative_change(after, before)
        if abs(change) < MIN_CONVERSION_CHANGE:
            return []
        return [
            TrendAlert(
                kind="behavior_change",
                category="conversion_rate",
                title="Cambio en tasa de conversión",
                description=(
                    f"Conversión vista→estantería {_direction(change, 'mejoró', 'empeoró')} {_pct(change)}"
                ),
                change_pct=change,
                severity="high" if abs(change) > 0.2 else "medium",
                detected_at=now,
                data={
                    "previousConversion": round(before * 100, 2),
                    "currentConversion": round(after * 100, 2),
                },
            )
        ]
