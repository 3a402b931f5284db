"""
Offline aggregation of the activity event log into privacy-filtered tables.

Each table groups events along a few dimensions and keeps only groups backed
by at least ``k_threshold`` distinct users. The user ids themselves never
leave :meth:`MetricsAggregator.build_tables`.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import ValidationError
from .models import ActivityEvent, AggregatedMetricRow, ProductRecord, UserRecord
from .periods import ensure_utc, utc_now
from .repository import AnalyticsRepository

logger = logging.getLogger(__name__)

TOP_PRODUCTS = "top_products"
FLAVOR_NOTES = "flavor_notes"
TRENDS = "trends"
USER_BEHAVIOR = "user_behavior"
DISCOVERY = "discovery"
METRIC_TABLES = (TOP_PRODUCTS, FLAVOR_NOTES, TRENDS, USER_BEHAVIOR, DISCOVERY)

VIEW_EVENTS = {"view_product", "view_yerba"}
SHELF_EVENTS = {"add_shelf"}
RATE_EVENTS = {"rate"}

UNKNOWN = "unknown"


def age_bucket(birth_date: Optional[str], today: date) -> str:
    if not birth_date:
        return UNKNOWN
    try:
        born = date.fromisoformat(birth_date[:10])
    except ValueError:
        return UNKNOWN
    age = today.year - born.year - ((today.month, today.day) < (born.month, born.day))
    if age < 25:
        return "18-24"
    if age < 35:
        return "25-34"
    if age < 45:
        return "35-44"
    if age < 55:
        return "45-54"
    return "55+"


def products_tried_range(count: int) -> str:
    if count <= 3:
        return "1-3"
    if count <= 7:
        return "4-7"
    if count <= 15:
        return "8-15"
    return "16+"


@dataclass
class _Group:
    users: Set[str] = field(default_factory=set)
    counts: Counter = field(default_factory=Counter)
    scores: List[float] = field(default_factory=list)


@dataclass
class AggregationReport:
    started_at: datetime
    events_scanned: int = 0
    rows_written: Dict[str, int] = field(default_factory=dict)
    groups_suppressed: Dict[str, int] = field(default_factory=dict)
    rows_expired: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": self.started_at.isoformat(),
            "eventsScanned": self.events_scanned,
            "rowsWritten": dict(self.rows_written),
            "groupsSuppressed": dict(self.groups_suppressed),
            "rowsExpired": dict(self.rows_expired),
        }


class MetricsAggregator:
    def __init__(
        self,
        repository: AnalyticsRepository,
        k_threshold: int = 50,
        window_days: int = 90,
        retention_days: int = 180,
        event_retention_days: int = 365,
    ) -> None:
        self.repository = repository
        self.k_threshold = k_threshold
        self.window_days = window_days
        self.retention_days = retention_days
        self.event_retention_days = event_retention_days

    async def generate_all(self, now: Optional[datetime] = None) -> AggregationReport:
        now = ensure_utc(now or utc_now())
        start = now - timedelta(days=self.window_days)
        report = AggregationReport(started_at=now)

        events = await self.repository.find_events(start, now)
        users = await self.repository.find_users_by_ids({event.user_id for event in events})
        products = await self.repository.find_products_by_ids(
            {event.product_id for event in events if event.product_id}
        )
        report.events_scanned = len(events)
        logger.info("Aggregating %d events from %s to %s", len(events), start, now)

        tables, suppressed = self.build_tables(events, users, products, now)
        report.groups_suppressed = suppressed

        retention_cutoff = now - timedelta(days=self.retention_days)
        for table in METRIC_TABLES:
            rows = tables[table]
            expired = await self.repository.replace_metric_rows(table, rows, retention_cutoff)
            report.rows_written[table] = len(rows)
            report.rows_expired[table] = expired
            logger.info(
                "Saved %d rows to %s (%d suppressed below k=%d, %d expired)",
                len(rows),
                table,
                suppressed[table],
                self.k_threshold,
                expired,
            )
        return report

    def build_tables(
        self,
        events: Sequence[ActivityEvent],
        users: Sequence[UserRecord],
        products: Sequence[ProductRecord],
        now: datetime,
    ) -> Tuple[Dict[str, List[AggregatedMetricRow]], Dict[str, int]]:
        """
        Group ``events`` into every derived table.

        Events whose user is unknown are ignored, as are product-scoped events
        whose product is unknown.
        """

        user_index = {user.id: user for user in users}
        product_index = {product.id: product for product in products}
        today = now.date()

        top_products: Dict[Tuple, _Group] = defaultdict(_Group)
        flavor_notes: Dict[Tuple, _Group] = defaultdict(_Group)
        trends: Dict[Tuple, _Group] = defaultdict(_Group)
        behavior: Dict[Tuple, _Group] = defaultdict(_Group)
        shelf_products: Dict[str, Set[str]] = defaultdict(set)

        for event in events:
            user = user_index.get(event.user_id)
            if user is None:
                continue
            moment = ensure_utc(event.timestamp)
            country = user.nationality or UNKNOWN
            product = product_index.get(event.product_id) if event.product_id else None

            group = behavior[(moment.strftime("%Y-%m-%d"), event.event_type, country)]
            group.users.add(user.id)
            group.counts["events"] += 1

            for note in event.notes:
                group = flavor_notes[(note, country, age_bucket(user.birth_date, today), user.gender or UNKNOWN)]
                group.users.add(user.id)
                group.counts["mentions"] += 1

            if product is None:
                continue

            if event.event_type in VIEW_EVENTS | SHELF_EVENTS | RATE_EVENTS:
                key = (
                    moment.strftime("%Y-%m"),
                    country,
                    product.id,
                    product.name or UNKNOWN,
                    product.brand or UNKNOWN,
                    product.category or UNKNOWN,
                    product.producer_country or UNKNOWN,
                )
                group = top_products[key]
                group.users.add(user.id)
                group.counts["interactions"] += 1
                group.counts["views"] += event.event_type in VIEW_EVENTS
                group.counts["shelfAdds"] += event.event_type in SHELF_EVENTS
                group.counts["ratings"] += event.event_type in RATE_EVENTS
                if event.score is not None:
                    group.scores.append(event.score)

            if event.event_type in RATE_EVENTS and event.score is not None:
                iso_year, iso_week, _ = moment.isocalendar()
                key = (
                    f"{iso_year}-W{iso_week:02d}",
                    product.category or UNKNOWN,
                    product.drying_method or UNKNOWN,
                )
                group = trends[key]
                group.users.add(user.id)
                group.counts["ratings"] += 1
                group.scores.append(event.score)

            if event.event_type in SHELF_EVENTS:
                shelf_products[user.id].add(product.id)

        discovery: Dict[Tuple, _Group] = defaultdict(_Group)
        for user_id, tried in shelf_products.items():
            country = user_index[user_id].nationality or UNKNOWN
            group = discovery[(country, products_tried_range(len(tried)))]
            group.users.add(user_id)
            group.counts["users"] += 1
            group.scores.append(len(tried))

        layout = {
            TOP_PRODUCTS: (
                top_products,
                ("month", "country", "productId", "name", "brand", "category", "producerCountry"),
                "avgScore",
            ),
            FLAVOR_NOTES: (flavor_notes, ("note", "country", "ageBucket", "gender"), None),
            TRENDS: (trends, ("week", "category", "dryingMethod"), "avgScore"),
            USER_BEHAVIOR: (behavior, ("day", "eventType", "country"), None),
            DISCOVERY: (discovery, ("country", "productsTriedRange"), "avgProductsPerUser"),
        }
        tables: Dict[str, List[AggregatedMetricRow]] = {}
        suppressed: Dict[str, int] = {}
        for table, (groups, dimension_names, average_name) in layout.items():
            tables[table], suppressed[table] = self._finalize(table, groups, dimension_names, average_name, now)
        return tables, suppressed

    def _finalize(
        self,
        table: str,
        groups: Mapping[Tuple, _Group],
        dimension_names: Sequence[str],
        average_name: Optional[str],
        created_at: datetime,
    ) -> Tuple[List[AggregatedMetricRow], int]:
        rows: List[AggregatedMetricRow] = []
        suppressed = 0
        for key in sorted(groups):
            group = groups[key]
            if len(group.users) < self.k_threshold:
                suppressed += 1
                continue
            counts: Dict[str, float] = {name: int(value) for name, value in group.counts.items()}
            if average_name is not None:
                counts[average_name] = round(sum(group.scores) / len(group.scores), 2) if group.scores else 0.0
            rows.append(
                AggregatedMetricRow(
                    table=table,
                    dimensions=dict(zip(dimension_names, key)),
                    counts=counts,
                    unique_user_count=len(group.users),
                    created_at=created_at,
                )
            )
        return rows, suppressed

    async def prune_events(self, now: Optional[datetime] = None) -> int:
        cutoff = ensure_utc(now or utc_now()) - timedelta(days=self.event_retention_days)
        deleted = await self.repository.delete_events_before(cutoff)
        logger.info("Deleted %d events older than %s", deleted, cutoff)
        return deleted

    async def prune_metric_rows(self, now: Optional[datetime] = None) -> int:
        cutoff = ensure_utc(now or utc_now()) - timedelta(days=self.retention_days)
        deleted = await self.repository.prune_metric_rows(cutoff)
        logger.info("Deleted %d metric rows older than %s", deleted, cutoff)
        return deleted

    async def get_metrics(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        if table not in METRIC_TABLES:
            raise ValidationError(f"Unknown metrics table '{table}'. Expected one of {', '.join(METRIC_TABLES)}.")
        rows = await self.repository.get_metric_rows(table, filters, limit)
        return [row.as_dict() for row in rows]

    async def summary(self, limit: int = 5) -> Dict[str, List[Dict[str, Any]]]:
        return {table: await self.get_metrics(table, limit=limit) for table in METRIC_TABLES}
