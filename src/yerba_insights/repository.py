from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import JSON as SAJSON
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text, create_engine, delete, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import RepositoryConfig
from .errors import UpstreamQueryError, ValidationError
from .filters import ProductPredicate, UserPredicate
from .models import (
    ActivityEvent,
    AggregatedMetricRow,
    ProductRecord,
    Reply,
    Review,
    ShelfItem,
    UserRecord,
)
from .periods import ensure_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_ATTRIBUTES = {"nationality", "gender"}
PRODUCT_ATTRIBUTES = {"category", "brand", "origin", "producer_country", "drying_method"}

_STATUS_ALIASES = {
    "tasted": "tasted",
    "probada": "tasted",
    "pending": "pending",
    "por probar": "pending",
}


def normalize_shelf_status(value: Optional[str]) -> str:
    return _STATUS_ALIASES.get((value or "").strip().lower(), "pending")


def filter_metric_rows(
    rows: Iterable[AggregatedMetricRow],
    table: str,
    filters: Optional[Mapping[str, Any]] = None,
    limit: Optional[int] = None,
) -> List[AggregatedMetricRow]:
    """
    Newest-first rows of ``table`` whose dimensions equal every value in ``filters``.
    """

    expected = {key: value for key, value in (filters or {}).items() if value not in (None, "")}
    selected = [
        row
        for row in rows
        if row.table == table
        and all(str(row.dimensions.get(key)) == str(value) for key, value in expected.items())
    ]
    selected.sort(key=lambda row: row.created_at, reverse=True)
    if limit is not None:
        selected = selected[:limit]
    return selected


class AnalyticsRepository:
    """
    Data-store collaborator used by every calculator.

    Reads return immutable records; the only writes are the derived metric
    tables and retention pruning. Implementations raise ``UpstreamQueryError``
    when the store is unreachable.
    """

    async def find_users(self, predicate: UserPredicate) -> Sequence[UserRecord]:
        raise NotImplementedError

    async def find_products(self, predicate: ProductPredicate) -> Sequence[ProductRecord]:
        raise NotImplementedError

    async def find_users_by_ids(self, user_ids: Iterable[str]) -> Sequence[UserRecord]:
        raise NotImplementedError

    async def find_products_by_ids(self, product_ids: Iterable[str]) -> Sequence[ProductRecord]:
        raise NotImplementedError

    async def find_events(self, start: datetime, end: datetime) -> Sequence[ActivityEvent]:
        raise NotImplementedError

    async def distinct_values(self, attribute: str) -> List[str]:
        raise NotImplementedError

    async def replace_metric_rows(
        self,
        table: str,
        rows: Sequence[AggregatedMetricRow],
        retention_cutoff: datetime,
    ) -> int:
        """
        Drop rows of ``table`` older than ``retention_cutoff`` and insert ``rows``
        as one atomic step. Returns the number of rows deleted.
        """

        raise NotImplementedError

    async def prune_metric_rows(self, cutoff: datetime) -> int:
        raise NotImplementedError

    async def delete_events_before(self, cutoff: datetime) -> int:
        raise NotImplementedError

    async def get_metric_rows(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> Sequence[AggregatedMetricRow]:
        raise NotImplementedError


def _check_attribute(attribute: str) -> None:
    if attribute not in USER_ATTRIBUTES | PRODUCT_ATTRIBUTES:
        raise ValidationError(f"Unknown attribute '{attribute}'.")


class InMemoryRepository(AnalyticsRepository):
    """
    List-backed store used when no database URL is configured and in tests.

    Metric-table writes build a new list and swap it in under a lock.
    """

    def __init__(
        self,
        users: Sequence[UserRecord] = (),
        products: Sequence[ProductRecord] = (),
        events: Sequence[ActivityEvent] = (),
        metric_rows: Sequence[AggregatedMetricRow] = (),
    ) -> None:
        self.users: List[UserRecord] = list(users)
        self.products: List[ProductRecord] = list(products)
        self.events: List[ActivityEvent] = list(events)
        self.metric_rows: List[AggregatedMetricRow] = list(metric_rows)
        self._lock = asyncio.Lock()

    async def find_users(self, predicate: UserPredicate) -> Sequence[UserRecord]:
        return [user for user in self.users if predicate.matches(user)]

    async def find_products(self, predicate: ProductPredicate) -> Sequence[ProductRecord]:
        return [product for product in self.products if predicate.matches(product)]

    async def find_users_by_ids(self, user_ids: Iterable[str]) -> Sequence[UserRecord]:
        wanted = set(user_ids)
        return [user for user in self.users if user.id in wanted]

    async def find_products_by_ids(self, product_ids: Iterable[str]) -> Sequence[ProductRecord]:
        wanted = set(product_ids)
        return [product for product in self.products if product.id in wanted]

    async def find_events(self, start: datetime, end: datetime) -> Sequence[ActivityEvent]:
        selected = [event for event in self.events if start <= event.timestamp < end]
        return sorted(selected, key=lambda event: event.timestamp)

    async def distinct_values(self, attribute: str) -> List[str]:
        _check_attribute(attribute)
        source = self.users if attribute in USER_ATTRIBUTES else self.products
        return sorted({value for record in source if (value := getattr(record, attribute))})

    async def replace_metric_rows(
        self,
        table: str,
        rows: Sequence[AggregatedMetricRow],
        retention_cutoff: datetime,
    ) -> int:
        async with self._lock:
            kept = [
                row
                for row in self.metric_rows
                if row.table != table or row.created_at >= retention_cutoff
            ]
            deleted = len(self.metric_rows) - len(kept)
            self.metric_rows = kept + list(rows)
        return deleted

    async def prune_metric_rows(self, cutoff: datetime) -> int:
        async with self._lock:
            kept = [row for row in self.metric_rows if row.created_at >= cutoff]
            deleted = len(self.metric_rows) - len(kept)
            self.metric_rows = kept
        return deleted

    async def delete_events_before(self, cutoff: datetime) -> int:
        async with self._lock:
            kept = [event for event in self.events if event.timestamp >= cutoff]
            deleted = len(self.events) - len(kept)
            self.events = kept
        return deleted

    async def get_metric_rows(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> Sequence[AggregatedMetricRow]:
        return filter_metric_rows(self.metric_rows, table, filters, limit)


class SQLAnalyticsRepository(AnalyticsRepository):
    """
    SQLAlchemy Core implementation.

    Expected tables (created on demand by :meth:`create_schema`):
      - users(id, nationality, birth_date, gender)
      - shelf_items(user_id, product_id, status, added_at, rating, notes)
      - products(id, name, brand, category, origin, producer_country, drying_method)
      - reviews / review_likes / replies / reply_likes
      - events(id, user_id, event_type, timestamp, product_id, score, notes)
      - metric_rows(table_name, dimensions, counts, unique_user_count, created_at)

    Legacy shelf statuses (``probada`` / ``por probar``) are mapped on read.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.metadata = MetaData()
        json_type = SAJSON().with_variant(JSONB, "postgresql")
        self.users = Table(
            "users",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("nationality", String(128), index=True),
            Column("birth_date", String(32)),
            Column("gender", String(32)),
        )
        self.shelf_items = Table(
            "shelf_items",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("user_id", String(64), index=True, nullable=False),
            Column("product_id", String(64), index=True, nullable=False),
            Column("status", String(32), nullable=False),
            Column("added_at", DateTime(timezone=True), nullable=False),
            Column("rating", Integer),
            Column("notes", json_type),
        )
        self.products = Table(
            "products",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("name", String(256)),
            Column("brand", String(256)),
            Column("category", String(128), index=True),
            Column("origin", String(128)),
            Column("producer_country", String(128)),
            Column("drying_method", String(128)),
        )
        self.reviews = Table(
            "reviews",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("product_id", String(64), index=True, nullable=False),
            Column("author_id", String(64), nullable=False),
            Column("rating", Integer, nullable=False),
            Column("comment", Text, nullable=False, default=""),
            Column("created_at", DateTime(timezone=True), index=True, nullable=False),
            Column("notes", json_type),
        )
        self.review_likes = Table(
            "review_likes",
            self.metadata,
            Column("review_id", String(64), primary_key=True),
            Column("user_id", String(64), primary_key=True),
        )
        self.replies = Table(
            "replies",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("review_id", String(64), index=True, nullable=False),
            Column("author_id", String(64), nullable=False),
            Column("comment", Text, nullable=False, default=""),
            Column("created_at", DateTime(timezone=True), index=True, nullable=False),
        )
        self.reply_likes = Table(
            "reply_likes",
            self.metadata,
            Column("reply_id", String(64), primary_key=True),
            Column("user_id", String(64), primary_key=True),
        )
        self.events = Table(
            "events",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("user_id", String(64), index=True, nullable=False),
            Column("event_type", String(64), nullable=False),
            Column("timestamp", DateTime(timezone=True), index=True, nullable=False),
            Column("product_id", String(64)),
            Column("score", Integer),
            Column("notes", json_type),
        )
        self.metric_rows = Table(
            "metric_rows",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("table_name", String(64), index=True, nullable=False),
            Column("dimensions", json_type, nullable=False),
            Column("counts", json_type, nullable=False),
            Column("unique_user_count", Integer, nullable=False),
            Column("created_at", DateTime(timezone=True), index=True, nullable=False),
        )

    def create_schema(self) -> None:
        self.metadata.create_all(self.engine, checkfirst=True)

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as exc:
            logger.warning("Analytics query %s failed: %s", getattr(func, "__name__", func), exc)
            raise UpstreamQueryError(str(exc)) from exc

    # Reads

    async def find_users(self, predicate: UserPredicate) -> Sequence[UserRecord]:
        return await self._run(self._find_users_sync, predicate)

    async def find_products(self, predicate: ProductPredicate) -> Sequence[ProductRecord]:
        return await self._run(self._find_products_sync, predicate, None)

    async def find_users_by_ids(self, user_ids: Iterable[str]) -> Sequence[UserRecord]:
        return await self._run(self._find_users_by_ids_sync, sorted(set(user_ids)))

    async def find_products_by_ids(self, product_ids: Iterable[str]) -> Sequence[ProductRecord]:
        return await self._run(self._find_products_sync, ProductPredicate(), sorted(set(product_ids)))

    async def find_events(self, start: datetime, end: datetime) -> Sequence[ActivityEvent]:
        return await self._run(self._find_events_sync, ensure_utc(start), ensure_utc(end))

    async def distinct_values(self, attribute: str) -> List[str]:
        _check_attribute(attribute)
        return await self._run(self._distinct_values_sync, attribute)

    async def get_metric_rows(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> Sequence[AggregatedMetricRow]:
        rows = await self._run(self._metric_rows_sync, table)
        return filter_metric_rows(rows, table, filters, limit)

    # Writes

    async def replace_metric_rows(
        self,
        table: str,
        rows: Sequence[AggregatedMetricRow],
        retention_cutoff: datetime,
    ) -> int:
        return await self._run(self._replace_metric_rows_sync, table, list(rows), ensure_utc(retention_cutoff))

    async def prune_metric_rows(self, cutoff: datetime) -> int:
        return await self._run(self._delete_before_sync, self.metric_rows, "created_at", ensure_utc(cutoff))

    async def delete_events_before(self, cutoff: datetime) -> int:
        return await self._run(self._delete_before_sync, self.events, "timestamp", ensure_utc(cutoff))

    def insert_users(self, users: Sequence[UserRecord]) -> None:
        with self.engine.begin() as connection:
            for user in users:
                connection.execute(
                    self.users.insert().values(
                        id=user.id,
                        nationality=user.nationality,
                        birth_date=user.birth_date,
                        gender=user.gender,
                    )
                )
                for item in user.shelf:
                    connection.execute(
                        self.shelf_items.insert().values(
                            user_id=user.id,
                            product_id=item.product_id,
                            status=item.status,
                            added_at=ensure_utc(item.added_at),
                            rating=item.rating,
                            notes=list(item.notes),
                        )
                    )

    def insert_products(self, products: Sequence[ProductRecord]) -> None:
        with self.engine.begin() as connection:
            for product in products:
                connection.execute(
                    self.products.insert().values(
                        id=product.id,
                        name=product.name,
                        brand=product.brand,
                        category=product.category,
                        origin=product.origin,
                        producer_country=product.producer_country,
                        drying_method=product.drying_method,
                    )
                )
                for review in product.reviews:
                    connection.execute(
                        self.reviews.insert().values(
                            id=review.id,
                            product_id=product.id,
                            author_id=review.author_id,
                            rating=review.rating,
                            comment=review.comment,
                            created_at=ensure_utc(review.created_at),
                            notes=list(review.notes),
                        )
                    )
                    for liker in sorted(review.likes):
                        connection.execute(self.review_likes.insert().values(review_id=review.id, user_id=liker))
                    for reply in review.replies:
                        connection.execute(
                            self.replies.insert().values(
                                id=reply.id,
                                review_id=review.id,
                                author_id=reply.author_id,
                                comment=reply.comment,
                                created_at=ensure_utc(reply.created_at),
                            )
                        )
                        for liker in sorted(reply.likes):
                            connection.execute(self.reply_likes.insert().values(reply_id=reply.id, user_id=liker))

    def insert_events(self, events: Sequence[ActivityEvent]) -> None:
        with self.engine.begin() as connection:
            for event in events:
                connection.execute(
                    self.events.insert().values(
                        id=event.id,
                        user_id=event.user_id,
                        event_type=event.event_type,
                        timestamp=ensure_utc(event.timestamp),
                        product_id=event.product_id,
                        score=event.score,
                        notes=list(event.notes),
                    )
                )

    # Synchronous helpers executed in a worker thread

    def _find_users_sync(self, predicate: UserPredicate) -> List[UserRecord]:
        query = select(self.users)
        if predicate.nationality is not None:
            query = query.where(self.users.c.nationality == predicate.nationality)
        if predicate.gender is not None:
            query = query.where(self.users.c.gender == predicate.gender)
        if predicate.birth_year_min is not None:
            query = query.where(self.users.c.birth_date >= f"{predicate.birth_year_min:04d}-01-01")
        if predicate.birth_year_max is not None:
            query = query.where(self.users.c.birth_date <= f"{predicate.birth_year_max:04d}-12-31")
        with self.engine.connect() as connection:
            user_rows = connection.execute(query.order_by(self.users.c.id)).fetchall()
            shelves = self._load_shelves(connection, [row.id for row in user_rows], restrict=not predicate.is_empty)
        users = [self._row_to_user(row, shelves.get(row.id, ())) for row in user_rows]
        return [user for user in users if predicate.matches(user)]

    def _find_users_by_ids_sync(self, user_ids: List[str]) -> List[UserRecord]:
        if not user_ids:
            return []
        query = select(self.users).where(self.users.c.id.in_(user_ids)).order_by(self.users.c.id)
        with self.engine.connect() as connection:
            user_rows = connection.execute(query).fetchall()
            shelves = self._load_shelves(connection, user_ids, restrict=True)
        return [self._row_to_user(row, shelves.get(row.id, ())) for row in user_rows]

    def _load_shelves(self, connection, user_ids: List[str], restrict: bool) -> Dict[str, List[ShelfItem]]:
        query = select(self.shelf_items).order_by(self.shelf_items.c.id)
        if restrict:
            if not user_ids:
                return {}
            query = query.where(self.shelf_items.c.user_id.in_(user_ids))
        shelves: Dict[str, List[ShelfItem]] = defaultdict(list)
        for row in connection.execute(query):
            shelves[row.user_id].append(
                ShelfItem(
                    product_id=str(row.product_id),
                    status=normalize_shelf_status(row.status),
                    added_at=ensure_utc(row.added_at),
                    rating=row.rating,
                    notes=tuple(row.notes or ()),
                )
            )
        return shelves

    def _find_products_sync(
        self,
        predicate: ProductPredicate,
        product_ids: Optional[List[str]],
    ) -> List[ProductRecord]:
        query = select(self.products)
        for attribute in PRODUCT_ATTRIBUTES:
            expected = getattr(predicate, attribute)
            if expected is not None:
                query = query.where(self.products.c[attribute] == expected)
        if product_ids is not None:
            if not product_ids:
                return []
            query = query.where(self.products.c.id.in_(product_ids))

        with self.engine.connect() as connection:
            product_rows = connection.execute(query.order_by(self.products.c.id)).fetchall()
            ids = [row.id for row in product_rows]
            if not ids:
                return []
            review_rows = connection.execute(
                select(self.reviews).where(self.reviews.c.product_id.in_(ids)).order_by(self.reviews.c.created_at)
            ).fetchall()
            review_ids = [row.id for row in review_rows]
            review_likes = self._load_likes(connection, self.review_likes, "review_id", review_ids)
            reply_rows = []
            if review_ids:
                reply_rows = connection.execute(
                    select(self.replies)
                    .where(self.replies.c.review_id.in_(review_ids))
                    .order_by(self.replies.c.created_at)
                ).fetchall()
            reply_likes = self._load_likes(connection, self.reply_likes, "reply_id", [row.id for row in reply_rows])

        replies_by_review: Dict[str, List[Reply]] = defaultdict(list)
        for row in reply_rows:
            replies_by_review[row.review_id].append(
                Reply(
                    id=str(row.id),
                    author_id=str(row.author_id),
                    comment=row.comment or "",
                    created_at=ensure_utc(row.created_at),
                    likes=frozenset(reply_likes.get(row.id, ())),
                )
            )
        reviews_by_product: Dict[str, List[Review]] = defaultdict(list)
        for row in review_rows:
            reviews_by_product[row.product_id].append(
                Review(
                    id=str(row.id),
                    author_id=str(row.author_id),
                    rating=int(row.rating),
                    comment=row.comment or "",
                    created_at=ensure_utc(row.created_at),
                    likes=frozenset(review_likes.get(row.id, ())),
                    replies=tuple(replies_by_review.get(row.id, ())),
                    notes=tuple(row.notes or ()),
                )
            )
        return [
            ProductRecord(
                id=str(row.id),
                name=row.name,
                brand=row.brand,
                category=row.category,
                origin=row.origin,
                producer_country=row.producer_country,
                drying_method=row.drying_method,
                reviews=tuple(reviews_by_product.get(row.id, ())),
            )
            for row in product_rows
        ]

    @staticmethod
    def _load_likes(connection, table: Table, key: str, ids: List[str]) -> Dict[str, set]:
        likes: Dict[str, set] = defaultdict(set)
        if not ids:
            return likes
        for row in connection.execute(select(table).where(table.c[key].in_(ids))):
            likes[row._mapping[key]].add(str(row.user_id))
        return likes

    def _find_events_sync(self, start: datetime, end: datetime) -> List[ActivityEvent]:
        query = (
            select(self.events)
            .where(self.events.c.timestamp >= start, self.events.c.timestamp < end)
            .order_by(self.events.c.timestamp)
        )
        with self.engine.connect() as connection:
            rows = connection.execute(query).fetchall()
        return [
            ActivityEvent(
                id=str(row.id),
                user_id=str(row.user_id),
                event_type=row.event_type,
                timestamp=ensure_utc(row.timestamp),
                product_id=row.product_id,
                score=row.score,
                notes=tuple(row.notes or ()),
            )
            for row in rows
        ]

    def _distinct_values_sync(self, attribute: str) -> List[str]:
        table = self.users if attribute in USER_ATTRIBUTES else self.products
        column = table.c[attribute]
        with self.engine.connect() as connection:
            values = connection.execute(select(column).distinct()).scalars().all()
        return sorted(value for value in values if value)

    def _metric_rows_sync(self, table: str) -> List[AggregatedMetricRow]:
        query = (
            select(self.metric_rows)
            .where(self.metric_rows.c.table_name == table)
            .order_by(self.metric_rows.c.created_at.desc(), self.metric_rows.c.id)
        )
        with self.engine.connect() as connection:
            rows = connection.execute(query).fetchall()
        return [
            AggregatedMetricRow(
                table=row.table_name,
                dimensions=dict(row.dimensions or {}),
                counts=dict(row.counts or {}),
                unique_user_count=int(row.unique_user_count),
                created_at=ensure_utc(row.created_at),
            )
            for row in rows
        ]

    def _replace_metric_rows_sync(
        self,
        table: str,
        rows: List[AggregatedMetricRow],
        retention_cutoff: datetime,
    ) -> int:
        # Delete and insert share one transaction so readers never see a gap.
        with self.engine.begin() as connection:
            result = connection.execute(
                delete(self.metric_rows).where(
                    self.metric_rows.c.table_name == table,
                    self.metric_rows.c.created_at < retention_cutoff,
                )
            )
            if rows:
                connection.execute(
                    self.metric_rows.insert(),
                    [
                        {
                            "table_name": row.table,
                            "dimensions": row.dimensions,
                            "counts": row.counts,
                            "unique_user_count": row.unique_user_count,
                            "created_at": ensure_utc(row.created_at),
                        }
                        for row in rows
                    ],
                )
        return result.rowcount or 0

    def _delete_before_sync(self, table: Table, column: str, cutoff: datetime) -> int:
        with self.engine.begin() as connection:
            result = connection.execute(delete(table).where(table.c[column] < cutoff))
        return result.rowcount or 0

    @staticmethod
    def _row_to_user(row, shelf: Sequence[ShelfItem]) -> UserRecord:
        return UserRecord(
            id=str(row.id),
            nationality=row.nationality,
            birth_date=row.birth_date,
            gender=row.gender,
            shelf=tuple(shelf),
        )


def build_repository(config: Optional[RepositoryConfig] = None) -> AnalyticsRepository:
    cfg = config or RepositoryConfig.from_env()
    if cfg.database_url:
        engine = create_engine(cfg.database_url, future=True)
        repository = SQLAnalyticsRepository(engine)
        if cfg.create_schema:
            repository.create_schema()
        logger.info("Using SQL analytics repository")
        return repository
    logger.info("No database URL configured; using an empty in-memory repository")
    return InMemoryRepository()
