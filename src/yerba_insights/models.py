from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Literal, Optional, Sequence, Tuple

ShelfStatus = Literal["pending", "tasted"]
Granularity = Literal["hour", "day", "week", "month"]
BreakdownProvenance = Literal["current-period", "all-time-fallback"]
CacheProvenance = Literal["computed", "cache-hit", "stale-fallback"]
ChangeType = Literal["increasing", "decreasing", "stable", "new", "inactive"]


@dataclass(frozen=True)
class ShelfItem:
    product_id: str
    status: ShelfStatus
    added_at: datetime
    rating: Optional[int] = None
    notes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class UserRecord:
    """
    Read-only view of a platform user.

    ``birth_date`` mirrors the upstream string field (``YYYY-MM-DD``); only the
    year is used for age filtering.
    """

    id: str
    nationality: Optional[str] = None
    birth_date: Optional[str] = None
    gender: Optional[str] = None
    shelf: Tuple[ShelfItem, ...] = ()

    @property
    def birth_year(self) -> Optional[int]:
        if not self.birth_date or len(self.birth_date) < 4:
            return None
        try:
            return int(self.birth_date[:4])
        except ValueError:
            return None


@dataclass(frozen=True)
class Reply:
    id: str
    author_id: str
    comment: str
    created_at: datetime
    likes: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Review:
    id: str
    author_id: str
    rating: int
    comment: str
    created_at: datetime
    likes: FrozenSet[str] = frozenset()
    replies: Tuple[Reply, ...] = ()
    notes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProductRecord:
    id: str
    name: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    origin: Optional[str] = None
    producer_country: Optional[str] = None
    drying_method: Optional[str] = None
    reviews: Tuple[Review, ...] = ()


@dataclass(frozen=True)
class ActivityEvent:
    """
    Raw interaction from the event log (``view_product``, ``add_shelf``, ``rate`` ...).
    """

    id: str
    user_id: str
    event_type: str
    timestamp: datetime
    product_id: Optional[str] = None
    score: Optional[int] = None
    notes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TimeWindow:
    """Half-open ``[start, end)`` interval in UTC."""

    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def previous(self) -> "TimeWindow":
        return TimeWindow(start=self.start - self.duration, end=self.start)


@dataclass(frozen=True)
class TimeBucket:
    key: str
    label: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class TemporalPoint:
    bucket: TimeBucket
    events: int


@dataclass(frozen=True)
class TemporalActivity:
    granularity: Granularity
    period_label: str
    time_period: Optional[str]
    points: Sequence[TemporalPoint] = field(default_factory=list)


@dataclass(frozen=True)
class ActivitySummary:
    active_users: int = 0
    sample_events: int = 0
    reviews: int = 0
    replies: int = 0
    tastings: int = 0


@dataclass(frozen=True)
class DiscoveryResult:
    rate: float = 0.0
    discoverers: int = 0
    population: int = 0
    discovery_events: int = 0


@dataclass(frozen=True)
class CategoryShare:
    label: str
    count: int
    share: float
    period: BreakdownProvenance
    note: Optional[str] = None


@dataclass(frozen=True)
class BreakdownResult:
    rows: Sequence[CategoryShare] = field(default_factory=list)
    provenance: BreakdownProvenance = "current-period"


@dataclass(frozen=True)
class PopularityCounters:
    review_count: int = 0
    total_likes: int = 0
    total_replies: int = 0
    avg_rating: float = 0.0


@dataclass(frozen=True)
class TopMover:
    product_id: str
    label: str
    name: str
    brand: str
    delta_pct: float
    current_score: float
    previous_score: float
    change_type: ChangeType


@dataclass(frozen=True)
class OverviewResult:
    window: TimeWindow
    activity: ActivitySummary
    discovery: DiscoveryResult
    temporal_activity: TemporalActivity
    breakdown: BreakdownResult
    top_movers: Sequence[TopMover]
    degraded: Sequence[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        """
        JSON-ready payload using the camelCase names the dashboard frontend reads.
        """

        return {
            "usersWithTasting": self.activity.active_users,
            "activeUsers": self.activity.active_users,
            "discoveryRate": self.discovery.rate,
            "discoveryEvents": self.discovery.discovery_events,
            "temporalActivity": {
                "granularity": self.temporal_activity.granularity,
                "periodLabel": self.temporal_activity.period_label,
                "timePeriod": self.temporal_activity.time_period,
                "data": [_serialize_point(point) for point in self.temporal_activity.points],
            },
            "typeBreakdown": [_serialize_share(row) for row in self.breakdown.rows],
            "typeBreakdownSource": self.breakdown.provenance,
            "topMovers": [_serialize_mover(mover) for mover in self.top_movers],
            "sample": {
                "nUsers": self.activity.active_users,
                "nEvents": self.activity.sample_events,
            },
            "window": {
                "start": self.window.start.isoformat(),
                "end": self.window.end.isoformat(),
            },
            "degraded": list(self.degraded),
        }


def _serialize_point(point: TemporalPoint) -> Dict[str, Any]:
    return {
        "period": point.bucket.key,
        "label": point.bucket.label,
        "start": point.bucket.start.isoformat(),
        "end": point.bucket.end.isoformat(),
        "events": point.events,
    }


def _serialize_share(row: CategoryShare) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "label": row.label,
        "count": row.count,
        "share": row.share,
        "period": row.period,
    }
    if row.note is not None:
        payload["note"] = row.note
    return payload


def _serialize_mover(mover: TopMover) -> Dict[str, Any]:
    return {
        "productId": mover.product_id,
        "label": mover.label,
        "name": mover.name,
        "brand": mover.brand,
        "deltaPct": mover.delta_pct,
        "currentScore": mover.current_score,
        "previousScore": mover.previous_score,
        "changeType": mover.change_type,
    }


@dataclass
class CacheEntry:
    fingerprint: str
    payload: Dict[str, Any]
    computed_at: float
    hits: int = 0


@dataclass(frozen=True)
class AggregatedMetricRow:
    """
    One persisted group of a derived table. Only counts leave the aggregator;
    the distinct user ids behind ``unique_user_count`` are never stored.
    """

    table: str
    dimensions: Dict[str, Any]
    counts: Dict[str, float]
    unique_user_count: int
    created_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "dimensions": dict(self.dimensions),
            "counts": dict(self.counts),
            "uniqueUserCount": self.unique_user_count,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class NoteInteraction:
    note: str
    label: str
    share: float
    interaction_score: int
    normalized_score: float
    review_count: int
    user_count: int
    avg_likes: float
    avg_replies: float


@dataclass(frozen=True)
class NotesTopResult:
    window: TimeWindow
    notes: Sequence[NoteInteraction] = field(default_factory=list)
    total_reviews: int = 0
    unique_users: int = 0
    min_users: int = 2

    def as_dict(self) -> Dict[str, Any]:
        return {
            "notes": [
                {
                    "note": row.note,
                    "label": row.label,
                    "share": row.share,
                    "interactionScore": row.interaction_score,
                    "normalizedScore": row.normalized_score,
                    "reviewCount": row.review_count,
                    "userCount": row.user_count,
                    "avgLikes": row.avg_likes,
                    "avgReplies": row.avg_replies,
                }
                for row in self.notes
            ],
            "sample": {
                "nEvents": self.total_reviews,
                "nRatings": self.total_reviews,
                "kAnonymityOk": self.unique_users >= self.min_users,
            },
            "window": {
                "start": self.window.start.isoformat(),
                "end": self.window.end.isoformat(),
            },
            "_meta": {"source": "interaction_based", "algorithm": "interaction_weighted"},
        }


@dataclass(frozen=True)
class TrendAlert:
    """A significant change between two adjacent comparison windows."""

    kind: str
    category: str
    title: str
    description: str
    change_pct: float
    severity: Literal["medium", "high"]
    detected_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "changePercent": self.change_pct,
            "severity": self.severity,
            "timestamp": self.detected_at.isoformat(),
            "data": dict(self.data),
        }
