"""
Analytics engine for the yerba-mate review platform.

Answers "what happened in this window for this filter set" over shelves,
reviews and replies, caches the answers, and aggregates the event log into
privacy-filtered tables on a schedule.
"""

from .aggregator import METRIC_TABLES, MetricsAggregator  # noqa: F401
from .alerts import AlertsService  # noqa: F401
from .cache import CachedOverview, MetricsCache  # noqa: F401
from .config import Settings, load_settings  # noqa: F401
from .errors import (  # noqa: F401
    ComputationError,
    InsightsError,
    StaleDataWarning,
    UpstreamQueryError,
    ValidationError,
)
from .filters import NormalizedFilters, normalize_filters  # noqa: F401
from .models import (  # noqa: F401
    ActivityEvent,
    AggregatedMetricRow,
    NotesTopResult,
    OverviewResult,
    ProductRecord,
    Reply,
    Review,
    ShelfItem,
    TimeBucket,
    TimeWindow,
    TrendAlert,
    UserRecord,
)
from .notes import FlavorNotesRanker  # noqa: F401
from .periods import generate_buckets, resolve_window  # noqa: F401
from .repository import (  # noqa: F401
    AnalyticsRepository,
    InMemoryRepository,
    SQLAnalyticsRepository,
    build_repository,
)
from .scheduler import CronScheduler, MetricsScheduler  # noqa: F401
from .service import MetricsService  # noqa: F401
