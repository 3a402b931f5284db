"""
Turn a logical period (``dia``/``semana``/``mes``/``año``) or an explicit date
range into a concrete UTC window and its ordered chart buckets.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional

from .errors import ValidationError
from .models import Granularity, TimeBucket, TimeWindow

TIME_PERIODS = ("dia", "semana", "mes", "año")
DEFAULT_TIME_PERIOD = "mes"

PERIOD_GRANULARITY: Dict[str, Granularity] = {
    "dia": "hour",
    "semana": "day",
    "mes": "week",
    "año": "month",
}
GRANULARITY_LABELS: Dict[str, str] = {
    "hour": "Actividad por Hora",
    "day": "Actividad por Día",
    "week": "Actividad por Semana",
    "month": "Actividad por Mes",
}

_DAY_NAMES = ("Lun", "Mar", "Mié", "Jue", "Vie", "Sáb", "Dom")
_MONTH_NAMES = ("ene", "feb", "mar", "abr", "may", "jun", "jul", "ago", "sept", "oct", "nov", "dic")


@dataclass(frozen=True)
class ResolvedPeriod:
    window: TimeWindow
    granularity: Granularity
    time_period: Optional[str]
    label: str


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min, tzinfo=timezone.utc)


def start_of_month(moment: datetime) -> datetime:
    return datetime(moment.year, moment.month, 1, tzinfo=timezone.utc)


def add_months(moment: datetime, months: int) -> datetime:
    """Shift a month-aligned datetime by ``months`` (negative allowed)."""

    index = moment.year * 12 + (moment.month - 1) + months
    return moment.replace(year=index // 12, month=index % 12 + 1, day=1)


def normalize_time_period(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    # Accept the unaccented spelling some clients send.
    period = "año" if value == "ano" else value
    if period not in TIME_PERIODS:
        raise ValidationError(f"Unknown timePeriod '{value}'. Expected one of {', '.join(TIME_PERIODS)}.")
    return period


def parse_date_boundary(value: str, *, is_end: bool, field_name: str) -> datetime:
    """
    Parse ``YYYY-MM-DD`` or an ISO-8601 datetime.

    Date-only values are anchored at UTC midnight; an end date is widened to the
    following midnight so the whole calendar day is included.
    """

    raw = value.strip()
    try:
        if len(raw) == 10:
            parsed_date = date.fromisoformat(raw)
            moment = datetime.combine(parsed_date, time.min, tzinfo=timezone.utc)
            return moment + timedelta(days=1) if is_end else moment
        return ensure_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError as exc:
        raise ValidationError(f"Invalid {field_name} '{value}': expected YYYY-MM-DD.") from exc


def resolve_window(
    time_period: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ResolvedPeriod:
    period = normalize_time_period(time_period)

    if start_date or end_date:
        if not (start_date and end_date):
            raise ValidationError("startDate and endDate must be supplied together.")
        start = parse_date_boundary(start_date, is_end=False, field_name="startDate")
        end = parse_date_boundary(end_date, is_end=True, field_name="endDate")
        if start >= end:
            raise ValidationError("startDate must be before endDate.")
        granularity = PERIOD_GRANULARITY[period] if period else "week"
        return ResolvedPeriod(
            window=TimeWindow(start=start, end=end),
            granularity=granularity,
            time_period=period,
            label=GRANULARITY_LABELS[granularity],
        )

    period = period or DEFAULT_TIME_PERIOD
    current = ensure_utc(now or utc_now())
    tomorrow = start_of_day(current) + timedelta(days=1)

    if period == "dia":
        window = TimeWindow(start=tomorrow - timedelta(days=1), end=tomorrow)
    elif period == "semana":
        window = TimeWindow(start=tomorrow - timedelta(days=7), end=tomorrow)
    elif period == "mes":
        window = TimeWindow(start=tomorrow - timedelta(days=28), end=tomorrow)
    else:
        month_start = start_of_month(current)
        window = TimeWindow(start=add_months(month_start, -11), end=add_months(month_start, 1))

    granularity = PERIOD_GRANULARITY[period]
    return ResolvedPeriod(
        window=window,
        granularity=granularity,
        time_period=period,
        label=GRANULARITY_LABELS[granularity],
    )


def _next_boundary(cursor: datetime, granularity: Granularity) -> datetime:
    if granularity == "hour":
        return cursor + timedelta(hours=1)
    if granularity == "day":
        return cursor + timedelta(days=1)
    if granularity == "week":
        return cursor + timedelta(days=7)
    return add_months(start_of_month(cursor), 1)


def bucket_key(moment: datetime, granularity: Granularity) -> str:
    if granularity == "hour":
        return moment.strftime("%Y-%m-%dT%H:00Z")
    if granularity == "month":
        return moment.strftime("%Y-%m")
    return moment.strftime("%Y-%m-%d")


def bucket_label(moment: datetime, granularity: Granularity) -> str:
    if granularity == "hour":
        return moment.strftime("%d/%m %H:00")
    if granularity == "day":
        return f"{_DAY_NAMES[moment.weekday()]} {moment.strftime('%d/%m')}"
    if granularity == "week":
        return f"Sem {moment.strftime('%d/%m')}"
    return f"{_MONTH_NAMES[moment.month - 1]} {moment.year}"


def generate_buckets(window: TimeWindow, granularity: Granularity) -> List[TimeBucket]:
    """
    Split ``window`` into contiguous ascending buckets that cover it exactly.

    The last bucket is clipped to the window end. A window that starts and ends
    on the same calendar day yields one bucket unless the granularity is hourly.
    """

    start = ensure_utc(window.start)
    end = ensure_utc(window.end)
    if start >= end:
        return []

    last_instant = end - timedelta(microseconds=1)
    if granularity != "hour" and start.date() == last_instant.date():
        return [
            TimeBucket(
                key=bucket_key(start, granularity),
                label=bucket_label(start, granularity),
                start=start,
                end=end,
            )
        ]

    buckets: List[TimeBucket] = []
    cursor = start
    while cursor < end:
        bucket_end = min(_next_boundary(cursor, granularity), end)
        buckets.append(
            TimeBucket(
                key=bucket_key(cursor, granularity),
                label=bucket_label(cursor, granularity),
                start=cursor,
                end=bucket_end,
            )
        )
        cursor = bucket_end
    return buckets
