from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from fastapi import APIRouter, BackgroundTasks, Body, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, validator

from .aggregator import MetricsAggregator
from .alerts import AlertsService
from .cache import MetricsCache
from .config import Settings, configure_logging, load_settings
from .errors import UpstreamQueryError, ValidationError
from .filters import normalize_filters
from .repository import AnalyticsRepository, build_repository
from .scheduler import MetricsScheduler
from .service import MetricsService

logger = logging.getLogger(__name__)

T = TypeVar("T")

router = APIRouter()


class UpdateIntervalRequest(BaseModel):
    interval: int

    @validator("interval")
    def validate_interval(cls, interval: int) -> int:
        if interval <= 0:
            raise ValueError("interval must be a positive number of milliseconds")
        return interval


class TriggerAggregationRequest(BaseModel):
    kind: str = "daily"


async def _call(awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UpstreamQueryError as exc:
        raise HTTPException(status_code=503, detail=f"Data store unavailable: {exc}") from exc
    except asyncio.TimeoutError as exc:
        raise HTTPException(status_code=504, detail="Metrics computation timed out.") from exc


def _parse_filters(raw: Optional[Dict[str, Any]]):
    try:
        return normalize_filters(raw or {})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/dashboard/overview")
async def overview(request: Request) -> Dict[str, Any]:
    filters = _parse_filters(dict(request.query_params))
    cache: MetricsCache = request.app.state.cache
    cached = await _call(cache.get_or_compute(filters), request.app.state.settings.request_timeout_seconds)
    return cached.as_dict()


@router.post("/dashboard/overview/refresh")
async def refresh_overview(
    request: Request,
    payload: Optional[Dict[str, Any]] = Body(default=None),
) -> Dict[str, Any]:
    filters = _parse_filters(payload)
    cache: MetricsCache = request.app.state.cache
    cached = await _call(cache.force_refresh(filters), request.app.state.settings.request_timeout_seconds)
    return cached.as_dict()


@router.get("/dashboard/metrics/notes-top")
async def notes_top(request: Request, limit: Optional[int] = Query(None, ge=1, le=50)) -> Dict[str, Any]:
    filters = _parse_filters({key: value for key, value in request.query_params.items() if key != "limit"})
    service: MetricsService = request.app.state.service
    result = await _call(service.get_notes_top(filters, limit), request.app.state.settings.request_timeout_seconds)
    return result.as_dict()


@router.get("/dashboard/filters/{filter_type}")
async def filter_options(filter_type: str, request: Request) -> List[Dict[str, Any]]:
    service: MetricsService = request.app.state.service
    return await _call(service.get_filter_options(filter_type))


@router.get("/dashboard/cache/stats")
async def cache_stats(request: Request) -> Dict[str, Any]:
    return request.app.state.cache.stats()


@router.post("/dashboard/cache/clear")
async def clear_cache(request: Request) -> Dict[str, Any]:
    cleared = request.app.state.cache.clear()
    return {"message": "Cache cleared", "cleared": cleared}


@router.post("/dashboard/cache/update-interval")
async def update_interval(payload: UpdateIntervalRequest, request: Request) -> Dict[str, Any]:
    cache: MetricsCache = request.app.state.cache
    try:
        cache.set_ttl(payload.interval / 1000)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"message": "Update interval changed", "interval": payload.interval}


@router.get("/metrics/status")
async def metrics_status(request: Request) -> Dict[str, Any]:
    return request.app.state.scheduler.status()


@router.post("/metrics/trigger-aggregation")
async def trigger_aggregation(
    request: Request,
    background_tasks: BackgroundTasks,
    payload: Optional[TriggerAggregationRequest] = None,
) -> Dict[str, Any]:
    scheduler: MetricsScheduler = request.app.state.scheduler
    kind = payload.kind if payload else "daily"
    if kind not in {"daily", "weekly", "monthly"}:
        raise HTTPException(status_code=400, detail=f"Unknown run kind '{kind}'")
    if scheduler.is_running:
        raise HTTPException(status_code=409, detail="A metrics run is already in progress")
    background_tasks.add_task(scheduler.run_now, kind)
    return {"message": "Aggregation started", "kind": kind}


@router.get("/metrics/summary")
async def metrics_summary(request: Request, limit: int = Query(5, ge=1, le=100)) -> Dict[str, Any]:
    aggregator: MetricsAggregator = request.app.state.aggregator
    return await _call(aggregator.summary(limit=limit))


@router.get("/metrics/alerts")
async def trend_alerts(request: Request) -> Dict[str, Any]:
    alerts: AlertsService = request.app.state.alerts
    detected = await _call(alerts.detect_trend_changes(), request.app.state.settings.request_timeout_seconds)
    return {"count": len(detected), "alerts": [alert.as_dict() for alert in detected]}


@router.get("/metrics/{table}")
async def metrics_table(
    table: str,
    request: Request,
    limit: int = Query(100, ge=1, le=1000),
) -> Dict[str, Any]:
    aggregator: MetricsAggregator = request.app.state.aggregator
    dimension_filters = {key: value for key, value in request.query_params.items() if key != "limit"}
    rows = await _call(aggregator.get_metrics(table, dimension_filters, limit))
    return {"table": table, "count": len(rows), "data": rows}


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[AnalyticsRepository] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        repo = repository or build_repository(settings.repository)
        service = MetricsService(repo)
        cache = MetricsCache(
            service,
            ttl_seconds=settings.cache.ttl_seconds,
            min_ttl_seconds=settings.cache.min_ttl_seconds,
            common_filters=settings.cache.common_filters,
        )
        aggregator = MetricsAggregator(
            repo,
            k_threshold=settings.aggregator.k_anonymity_threshold,
            window_days=settings.aggregator.window_days,
            retention_days=settings.aggregator.retention_days,
            event_retention_days=settings.aggregator.event_retention_days,
        )
        alerts = AlertsService(
            repo,
            significance_threshold=settings.alerts.significance_threshold,
            min_sample_size=settings.alerts.min_sample_size,
            window_days=settings.alerts.window_days,
        )
        scheduler = MetricsScheduler(aggregator, settings.scheduler, alerts=alerts)

        app.state.settings = settings
        app.state.repository = repo
        app.state.service = service
        app.state.cache = cache
        app.state.aggregator = aggregator
        app.state.alerts = alerts
        app.state.scheduler = scheduler

        if settings.cache.refresh_enabled:
            cache.start()
        if settings.scheduler.enable:
            scheduler.start()
        try:
            yield
        finally:
            await cache.stop()
            await scheduler.stop()

    app = FastAPI(title="Yerba Insights Analytics API", version="0.1.0", lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()
