"""
Runtime configuration for the analytics engine.

Every section is a pydantic model with sensible defaults; ``load_settings``
applies environment overrides on top.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

DEFAULT_COMMON_FILTERS: List[Dict[str, str]] = [
    {},
    {"timePeriod": "semana"},
    {"timePeriod": "mes"},
    {"country": "Argentina"},
    {"gender": "masculino"},
    {"gender": "femenino"},
]


class RepositoryConfig(BaseModel):
    database_url: Optional[str] = None
    create_schema: bool = True

    @classmethod
    def from_env(cls) -> "RepositoryConfig":
        return cls(
            database_url=os.getenv("YERBA_INSIGHTS_DATABASE_URL") or None,
            create_schema=_env_bool("YERBA_INSIGHTS_CREATE_SCHEMA", True),
        )


class CacheConfig(BaseModel):
    ttl_seconds: float = 60.0
    min_ttl_seconds: float = 10.0
    refresh_enabled: bool = True
    common_filters: List[Dict[str, Any]] = Field(default_factory=lambda: [dict(item) for item in DEFAULT_COMMON_FILTERS])


class AggregatorConfig(BaseModel):
    k_anonymity_threshold: int = 50
    window_days: int = 90
    retention_days: int = 180
    event_retention_days: int = 365


class AlertsConfig(BaseModel):
    significance_threshold: float = 0.15
    min_sample_size: int = 30
    window_days: int = 14


class SchedulerConfig(BaseModel):
    enable: bool = True
    timezone: str = "America/Argentina/Buenos_Aires"
    daily_cron: str = "0 2 * * *"
    weekly_cron: str = "0 3 * * 0"
    monthly_cron: str = "0 4 1 * *"
    alerts_cron: str = "0 */6 * * *"


class Settings(BaseModel):
    repository: RepositoryConfig = RepositoryConfig()
    cache: CacheConfig = CacheConfig()
    aggregator: AggregatorConfig = AggregatorConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    alerts: AlertsConfig = AlertsConfig()
    request_timeout_seconds: float = 30.0
    log_level: str = "INFO"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> Settings:
    """
    Build settings from defaults, then ``overrides`` (nested dicts keyed by
    section), then environment variables.
    """

    cfg = Settings()
    overrides = overrides or {}

    cfg.repository = RepositoryConfig(**{**RepositoryConfig.from_env().model_dump(), **overrides.get("repository", {})})

    cache_cfg = overrides.get("cache", {})
    cfg.cache = CacheConfig(
        ttl_seconds=_env_float("METRICS_CACHE_TTL_SECONDS", cache_cfg.get("ttl_seconds", cfg.cache.ttl_seconds)),
        min_ttl_seconds=cache_cfg.get("min_ttl_seconds", cfg.cache.min_ttl_seconds),
        refresh_enabled=_env_bool(
            "METRICS_CACHE_REFRESH_ENABLE", cache_cfg.get("refresh_enabled", cfg.cache.refresh_enabled)
        ),
        common_filters=cache_cfg.get("common_filters", cfg.cache.common_filters),
    )

    aggregator_cfg = overrides.get("aggregator", {})
    cfg.aggregator = AggregatorConfig(
        k_anonymity_threshold=_env_int(
            "METRICS_K_ANONYMITY_THRESHOLD",
            aggregator_cfg.get("k_anonymity_threshold", cfg.aggregator.k_anonymity_threshold),
        ),
        window_days=_env_int("METRICS_WINDOW_DAYS", aggregator_cfg.get("window_days", cfg.aggregator.window_days)),
        retention_days=_env_int(
            "METRICS_RETENTION_DAYS", aggregator_cfg.get("retention_days", cfg.aggregator.retention_days)
        ),
        event_retention_days=aggregator_cfg.get("event_retention_days", cfg.aggregator.event_retention_days),
    )

    scheduler_cfg = overrides.get("scheduler", {})
    cfg.scheduler = SchedulerConfig(
        enable=_env_bool("METRICS_SCHEDULER_ENABLE", scheduler_cfg.get("enable", cfg.scheduler.enable)),
        timezone=os.getenv("METRICS_SCHEDULER_TIMEZONE", scheduler_cfg.get("timezone", cfg.scheduler.timezone)),
        daily_cron=scheduler_cfg.get("daily_cron", cfg.scheduler.daily_cron),
        weekly_cron=scheduler_cfg.get("weekly_cron", cfg.scheduler.weekly_cron),
        monthly_cron=scheduler_cfg.get("monthly_cron", cfg.scheduler.monthly_cron),
        alerts_cron=scheduler_cfg.get("alerts_cron", cfg.scheduler.alerts_cron),
    )

    alerts_cfg = overrides.get("alerts", {})
    cfg.alerts = AlertsConfig(
        significance_threshold=alerts_cfg.get("significance_threshold", cfg.alerts.significance_threshold),
        min_sample_size=_env_int(
            "ALERTS_MIN_SAMPLE_SIZE", alerts_cfg.get("min_sample_size", cfg.alerts.min_sample_size)
        ),
        window_days=alerts_cfg.get("window_days", cfg.alerts.window_days),
    )

    cfg.request_timeout_seconds = overrides.get("request_timeout_seconds", cfg.request_timeout_seconds)
    cfg.log_level = os.getenv("LOG_LEVEL", overrides.get("log_level", cfg.log_level))
    return cfg


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
