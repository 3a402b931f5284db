from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from .aggregator import MetricsAggregator
from .alerts import AlertsService
from .config import SchedulerConfig
from .errors import ValidationError

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class CronJob:
    name: str
    expression: str
    factory: JobFactory


class CronScheduler:
    """
    Runs coroutine factories at cron wall-clock times in one timezone.

    Nothing runs until :meth:`start`; :meth:`stop` cancels every pending sleep.
    A job that raises is logged and still fires at its next tick.
    """

    def __init__(self, timezone_name: str = "UTC", clock: Optional[Callable[[], datetime]] = None) -> None:
        try:
            self.timezone = ZoneInfo(timezone_name)
        except ZoneInfoNotFoundError as exc:
            raise ValidationError(f"Unknown timezone '{timezone_name}'.") from exc
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._jobs: Dict[str, CronJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._last_fired: Dict[str, datetime] = {}

    @property
    def jobs(self) -> List[CronJob]:
        return list(self._jobs.values())

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def add_job(self, name: str, expression: str, factory: JobFactory) -> None:
        if not croniter.is_valid(expression):
            raise ValidationError(f"Invalid cron expression '{expression}' for job {name}.")
        self._jobs[name] = CronJob(name=name, expression=expression, factory=factory)

    def next_fire_time(self, name: str, now: Optional[datetime] = None) -> datetime:
        """
        First tick strictly after both ``now`` and the tick this job last ran
        for. A tick is never served twice.
        """

        job = self._jobs[name]
        base = now or self._clock()
        last_fired = self._last_fired.get(name)
        if last_fired is not None and last_fired > base:
            base = last_fired
        base = base.astimezone(self.timezone)
        return croniter(job.expression, base).get_next(datetime)

    def start(self) -> None:
        for job in self._jobs.values():
            task = self._tasks.get(job.name)
            if task is None or task.done():
                self._tasks[job.name] = asyncio.create_task(self._run_job(job), name=f"cron:{job.name}")
        logger.info("Scheduler started with %d jobs (%s)", len(self._jobs), self.timezone.key)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Scheduler stopped")

    async def _run_job(self, job: CronJob) -> None:
        while True:
            now = self._clock()
            fire_at = self.next_fire_time(job.name, now)
            delay = max((fire_at - now).total_seconds(), 0.0)
            logger.debug("Job %s sleeping %.0fs until %s", job.name, delay, fire_at.isoformat())
            await asyncio.sleep(delay)
            self._last_fired[job.name] = fire_at
            try:
                await job.factory()
            except Exception:
                logger.exception("Scheduled job %s failed", job.name)


class LoggingNotifier:
    """Default run notifier; replace with an email/chat hook where needed."""

    async def success(self, kind: str, duration_ms: float) -> None:
        logger.info("Metrics %s run succeeded in %.0fms", kind, duration_ms)

    async def error(self, kind: str, error: BaseException) -> None:
        logger.error("Metrics %s run failed: %s", kind, error)


class MetricsScheduler:
    def __init__(
        self,
        aggregator: MetricsAggregator,
        config: Optional[SchedulerConfig] = None,
        notifier: Optional[LoggingNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        alerts: Optional[AlertsService] = None,
    ) -> None:
        self.aggregator = aggregator
        self.alerts = alerts
        self.config = config or SchedulerConfig()
        self.notifier = notifier or LoggingNotifier()
        self.scheduler = CronScheduler(self.config.timezone, clock=clock)
        self.scheduler.add_job("daily", self.config.daily_cron, self.run_daily)
        self.scheduler.add_job("weekly", self.config.weekly_cron, self.run_weekly)
        self.scheduler.add_job("monthly", self.config.monthly_cron, self.run_monthly)
        if alerts is not None:
            self.scheduler.add_job("alerts", self.config.alerts_cron, self.run_alerts)
        self.is_running = False
        self.last_run: Optional[datetime] = None
        self.last_kind: Optional[str] = None
        self.last_error: Optional[str] = None
        self.last_duration_ms: Optional[float] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self.last_alerts: List[Dict[str, Any]] = []
        self.last_alerts_at: Optional[datetime] = None

    def start(self) -> None:
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    async def run_daily(self) -> Optional[Dict[str, Any]]:
        return await self._execute("daily", self._aggregate)

    async def run_weekly(self) -> Optional[Dict[str, Any]]:
        return await self._execute("weekly", self._aggregate)

    async def run_monthly(self) -> Optional[Dict[str, Any]]:
        return await self._execute("monthly", self._cleanup)

    async def run_now(self, kind: str = "daily") -> Optional[Dict[str, Any]]:
        runners = {"daily": self.run_daily, "weekly": self.run_weekly, "monthly": self.run_monthly}
        if kind not in runners:
            raise ValidationError(f"Unknown run kind '{kind}'. Expected one of {', '.join(runners)}.")
        logger.info("Manual %s metrics run requested", kind)
        return await runners[kind]()

    async def run_alerts(self) -> List[Dict[str, Any]]:
        """Detect trend changes and log each one. Failures are logged, never raised."""

        if self.alerts is None:
            return []
        try:
            alerts = await self.alerts.detect_trend_changes()
        except Exception:
            logger.exception("Trend alert detection failed")
            return self.last_alerts
        self.last_alerts = [alert.as_dict() for alert in alerts]
        self.last_alerts_at = datetime.now(timezone.utc)
        if alerts:
            logger.info("%d trend alerts detected", len(alerts))
            for alert in alerts:
                logger.info("  %s: %s", alert.title, alert.description)
        else:
            logger.info("No significant trend changes")
        return self.last_alerts

    async def _aggregate(self) -> Dict[str, Any]:
        report = await self.aggregator.generate_all()
        return report.as_dict()

    async def _cleanup(self) -> Dict[str, Any]:
        events = await self.aggregator.prune_events()
        metric_rows = await self.aggregator.prune_metric_rows()
        return {"eventsDeleted": events, "metricRowsDeleted": metric_rows}

    async def _execute(
        self,
        kind: str,
        operation: Callable[[], Awaitable[Dict[str, Any]]],
    ) -> Optional[Dict[str, Any]]:
        if self.is_running:
            logger.warning("Metrics run already in progress; skipping %s run", kind)
            return None

        self.is_running = True
        self.last_run = datetime.now(timezone.utc)
        self.last_kind = kind
        started = time.monotonic()
        try:
            result = await operation()
        except Exception as exc:
            self.last_error = f"{type(exc).__name__}: {exc}"
            logger.exception("Metrics %s run failed", kind)
            await self._notify(self.notifier.error(kind, exc))
            return None
        finally:
            self.is_running = False
            self.last_duration_ms = (time.monotonic() - started) * 1000

        self.last_error = None
        self.last_result = result
        await self._notify(self.notifier.success(kind, self.last_duration_ms))
        return result

    @staticmethod
    async def _notify(notification: Awaitable[None]) -> None:
        try:
            await notification
        except Exception:
            logger.exception("Metrics run notifier failed")

    def status(self) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "schedulerActive": self.scheduler.running,
            "timezone": self.config.timezone,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "lastKind": self.last_kind,
            "lastDurationMs": self.last_duration_ms,
            "lastError": self.last_error,
            "lastResult": self.last_result,
            "lastAlertsAt": self.last_alerts_at.isoformat() if self.last_alerts_at else None,
            "lastAlertCount": len(self.last_alerts),
            "nextRuns": {
                job.name: self.scheduler.next_fire_time(job.name).isoformat() for job in self.scheduler.jobs
            },
        }
