"""Periodic ingestion trigger built on APScheduler."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from fx_snapshot.exceptions import StorageError
from fx_snapshot.ingestion.coordinator import IngestionCoordinator, IngestionReport
from fx_snapshot.ingestion.strategy import ObservationProducer
from fx_snapshot.utils.logger import get_logger

LOGGER = get_logger(__name__)

JOB_ID = "fx_snapshot.ingest"


class IngestionScheduler:
    """Run producer -> coordinator on an interval without overlapping runs.

    The job is registered with ``max_instances=1`` and ``coalesce=True`` so a
    tick that fires while the previous run is still working is skipped rather
    than queued. :meth:`trigger_now` runs immediately in the caller's thread
    and may overlap a scheduled run; per-key atomic upserts keep that safe.
    """

    def __init__(
        self,
        coordinator: IngestionCoordinator,
        producer: ObservationProducer,
        *,
        interval_minutes: int = 60,
        retry_attempts: int = 1,
        retry_wait: wait_base | None = None,
        clock: Callable[[], datetime] | None = None,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.producer = producer
        self.interval_minutes = interval_minutes
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=2, max=30)
        self._clock = clock
        self.last_report: IngestionReport | None = None
        self.timezone = coordinator.normalizer.timezone
        self.scheduler = scheduler or BackgroundScheduler(
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone=self.timezone,
        )

    def _trigger(self) -> CronTrigger | IntervalTrigger:
        # Intervals dividing the hour fire on the clock so each run opens its bucket.
        if 60 % self.interval_minutes == 0:
            minute = "0" if self.interval_minutes == 60 else f"*/{self.interval_minutes}"
            return CronTrigger(minute=minute, timezone=self.timezone)
        return IntervalTrigger(minutes=self.interval_minutes, timezone=self.timezone)

    def start(self) -> None:
        self.scheduler.add_job(
            self._scheduled_tick,
            trigger=self._trigger(),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        LOGGER.info("Scheduled ingestion every %s minutes", self.interval_minutes)

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)

    def trigger_now(self) -> IngestionReport:
        """Run an on-demand ingestion immediately (no retries)."""

        return self._run_once()

    def _run_once(self) -> IngestionReport:
        at = self._clock() if self._clock is not None else None
        report = self.coordinator.run(self.producer, at=at)
        self.last_report = report
        return report

    def _scheduled_tick(self) -> IngestionReport | None:
        LOGGER.info("Scheduled ingestion tick")
        retryer = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type(StorageError),
            reraise=True,
        )
        try:
            return retryer(self._run_once)
        except StorageError as exc:
            LOGGER.error("Scheduled ingestion failed: %s", exc)
            return None


__all__ = ["IngestionScheduler", "JOB_ID"]
