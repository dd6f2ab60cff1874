from __future__ import annotations

import logging
from datetime import datetime, timezone, tzinfo
from threading import Lock

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .delivery import DeliveryBatchRunner

logger = logging.getLogger(__name__)

DAILY_DELIVERY_JOB_ID = "letters-daily-delivery"


class DailyDeliverySchedule:
    """Owns the recurring daily trigger for delivery batch runs.

    Nothing is scheduled until :meth:`start` is called, and :meth:`stop`
    shuts the background scheduler down again.
    """

    def __init__(
        self,
        runner: DeliveryBatchRunner,
        *,
        hour: int = 0,
        minute: int = 0,
        tz: tzinfo = timezone.utc,
        misfire_grace_seconds: int = 3600,
    ) -> None:
        self._runner = runner
        self._hour = hour
        self._minute = minute
        self._tz = tz
        self._misfire_grace_seconds = misfire_grace_seconds
        self._scheduler: BackgroundScheduler | None = None
        self._lock = Lock()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def cron_expression(self) -> str:
        return f"{self._minute} {self._hour} * * *"

    def daily_trigger(self) -> CronTrigger:
        return CronTrigger(hour=self._hour, minute=self._minute, timezone=self._tz)

    def start(self) -> None:
        with self._lock:
            if self._scheduler is not None and self._scheduler.running:
                return
            scheduler = BackgroundScheduler(timezone=self._tz)
            scheduler.add_job(
                self._fire,
                trigger=self.daily_trigger(),
                id=DAILY_DELIVERY_JOB_ID,
                name="Deliver due letters",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=self._misfire_grace_seconds,
            )
            scheduler.start()
            self._scheduler = scheduler
        logger.info("daily delivery schedule armed (cron=%r, tz=%s)", self.cron_expression, self._tz)

    def stop(self) -> None:
        with self._lock:
            scheduler = self._scheduler
            self._scheduler = None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("daily delivery schedule stopped")

    def next_run_at(self) -> datetime | None:
        scheduler = self._scheduler
        if scheduler is None:
            return None
        job = scheduler.get_job(DAILY_DELIVERY_JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.astimezone(timezone.utc)

    def _fire(self) -> None:
        logger.info("daily delivery trigger fired at %s", datetime.now(timezone.utc).isoformat())
        summary = self._runner.run_batch(trigger="schedule")
        if summary.status == "aborted":
            logger.error("scheduled delivery run %s aborted: %s", summary.run_id, summary.error)
