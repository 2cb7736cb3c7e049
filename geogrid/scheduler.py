"""Recurring grid-scan scheduler built on APScheduler with a SQLite job store.

One cron job, ``grid_scan_due_campaigns``, wakes up on a schedule and scans
every active campaign whose ``next_scan_at`` has passed. Jobs persist in
``data/scheduler_jobs.db`` so a restarted process picks them up again.
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone as dt_timezone
from pathlib import Path
from typing import Any, Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

DUE_SCANS_JOB_ID = "grid_scan_due_campaigns"
DEFAULT_DUE_SCANS_CRON = "0 6 * * *"
DEFAULT_JOB_STORE_URL = "sqlite:///data/scheduler_jobs.db"

# A missed daily run still fires if the process comes back within the hour.
MISFIRE_GRACE_SECONDS = 3600

# Raised by ScanScheduler.stop(); job runs pass it to their scans.
_shutdown_requested = threading.Event()


def run_scheduled_scans(
    config_path: str = "config/settings.yaml",
    env_path: str = ".env",
    batch_size: int = 20,
) -> int:
    """Scan every campaign that is due. Runs inside a scheduler worker thread.

    The job store keeps only a reference to this function, so the
    application is rebuilt from its config on every run.

    A scan in progress when the scheduler stops is cut short at its next
    grid point and stored as cancelled with the points gathered so far.

    Returns:
        Number of scans that finished, cancelled ones included.
    """
    from geogrid.app import GeoGridApp

    app = GeoGridApp(config_path=config_path, env_path=env_path)
    app.initialize()
    completed = asyncio.run(app.get_workflow().run_due_scans(
        limit=batch_size, cancel_event=_shutdown_requested,
    ))
    logger.info("Scheduled run finished: %d scan(s) completed", len(completed))
    return len(completed)


def parse_cron(cron: str, timezone: str = "UTC") -> CronTrigger:
    """Build a trigger from a 5-field crontab line (min hour day month weekday).

    Raises:
        ValueError: The expression is malformed.
    """
    return CronTrigger.from_crontab(cron.strip(), timezone=timezone)


def _describe(job) -> dict[str, Any]:
    next_run = getattr(job, "next_run_time", None)
    return {
        "id": job.id,
        "name": job.name,
        "trigger": str(job.trigger),
        "next_run_time": next_run.isoformat() if next_run else None,
        "pending": job.pending,
    }


class ScanScheduler:
    """Keeps the due-campaign scan running on a cron schedule.

    Usage::

        sched = ScanScheduler()
        sched.start()
        sched.schedule_due_scans(cron="0 6 * * *")
        sched.list_jobs()
        sched.stop()
    """

    def __init__(
        self,
        job_store_url: str = DEFAULT_JOB_STORE_URL,
        timezone: str = "UTC",
        max_workers: int = 1,
        config_path: str = "config/settings.yaml",
        env_path: str = ".env",
    ):
        if job_store_url.startswith("sqlite:///"):
            Path(job_store_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

        self._scheduler = BackgroundScheduler(timezone=timezone)
        self._scheduler.configure(
            jobstores={"default": SQLAlchemyJobStore(url=job_store_url)},
            executors={"default": ThreadPoolExecutor(max_workers=max_workers)},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": MISFIRE_GRACE_SECONDS,
            },
        )
        self._timezone = timezone
        self._app_paths = {"config_path": config_path, "env_path": env_path}
        logger.info(
            "ScanScheduler ready (store=%s, tz=%s, workers=%d)",
            job_store_url, timezone, max_workers,
        )

    @property
    def is_running(self) -> bool:
        return self._scheduler.running

    def start(self, paused: bool = False) -> None:
        if self.is_running:
            logger.warning("Scan scheduler already running; start ignored.")
            return
        _shutdown_requested.clear()
        self._scheduler.start(paused=paused)
        logger.info("Scan scheduler started%s.", " (paused)" if paused else "")

    def stop(self, wait: bool = True) -> None:
        """Shut down, telling running scans to stop at their next grid point.

        With ``wait`` the call returns once those scans have saved their
        partial results. Without it the stop signal stays raised until the
        next ``start()``.
        """
        if not self.is_running:
            return
        _shutdown_requested.set()
        self._scheduler.shutdown(wait=wait)
        if wait:
            _shutdown_requested.clear()
        logger.info("Scan scheduler stopped.")

    def add_job(
        self,
        job_id: str,
        func: Callable,
        cron: str,
        args: Optional[tuple] = None,
        kwargs: Optional[dict[str, Any]] = None,
        replace_existing: bool = True,
    ) -> None:
        """Register ``func`` under ``job_id`` on a crontab schedule.

        ``func`` must be importable at module level, since the SQLite job
        store saves it by reference. An existing job with the same id is
        replaced unless ``replace_existing`` is False.

        Raises:
            ValueError: ``cron`` is not a valid 5-field expression.
        """
        self._scheduler.add_job(
            func,
            trigger=parse_cron(cron, self._timezone),
            id=job_id,
            args=args or (),
            kwargs=kwargs or {},
            replace_existing=replace_existing,
        )
        logger.info("Scheduled %s at '%s'", job_id, cron)

    def schedule_due_scans(
        self,
        cron: str = DEFAULT_DUE_SCANS_CRON,
        batch_size: int = 20,
    ) -> None:
        """Register the job that scans campaigns whose next scan time has passed."""
        self.add_job(
            DUE_SCANS_JOB_ID,
            run_scheduled_scans,
            cron,
            kwargs={**self._app_paths, "batch_size": batch_size},
        )

    def remove_job(self, job_id: str) -> bool:
        """Unschedule ``job_id``; False when there was nothing to remove."""
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            logger.warning("No scheduled job named %s", job_id)
            return False
        logger.info("Unscheduled %s", job_id)
        return True

    def list_jobs(self) -> list[dict[str, Any]]:
        return [_describe(job) for job in self._scheduler.get_jobs()]

    def get_job(self, job_id: str) -> Optional[dict[str, Any]]:
        job = self._scheduler.get_job(job_id)
        return _describe(job) if job is not None else None

    def run_job_now(self, job_id: str) -> None:
        """Move the next run of ``job_id`` to now; the cron schedule resumes after it.

        Raises:
            ValueError: No such job.
        """
        if self._scheduler.get_job(job_id) is None:
            raise ValueError(f"No scheduled job named {job_id}")
        self._scheduler.modify_job(job_id, next_run_time=datetime.now(dt_timezone.utc))
        logger.info("%s moved up to run immediately", job_id)
