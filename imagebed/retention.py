import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .errors import NotFound, StorageError
from .storage import ObjectStore

logger = logging.getLogger("imagebed.retention")

SWEEP_JOB_ID = "sweep_expired_objects"
TEMP_CLEANUP_JOB_ID = "cleanup_temp_files"
TEMP_FILE_MAX_AGE_SECONDS = 3600


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SweepReport:
    scanned: int = 0
    deleted: int = 0
    kept: int = 0
    failed: int = 0


class RetentionSweeper:
    """Deletes stored objects older than ``max_age_ms``.

    A sweep works from a point-in-time snapshot of the store. Objects written
    after the snapshot wait for the next run, and a failure on one object is
    logged and skipped without ending the sweep.
    """

    def __init__(
        self,
        store: ObjectStore,
        max_age_ms: int,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        if max_age_ms < 0:
            raise ValueError("max_age_ms must not be negative")
        self.store = store
        self.max_age_ms = max_age_ms
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self.max_age_ms > 0

    def is_expired(self, created_at: int, now_ms: int) -> bool:
        return now_ms - created_at > self.max_age_ms

    def sweep(self, now_ms: Optional[int] = None) -> SweepReport:
        report = SweepReport()
        if not self.enabled:
            return report

        now_ms = self._clock() if now_ms is None else now_ms
        try:
            names = self.store.snapshot()
        except StorageError as error:
            logger.error("sweep_snapshot_failed error=%s", error)
            return report

        logger.info(
            "sweep_started objects=%d cutoff_ms=%d", len(names), now_ms - self.max_age_ms
        )
        for name in names:
            report.scanned += 1
            try:
                stored = self.store.stat(name)
                if not self.is_expired(stored.created_at, now_ms):
                    report.kept += 1
                    continue
                self.store.delete(name)
            except NotFound:
                # Removed by someone else since the snapshot.
                logger.info("sweep_object_vanished name=%s", name)
                report.failed += 1
                continue
            except StorageError as error:
                logger.warning("sweep_object_failed name=%s error=%s", name, error)
                report.failed += 1
                continue
            report.deleted += 1
            logger.info("sweep_object_deleted name=%s age_ms=%d", name, now_ms - stored.created_at)

        logger.info(
            "sweep_completed scanned=%d deleted=%d kept=%d failed=%d",
            report.scanned,
            report.deleted,
            report.kept,
            report.failed,
        )
        return report


class RetentionScheduler:
    """Runs the sweeper and temp-file cleanup on an in-process schedule."""

    def __init__(self, sweeper: RetentionSweeper, interval_minutes: int) -> None:
        self.sweeper = sweeper
        self.interval_minutes = max(1, int(interval_minutes))
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and bool(self._scheduler.running)

    def next_run_time(self):
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(SWEEP_JOB_ID)
        return job.next_run_time if job is not None else None

    def _cleanup_temp_files(self) -> int:
        return self.sweeper.store.cleanup_temp_files(TEMP_FILE_MAX_AGE_SECONDS)

    def start(self, run_immediately: bool = True) -> None:
        """Start the background scheduler.

        The sweep job is only registered when retention is enabled; the
        temp-file cleanup job always runs.
        """

        if self.running:
            return

        scheduler = BackgroundScheduler(daemon=True)
        if self.sweeper.enabled:
            scheduler.add_job(
                func=self.sweeper.sweep,
                trigger="interval",
                minutes=self.interval_minutes,
                id=SWEEP_JOB_ID,
                name="Delete objects past the retention window",
                replace_existing=True,
            )
        else:
            logger.info("retention_disabled sweep_not_scheduled")
        scheduler.add_job(
            func=self._cleanup_temp_files,
            trigger="interval",
            hours=1,
            id=TEMP_CLEANUP_JOB_ID,
            name="Clean up temporary files",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "retention_scheduler_started interval_minutes=%d max_age_ms=%d",
            self.interval_minutes,
            self.sweeper.max_age_ms,
        )

        if run_immediately and self.sweeper.enabled:
            # Enforce retention once before serving traffic.
            self.sweeper.sweep()

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("retention_scheduler_stopped")
