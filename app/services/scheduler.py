import logging
from typing import Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from app.core.config import Settings
from app.services.cleanup import CleanupLedger
from app.services.coordinator import UploadCoordinator
from app.services.sync.queue import SyncQueue

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """
    Periodic cleanup jobs on an APScheduler background scheduler.

    Nothing runs until ``start``; ``run_once`` executes every job inline so
    tests can drive the sweeps without timers.
    """

    def __init__(
        self,
        ledger: CleanupLedger,
        sync_queue: Optional[SyncQueue],
        settings: Settings,
        coordinator: Optional[UploadCoordinator] = None,
    ):
        self.ledger = ledger
        self.sync_queue = sync_queue
        self.settings = settings
        self.coordinator = coordinator
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def jobs(self) -> Dict[str, Callable[[], int]]:
        jobs = {
            "sweep_processing": self.sweep_processing,
            "sweep_stale_files": self.sweep_stale_files,
            "expire_cleanup_records": self.ledger.expire,
        }
        if self.coordinator is not None:
            jobs["expire_sessions"] = self.expire_sessions
        return jobs

    def interval(self, job_id: str) -> int:
        if job_id == "sweep_processing":
            return self.settings.PROCESSING_SWEEP_INTERVAL_SECONDS
        return self.settings.CLEANUP_INTERVAL_SECONDS

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        for job_id, job in self.jobs().items():
            scheduler.add_job(
                id=job_id,
                func=self._guarded(job),
                trigger="interval",
                seconds=self.interval(job_id),
                replace_existing=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Maintenance scheduler started")

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Maintenance scheduler stopped")

    def run_once(self) -> Dict[str, int]:
        return {name: job() for name, job in self.jobs().items()}

    def sweep_processing(self) -> int:
        return self.ledger.sweep_processing(self.settings.PROCESSING_MAX_AGE_SECONDS)

    def sweep_stale_files(self) -> int:
        max_age = self.settings.STALE_FILE_MAX_AGE_SECONDS
        in_use = self.sync_queue.active_file_names() if self.sync_queue is not None else []
        removed = self.ledger.sweep_chunks(max_age)
        removed += self.ledger.sweep_uploads(max_age, in_use=in_use)
        return removed

    def expire_sessions(self) -> int:
        return self.coordinator.expire_sessions(self.settings.SESSION_MAX_AGE_SECONDS)

    @staticmethod
    def _guarded(job: Callable[[], int]) -> Callable[[], None]:
        def run() -> None:
            try:
                removed = job()
                if removed:
                    logger.info(f"{job.__name__}: removed {removed} item(s)")
            except Exception:
                logger.exception(f"Error during periodic cleanup job {job.__name__}")
        return run
