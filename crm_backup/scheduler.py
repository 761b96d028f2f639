from datetime import datetime, timezone
from typing import Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .backup_service import BackupService
from .logger import get_logger
from .metrics import BACKUP_LAST_SUCCESSFUL_SCHEDULED_TIMESTAMP_SECONDS, SCHEDULED_CYCLES_SKIPPED_TOTAL
from .schemas import ScheduleConfig, ScheduleConfigUpdate, ScheduleStatus

logger = get_logger(__name__)

JOB_ID = "scheduled_backup"


class BackupScheduler:
    """
    Runs unattended backup cycles (backup, then retention cleanup) on a fixed interval.

    Two states: stopped (no APScheduler instance) and running (an AsyncIOScheduler
    owned by this object with one interval job). start/stop/update_config are the
    only methods that change state. Must be started from a running event loop.
    """

    def __init__(self, backup_service: BackupService, config: Optional[ScheduleConfig] = None):
        self.backup_service = backup_service
        self.config = config or ScheduleConfig()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._cycle_running = False

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        if not self.config.enabled:
            logger.info("Scheduled backups are disabled.")
            return
        if self.is_running:
            logger.warning("Backup schedule is already running.")
            return

        scheduler = AsyncIOScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self.run_cycle,
            trigger=IntervalTrigger(seconds=self.config.interval_seconds, timezone=timezone.utc),
            id=JOB_ID,
            name="Scheduled CRM backup",
            # First cycle right away, then every interval
            next_run_time=datetime.now(timezone.utc),
            # An overlapping tick reaches run_cycle, which skips it and counts the skip
            max_instances=2,
            coalesce=True,
            misfire_grace_time=None,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(f"Backup schedule started, interval: {self.config.interval_seconds}s, retention: {self.config.retention_days} days")

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Backup schedule stopped.")

    def update_config(self, partial: Union[ScheduleConfigUpdate, dict]) -> ScheduleConfig:
        if isinstance(partial, ScheduleConfigUpdate):
            partial = partial.model_dump(exclude_unset=True)
        partial = {k: v for k, v in partial.items() if v is not None}
        merged = {**self.config.model_dump(), **partial}
        self.config = ScheduleConfig.model_validate(merged)
        logger.info(f"Backup schedule configuration updated: {partial}")

        if self.is_running:
            self.stop()
            self.start()
        return self.config

    def get_status(self) -> ScheduleStatus:
        next_run_at = None
        if self._scheduler is not None:
            job = self._scheduler.get_job(JOB_ID)
            next_run_at = job.next_run_time if job else None
        return ScheduleStatus(
            is_running=self.is_running,
            config=self.config,
            next_run_at=next_run_at,
            cycle_in_progress=self._cycle_running,
        )

    async def run_cycle(self) -> bool:
        """One scheduled cycle. Failures are logged and never propagate to the timer."""
        if self._cycle_running:
            logger.warning("Previous scheduled backup is still running, skipping this tick.")
            SCHEDULED_CYCLES_SKIPPED_TOTAL.inc()
            return False

        self._cycle_running = True
        try:
            logger.info("Starting scheduled backup.")
            record = await self.backup_service.create_backup(self.config.backup_options, trigger_mode="scheduled")
            logger.info(f"Scheduled backup finished: {record.filename}")
            await self.backup_service.cleanup_old_backups(self.config.retention_days)
            BACKUP_LAST_SUCCESSFUL_SCHEDULED_TIMESTAMP_SECONDS.set(datetime.now(timezone.utc).timestamp())
            return True
        except Exception as e:
            logger.error(f"Scheduled backup failed: {e}", exc_info=True)
            self.notify_failure(e)
            return False
        finally:
            self._cycle_running = False

    def notify_failure(self, error: Exception) -> None:
        # TODO: deliver e-mail/webhook alerts once the CRM notification service exposes an API
        logger.debug(f"No failure notification channel configured for: {error}")
