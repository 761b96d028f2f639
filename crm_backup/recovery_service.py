import asyncio
import os
import shutil
import time
from typing import List, Optional

import psutil

from .backup_service import BackupService, as_utc
from .errors import (
    BackupError, IntegrityCheckFailedError, InvalidRequestError, RestoreFailedError, RestoreIncompleteError,
)
from .logger import get_logger
from .metrics import RESTORES_TOTAL, RESTORE_DURATION_SECONDS
from .schemas import (
    BackupArtifact, BackupOptions, RestoreOptions, RestorePreview, RestoreResult, RestoreTestReport,
)

logger = get_logger(__name__)

DEFAULT_RESTORE_THROUGHPUT = 5 * 1024 * 1024  # bytes per second


class RecoveryService:
    """
    Restores the CRM database from cataloged artifacts, with an integrity check,
    an optional snapshot of the current state and a post-restore table check.
    """

    def __init__(
        self,
        backup_service: BackupService,
        inspector,
        restore_runner,
        restore_throughput: int = DEFAULT_RESTORE_THROUGHPUT,
    ):
        self.backup_service = backup_service
        self.inspector = inspector
        self.restore_runner = restore_runner
        self.restore_throughput = restore_throughput

    def _target_tables(self, record: BackupArtifact, options: RestoreOptions) -> List[str]:
        excluded = set(options.exclude_tables or [])
        if options.selective_tables is not None:
            unknown = [t for t in options.selective_tables if t not in record.tables]
            if unknown:
                raise InvalidRequestError(
                    f"Backup {record.id} does not contain tables: {', '.join(unknown)}"
                )
            requested = list(dict.fromkeys(options.selective_tables))
        else:
            requested = list(record.tables)

        targets = [t for t in requested if t not in excluded]
        if not targets:
            raise InvalidRequestError("No tables left to restore after applying selective/exclude lists")
        return targets

    def _tables_to_drop(self, options: RestoreOptions) -> List[str]:
        current = self.inspector.get_current_tables()
        if options.selective_tables is not None:
            current = [t for t in current if t in options.selective_tables]
        if options.exclude_tables:
            current = [t for t in current if t not in options.exclude_tables]
        return current

    async def restore_from_backup(self, backup_id: str, options: Optional[RestoreOptions] = None) -> RestoreResult:
        options = options or RestoreOptions()
        start_time = time.time()
        result = RestoreResult(success=False, backup_id=backup_id)
        logger.info(f"Starting restore from backup {backup_id} with options {options.model_dump()}")

        try:
            record = await self.backup_service.get_backup(backup_id)
            path = self.backup_service.artifact_path(record)
            targets = self._target_tables(record, options)

            if options.validate_before_restore:
                if not await asyncio.to_thread(self.backup_service.verify_backup, path, record):
                    raise IntegrityCheckFailedError(f"Backup {backup_id} failed its integrity check")
            else:
                logger.warning(f"Restoring backup {backup_id} without validating it first")

            if options.create_backup_before_restore:
                snapshot = await self.backup_service.create_backup(
                    BackupOptions(include_data=True), trigger_mode="pre_restore"
                )
                result.pre_restore_backup_id = snapshot.id
                logger.info(f"Pre-restore backup created: {snapshot.filename}")

            if options.drop_existing:
                to_drop = await asyncio.to_thread(self._tables_to_drop, options)
                logger.info(f"Dropping {len(to_drop)} existing tables before restore")
                await asyncio.to_thread(self.inspector.drop_tables, to_drop)

            # Scope the replay only when it covers part of the dump
            scoped = targets if set(targets) != set(record.tables) else None
            await self.restore_runner.restore(path, tables=scoped, dumped_tables=list(record.tables))

            present = set(await asyncio.to_thread(self.inspector.get_current_tables))
            missing = [t for t in targets if t not in present]
            if missing:
                raise RestoreIncompleteError(missing)

            result.success = True
            result.restored_tables = targets
        except BackupError as e:
            self._record_failure(result, e, start_time)
            raise
        except Exception as e:
            # Database errors while dropping or re-enumerating tables
            error = RestoreFailedError(f"Restore aborted: {e}")
            self._record_failure(result, error, start_time)
            raise error from e

        result.duration_seconds = time.time() - start_time
        RESTORES_TOTAL.labels(status="completed").inc()
        RESTORE_DURATION_SECONDS.observe(result.duration_seconds)
        logger.info(f"Restore from backup {backup_id} completed in {result.duration_seconds:.2f}s")
        return result

    def _record_failure(self, result: RestoreResult, error: BackupError, start_time: float) -> None:
        result.errors = [error.message]
        result.duration_seconds = time.time() - start_time
        error.result = result
        RESTORES_TOTAL.labels(status="failed").inc()
        logger.error(f"Restore from backup {result.backup_id} failed after {result.duration_seconds:.2f}s: {error.message}")
        if result.pre_restore_backup_id:
            logger.error(f"State before the restore is saved in backup {result.pre_restore_backup_id}")

    async def restore_selective_tables(
        self, backup_id: str, tables: List[str], options: Optional[RestoreOptions] = None
    ) -> RestoreResult:
        options = (options or RestoreOptions()).model_copy(update={"selective_tables": list(tables)})
        return await self.restore_from_backup(backup_id, options)

    async def get_restorable_backups(self) -> List[BackupArtifact]:
        """Backups that pass verification right now, newest first."""
        restorable = []
        for record in await self.backup_service.list_backups():
            path = self.backup_service.artifact_path(record)
            if await asyncio.to_thread(self.backup_service.verify_backup, path, record):
                restorable.append(record)
        return sorted(restorable, key=lambda r: as_utc(r.created_at), reverse=True)

    async def preview_restore(self, backup_id: str) -> RestorePreview:
        record = await self.backup_service.get_backup(backup_id)
        current_tables = await asyncio.to_thread(self.inspector.get_current_tables)
        conflicts = [t for t in current_tables if t in record.tables]
        return RestorePreview(
            backup=record,
            current_tables=current_tables,
            backup_tables=list(record.tables),
            conflicts=conflicts,
        )

    async def test_restore(self, backup_id: str) -> RestoreTestReport:
        """Dry run: reports what would stop a restore of ``backup_id`` without touching the database."""
        record = await self.backup_service.get_backup(backup_id)
        issues = await asyncio.to_thread(self._restore_blockers, record)
        return RestoreTestReport(
            can_restore=not issues,
            issues=issues,
            estimated_duration_seconds=round(record.size_bytes / self.restore_throughput, 3),
        )

    def _restore_blockers(self, record: BackupArtifact) -> List[str]:
        path = self.backup_service.artifact_path(record)
        issues = []

        if not os.path.isfile(path):
            issues.append(f"Backup file is missing: {record.filename}")
        elif not self.backup_service.verify_backup(path, record):
            issues.append("Backup file failed its integrity check (size, checksum or dump format)")

        executable = getattr(self.restore_runner, "executable", None)
        if executable and shutil.which(executable) is None:
            issues.append(f"Restore tool '{executable}' was not found on this host")

        try:
            self.inspector.get_current_tables()
        except Exception as e:
            issues.append(f"Database is not reachable: {e}")

        size = record.size_bytes
        try:
            free = psutil.disk_usage(self.backup_service.backup_dir).free
            if free < size * 2:
                issues.append(f"Not enough free disk space: {free} bytes free, {size * 2} bytes needed")
        except OSError as e:
            issues.append(f"Could not check free disk space: {e}")
        return issues
