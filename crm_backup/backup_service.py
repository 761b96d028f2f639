import asyncio
import hashlib
import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .catalog import CatalogStore
from .errors import BackupNotFoundError, CatalogUnavailableError, DumpFailedError, InvalidRequestError
from .logger import get_logger
from .metrics import (
    BACKUPS_TOTAL, BACKUP_DURATION_SECONDS, BACKUP_SIZE_BYTES, BACKUP_LAST_INTEGRITY_STATUS,
    BACKUPS_DELETED_TOTAL, RETENTION_POLICY_RUNS_TOTAL, RETENTION_FILES_DELETED_TOTAL,
)
from .schemas import BackupArtifact, BackupOptions

logger = get_logger(__name__)

DUMP_START_MARKER = "-- PostgreSQL database dump"
DUMP_END_MARKER = "-- PostgreSQL database dump complete"
CHUNK_SIZE = 1024 * 1024


def generate_backup_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{now.strftime('%Y-%m-%dT%H-%M-%S-%fZ')}_{uuid.uuid4().hex[:6]}"


def calculate_checksum(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def looks_like_dump(path: str) -> bool:
    """Checks the sentinel comments pg_dump writes at the top and bottom of a plain dump."""
    with open(path, "rb") as f:
        head = f.read(4096).decode("utf-8", errors="replace")
        size = f.seek(0, os.SEEK_END)
        f.seek(max(0, size - 4096))
        tail = f.read().decode("utf-8", errors="replace")
    return DUMP_START_MARKER in head and DUMP_END_MARKER in tail


class BackupService:
    """Creates, verifies, lists and retires backup artifacts of the CRM database."""

    def __init__(self, backup_dir: str, inspector, dump_runner, catalog: Optional[CatalogStore] = None):
        self.backup_dir = backup_dir
        self.inspector = inspector
        self.dump_runner = dump_runner
        self.catalog = catalog or CatalogStore(backup_dir)

    async def initialize(self) -> None:
        os.makedirs(self.backup_dir, exist_ok=True)
        logger.info(f"Backup directory initialized: {self.backup_dir}")

    def artifact_path(self, record: BackupArtifact) -> str:
        return os.path.abspath(os.path.join(self.backup_dir, record.filename))

    def resolve_tables(self, options: BackupOptions) -> List[str]:
        if options.include_tables:
            tables = list(dict.fromkeys(options.include_tables))
        else:
            tables = self.inspector.get_current_tables()
        if options.exclude_tables:
            tables = [t for t in tables if t not in options.exclude_tables]
        return tables

    async def create_backup(self, options: Optional[BackupOptions] = None, trigger_mode: str = "manual") -> BackupArtifact:
        options = options or BackupOptions()
        start_time = time.time()
        backup_id = generate_backup_id()
        filename = f"backup_{backup_id}.sql"
        path = os.path.join(self.backup_dir, filename)

        tables = await asyncio.to_thread(self.resolve_tables, options)
        if not tables:
            raise InvalidRequestError("No tables left to back up after applying include/exclude lists")

        logger.info(f"Starting backup {backup_id} ({trigger_mode}) of {len(tables)} tables, include_data={options.include_data}")
        if options.compress:
            logger.debug("Compression was requested but is not applied to plain dumps.")

        os.makedirs(self.backup_dir, exist_ok=True)
        status = "failed"
        try:
            await self.dump_runner.dump(path, tables, include_data=options.include_data)

            # Hashing a large dump must not hold up the event loop
            record = await asyncio.to_thread(self._describe_artifact, backup_id, filename, path, tables)
            await asyncio.to_thread(self.catalog.append, record)
            status = "completed"
        except DumpFailedError as e:
            logger.error(f"Backup {backup_id} failed: {e.message}: {e.summary}\n{e.diagnostics}")
            self._remove_partial(path)
            raise
        except CatalogUnavailableError:
            logger.error(f"Backup {backup_id} could not be recorded in the catalog")
            self._remove_partial(path)
            raise
        except OSError as e:
            logger.error(f"Backup {backup_id} dump file could not be processed: {e}", exc_info=True)
            self._remove_partial(path)
            raise DumpFailedError(f"Dump file could not be processed: {e}") from e
        finally:
            duration = time.time() - start_time
            BACKUPS_TOTAL.labels(status=status, trigger_mode=trigger_mode).inc()
            BACKUP_DURATION_SECONDS.observe(duration)
            logger.info(f"Backup run finished for backup_id: {backup_id}. Status: {status}. Duration: {duration:.2f}s")

        BACKUP_SIZE_BYTES.set(record.size_bytes)
        BACKUP_LAST_INTEGRITY_STATUS.set(1 if record.is_verified else 0)
        if not record.is_verified:
            logger.warning(f"Backup {backup_id} was written but did not pass its self-check")
        return record

    def _describe_artifact(self, backup_id: str, filename: str, path: str, tables: List[str]) -> BackupArtifact:
        record = BackupArtifact(
            id=backup_id,
            filename=filename,
            size_bytes=os.path.getsize(path),
            checksum=calculate_checksum(path),
            created_at=datetime.now(timezone.utc),
            is_verified=False,
            tables=tables,
        )
        record.is_verified = self.verify_backup(path, record)
        return record

    def _remove_partial(self, path: str) -> None:
        if os.path.exists(path):
            logger.debug(f"Removing partial backup file: {path}")
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Could not remove partial backup file {path}: {e}")

    def verify_backup(self, path: str, record: BackupArtifact) -> bool:
        """
        Checks that ``path`` still holds the artifact described by ``record``: the file
        exists, its size and SHA-256 match, and it carries pg_dump's start and end markers.
        Never raises; the reason for a negative answer is logged.
        """
        try:
            if not os.path.isfile(path):
                logger.warning(f"Backup {record.id}: file missing at {path}")
                return False

            size = os.path.getsize(path)
            if size != record.size_bytes:
                logger.warning(f"Backup {record.id}: size mismatch, expected {record.size_bytes}, got {size}")
                return False

            checksum = calculate_checksum(path)
            if checksum != record.checksum:
                logger.warning(f"Backup {record.id}: checksum mismatch, expected {record.checksum}, got {checksum}")
                return False

            if not looks_like_dump(path):
                logger.warning(f"Backup {record.id}: file is not a complete pg_dump script")
                return False

            return True
        except Exception as e:
            logger.error(f"Backup {record.id}: verification failed: {e}", exc_info=True)
            return False

    async def list_backups(self) -> List[BackupArtifact]:
        return await asyncio.to_thread(self.catalog.load)

    async def get_backup(self, backup_id: str) -> BackupArtifact:
        for record in await self.list_backups():
            if record.id == backup_id:
                return record
        raise BackupNotFoundError(backup_id)

    async def delete_backup(self, backup_id: str) -> None:
        """
        Removes the catalog entry first and the file second. If the file cannot be
        removed afterwards it is only an orphan on disk: no operation can reach it.
        """
        logger.info(f"Attempting to delete backup_id: {backup_id}")
        record = await self.get_backup(backup_id)

        await asyncio.to_thread(self.catalog.remove, backup_id)
        await asyncio.to_thread(self._remove_artifact_file, backup_id, self.artifact_path(record))

        BACKUPS_DELETED_TOTAL.inc()
        logger.info(f"Successfully deleted backup_id: {backup_id}")

    def _remove_artifact_file(self, backup_id: str, path: str) -> None:
        if not os.path.exists(path):
            logger.warning(f"Backup {backup_id} had no file on disk at {path}")
            return
        try:
            os.remove(path)
        except OSError as e:
            logger.error(f"Backup {backup_id} removed from catalog but its file could not be deleted: {path}: {e}")

    async def cleanup_old_backups(self, retention_days: int = 30, now: Optional[datetime] = None) -> List[str]:
        """Deletes every backup created strictly before ``now - retention_days``."""
        now = as_utc(now or datetime.now(timezone.utc))
        cutoff = now - timedelta(days=retention_days)
        RETENTION_POLICY_RUNS_TOTAL.inc()

        expired = [r for r in await self.list_backups() if as_utc(r.created_at) < cutoff]
        deleted = []
        for record in expired:
            try:
                await self.delete_backup(record.id)
            except BackupNotFoundError:
                # Already gone, e.g. deleted concurrently
                continue
            deleted.append(record.id)
            logger.info(f"Deleted old backup '{record.id}' (time policy, cutoff {cutoff.isoformat()}).")

        if deleted:
            RETENTION_FILES_DELETED_TOTAL.inc(len(deleted))
        logger.info(f"Retention cleanup removed {len(deleted)} backups older than {retention_days} days")
        return deleted


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
