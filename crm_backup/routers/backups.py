import asyncio
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..backup_service import BackupService
from ..dependencies import (
    check_restore_mode, get_backup_scheduler, get_backup_service, get_recovery_service, require_admin,
)
from ..errors import (
    BackupError, BackupNotFoundError, IntegrityCheckFailedError, InvalidRequestError, ToolError,
)
from ..logger import get_logger
from ..recovery_service import RecoveryService
from ..scheduler import BackupScheduler
from ..schemas import (
    BackupArtifact, BackupOptions, CleanupResult, RestoreOptions, RestorePreview, RestoreResult,
    RestoreTestReport, ScheduleConfig, ScheduleConfigUpdate, ScheduleStatus, SelectiveRestoreRequest,
    VerifyResult,
)

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


def error_status(error: BackupError) -> int:
    if isinstance(error, BackupNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, InvalidRequestError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, IntegrityCheckFailedError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, ToolError):
        return status.HTTP_502_BAD_GATEWAY
    # CatalogUnavailable, RestoreIncomplete
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_error(error: BackupError) -> HTTPException:
    detail = {"kind": error.kind, "message": error.message}
    if isinstance(error, ToolError) and error.summary:
        detail["summary"] = error.summary
    if error.result is not None:
        detail["result"] = error.result.model_dump(mode="json")
    return HTTPException(status_code=error_status(error), detail=detail)


@router.post("/create", response_model=BackupArtifact, status_code=status.HTTP_201_CREATED)
async def create_backup(options: BackupOptions, backup_service: BackupService = Depends(get_backup_service)):
    try:
        record = await backup_service.create_backup(options, trigger_mode="manual")
    except BackupError as e:
        logger.error(f"Manual backup failed: {e.message}")
        raise to_http_error(e)
    logger.info(f"Manual backup created: {record.filename}")
    return record


@router.get("/list", response_model=List[BackupArtifact])
async def list_backups(backup_service: BackupService = Depends(get_backup_service)):
    try:
        return await backup_service.list_backups()
    except BackupError as e:
        raise to_http_error(e)


@router.get("/restorable", response_model=List[BackupArtifact])
async def get_restorable_backups(recovery_service: RecoveryService = Depends(get_recovery_service)):
    try:
        return await recovery_service.get_restorable_backups()
    except BackupError as e:
        raise to_http_error(e)


@router.delete("/{backup_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_backup(backup_id: str, backup_service: BackupService = Depends(get_backup_service)):
    try:
        await backup_service.delete_backup(backup_id)
    except BackupError as e:
        raise to_http_error(e)


@router.post("/{backup_id}/verify", response_model=VerifyResult)
async def verify_backup(backup_id: str, backup_service: BackupService = Depends(get_backup_service)):
    try:
        record = await backup_service.get_backup(backup_id)
    except BackupError as e:
        raise to_http_error(e)
    is_valid = await asyncio.to_thread(backup_service.verify_backup, backup_service.artifact_path(record), record)
    return VerifyResult(backup_id=backup_id, is_valid=is_valid, verified_at=datetime.now(timezone.utc))


@router.get("/schedule/status", response_model=ScheduleStatus)
async def get_schedule_status(backup_scheduler: BackupScheduler = Depends(get_backup_scheduler)):
    return backup_scheduler.get_status()


@router.put("/schedule/config", response_model=ScheduleConfig)
async def update_schedule_config(
    config_update: ScheduleConfigUpdate,
    backup_scheduler: BackupScheduler = Depends(get_backup_scheduler),
):
    logger.info("Updating backup schedule configuration.")
    config = backup_scheduler.update_config(config_update)
    if config.enabled and not backup_scheduler.is_running:
        backup_scheduler.start()
    elif not config.enabled and backup_scheduler.is_running:
        backup_scheduler.stop()
    return config


@router.post("/cleanup", response_model=CleanupResult)
async def cleanup_old_backups(
    retention_days: int = Query(default=30, ge=0),
    backup_service: BackupService = Depends(get_backup_service),
):
    try:
        deleted = await backup_service.cleanup_old_backups(retention_days)
    except BackupError as e:
        raise to_http_error(e)
    return CleanupResult(retention_days=retention_days, deleted=deleted)


@router.post("/{backup_id}/restore", response_model=RestoreResult, dependencies=[Depends(check_restore_mode)])
async def restore_from_backup(
    backup_id: str,
    options: RestoreOptions,
    recovery_service: RecoveryService = Depends(get_recovery_service),
):
    try:
        return await recovery_service.restore_from_backup(backup_id, options)
    except BackupError as e:
        raise to_http_error(e)


@router.post(
    "/{backup_id}/restore/selective", response_model=RestoreResult, dependencies=[Depends(check_restore_mode)]
)
async def restore_selective_tables(
    backup_id: str,
    request: SelectiveRestoreRequest,
    recovery_service: RecoveryService = Depends(get_recovery_service),
):
    options = RestoreOptions(**request.model_dump(exclude={"tables"}))
    try:
        return await recovery_service.restore_selective_tables(backup_id, request.tables, options)
    except BackupError as e:
        raise to_http_error(e)


@router.get("/{backup_id}/preview", response_model=RestorePreview)
async def preview_restore(backup_id: str, recovery_service: RecoveryService = Depends(get_recovery_service)):
    try:
        return await recovery_service.preview_restore(backup_id)
    except BackupError as e:
        raise to_http_error(e)


@router.post("/{backup_id}/test", response_model=RestoreTestReport)
async def test_restore(backup_id: str, recovery_service: RecoveryService = Depends(get_recovery_service)):
    try:
        return await recovery_service.test_restore(backup_id)
    except BackupError as e:
        raise to_http_error(e)
