import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from .backup_service import BackupService
from .config import Settings
from .recovery_service import RecoveryService
from .scheduler import BackupScheduler


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_backup_service(request: Request) -> BackupService:
    return request.app.state.backup_service


def get_recovery_service(request: Request) -> RecoveryService:
    return request.app.state.recovery_service


def get_backup_scheduler(request: Request) -> BackupScheduler:
    return request.app.state.backup_scheduler


def require_admin(
    x_admin_token: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
):
    # Without a configured token every call is refused
    if not settings.admin_token or not x_admin_token or not secrets.compare_digest(
        x_admin_token, settings.admin_token
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator privileges are required for backup operations.",
        )


def check_restore_mode(settings: Settings = Depends(get_settings)):
    if not settings.restore_mode:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Restore mode is not enabled in the configuration.",
        )
