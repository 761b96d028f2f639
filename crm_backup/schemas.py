from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class BackupOptions(BaseModel):
    include_data: bool = True
    include_tables: Optional[List[str]] = None
    exclude_tables: Optional[List[str]] = None
    # Reserved: accepted so callers can send it, not applied to the dump.
    compress: bool = False


class BackupArtifact(BaseModel):
    """One entry of the metadata catalog."""

    id: str
    filename: str
    size_bytes: int
    checksum: str
    created_at: datetime
    is_verified: bool = False
    tables: List[str]


class ScheduleConfig(BaseModel):
    enabled: bool = False
    interval_seconds: float = Field(default=24 * 60 * 60, gt=0)
    retention_days: int = Field(default=30, ge=0)
    backup_options: BackupOptions = Field(default_factory=BackupOptions)


class ScheduleConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    interval_seconds: Optional[float] = Field(default=None, gt=0)
    retention_days: Optional[int] = Field(default=None, ge=0)
    backup_options: Optional[BackupOptions] = None


class ScheduleStatus(BaseModel):
    is_running: bool
    config: ScheduleConfig
    next_run_at: Optional[datetime] = None
    cycle_in_progress: bool = False


class RestoreOptions(BaseModel):
    drop_existing: bool = False
    selective_tables: Optional[List[str]] = None
    exclude_tables: Optional[List[str]] = None
    validate_before_restore: bool = True
    create_backup_before_restore: bool = False


class SelectiveRestoreRequest(RestoreOptions):
    tables: List[str] = Field(min_length=1)


class RestoreResult(BaseModel):
    success: bool = False
    backup_id: Optional[str] = None
    restored_tables: List[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    pre_restore_backup_id: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class RestorePreview(BaseModel):
    backup: BackupArtifact
    current_tables: List[str]
    backup_tables: List[str]
    conflicts: List[str]


class RestoreTestReport(BaseModel):
    can_restore: bool
    issues: List[str]
    estimated_duration_seconds: float


class VerifyResult(BaseModel):
    backup_id: str
    is_valid: bool
    verified_at: datetime


class CleanupResult(BaseModel):
    retention_days: int
    deleted: List[str]


class ErrorDetail(BaseModel):
    kind: str
    message: str
    summary: Optional[str] = None
