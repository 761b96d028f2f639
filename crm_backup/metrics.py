from prometheus_client import Counter, Histogram, Gauge

BACKUPS_TOTAL = Counter(
    "crm_backups_total",
    "Total number of backup attempts.",
    ["status", "trigger_mode"]
)

BACKUP_DURATION_SECONDS = Histogram(
    "crm_backup_duration_seconds",
    "Duration of backup operations in seconds."
)

BACKUP_SIZE_BYTES = Gauge(
    "crm_backup_size_bytes",
    "Size of the last successful backup in bytes."
)

BACKUP_LAST_INTEGRITY_STATUS = Gauge(
    "crm_backup_last_integrity_status",
    "Self-check result of the last created backup (1 verified, 0 not verified)."
)

BACKUP_LAST_SUCCESSFUL_SCHEDULED_TIMESTAMP_SECONDS = Gauge(
    "crm_backup_last_successful_scheduled_timestamp_seconds",
    "Timestamp of the last successful scheduled backup cycle."
)

BACKUPS_DELETED_TOTAL = Counter(
    "crm_backups_deleted_total",
    "Total number of backups deleted."
)

RETENTION_POLICY_RUNS_TOTAL = Counter(
    "crm_backup_retention_policy_runs_total",
    "Total number of retention policy runs."
)

RETENTION_FILES_DELETED_TOTAL = Counter(
    "crm_backup_retention_files_deleted_total",
    "Total number of backups deleted by the retention policy."
)

SCHEDULED_CYCLES_SKIPPED_TOTAL = Counter(
    "crm_backup_scheduled_cycles_skipped_total",
    "Scheduler ticks skipped because the previous cycle was still running."
)

RESTORES_TOTAL = Counter(
    "crm_restores_total",
    "Total number of restore attempts.",
    ["status"]
)

RESTORE_DURATION_SECONDS = Histogram(
    "crm_restore_duration_seconds",
    "Duration of restore operations in seconds."
)
