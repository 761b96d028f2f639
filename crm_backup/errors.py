from typing import List, Optional


class BackupError(Exception):
    """Base class for every failure raised by the backup and recovery services."""

    kind = "BackupError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        # Filled in by RecoveryService when a restore aborts.
        self.result = None


class BackupNotFoundError(BackupError):
    kind = "NotFound"

    def __init__(self, backup_id: str):
        super().__init__(f"Backup not found: {backup_id}")
        self.backup_id = backup_id


class InvalidRequestError(BackupError):
    kind = "InvalidRequest"


class ToolError(BackupError):
    """A dump or restore subprocess exited non-zero (or could not be started)."""

    def __init__(self, message: str, diagnostics: str = "", summary: Optional[str] = None):
        super().__init__(message)
        self.diagnostics = diagnostics
        self.summary = summary


class DumpFailedError(ToolError):
    kind = "DumpFailed"


class RestoreFailedError(ToolError):
    kind = "RestoreFailed"


class IntegrityCheckFailedError(BackupError):
    kind = "IntegrityCheckFailed"


class RestoreIncompleteError(BackupError):
    kind = "RestoreIncomplete"

    def __init__(self, missing_tables: List[str]):
        super().__init__(f"Restore incomplete, missing tables: {', '.join(missing_tables)}")
        self.missing_tables = missing_tables


class CatalogUnavailableError(BackupError):
    kind = "CatalogUnavailable"
