"""
Exception taxonomy for the backup engine.

Every error raised by the backup package derives from BackupError so that
callers (scheduler jobs, API routes) can catch the whole family at once.
"""


class BackupError(Exception):
    """Base class for backup engine failures."""
    pass


class BackupNotFound(BackupError):
    """Raised when a backup id is not present in the catalog."""

    def __init__(self, backup_id: str):
        self.backup_id = backup_id
        super().__init__(f"Backup not found: {backup_id}")


class BackupNotRestorable(BackupError):
    """Raised when a record has no stored archive (failed or in progress)."""
    pass


class IntegrityMismatch(BackupError):
    """Raised when an archive checksum does not match the catalog value."""

    def __init__(self, backup_id: str, expected: str, actual: str):
        self.backup_id = backup_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Backup file integrity check failed for {backup_id} "
            f"(expected {expected}, got {actual})"
        )


class StorageUnavailable(BackupError):
    """Raised when an object storage operation fails."""
    pass


class ObjectNotFound(StorageUnavailable):
    """Raised when the requested object does not exist in the bucket."""
    pass


class EncryptionConfigError(BackupError):
    """Raised when encryption secret material is missing or invalid."""
    pass


class ArchiveDecodeError(BackupError):
    """Raised when an archive cannot be decrypted or parsed."""
    pass


class DataStoreError(BackupError):
    """Raised when the application data store cannot be read or written."""
    pass


class InvalidStatusTransition(BackupError):
    """Raised on an attempt to move a record out of a terminal status."""
    pass


class PartialSweepFailure(BackupError):
    """Raised (on request) when some retention deletions failed."""

    def __init__(self, deleted: int, failures: list):
        self.deleted = deleted
        self.failures = failures
        super().__init__(
            f"Retention sweep deleted {deleted} backups, "
            f"{len(failures)} deletions failed"
        )


class BackupInProgress(BackupError):
    """Raised when another process is already running a backup of this database."""

    def __init__(self, active_backup_id: str):
        self.active_backup_id = active_backup_id
        super().__init__(f"Another backup is already in progress: {active_backup_id}")
