from datetime import datetime
from finvault import db
from finvault.backup.errors import InvalidStatusTransition


STATUS_IN_PROGRESS = 'in_progress'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
STATUSES = (STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_FAILED)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

TYPE_FULL = 'full'
TYPE_INCREMENTAL = 'incremental'
BACKUP_TYPES = (TYPE_FULL, TYPE_INCREMENTAL)

TRIGGER_SCHEDULE = 'schedule'
TRIGGER_MANUAL = 'manual'
TRIGGERS = (TRIGGER_SCHEDULE, TRIGGER_MANUAL)


class BackupRecord(db.Model):
    """One row per backup attempt"""
    __tablename__ = 'backup_records'

    id = db.Column(db.Integer, primary_key=True)
    backup_id = db.Column(db.String(80), unique=True, nullable=False, index=True)
    backup_type = db.Column(db.String(20), nullable=False)  # full, incremental
    status = db.Column(db.String(20), nullable=False, default=STATUS_IN_PROGRESS, index=True)
    triggered_by = db.Column(db.String(20), nullable=False)  # schedule, manual
    start_time = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    end_time = db.Column(db.DateTime)
    duration_ms = db.Column(db.Integer)
    size_bytes = db.Column(db.BigInteger)
    collections = db.Column(db.JSON)  # [{name, documentCount, size}]
    storage_bucket = db.Column(db.String(255))
    storage_key = db.Column(db.String(500))
    checksum = db.Column(db.String(64))
    verified = db.Column(db.Boolean, default=False, nullable=False)
    verified_at = db.Column(db.DateTime)
    retention_date = db.Column(db.DateTime, nullable=False, index=True)
    error_message = db.Column(db.Text)
    archive_metadata = db.Column(db.JSON)
    logs = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<BackupRecord {self.backup_id} type={self.backup_type} status={self.status}>'

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def storage_location(self):
        """Storage location dict, or None when no archive was stored."""
        if not self.storage_key:
            return None
        return {'bucket': self.storage_bucket, 'key': self.storage_key}

    def transition_to(self, status: str):
        """
        Move to a new status.

        Raises:
            InvalidStatusTransition: If the record is already terminal or the
                status is unknown
        """
        if status not in STATUSES:
            raise InvalidStatusTransition(f"Unknown backup status: {status}")
        if self.is_terminal:
            raise InvalidStatusTransition(
                f"Backup {self.backup_id} is already {self.status}, cannot become {status}"
            )
        self.status = status

    def _finish(self, status: str, end_time: datetime = None):
        self.transition_to(status)
        self.end_time = end_time or datetime.utcnow()
        self.duration_ms = int((self.end_time - self.start_time).total_seconds() * 1000)

    def mark_completed(self, size_bytes: int, collections: list, location: dict, checksum: str,
                       metadata: dict = None):
        """Finalize a successful run. Location and checksum are always set together."""
        if not location or not checksum:
            raise ValueError("Completed backups require both a storage location and a checksum")
        self._finish(STATUS_COMPLETED)
        self.size_bytes = size_bytes
        self.collections = collections
        self.storage_bucket = location.get('bucket')
        self.storage_key = location['key']
        self.checksum = checksum
        self.archive_metadata = metadata

    def mark_failed(self, error_message: str):
        """Finalize a failed run."""
        self._finish(STATUS_FAILED)
        self.error_message = error_message

    def to_summary(self) -> dict:
        """Short representation for listings."""
        return {
            'backupId': self.backup_id,
            'type': self.backup_type,
            'status': self.status,
            'triggeredBy': self.triggered_by,
            'startTime': _iso(self.start_time),
            'endTime': _iso(self.end_time),
            'duration': self.duration_ms,
            'size': self.size_bytes,
            'verified': self.verified,
            'retentionDate': _iso(self.retention_date),
        }

    def to_dict(self) -> dict:
        """Full representation for record detail."""
        data = self.to_summary()
        data.update({
            'collections': self.collections or [],
            'storageLocation': self.storage_location,
            'checksum': self.checksum,
            'verifiedAt': _iso(self.verified_at),
            'errorMessage': self.error_message,
            'metadata': self.archive_metadata,
            'logs': self.logs,
        })
        return data


def _iso(value):
    return value.isoformat() if value else None
