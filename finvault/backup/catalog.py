"""
Backup catalog - query helpers over BackupRecord.

The catalog is the system of record for backup attempts. It composes
queries and persists rows; it holds no business rules.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func

from finvault import db
from finvault.models import BackupRecord, STATUSES, BACKUP_TYPES, STATUS_COMPLETED, STATUS_IN_PROGRESS
from .errors import BackupNotFound


MAX_PAGE_SIZE = 200


class BackupCatalog:
    """Persistence wrapper for BackupRecord rows."""

    def create(self, **fields) -> BackupRecord:
        record = BackupRecord(**fields)
        db.session.add(record)
        db.session.commit()
        return record

    def save(self, record: BackupRecord) -> BackupRecord:
        db.session.add(record)
        db.session.commit()
        return record

    def get(self, backup_id: str) -> Optional[BackupRecord]:
        return BackupRecord.query.filter_by(backup_id=backup_id).first()

    def get_or_raise(self, backup_id: str) -> BackupRecord:
        """
        Raises:
            BackupNotFound: If no record has this id
        """
        record = self.get(backup_id)
        if record is None:
            raise BackupNotFound(backup_id)
        return record

    def list(self, status: str = None, backup_type: str = None, page: int = 1,
             per_page: int = 20) -> Tuple[List[BackupRecord], int]:
        """
        List records newest first.

        Args:
            status: Optional status filter
            backup_type: Optional type filter
            page: 1-based page number
            per_page: Page size (capped at 200)

        Returns:
            Tuple of (records on this page, total matching records)

        Raises:
            ValueError: If a filter value is not a known status/type
        """
        query = BackupRecord.query

        if status:
            if status not in STATUSES:
                raise ValueError(f"Invalid status filter: {status}")
            query = query.filter(BackupRecord.status == status)

        if backup_type:
            if backup_type not in BACKUP_TYPES:
                raise ValueError(f"Invalid type filter: {backup_type}")
            query = query.filter(BackupRecord.backup_type == backup_type)

        page = max(page, 1)
        per_page = min(max(per_page, 1), MAX_PAGE_SIZE)

        total = query.count()
        records = query.order_by(
            BackupRecord.start_time.desc()
        ).limit(per_page).offset((page - 1) * per_page).all()

        return records, total

    def latest_completed(self, exclude_id: str = None) -> Optional[BackupRecord]:
        """Most recent completed record of any type, by start time."""
        query = BackupRecord.query.filter(BackupRecord.status == STATUS_COMPLETED)
        if exclude_id:
            query = query.filter(BackupRecord.backup_id != exclude_id)
        return query.order_by(BackupRecord.start_time.desc()).first()

    def find_active(self, stale_after: timedelta, exclude_id: str = None,
                    now: datetime = None) -> List[BackupRecord]:
        """
        In-progress records started within stale_after.

        Older in-progress rows are treated as left over from a crashed process.
        """
        now = now or datetime.utcnow()
        query = BackupRecord.query.filter(
            BackupRecord.status == STATUS_IN_PROGRESS,
            BackupRecord.start_time >= now - stale_after
        )
        if exclude_id:
            query = query.filter(BackupRecord.backup_id != exclude_id)
        return query.order_by(BackupRecord.start_time.asc()).all()

    def find_expired(self, now: datetime = None) -> List[BackupRecord]:
        """Completed records whose retention date has passed."""
        now = now or datetime.utcnow()
        return BackupRecord.query.filter(
            BackupRecord.status == STATUS_COMPLETED,
            BackupRecord.retention_date < now
        ).order_by(BackupRecord.retention_date.asc()).all()

    def find_unverified(self, window_days: int = 7, limit: int = 5,
                        now: datetime = None) -> List[BackupRecord]:
        """Recent completed records without a passing verification."""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=window_days)
        return BackupRecord.query.filter(
            BackupRecord.status == STATUS_COMPLETED,
            BackupRecord.verified.is_(False),
            BackupRecord.start_time >= cutoff
        ).order_by(BackupRecord.start_time.desc()).limit(limit).all()

    def delete(self, record: BackupRecord):
        db.session.delete(record)
        db.session.commit()

    def stats(self) -> dict:
        """Per-status counts and sizes, recent records, totals."""
        rows = db.session.query(
            BackupRecord.status,
            func.count(BackupRecord.id),
            func.coalesce(func.sum(BackupRecord.size_bytes), 0)
        ).group_by(BackupRecord.status).all()

        recent = BackupRecord.query.order_by(BackupRecord.start_time.desc()).limit(10).all()
        last = self.latest_completed()

        return {
            'summary': [
                {'status': status, 'count': count, 'totalSize': int(total_size)}
                for status, count, total_size in rows
            ],
            'recent': [record.to_summary() for record in recent],
            'totalBackups': BackupRecord.query.count(),
            'lastBackup': last.to_summary() if last else None,
        }
