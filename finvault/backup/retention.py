"""
Retention policy enforcement for backups.

Deletes completed backups whose retention date has passed, from both object
storage and the catalog. The archive is always deleted before the catalog
row, so a failure can leave a row pointing at nothing (visible, recoverable)
but never an archive without a row (an invisible storage leak).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from finvault import db
from .catalog import BackupCatalog
from .errors import PartialSweepFailure
from .storage import S3Storage


logger = logging.getLogger(__name__)


class RetentionSweeper:
    """
    Removes expired backups.

    A failure on one backup is logged and recorded in ``failures``; the sweep
    moves on to the next one and the failed backup is picked up again by the
    next sweep.
    """

    def __init__(self, storage: S3Storage, catalog: BackupCatalog = None):
        self.storage = storage
        self.catalog = catalog or BackupCatalog()
        self.failures: List[Dict[str, str]] = []

    def cleanup_expired(self, now: datetime = None, strict: bool = False) -> int:
        """
        Delete every completed backup with retention_date < now.

        Args:
            now: Reference time (default: current UTC time)
            strict: Raise PartialSweepFailure after the sweep if any deletion failed

        Returns:
            Number of backups deleted

        Raises:
            PartialSweepFailure: Only when strict is set and a deletion failed
        """
        self.failures = []
        expired = self.catalog.find_expired(now)

        logger.info(f"Retention sweep: {len(expired)} expired backups")

        deleted = 0
        for record in expired:
            backup_id = record.backup_id
            try:
                location = record.storage_location
                if location is not None:
                    self.storage.delete(location)
                self.catalog.delete(record)
                deleted += 1
                logger.info(f"Cleaned up expired backup: {backup_id}")

            except Exception as e:
                logger.error(f"Failed to cleanup backup {backup_id}: {e}")
                self.failures.append({'backupId': backup_id, 'error': str(e)})
                # A failed catalog delete leaves the session unusable until rolled back
                db.session.rollback()

        logger.info(
            f"Retention sweep complete. Deleted: {deleted}, Failed: {len(self.failures)}"
        )

        if strict and self.failures:
            raise PartialSweepFailure(deleted, list(self.failures))

        return deleted

    def enforce_retention(self, now: datetime = None) -> Dict[str, Any]:
        """
        Run a sweep and return a summary.

        Returns:
            {'deleted': int, 'failed': int, 'errors': [{'backupId', 'error'}]}
        """
        deleted = self.cleanup_expired(now)
        return {
            'deleted': deleted,
            'failed': len(self.failures),
            'errors': list(self.failures),
        }
