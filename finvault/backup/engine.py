"""
Backup engine - orchestrates backup creation, restore and verification.

Backup workflow:
1. Create BackupRecord (status: in_progress, retention date from policy)
2. Read collections from the data store (all documents, or only those
   changed since the last completed backup for incremental runs)
3. Encode the payload into an encrypted archive in a temp directory
4. Checksum the archive and upload it to object storage
5. Update BackupRecord (status: completed/failed)
6. Cleanup temporary files

The engine never sends notifications; the scheduler reports outcomes.
"""

import os
import shutil
import logging
import secrets
import tempfile
import threading
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from finvault import db
from finvault.models import (
    BackupRecord, TYPE_FULL, TYPE_INCREMENTAL, BACKUP_TYPES, TRIGGERS, TRIGGER_MANUAL,
    STATUS_IN_PROGRESS, STATUS_COMPLETED
)
from .catalog import BackupCatalog
from .codec import ArchiveCodec, serialize
from .datastore import DataStore
from .errors import BackupInProgress, BackupNotRestorable, IntegrityMismatch, StorageUnavailable
from .integrity import checksum_file, checksums_match
from .storage import S3Storage, ARCHIVE_SUFFIX


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)

DEFAULT_RETENTION_DAYS = {
    TYPE_FULL: 90,
    TYPE_INCREMENTAL: 30,
    TRIGGER_MANUAL: 365,
}


def generate_backup_id(backup_type: str, now: datetime = None) -> str:
    """
    Generate a unique, time-ordered backup id.

    Format: {YYYYMMDDTHHMMSSffffff}Z-{type}-{6 hex chars}
    """
    now = now or datetime.utcnow()
    return f"{now.strftime('%Y%m%dT%H%M%S%f')}Z-{backup_type}-{secrets.token_hex(3)}"


def calculate_retention_date(backup_type: str, triggered_by: str, start_time: datetime,
                             retention_days: Dict[str, int] = None) -> datetime:
    """
    Compute when a backup becomes eligible for deletion.

    Manual backups are kept for the longest configured period regardless of type.
    """
    policy = dict(DEFAULT_RETENTION_DAYS)
    if retention_days:
        policy.update(retention_days)

    if triggered_by == TRIGGER_MANUAL:
        days = max(policy.values())
    else:
        days = policy[backup_type]

    return start_time + timedelta(days=days)


class RunLog:
    """Timestamped log lines for one run, mirrored to the module logger."""

    def __init__(self):
        self.lines = []

    def add(self, message: str, level: int = logging.INFO):
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.lines.append(f"[{timestamp}] {message}")
        logger.log(level, message)

    def text(self) -> str:
        return '\n'.join(self.lines)


class BackupEngine:
    """
    Creates, restores and verifies backups of the application data store.
    """

    def __init__(
        self,
        data_store: DataStore,
        codec: ArchiveCodec,
        storage: S3Storage,
        catalog: BackupCatalog = None,
        temp_dir: str = None,
        retention_days: Dict[str, int] = None,
        app_version: str = '1.0.0',
        environment: str = 'production',
        stale_after_hours: int = 6
    ):
        """
        Args:
            data_store: Application database handler
            codec: Archive codec holding the encryption secret
            storage: Object storage gateway
            catalog: Backup catalog (default: BackupCatalog())
            temp_dir: Parent directory for temporary archives (default: system temp)
            retention_days: Overrides for {'full', 'incremental', 'manual'} retention
            app_version: Application version recorded in archive metadata
            environment: Environment name recorded in archive metadata
            stale_after_hours: Age after which an in-progress record no longer
                blocks new backups
        """
        self.data_store = data_store
        self.codec = codec
        self.storage = storage
        self.catalog = catalog or BackupCatalog()
        self.temp_dir = temp_dir
        self.retention_days = retention_days or {}
        self.app_version = app_version
        self.environment = environment
        self.stale_after = timedelta(hours=stale_after_hours)

        # Serializes backup creation within this process; in-progress catalog
        # rows guard against backups started by other processes
        self._backup_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Backup creation
    # ------------------------------------------------------------------

    def create_full_backup(self, triggered_by: str = 'schedule') -> BackupRecord:
        """
        Snapshot every collection of the data store.

        Returns:
            Completed BackupRecord

        Raises:
            BackupInProgress: If another process is running a backup
            Exception: Any other failure, after the record has been marked
                failed (the exception carries the record id as backup_id)
        """
        return self._create_backup(TYPE_FULL, triggered_by)

    def create_incremental_backup(self, triggered_by: str = 'schedule') -> BackupRecord:
        """
        Snapshot documents created or modified since the last completed backup.

        Returns:
            Completed BackupRecord

        Raises:
            BackupInProgress: If another process is running a backup
            Exception: Any other failure, after the record has been marked
                failed (the exception carries the record id as backup_id)
        """
        return self._create_backup(TYPE_INCREMENTAL, triggered_by)

    @property
    def backup_in_progress(self) -> bool:
        return self._backup_lock.locked() or bool(self.catalog.find_active(self.stale_after))

    def _create_backup(self, backup_type: str, triggered_by: str) -> BackupRecord:
        if backup_type not in BACKUP_TYPES:
            raise ValueError(f"Invalid backup type: {backup_type}")
        if triggered_by not in TRIGGERS:
            raise ValueError(f"Invalid trigger: {triggered_by}")

        with self._backup_lock:
            start_time = datetime.utcnow()
            record = self.catalog.create(
                backup_id=generate_backup_id(backup_type, start_time),
                backup_type=backup_type,
                status=STATUS_IN_PROGRESS,
                triggered_by=triggered_by,
                start_time=start_time,
                retention_date=calculate_retention_date(
                    backup_type, triggered_by, start_time, self.retention_days
                )
            )
            self._claim_backup_slot(record)

            run_log = RunLog()
            run_log.add(f"Starting {backup_type} backup: {record.backup_id} (triggered by {triggered_by})")
            temp_dir = None

            try:
                temp_dir = tempfile.mkdtemp(prefix='finvault_backup_', dir=self.temp_dir)
                self._execute_workflow(record, temp_dir, run_log)
                run_log.add(f"Backup completed successfully: {record.backup_id}")

            except Exception as e:
                db.session.rollback()
                record.mark_failed(str(e) or e.__class__.__name__)
                run_log.add(f"Backup failed: {e}", logging.ERROR)
                e.backup_id = record.backup_id
                raise

            finally:
                self._cleanup(temp_dir, run_log)
                record.logs = run_log.text()
                self.catalog.save(record)

            return record

    def _claim_backup_slot(self, record: BackupRecord):
        """
        Give up a freshly created record if another backup is in flight.

        The check runs after the record is committed, so two processes racing
        to start never both proceed.
        """
        active = self.catalog.find_active(self.stale_after, exclude_id=record.backup_id)
        if active:
            active_id = active[0].backup_id
            logger.warning(f"Not starting {record.backup_type} backup: {active_id} is in progress")
            self.catalog.delete(record)
            raise BackupInProgress(active_id)

    def _execute_workflow(self, record: BackupRecord, temp_dir: str, run_log: RunLog):
        """Execute the backup steps for an allocated record."""
        since = None
        if record.backup_type == TYPE_INCREMENTAL:
            since = self._incremental_watermark(record)
            run_log.add(f"Capturing changes since {since.isoformat()}")

        # Step 1: Read collections
        collections, collection_stats = self._capture_collections(since, run_log)

        # Step 2: Encode archive
        metadata = self._build_metadata(record, collection_stats, since)
        archive_path = os.path.join(temp_dir, f"{record.backup_id}{ARCHIVE_SUFFIX}")
        size = self.codec.encode_to_file(
            {'metadata': metadata, 'collections': collections},
            archive_path
        )
        run_log.add(f"Archive created: {os.path.basename(archive_path)} ({size / 1024 / 1024:.2f} MB)")

        # Step 3: Checksum and upload
        checksum = checksum_file(archive_path)
        location = self.storage.upload(archive_path, record.backup_id, year=record.start_time.year)
        run_log.add(f"Uploaded to s3://{location['bucket']}/{location['key']} (sha256 {checksum})")

        record.mark_completed(
            size_bytes=size,
            collections=collection_stats,
            location=location,
            checksum=checksum,
            metadata=metadata
        )

    def _cleanup(self, temp_dir: Optional[str], run_log: RunLog):
        """Remove temporary directory and files."""
        if temp_dir and os.path.exists(temp_dir):
            try:
                shutil.rmtree(temp_dir)
                run_log.add("Cleaned up temporary directory", logging.DEBUG)
            except OSError as e:
                run_log.add(f"Warning: Failed to cleanup temp directory: {e}", logging.WARNING)

    def _incremental_watermark(self, record: BackupRecord) -> datetime:
        """Start time of the most recent completed backup, or the epoch."""
        last = self.catalog.latest_completed(exclude_id=record.backup_id)
        return last.start_time if last else EPOCH

    def _capture_collections(self, since: Optional[datetime], run_log: RunLog):
        """
        Read documents from every collection.

        Collections without matching documents are left out entirely.

        Returns:
            Tuple of ({name: [documents]}, [{name, documentCount, size}])
        """
        collections = {}
        collection_stats = []

        names = self.data_store.list_collections()
        run_log.add(f"Found {len(names)} collections")

        for name in names:
            documents = list(self.data_store.find_documents(name, since=since))
            if not documents:
                continue

            collections[name] = documents
            collection_stats.append({
                'name': name,
                'documentCount': len(documents),
                'size': len(serialize(documents))
            })
            run_log.add(f"Captured {len(documents)} documents from {name}", logging.DEBUG)

        return collections, collection_stats

    def _build_metadata(self, record: BackupRecord, collection_stats: List[dict],
                        since: Optional[datetime]) -> dict:
        metadata = {
            'appVersion': self.app_version,
            'environment': self.environment,
            'backupId': record.backup_id,
            'backupType': record.backup_type,
            'backupDate': record.start_time.isoformat(),
            'totalCollections': len(collection_stats),
            'totalDocuments': sum(c['documentCount'] for c in collection_stats),
            'documentCounts': {c['name']: c['documentCount'] for c in collection_stats},
        }
        if since is not None:
            metadata['since'] = since.isoformat()
        return metadata

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore_from_backup(self, backup_id: str, collections: Iterable[str] = None,
                            clear_existing: bool = False, dry_run: bool = False) -> dict:
        """
        Restore collections from a stored backup.

        Args:
            backup_id: Backup to restore from
            collections: Optional allow-list of collection names
            clear_existing: Remove current documents of each restored collection first.
                Without it, an incremental archive is merged by document key.
            dry_run: Only report what would be restored

        Returns:
            Summary dict of restored (or would-be restored) collections

        Raises:
            BackupNotFound: If the backup id is unknown
            BackupNotRestorable: If the record has no stored archive
            IntegrityMismatch: If the downloaded archive fails the checksum
            ArchiveDecodeError: If the archive cannot be decrypted
            StorageUnavailable: If the download fails
            DataStoreError: If writing to the data store fails (collections
                restored before the failure stay restored)
        """
        record = self.catalog.get_or_raise(backup_id)
        location = record.storage_location

        if record.status != STATUS_COMPLETED or location is None:
            raise BackupNotRestorable(
                f"Backup {backup_id} has status {record.status} and no stored archive"
            )

        logger.info(f"Starting restore from backup: {backup_id} (dry_run={dry_run})")
        temp_dir = tempfile.mkdtemp(prefix='finvault_restore_', dir=self.temp_dir)

        try:
            archive_path = self._download_verified(record, temp_dir)
            payload = self.codec.decode_file(archive_path)

            available = payload.get('collections', {})
            metadata = payload.get('metadata', {})
            allow_list = set(collections) if collections else None

            selected = [
                (name, documents) for name, documents in available.items()
                if allow_list is None or name in allow_list
            ]
            missing = sorted(allow_list - set(available)) if allow_list else []

            # Incremental archives hold changed documents whose keys may
            # already exist, so they are applied as upserts
            merge = metadata.get('backupType') == TYPE_INCREMENTAL and not clear_existing

            if dry_run:
                logger.info(f"Dry run - would restore: {[name for name, _ in selected]}")
                return {
                    'dryRun': True,
                    'backupId': backup_id,
                    'collections': [
                        {'name': name, 'documentCount': len(documents)}
                        for name, documents in selected
                    ],
                    'missingCollections': missing,
                    'since': metadata.get('since'),
                    'merge': merge,
                }

            restored = []
            for name, documents in selected:
                if clear_existing:
                    removed = self.data_store.delete_documents(name)
                    logger.info(f"Cleared {removed} documents from {name}")

                if merge:
                    written = self.data_store.upsert_documents(name, documents)
                else:
                    written = self.data_store.insert_documents(name, documents)
                restored.append({
                    'name': name,
                    'documentCount': written,
                    'cleared': clear_existing,
                    'merged': merge
                })
                logger.info(f"Restored {written} documents into {name}")

            logger.info(f"Restore completed: {backup_id}")
            return {
                'dryRun': False,
                'backupId': backup_id,
                'restoredCollections': restored,
                'missingCollections': missing,
                'restoredAt': datetime.utcnow().isoformat(),
            }

        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def _download_verified(self, record: BackupRecord, temp_dir: str) -> str:
        """Download a record's archive and check it against the stored checksum."""
        archive_path = os.path.join(temp_dir, os.path.basename(record.storage_key))
        self.storage.download(record.storage_location, archive_path)

        actual = checksum_file(archive_path)
        if not checksums_match(record.checksum, actual):
            logger.error(f"Integrity check failed for {record.backup_id}")
            raise IntegrityMismatch(record.backup_id, record.checksum, actual)

        return archive_path

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_backup(self, backup_id: str) -> dict:
        """
        Re-check a stored archive against its catalog checksum.

        A mismatch, a missing object or an unreachable bucket is recorded as
        verified=False; it is not raised.

        Returns:
            {'backupId', 'verified', 'checksum', 'expectedChecksum'}

        Raises:
            BackupNotFound: If the backup id is unknown
        """
        record = self.catalog.get_or_raise(backup_id)
        location = record.storage_location
        actual = None

        temp_dir = tempfile.mkdtemp(prefix='finvault_verify_', dir=self.temp_dir)
        try:
            if location is None:
                logger.warning(f"Backup {backup_id} has no stored archive to verify")
            else:
                archive_path = os.path.join(temp_dir, os.path.basename(location['key']))
                try:
                    self.storage.download(location, archive_path)
                    actual = checksum_file(archive_path)
                except StorageUnavailable as e:
                    logger.warning(f"Verification of {backup_id} failed: {e}")

            verified = checksums_match(record.checksum, actual)

            record.verified = verified
            record.verified_at = datetime.utcnow()
            self.catalog.save(record)

            if verified:
                logger.info(f"Backup verified: {backup_id}")
            else:
                logger.error(f"Backup verification failed: {backup_id}")

            return {
                'backupId': backup_id,
                'verified': verified,
                'checksum': actual,
                'expectedChecksum': record.checksum,
            }

        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    # ------------------------------------------------------------------
    # Operator helpers
    # ------------------------------------------------------------------

    def delete_backup(self, backup_id: str) -> dict:
        """
        Delete a backup's archive, then its catalog row.

        Raises:
            BackupNotFound: If the backup id is unknown
            StorageUnavailable: If the archive cannot be deleted (the row is kept)
        """
        record = self.catalog.get_or_raise(backup_id)
        location = record.storage_location

        if location is not None:
            self.storage.delete(location)

        self.catalog.delete(record)
        logger.info(f"Deleted backup: {backup_id}")
        return {'backupId': backup_id, 'deleted': True}

    def get_download_url(self, backup_id: str, expires_in: int = 3600) -> dict:
        """
        Signed, time-limited URL for downloading a backup archive.

        Raises:
            BackupNotFound: If the backup id is unknown
            BackupNotRestorable: If the record has no stored archive
        """
        record = self.catalog.get_or_raise(backup_id)
        location = record.storage_location
        if location is None:
            raise BackupNotRestorable(f"Backup {backup_id} has no stored archive")

        return {
            'downloadUrl': self.storage.generate_download_url(location, expires_in),
            'expiresIn': expires_in,
            'filename': f"{backup_id}.backup",
        }

    def get_stats(self) -> dict:
        return self.catalog.stats()

    def test_configuration(self) -> dict:
        """Check bucket access and that the codec round-trips a sample payload."""
        results = {'bucket': self.storage.bucket_name}

        try:
            results['s3Connection'] = self.storage.test_connection()
        except Exception as e:
            results['s3Connection'] = False
            results['s3Error'] = str(e)

        sample = {'check': 'finvault', 'createdAt': datetime.utcnow()}
        try:
            results['encryptionKey'] = self.codec.decode(self.codec.encode(sample)) == sample
        except Exception as e:
            results['encryptionKey'] = False
            results['encryptionError'] = str(e)

        return results
