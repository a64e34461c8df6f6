"""
Wiring of the backup components for a Flask app.

All components are built once per app at startup and stored in
app.extensions['finvault']. Missing encryption material fails here, so a
misconfigured process never starts taking backups it could not restore.
"""

import logging

from flask import current_app

from finvault.backup.catalog import BackupCatalog
from finvault.backup.codec import ArchiveCodec
from finvault.backup.datastore import create_data_store
from finvault.backup.engine import BackupEngine
from finvault.backup.retention import RetentionSweeper
from finvault.backup.storage import S3Storage
from finvault.notifications import build_notifier
from finvault.scheduler import BackupScheduler


logger = logging.getLogger(__name__)

EXTENSION_KEY = 'finvault'


class BackupServices:
    """Container for the backup components of one app"""

    def __init__(self, engine: BackupEngine, sweeper: RetentionSweeper, scheduler: BackupScheduler):
        self.engine = engine
        self.sweeper = sweeper
        self.scheduler = scheduler

    @property
    def notifier(self):
        return self.scheduler.notifier


def init_backup_services(app) -> BackupServices:
    """
    Build every backup component from app config.

    Raises:
        EncryptionConfigError: If BACKUP_ENCRYPTION_KEY is missing or invalid
        StorageUnavailable: If the bucket is not configured
        DataStoreError: If DATA_STORE_URL is not configured
    """
    config = app.config

    codec = ArchiveCodec(
        config.get('BACKUP_ENCRYPTION_KEY'),
        iterations=config.get('BACKUP_KDF_ITERATIONS', 480000)
    )
    storage = S3Storage.from_config(config)
    catalog = BackupCatalog()

    engine = BackupEngine(
        data_store=create_data_store(config),
        codec=codec,
        storage=storage,
        catalog=catalog,
        temp_dir=config.get('TEMP_DIR'),
        retention_days=config.get('BACKUP_RETENTION_DAYS'),
        app_version=config.get('APP_VERSION', '1.0.0'),
        environment=config.get('ENVIRONMENT', 'production'),
        stale_after_hours=config.get('BACKUP_STALE_AFTER_HOURS', 6)
    )
    sweeper = RetentionSweeper(storage, catalog)

    scheduler = BackupScheduler(
        app,
        engine,
        sweeper,
        notifier=build_notifier(config),
        crons=config.get('BACKUP_SCHEDULES'),
        verification_window_days=config.get('BACKUP_VERIFICATION_WINDOW_DAYS', 7),
        verification_sample_size=config.get('BACKUP_VERIFICATION_SAMPLE_SIZE', 5)
    )

    services = BackupServices(engine, sweeper, scheduler)
    app.extensions[EXTENSION_KEY] = services
    logger.info(f"Backup services initialized (bucket: {storage.bucket_name})")
    return services


def get_services() -> BackupServices:
    """Backup components of the current app."""
    return current_app.extensions[EXTENSION_KEY]
