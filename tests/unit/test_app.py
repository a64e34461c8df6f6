"""
Unit tests for the application factory, configuration, auth helpers and
catalog migrations.
"""

from unittest.mock import patch

import pytest
from sqlalchemy import inspect, text

from finvault import create_app, db as _db
from finvault.auth import extract_bearer_token, verify_token
from finvault.backup.errors import EncryptionConfigError, DataStoreError
from finvault.backup.datastore import SQLDataStore
from finvault.config import _env_list, _env_bool, config
from finvault.migrations import run_migrations
from finvault.services import BackupServices


def overrides(tmp_path, **extra):
    values = {
        'DATA_STORE_URL': f"sqlite:///{tmp_path / 'appdata.db'}",
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOG_DIR': str(tmp_path / 'logs'),
    }
    values.update(extra)
    return values


class TestCreateApp:

    def test_services_registered(self, app):
        services = app.extensions['finvault']

        assert isinstance(services, BackupServices)
        assert isinstance(services.engine.data_store, SQLDataStore)
        assert services.engine.storage.bucket_name == 'test-bucket'
        assert services.engine.codec.iterations == 1000
        assert services.sweeper.storage is services.engine.storage
        assert services.notifier is services.scheduler.notifier
        assert services.scheduler.running is False

    def test_directories_and_log_file_created(self, app, tmp_path):
        assert (tmp_path / 'temp').is_dir()
        assert (tmp_path / 'logs' / 'finvault.log').exists()

    def test_catalog_table_created(self, app):
        with app.app_context():
            assert 'backup_records' in inspect(_db.engine).get_table_names()

    def test_missing_encryption_key_fails_startup(self, mock_s3, tmp_path):
        """Test a process without key material refuses to start."""
        with pytest.raises(EncryptionConfigError):
            create_app('testing', overrides(tmp_path, BACKUP_ENCRYPTION_KEY=None))

    def test_short_encryption_key_fails_startup(self, mock_s3, tmp_path):
        with pytest.raises(EncryptionConfigError):
            create_app('testing', overrides(tmp_path, BACKUP_ENCRYPTION_KEY='short'))

    def test_missing_data_store_fails_startup(self, mock_s3, tmp_path):
        with pytest.raises(DataStoreError):
            create_app('testing', overrides(tmp_path, DATA_STORE_URL=None))

    def test_scheduler_started_in_scheduler_worker(self, mock_s3, tmp_path, monkeypatch):
        monkeypatch.setenv('SCHEDULER_WORKER', 'true')

        with patch('finvault.scheduler.BackupScheduler.start') as start, \
                patch('atexit.register') as register:
            create_app('testing', overrides(tmp_path, SCHEDULER_ENABLED=True))

        start.assert_called_once()
        register.assert_called_once()

    def test_scheduler_not_started_in_http_worker(self, mock_s3, tmp_path, monkeypatch):
        monkeypatch.setenv('SCHEDULER_WORKER', 'false')

        with patch('finvault.scheduler.BackupScheduler.start') as start:
            create_app('testing', overrides(tmp_path, SCHEDULER_ENABLED=True))

        start.assert_not_called()

    def test_scheduler_disabled_by_config(self, mock_s3, tmp_path, monkeypatch):
        monkeypatch.setenv('SCHEDULER_WORKER', 'true')

        with patch('finvault.scheduler.BackupScheduler.start') as start:
            create_app('testing', overrides(tmp_path))

        start.assert_not_called()


class TestConfig:

    def test_env_list(self, monkeypatch):
        monkeypatch.setenv('FINVAULT_TEST_LIST', 'a, b,,c ')

        assert _env_list('FINVAULT_TEST_LIST', []) == ['a', 'b', 'c']
        assert _env_list('FINVAULT_TEST_UNSET', ('x',)) == ['x']

    def test_env_bool(self, monkeypatch):
        monkeypatch.setenv('FINVAULT_TEST_BOOL', 'TRUE')

        assert _env_bool('FINVAULT_TEST_BOOL', False) is True
        assert _env_bool('FINVAULT_TEST_UNSET', False) is False

    def test_defaults(self):
        base = config['production']

        assert base.BACKUP_RETENTION_DAYS['full'] == 90
        assert base.BACKUP_RETENTION_DAYS['incremental'] == 30
        assert base.BACKUP_SCHEDULES['full'] == '0 3 * * 0'
        assert base.BACKUP_S3_STORAGE_CLASS == 'STANDARD_IA'
        assert 'backup_records' in base.BACKUP_EXCLUDED_COLLECTIONS
        assert config['default'] is config['production']


class TestAuthHelpers:

    @pytest.mark.parametrize('header, token', [
        ('Bearer abc123', 'abc123'),
        ('bearer  abc123 ', 'abc123'),
        ('Basic abc123', None),
        ('Bearer ', None),
        ('', None),
        (None, None),
    ])
    def test_extract_bearer_token(self, header, token):
        assert extract_bearer_token(header) == token

    def test_verify_token(self):
        assert verify_token('secret-token', 'secret-token') is True
        assert verify_token('secret-token', 'secret-tokem') is False
        assert verify_token(None, 'x') is False
        assert verify_token('x', None) is False


class TestMigrations:

    def test_adds_missing_columns(self, app):
        """Test a catalog table missing the nullable columns is upgraded in place."""
        with app.app_context():
            _db.session.execute(text('DROP TABLE backup_records'))
            _db.session.execute(text(
                'CREATE TABLE backup_records ('
                'id INTEGER PRIMARY KEY, backup_id VARCHAR(80), backup_type VARCHAR(20), '
                'status VARCHAR(20), triggered_by VARCHAR(20), start_time DATETIME, '
                'end_time DATETIME, duration_ms INTEGER, size_bytes BIGINT, collections JSON, '
                'storage_bucket VARCHAR(255), storage_key VARCHAR(500), checksum VARCHAR(64), '
                'verified BOOLEAN, retention_date DATETIME, error_message TEXT, created_at DATETIME)'
            ))
            _db.session.commit()

            added = run_migrations()

            assert added == ['archive_metadata', 'logs', 'verified_at']
            columns = [col['name'] for col in inspect(_db.engine).get_columns('backup_records')]
            assert {'archive_metadata', 'logs', 'verified_at'} <= set(columns)

    def test_noop_on_current_schema(self, app):
        with app.app_context():
            assert run_migrations() == []
