"""
Shared pytest fixtures for finvault tests.

This module provides fixtures for:
- Flask app and test client
- Catalog database with in-memory SQLite
- Application data store (file-backed SQLite) with sample finance data
- Mock fixtures for external services (S3 via moto)
- Backup records in various states
"""

import os
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import boto3
from moto import mock_aws
from sqlalchemy import Column, DateTime, Integer, MetaData, Numeric, String, Table

from finvault import create_app, db as _db
from finvault.backup.codec import ArchiveCodec
from finvault.backup.storage import S3Storage
from finvault.models import BackupRecord, STATUS_COMPLETED, TYPE_FULL, TRIGGER_SCHEDULE
from finvault.services import get_services


TEST_SECRET = 'test-encryption-secret-0123456789'
ADMIN_TOKEN = 'test-admin-token'


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(scope='function')
def app(mock_s3, tmp_path):
    """
    Create Flask app with test configuration.

    The catalog uses in-memory SQLite; the application data store is a
    SQLite file so every connection sees the same data.
    """
    app = create_app('testing', {
        'DATA_STORE_URL': f"sqlite:///{tmp_path / 'appdata.db'}",
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOG_DIR': str(tmp_path / 'logs'),
    })

    yield app

    app.extensions['finvault'].engine.data_store.close()


@pytest.fixture(scope='function')
def db(app):
    """
    Create catalog database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def auth_headers():
    return {'Authorization': f'Bearer {ADMIN_TOKEN}'}


@pytest.fixture
def services(app, db):
    """Backup components of the test app (inside an app context)."""
    return get_services()


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
def storage(engine):
    return engine.storage


@pytest.fixture
def codec():
    """Codec with low KDF iterations for speed."""
    return ArchiveCodec(TEST_SECRET, iterations=1000)


@pytest.fixture
def s3_storage(mock_s3):
    return S3Storage(bucket_name='test-bucket', region='us-east-1')


@pytest.fixture
def app_tables(engine):
    """
    Sample finance tables in the application data store.

    - accounts: 10 rows
    - budgets: 0 rows
    - transactions: 5 rows
    """
    metadata = MetaData()

    accounts = Table(
        'accounts', metadata,
        Column('id', Integer, primary_key=True),
        Column('name', String(100)),
        Column('balance', Numeric(12, 2)),
        Column('created_at', DateTime),
        Column('updated_at', DateTime),
    )
    budgets = Table(
        'budgets', metadata,
        Column('id', Integer, primary_key=True),
        Column('category', String(50)),
        Column('created_at', DateTime),
        Column('updated_at', DateTime),
    )
    transactions = Table(
        'transactions', metadata,
        Column('id', Integer, primary_key=True),
        Column('account_id', Integer),
        Column('amount', Numeric(12, 2)),
        Column('memo', String(200)),
        Column('created_at', DateTime),
        Column('updated_at', DateTime),
    )

    sql_engine = engine.data_store.engine
    metadata.create_all(sql_engine)

    seeded = datetime(2024, 1, 1, 12, 0, 0)
    with sql_engine.begin() as conn:
        conn.execute(accounts.insert(), [
            {
                'id': i,
                'name': f'Account {i}',
                'balance': Decimal('100.00') * i,
                'created_at': seeded,
                'updated_at': seeded,
            }
            for i in range(1, 11)
        ])
        conn.execute(transactions.insert(), [
            {
                'id': i,
                'account_id': i,
                'amount': Decimal('-12.50'),
                'memo': f'Coffee {i}',
                'created_at': seeded,
                'updated_at': seeded,
            }
            for i in range(1, 6)
        ])

    return {'accounts': accounts, 'budgets': budgets, 'transactions': transactions}


def count_rows(sql_engine, table) -> int:
    with sql_engine.connect() as conn:
        return len(conn.execute(table.select()).fetchall())


@pytest.fixture
def row_counter(engine):
    """Callable returning the current row count of a sample table."""
    return lambda table: count_rows(engine.data_store.engine, table)


@pytest.fixture
def make_record(db):
    """
    Factory for catalog records in arbitrary states.

    Defaults to a completed scheduled full backup started now.
    """
    counter = {'n': 0}

    def _make(**fields):
        counter['n'] += 1
        start_time = fields.pop('start_time', datetime.utcnow())
        values = {
            'backup_id': f"{start_time.strftime('%Y%m%dT%H%M%S%f')}Z-full-{counter['n']:06x}",
            'backup_type': TYPE_FULL,
            'status': STATUS_COMPLETED,
            'triggered_by': TRIGGER_SCHEDULE,
            'start_time': start_time,
            'end_time': start_time + timedelta(seconds=5),
            'duration_ms': 5000,
            'size_bytes': 1024,
            'collections': [{'name': 'accounts', 'documentCount': 10, 'size': 900}],
            'storage_bucket': 'test-bucket',
            'storage_key': f"backups/{start_time.year}/record-{counter['n']}/record-{counter['n']}.json.gz.enc",
            'checksum': 'a' * 64,
            'retention_date': start_time + timedelta(days=90),
        }
        values.update(fields)
        record = BackupRecord(**values)
        db.session.add(record)
        db.session.commit()
        return record

    return _make
