import os


def _env_list(name, default):
    """Comma-separated environment variable as a list."""
    value = os.environ.get(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


def _env_bool(name, default):
    return os.environ.get(name, str(default)).lower() == 'true'


class Config:
    """Base configuration"""

    # Backup catalog database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/finvault.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Application data store being backed up (mongodb://... or any SQLAlchemy URL)
    DATA_STORE_URL = os.environ.get('DATA_STORE_URL')
    DATA_STORE_DATABASE = os.environ.get('DATA_STORE_DATABASE')
    BACKUP_EXCLUDED_COLLECTIONS = _env_list('BACKUP_EXCLUDED_COLLECTIONS', ['backup_records'])
    BACKUP_TIMESTAMP_FIELDS = _env_list(
        'BACKUP_TIMESTAMP_FIELDS', ['createdAt', 'updatedAt', 'created_at', 'updated_at']
    )

    # Archive encryption (required, no fallback key)
    BACKUP_ENCRYPTION_KEY = os.environ.get('BACKUP_ENCRYPTION_KEY')
    BACKUP_KDF_ITERATIONS = int(os.environ.get('BACKUP_KDF_ITERATIONS', 480000))

    # Object storage
    BACKUP_S3_BUCKET = os.environ.get('BACKUP_S3_BUCKET') or os.environ.get('AWS_S3_BUCKET')
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    BACKUP_S3_ENDPOINT_URL = os.environ.get('BACKUP_S3_ENDPOINT_URL')
    BACKUP_S3_STORAGE_CLASS = os.environ.get('BACKUP_S3_STORAGE_CLASS', 'STANDARD_IA')
    BACKUP_S3_SSE = os.environ.get('BACKUP_S3_SSE', 'AES256')
    BACKUP_S3_CONNECT_TIMEOUT = int(os.environ.get('BACKUP_S3_CONNECT_TIMEOUT', 10))
    BACKUP_S3_READ_TIMEOUT = int(os.environ.get('BACKUP_S3_READ_TIMEOUT', 60))
    BACKUP_S3_MAX_ATTEMPTS = int(os.environ.get('BACKUP_S3_MAX_ATTEMPTS', 3))
    BACKUP_DOWNLOAD_URL_EXPIRES = int(os.environ.get('BACKUP_DOWNLOAD_URL_EXPIRES', 3600))

    # Retention (days)
    BACKUP_RETENTION_DAYS = {
        'full': int(os.environ.get('BACKUP_RETENTION_FULL_DAYS', 90)),
        'incremental': int(os.environ.get('BACKUP_RETENTION_INCREMENTAL_DAYS', 30)),
        'manual': int(os.environ.get('BACKUP_RETENTION_MANUAL_DAYS', 365)),
    }

    # Scheduler (cron expressions, UTC)
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)
    BACKUP_SCHEDULES = {
        'incremental': os.environ.get('BACKUP_CRON_INCREMENTAL', '0 2 * * *'),
        'full': os.environ.get('BACKUP_CRON_FULL', '0 3 * * 0'),
        'cleanup': os.environ.get('BACKUP_CRON_CLEANUP', '0 4 * * *'),
        'verification': os.environ.get('BACKUP_CRON_VERIFICATION', '0 5 * * 1'),
    }
    BACKUP_VERIFICATION_WINDOW_DAYS = int(os.environ.get('BACKUP_VERIFICATION_WINDOW_DAYS', 7))
    BACKUP_VERIFICATION_SAMPLE_SIZE = int(os.environ.get('BACKUP_VERIFICATION_SAMPLE_SIZE', 5))
    # In-progress records older than this no longer block new backups
    BACKUP_STALE_AFTER_HOURS = int(os.environ.get('BACKUP_STALE_AFTER_HOURS', 6))

    # Notifications
    BACKUP_NOTIFY_WEBHOOK_URL = os.environ.get('BACKUP_NOTIFY_WEBHOOK_URL')
    BACKUP_NOTIFY_EMAILS = os.environ.get('BACKUP_NOTIFY_EMAILS') or os.environ.get('ADMIN_EMAIL')
    SMTP_HOST = os.environ.get('SMTP_HOST')
    SMTP_PORT = int(os.environ.get('SMTP_PORT', 587))
    SMTP_USER = os.environ.get('SMTP_USER')
    SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD')
    SMTP_USE_TLS = _env_bool('SMTP_USE_TLS', True)
    EMAIL_FROM = os.environ.get('EMAIL_FROM')

    # Operator API
    BACKUP_ADMIN_TOKEN = os.environ.get('BACKUP_ADMIN_TOKEN')

    # Metadata recorded in every archive
    APP_VERSION = os.environ.get('APP_VERSION', '1.0.0')
    ENVIRONMENT = os.environ.get('ENVIRONMENT', 'production')

    # Temp/logs
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True
    ENVIRONMENT = 'development'

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "finvault.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class TestingConfig(Config):
    """Test configuration"""
    TESTING = True
    DEBUG = False
    ENVIRONMENT = 'test'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    DATA_STORE_URL = 'sqlite:///:memory:'
    BACKUP_ENCRYPTION_KEY = 'test-encryption-secret-0123456789'
    BACKUP_KDF_ITERATIONS = 1000
    BACKUP_S3_BUCKET = 'test-bucket'
    AWS_REGION = 'us-east-1'
    AWS_ACCESS_KEY_ID = 'testing'
    AWS_SECRET_ACCESS_KEY = 'testing'
    BACKUP_S3_ENDPOINT_URL = None
    BACKUP_ADMIN_TOKEN = 'test-admin-token'
    BACKUP_NOTIFY_WEBHOOK_URL = None
    SMTP_HOST = None
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
