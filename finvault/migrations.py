"""
Database migrations for the finvault backup catalog.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect
from finvault import db

logger = logging.getLogger(__name__)


# Forward-compatibility hook: nullable BackupRecord columns that ALTER TABLE
# adds to an existing catalog table. create_all covers fresh databases; new
# nullable columns are appended here so deployed catalogs gain them on startup.
BACKUP_RECORD_ADDED_COLUMNS = [
    ('archive_metadata', 'JSON'),
    ('logs', 'TEXT'),
    ('verified_at', 'TIMESTAMP'),
]


def init_database_schema(app):
    """
    Initialize catalog schema and run migrations.

    Creates tables if they don't exist and adds any missing columns.
    Safe to call from multiple Gunicorn workers.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if 'backup_records' not in existing_tables:
            logger.info("No catalog table found - creating initial database schema")
            try:
                db.create_all()
                logger.info("Database schema created successfully")
            except Exception as e:
                # Another worker may have created it first
                logger.error(f"Failed to create database schema: {e}")
                db.session.rollback()
        else:
            run_migrations(inspector)


def run_migrations(inspector=None) -> list:
    """
    Add missing backup_records columns.

    Returns:
        Names of the columns that were added
    """
    if inspector is None:
        inspector = inspect(db.engine)

    columns = [col['name'] for col in inspector.get_columns('backup_records')]
    added = []

    for name, ddl_type in BACKUP_RECORD_ADDED_COLUMNS:
        if name in columns:
            continue

        logger.info(f"Running migration: Adding {name} column to backup_records table")
        try:
            db.session.execute(text(
                f"ALTER TABLE backup_records ADD COLUMN {name} {ddl_type}"
            ))
            db.session.commit()
            added.append(name)
            logger.info(f"Successfully added {name} column")
        except Exception as e:
            logger.error(f"Failed to add {name} column: {e}")
            db.session.rollback()

    return added
