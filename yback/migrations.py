"""
Database migrations for yback.

Simple additive migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect
from yback import db

logger = logging.getLogger(__name__)


# table -> [(column, DDL type)] added after the first release
ADDITIVE_COLUMNS = {
    'backups': [
        ('metadata', 'TEXT'),
        ('sync_status', "VARCHAR(20) NOT NULL DEFAULT 'pending'"),
        ('sync_provider_id', 'INTEGER'),
        ('sync_remote_path', 'VARCHAR(1000)'),
        ('sync_error', 'TEXT'),
        ('synced_at', 'TIMESTAMP'),
    ],
    'equipment': [
        ('telnet_enabled', 'BOOLEAN NOT NULL DEFAULT 0'),
        ('telnet_port', 'INTEGER DEFAULT 23'),
        ('telnet_username', 'VARCHAR(255)'),
        ('telnet_password', 'TEXT'),
    ],
    'replication_jobs': [
        ('last_error', 'TEXT'),
    ],
}


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    Creates tables if they don't exist and adds any missing columns to
    tables created by earlier releases. Safe to call from several workers.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if not existing_tables:
            logger.info("No tables found - creating initial database schema")
            try:
                db.create_all()
                logger.info("Database schema created successfully")
            except Exception as e:
                # Another worker may have created the schema first
                logger.error(f"Failed to create database schema: {e}")
        else:
            # Tables added in later releases
            db.create_all()
            run_migrations(app, inspect(db.engine))


def run_migrations(app, inspector=None):
    """
    Run all necessary database migrations.

    Returns:
        List of "table.column" names that were added
    """
    if inspector is None:
        inspector = inspect(db.engine)

    applied = []
    tables = inspector.get_table_names()

    for table, columns in ADDITIVE_COLUMNS.items():
        if table not in tables:
            continue

        existing = {col['name'] for col in inspector.get_columns(table)}

        for column, ddl in columns:
            if column in existing:
                continue

            logger.info(f"Running migration: Adding {column} column to {table} table")
            try:
                db.session.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                db.session.commit()
                applied.append(f"{table}.{column}")
                logger.info(f"Successfully added {column} column")
            except Exception as e:
                logger.error(f"Failed to add {column} column to {table}: {e}")
                db.session.rollback()

    return applied
