"""
Database schema setup for Dumpkeeper.
"""

import logging
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError
from dumpkeeper import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Create missing tables.

    Safe to call from multiple Gunicorn workers at once: a worker that loses
    the race to create a table logs and continues.
    """
    with app.app_context():
        existing_tables = set(inspect(db.engine).get_table_names())
        missing = [table for table in db.metadata.sorted_tables if table.name not in existing_tables]

        if not missing:
            return

        logger.info(f"Creating tables: {', '.join(table.name for table in missing)}")
        try:
            db.metadata.create_all(db.engine, tables=missing)
        except OperationalError as e:
            # Another worker created them first
            logger.warning(f"Schema creation raced with another process: {e}")
