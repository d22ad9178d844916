"""Database migrations for query performance."""

from typing import Optional

from sqlalchemy import Engine, text

from ..core.logging import get_logger
from .database import get_database_engine

logger = get_logger(__name__)


INDEX_STATEMENTS = [
    # Executions waiting on a workflow, for cancel-on-deactivate and listings
    """
    CREATE INDEX IF NOT EXISTS idx_executions_workflow_status
    ON executions(workflow_id, status)
    """,
    # Outstanding queue item lookup per execution
    """
    CREATE INDEX IF NOT EXISTS idx_queue_items_execution_status
    ON queue_items(execution_id, status)
    """,
    # Stale claim detection
    """
    CREATE INDEX IF NOT EXISTS idx_queue_items_status_claimed
    ON queue_items(status, claimed_at)
    """,
]


def create_query_indexes(engine: Optional[Engine] = None):
    """Create indexes used by the scheduler and the execution listings."""
    engine = engine or get_database_engine()
    try:
        with engine.connect() as connection:
            for statement in INDEX_STATEMENTS:
                connection.execute(text(statement))
            connection.commit()
        logger.info("Created query indexes")
    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_sqlite(engine: Optional[Engine] = None):
    """Switch SQLite to WAL so the scheduler and API can read concurrently."""
    engine = engine or get_database_engine()
    if "sqlite" not in str(engine.url) or ":memory:" in str(engine.url):
        return
    try:
        with engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.execute(text("PRAGMA optimize"))
            connection.commit()
        logger.info("Applied SQLite optimizations")
    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations(engine: Optional[Engine] = None):
    """Run all migrations."""
    logger.info("Starting database migrations")
    create_query_indexes(engine)
    optimize_sqlite(engine)
    logger.info("Database migrations completed")
