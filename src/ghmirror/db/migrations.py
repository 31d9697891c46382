"""
Database migrations for the mirror.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import text

# (table, column, SQLite type) in the order they were introduced
MIGRATIONS = [
    # Crash recovery: when a worker claimed a queue item
    ("webhookqueueitem", "claimed_at", "TIMESTAMP"),
    # Retention is decided per owning user
    ("webhookqueueitem", "owner_user_id", "INTEGER NOT NULL DEFAULT 1"),
    # Sub-step checkpoint and liveness for resumable sync jobs
    ("syncjob", "step_cursor", "VARCHAR"),
    ("syncjob", "heartbeat_at", "TIMESTAMP"),
    # Webhook registration outcome, shown next to the repo
    ("repository", "webhook_status", "VARCHAR"),
]


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.
    Supports SQLite only (uses PRAGMA table_info); other dialects are
    expected to be provisioned from the current models.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    if engine.dialect.name != "sqlite":
        return
    with engine.connect() as conn:
        for table, column, col_type in MIGRATIONS:
            _add_column_if_missing(conn, table, column, col_type)
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "TIMESTAMP", "VARCHAR".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if not existing_columns:
        return  # table not created yet; create_all will build it complete
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
