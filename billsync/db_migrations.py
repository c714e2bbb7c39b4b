"""Schema-versioned upgrades for local SQLite stores."""
from __future__ import annotations

import logging

from sqlalchemy.engine import Engine

from billsync import models  # noqa: F401  registers tables on Base.metadata
from billsync.db import Base

log = logging.getLogger(__name__)

# 1: products/customers/invoices/invoice_items/sync_queue
# 2: stores, employees, invoice sequences, auth session, store scoping columns
# 3: sync queue backoff/blocking columns, IGST flag, offline credentials
SCHEMA_VERSION = 3


def _column_exists(conn, table: str, column: str) -> bool:
    rows = conn.exec_driver_sql(f"PRAGMA table_info({table})").fetchall()
    return any(row[1] == column for row in rows)


def _index_exists(conn, table: str, index_name: str) -> bool:
    rows = conn.exec_driver_sql(f"PRAGMA index_list({table})").fetchall()
    return any(row[1] == index_name for row in rows)


def _table_exists(conn, table: str) -> bool:
    row = conn.exec_driver_sql(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table,),
    ).fetchone()
    return row is not None


def _ensure_column(conn, table: str, column: str, ddl: str) -> bool:
    if _column_exists(conn, table, column):
        return False
    log.debug("Adding column %s.%s", table, column)
    conn.exec_driver_sql(ddl)
    return True


def _ensure_index(conn, table: str, ddl: str, index_name: str) -> None:
    if _index_exists(conn, table, index_name):
        return
    log.debug("Creating index %s on %s", index_name, table)
    conn.exec_driver_sql(ddl)


def get_schema_version(conn) -> int:
    return int(conn.exec_driver_sql("PRAGMA user_version").scalar() or 0)


def _upgrade_to_v2(conn) -> None:
    for table in ("products", "customers", "invoices"):
        _ensure_column(
            conn,
            table,
            "store_id",
            f"ALTER TABLE {table} ADD COLUMN store_id VARCHAR(36)",
        )
        _ensure_index(
            conn,
            table,
            f"CREATE INDEX IF NOT EXISTS ix_{table}_store_id ON {table} (store_id)",
            f"ix_{table}_store_id",
        )
    _ensure_column(
        conn,
        "invoices",
        "employee_code",
        "ALTER TABLE invoices ADD COLUMN employee_code VARCHAR(4)",
    )
    _ensure_column(
        conn,
        "invoice_items",
        "updated_at",
        "ALTER TABLE invoice_items ADD COLUMN updated_at DATETIME",
    )
    conn.exec_driver_sql(
        "UPDATE invoice_items SET updated_at = COALESCE(updated_at, created_at, CURRENT_TIMESTAMP)"
    )


def _upgrade_to_v3(conn) -> None:
    _ensure_column(
        conn,
        "sync_queue",
        "status",
        "ALTER TABLE sync_queue ADD COLUMN status VARCHAR NOT NULL DEFAULT 'pending'",
    )
    _ensure_column(
        conn,
        "sync_queue",
        "next_attempt_at",
        "ALTER TABLE sync_queue ADD COLUMN next_attempt_at DATETIME",
    )
    _ensure_column(
        conn,
        "sync_queue",
        "last_error",
        "ALTER TABLE sync_queue ADD COLUMN last_error TEXT",
    )
    _ensure_column(
        conn,
        "invoices",
        "is_same_state",
        "ALTER TABLE invoices ADD COLUMN is_same_state BOOLEAN NOT NULL DEFAULT 1",
    )
    _ensure_column(
        conn,
        "offline_credentials",
        "user_id",
        "ALTER TABLE offline_credentials ADD COLUMN user_id VARCHAR(36)",
    )
    _ensure_index(
        conn,
        "sync_queue",
        "CREATE INDEX IF NOT EXISTS ix_sync_queue_entity ON sync_queue (entity_type, entity_id, id)",
        "ix_sync_queue_entity",
    )
    _ensure_index(
        conn,
        "sync_queue",
        "CREATE INDEX IF NOT EXISTS ix_sync_queue_status_created ON sync_queue (status, created_at)",
        "ix_sync_queue_status_created",
    )


_UPGRADES = {
    2: _upgrade_to_v2,
    3: _upgrade_to_v3,
}


def run_migrations(engine: Engine) -> int:
    """Create missing tables, upgrade legacy files and stamp the schema version."""
    Base.metadata.create_all(bind=engine)
    with engine.begin() as conn:
        current = get_schema_version(conn)
        if current > SCHEMA_VERSION:
            log.warning(
                "Local store schema %s is newer than this build (%s); leaving it untouched",
                current,
                SCHEMA_VERSION,
            )
            return current
        for version in range(max(current, 1) + 1, SCHEMA_VERSION + 1):
            log.debug("Upgrading local store schema to v%s", version)
            _UPGRADES[version](conn)
        conn.exec_driver_sql(f"PRAGMA user_version = {SCHEMA_VERSION}")
    return SCHEMA_VERSION
