from sqlalchemy import create_engine

from billsync.db_migrations import SCHEMA_VERSION, get_schema_version, run_migrations


def _get_columns(conn, table):
    return {row[1] for row in conn.exec_driver_sql(f"PRAGMA table_info({table})").fetchall()}


def _table_exists(conn, table):
    return conn.exec_driver_sql(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table,),
    ).fetchone() is not None


def _index_names(conn, table):
    return {row[1] for row in conn.exec_driver_sql(f"PRAGMA index_list({table})").fetchall()}


def test_run_migrations_upgrades_legacy_store():
    engine = create_engine("sqlite:///:memory:", future=True)
    with engine.begin() as conn:
        conn.exec_driver_sql(
            """
            CREATE TABLE products (
                id VARCHAR(36) PRIMARY KEY,
                user_id VARCHAR(36) NOT NULL,
                name VARCHAR NOT NULL,
                price FLOAT NOT NULL,
                created_at DATETIME NOT NULL,
                updated_at DATETIME NOT NULL,
                is_synced BOOLEAN NOT NULL,
                deleted BOOLEAN NOT NULL
            )
            """
        )
        conn.exec_driver_sql(
            """
            CREATE TABLE invoices (
                id VARCHAR(36) PRIMARY KEY,
                user_id VARCHAR(36) NOT NULL,
                invoice_number VARCHAR NOT NULL,
                invoice_date VARCHAR(10) NOT NULL
            )
            """
        )
        conn.exec_driver_sql(
            """
            CREATE TABLE invoice_items (
                id VARCHAR(36) PRIMARY KEY,
                invoice_id VARCHAR(36) NOT NULL,
                description VARCHAR NOT NULL,
                created_at DATETIME NOT NULL
            )
            """
        )
        conn.exec_driver_sql(
            """
            CREATE TABLE sync_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_type VARCHAR NOT NULL,
                entity_id VARCHAR(36) NOT NULL,
                action VARCHAR NOT NULL,
                data TEXT NOT NULL,
                created_at DATETIME NOT NULL,
                retry_count INTEGER NOT NULL
            )
            """
        )
        conn.exec_driver_sql(
            "INSERT INTO invoice_items (id, invoice_id, description, created_at) "
            "VALUES ('item-1', 'inv-1', 'Rice', '2024-12-31 10:00:00')"
        )
        conn.exec_driver_sql(
            "INSERT INTO sync_queue (entity_type, entity_id, action, data, created_at, retry_count) "
            "VALUES ('product', 'p-1', 'create', '{}', '2024-12-31 10:00:00', 0)"
        )

    assert run_migrations(engine) == SCHEMA_VERSION

    with engine.begin() as conn:
        assert "store_id" in _get_columns(conn, "products")
        assert {"store_id", "employee_code", "is_same_state"}.issubset(_get_columns(conn, "invoices"))
        assert {"status", "next_attempt_at", "last_error"}.issubset(_get_columns(conn, "sync_queue"))
        assert "ix_sync_queue_entity" in _index_names(conn, "sync_queue")
        assert conn.exec_driver_sql("SELECT status FROM sync_queue").scalar_one() == "pending"
        updated = conn.exec_driver_sql("SELECT updated_at FROM invoice_items WHERE id='item-1'").scalar_one()
        assert updated == "2024-12-31 10:00:00"
        for table in ("stores", "employees", "invoice_sequences", "auth_session", "offline_credentials"):
            assert _table_exists(conn, table)
        assert get_schema_version(conn) == SCHEMA_VERSION


def test_run_migrations_is_idempotent():
    engine = create_engine("sqlite:///:memory:", future=True)
    assert run_migrations(engine) == SCHEMA_VERSION
    assert run_migrations(engine) == SCHEMA_VERSION


def test_newer_schema_is_left_alone():
    engine = create_engine("sqlite:///:memory:", future=True)
    with engine.begin() as conn:
        conn.exec_driver_sql(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
    assert run_migrations(engine) == SCHEMA_VERSION + 1
