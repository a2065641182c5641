import sqlite3

import pytest

from eldes_monitor.database import SUPPORTED_SCHEMA_VERSION, ensure_schema_and_migrate


def create_old_db(path: str):
    conn = sqlite3.connect(path)
    # First release: temperature_history without per-sensor columns
    conn.execute("""
    CREATE TABLE IF NOT EXISTS temperature_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device_id INTEGER NOT NULL,
        temperature REAL NOT NULL,
        recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)
    conn.execute("INSERT INTO temperature_history (device_id, temperature) VALUES (?, ?)", (1, 21.5))
    conn.execute("INSERT INTO temperature_history (device_id, temperature) VALUES (?, ?)", (1, 22.0))
    conn.execute("PRAGMA user_version = 1")
    conn.commit()
    conn.close()


def columns(conn, table):
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}


def test_migration_adds_sensor_columns_and_sets_user_version(tmp_path):
    db_file = str(tmp_path / "test_migrate.db")
    create_old_db(db_file)

    ensure_schema_and_migrate(db_file)

    conn = sqlite3.connect(db_file)
    ver = conn.execute("PRAGMA user_version").fetchone()[0]
    assert ver == SUPPORTED_SCHEMA_VERSION

    assert {'sensor_id', 'sensor_name', 'min_temperature', 'max_temperature'} <= columns(conn, 'temperature_history')

    # Existing readings survive as aggregate (sensor-less) readings
    rows = conn.execute("SELECT temperature, sensor_id FROM temperature_history ORDER BY id").fetchall()
    assert rows == [(21.5, None), (22.0, None)]

    # Index on the migrated column is created on the second pass
    indexes = {row[1] for row in conn.execute("PRAGMA index_list(temperature_history)")}
    assert 'idx_temperature_history_sensor_id' in indexes
    conn.close()


def test_fresh_database_gets_full_schema_and_default_user(tmp_path):
    db_file = str(tmp_path / "fresh.db")

    ensure_schema_and_migrate(db_file)
    # Running again is a no-op
    ensure_schema_and_migrate(db_file)

    conn = sqlite3.connect(db_file)
    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {'users', 'eldes_credentials', 'devices', 'device_status',
            'temperature_history', 'app_secrets'} <= tables
    assert conn.execute("SELECT id FROM users").fetchall() == [(1,)]
    assert conn.execute("PRAGMA user_version").fetchone()[0] == SUPPORTED_SCHEMA_VERSION
    conn.close()


def test_newer_schema_version_is_refused(tmp_path):
    db_file = str(tmp_path / "future.db")
    conn = sqlite3.connect(db_file)
    conn.execute(f"PRAGMA user_version = {SUPPORTED_SCHEMA_VERSION + 1}")
    conn.commit()
    conn.close()

    with pytest.raises(RuntimeError):
        ensure_schema_and_migrate(db_file)
