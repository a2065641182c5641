#
# Copyright 2025 The TadoLocal and AmpScm contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

"""Database schema for ELDES Monitor."""

import logging
import sqlite3

logger = logging.getLogger(__name__)

# Supported schema version for this codebase. A database reporting a higher
# user_version is refused to avoid silent data loss.
SUPPORTED_SCHEMA_VERSION = 2

DEFAULT_USER_ID = 1

DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT UNIQUE NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS eldes_credentials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    username TEXT NOT NULL,
    password_encrypted TEXT NOT NULL,
    device_name TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS devices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    credential_id INTEGER NOT NULL,
    device_id TEXT NOT NULL,
    device_name TEXT,
    model TEXT,
    firmware_version TEXT,
    last_seen TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (credential_id) REFERENCES eldes_credentials(id) ON DELETE CASCADE,
    UNIQUE(credential_id, device_id)
);

CREATE TABLE IF NOT EXISTS device_status (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id INTEGER NOT NULL,
    partition_id INTEGER,
    partition_name TEXT,
    is_armed INTEGER DEFAULT 0,
    is_ready INTEGER DEFAULT 0,
    temperature REAL,
    zone_status TEXT,
    raw_data TEXT,
    fetched_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_device_status_device_id ON device_status(device_id);
CREATE INDEX IF NOT EXISTS idx_device_status_fetched_at ON device_status(fetched_at);

CREATE TABLE IF NOT EXISTS temperature_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id INTEGER NOT NULL,
    sensor_id INTEGER,
    sensor_name TEXT,
    temperature REAL NOT NULL,
    min_temperature REAL,
    max_temperature REAL,
    recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_temperature_history_device_id ON temperature_history(device_id);
CREATE INDEX IF NOT EXISTS idx_temperature_history_recorded_at ON temperature_history(recorded_at);
CREATE INDEX IF NOT EXISTS idx_temperature_history_sensor_id ON temperature_history(device_id, sensor_id);

CREATE TABLE IF NOT EXISTS app_secrets (
    name TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

# Columns added to temperature_history after the first release
SENSOR_COLUMNS = (
    ('sensor_id', 'INTEGER'),
    ('sensor_name', 'TEXT'),
    ('min_temperature', 'REAL'),
    ('max_temperature', 'REAL'),
)


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with foreign key enforcement enabled."""
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _apply_script_tolerant(conn: sqlite3.Connection, script: str):
    # Statement by statement: an index on a column a legacy table lacks is
    # skipped here and created on the second pass after migrations.
    for stmt in [s.strip() for s in script.split(';') if s.strip()]:
        try:
            conn.execute(stmt)
        except sqlite3.OperationalError:
            continue


def ensure_schema_and_migrate(db_path: str):
    """Ensure the schema exists and run DB migrations using PRAGMA user_version.

    Migration to user_version 2 adds the per-sensor columns (sensor id/name
    and min/max thresholds) to temperature_history tables created before
    sensors were tracked individually.
    """
    conn = sqlite3.connect(db_path)
    try:
        current_version = conn.execute("PRAGMA user_version").fetchone()[0]
        if current_version > SUPPORTED_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema version ({current_version}) is newer than supported ({SUPPORTED_SCHEMA_VERSION})"
            )

        _apply_script_tolerant(conn, DB_SCHEMA)

        if current_version < 2:
            conn.execute("BEGIN IMMEDIATE")
            try:
                existing = {row[1] for row in conn.execute("PRAGMA table_info(temperature_history)")}
                for column, column_type in SENSOR_COLUMNS:
                    if column not in existing:
                        conn.execute(f"ALTER TABLE temperature_history ADD COLUMN {column} {column_type}")
                        logger.info(f"Migrated temperature_history: added column {column}")
                conn.execute(f"PRAGMA user_version = {SUPPORTED_SCHEMA_VERSION}")
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        # Second pass now that migrated columns exist
        _apply_script_tolerant(conn, DB_SCHEMA)

        conn.execute(
            "INSERT OR IGNORE INTO users (id, username) VALUES (?, 'default')",
            (DEFAULT_USER_ID,)
        )
        conn.commit()
    finally:
        conn.close()
