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

"""Append-only status history: writing fetched status and reading it back."""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from .database import connect
from .exceptions import WriteError
from .normalize import DeviceStatus, utc_timestamp

logger = logging.getLogger(__name__)

# Period key -> SQLite datetime modifier (None = all time)
PERIODS = {
    '1h': '-1 hour',
    '24h': '-1 day',
    '1w': '-7 days',
    '1m': '-1 month',
    '1y': '-1 year',
    '2y': '-2 years',
    'all': None,
}


def full_raw_data(status: DeviceStatus) -> Dict[str, Any]:
    """Raw upstream payloads plus the computed status, as persisted per snapshot."""
    raw = dict(status.raw_data)
    raw['completeStatus'] = status.to_dict()
    raw.setdefault('fetchedAt', status.fetched_at)
    return raw


class HistoryWriter:
    """Persists device rows and insert-only status/temperature history.

    Snapshot and reading rows are never updated or deleted here; overlapping
    sync passes simply both append.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def upsert_device(self, credential_id: int, device: Dict[str, Any]) -> int:
        """
        Create or update a device row keyed by (credential, IMEI).

        Returns:
            Internal device id
        """
        device_id = device.get('imei') or device.get('deviceId')
        device_name = device.get('deviceName') or device.get('name')

        try:
            conn = connect(self.db_path)
            try:
                cursor = conn.cursor()
                cursor.execute("""
                    SELECT id FROM devices WHERE credential_id = ? AND device_id = ?
                """, (credential_id, device_id))
                existing = cursor.fetchone()

                if existing:
                    device_db_id = existing[0]
                    cursor.execute("""
                        UPDATE devices
                        SET device_name = ?, model = ?, firmware_version = ?, last_seen = CURRENT_TIMESTAMP
                        WHERE id = ?
                    """, (device_name, device.get('model'), device.get('firmwareVersion'), device_db_id))
                else:
                    cursor.execute("""
                        INSERT INTO devices
                        (credential_id, device_id, device_name, model, firmware_version, last_seen)
                        VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                    """, (credential_id, device_id, device_name, device.get('model'),
                          device.get('firmwareVersion')))
                    device_db_id = cursor.lastrowid
                    logger.info(f"Created device {device_id} ({device_name}) for credential {credential_id}")

                conn.commit()
                return device_db_id
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise WriteError(f"Failed to store device {device_id}: {e}") from e

    def write_status(self, device_db_id: int, status: DeviceStatus,
                     fetched_at: Optional[str] = None) -> Tuple[int, int]:
        """
        Append one snapshot per partition and one reading per sensor.

        All rows share one fetch timestamp so a consumer can select everything
        known as of a fetch with an equality filter. A device without sensor
        breakdown but with an aggregate temperature gets a single reading with
        null sensor id/name.

        Returns:
            (snapshot rows written, temperature rows written)

        Raises:
            WriteError if the insert fails; nothing from this fetch is kept
        """
        fetched_at = fetched_at or status.fetched_at or utc_timestamp()
        raw_json = json.dumps(full_raw_data(status))
        zones_json = json.dumps(status.zones or [])

        snapshots = 0
        readings = 0
        try:
            conn = connect(self.db_path)
            try:
                for partition in status.partitions:
                    conn.execute("""
                        INSERT INTO device_status
                        (device_id, partition_id, partition_name, is_armed, is_ready,
                         temperature, zone_status, raw_data, fetched_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        device_db_id,
                        partition.get('partitionId'),
                        partition.get('partitionName'),
                        1 if partition.get('isArmed') else 0,
                        1 if partition.get('isReady') else 0,
                        status.temperature,
                        zones_json,
                        raw_json,
                        fetched_at,
                    ))
                    snapshots += 1

                if status.temperature_details:
                    for sensor in status.temperature_details:
                        if sensor.get('temperature') is None:
                            continue
                        conn.execute("""
                            INSERT INTO temperature_history
                            (device_id, sensor_id, sensor_name, temperature,
                             min_temperature, max_temperature, recorded_at)
                            VALUES (?, ?, ?, ?, ?, ?, ?)
                        """, (
                            device_db_id,
                            sensor.get('sensorId'),
                            sensor.get('sensorName'),
                            sensor['temperature'],
                            sensor.get('minTemperature'),
                            sensor.get('maxTemperature'),
                            fetched_at,
                        ))
                        readings += 1
                elif status.temperature is not None:
                    conn.execute("""
                        INSERT INTO temperature_history (device_id, temperature, recorded_at)
                        VALUES (?, ?, ?)
                    """, (device_db_id, status.temperature, fetched_at))
                    readings += 1

                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise WriteError(f"Failed to store status for device {status.device_id}: {e}") from e

        logger.debug(f"Stored {snapshots} snapshot(s) and {readings} reading(s) "
                     f"for device {status.device_id} at {fetched_at}")
        return snapshots, readings


class HistoryReader:
    """Serves the last known rows; used when fresh data is unavailable."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _query(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        conn = connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def list_devices(self, credential_id: int) -> List[Dict[str, Any]]:
        """Devices of a credential with their latest status summary."""
        return self._query("""
            SELECT
                d.id,
                d.device_id,
                d.device_name,
                d.model,
                d.firmware_version,
                d.last_seen,
                (SELECT is_armed FROM device_status
                 WHERE device_id = d.id ORDER BY fetched_at DESC, id DESC LIMIT 1) AS is_armed,
                (SELECT temperature FROM device_status
                 WHERE device_id = d.id ORDER BY fetched_at DESC, id DESC LIMIT 1) AS temperature,
                (SELECT fetched_at FROM device_status
                 WHERE device_id = d.id ORDER BY fetched_at DESC, id DESC LIMIT 1) AS last_status_update
            FROM devices d
            WHERE d.credential_id = ?
            ORDER BY d.last_seen DESC, d.id
        """, (credential_id,))

    def get_device(self, external_id: str, credential_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        if credential_id is None:
            rows = self._query("SELECT * FROM devices WHERE device_id = ? ORDER BY id LIMIT 1",
                               (external_id,))
        else:
            rows = self._query("SELECT * FROM devices WHERE device_id = ? AND credential_id = ?",
                               (external_id, credential_id))
        return rows[0] if rows else None

    def snapshots_at(self, device_db_id: int, fetched_at: str) -> List[Dict[str, Any]]:
        """Every partition snapshot of one fetch."""
        return self._query("""
            SELECT * FROM device_status WHERE device_id = ? AND fetched_at = ? ORDER BY id
        """, (device_db_id, fetched_at))

    def _time_filter(self, period: str) -> Tuple[str, tuple]:
        if period not in PERIODS:
            raise ValueError(f"Unknown period '{period}'")
        modifier = PERIODS[period]
        if modifier is None:
            return "1=1", ()
        return "recorded_at > datetime('now', ?)", (modifier,)

    def period_counts(self, device_db_id: int) -> Dict[str, int]:
        counts = {}
        for key in PERIODS:
            time_filter, params = self._time_filter(key)
            rows = self._query(f"""
                SELECT COUNT(*) AS count FROM temperature_history
                WHERE device_id = ? AND {time_filter} AND sensor_id IS NOT NULL
            """, (device_db_id,) + params)
            counts[key] = rows[0]['count']
        return counts

    def device_detail(self, external_id: str, period: str = '1h',
                      credential_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Device, latest partitions, recent snapshots and temperature history."""
        device = self.get_device(external_id, credential_id)
        if device is None:
            return None
        device_db_id = device['id']
        time_filter, time_params = self._time_filter(period)

        statuses = self._query("""
            SELECT * FROM device_status WHERE device_id = ?
            ORDER BY fetched_at DESC, id DESC LIMIT 10
        """, (device_db_id,))

        partitions = self._query("""
            SELECT DISTINCT partition_id, partition_name,
                (SELECT is_armed FROM device_status ds2
                 WHERE ds2.device_id = ? AND ds2.partition_id = ds1.partition_id
                 ORDER BY ds2.fetched_at DESC, ds2.id DESC LIMIT 1) AS is_armed,
                (SELECT is_ready FROM device_status ds3
                 WHERE ds3.device_id = ? AND ds3.partition_id = ds1.partition_id
                 ORDER BY ds3.fetched_at DESC, ds3.id DESC LIMIT 1) AS is_ready
            FROM device_status ds1
            WHERE device_id = ? AND partition_id IS NOT NULL
            ORDER BY partition_id
        """, (device_db_id, device_db_id, device_db_id))

        latest_sensors = self._query("""
            SELECT sensor_id, sensor_name, temperature, min_temperature, max_temperature, recorded_at
            FROM temperature_history th
            WHERE device_id = ? AND sensor_id IS NOT NULL
              AND recorded_at = (SELECT MAX(recorded_at) FROM temperature_history th2
                                 WHERE th2.device_id = th.device_id AND th2.sensor_id = th.sensor_id)
            ORDER BY sensor_id
        """, (device_db_id,))

        history = self._query(f"""
            SELECT sensor_id, sensor_name, temperature, min_temperature, max_temperature, recorded_at
            FROM temperature_history
            WHERE device_id = ? AND {time_filter}
            ORDER BY recorded_at ASC, id ASC
        """, (device_db_id,) + time_params)

        return {
            'device': {
                'id': device['device_id'],
                'name': device['device_name'],
                'model': device['model'],
                'firmwareVersion': device['firmware_version'],
                'lastSeen': device['last_seen'],
            },
            'partitions': [
                {
                    'partitionId': p['partition_id'],
                    'partitionName': p['partition_name'],
                    'isArmed': p['is_armed'] == 1,
                    'isReady': p['is_ready'] == 1,
                }
                for p in partitions
            ],
            'statuses': [
                {
                    'partitionId': s['partition_id'],
                    'partitionName': s['partition_name'],
                    'isArmed': s['is_armed'] == 1,
                    'isReady': s['is_ready'] == 1,
                    'temperature': s['temperature'],
                    'zones': json.loads(s['zone_status']) if s['zone_status'] else [],
                    'rawData': json.loads(s['raw_data']) if s['raw_data'] else None,
                    'fetchedAt': s['fetched_at'],
                }
                for s in statuses
            ],
            'temperatureSensors': [
                {
                    'sensorId': s['sensor_id'],
                    'sensorName': s['sensor_name'],
                    'temperature': s['temperature'],
                    'minTemperature': s['min_temperature'],
                    'maxTemperature': s['max_temperature'],
                    'lastUpdate': s['recorded_at'],
                }
                for s in latest_sensors
            ],
            'temperatureHistory': [
                {
                    'sensorId': t['sensor_id'],
                    'sensorName': t['sensor_name'],
                    'temperature': t['temperature'],
                    'minTemperature': t['min_temperature'],
                    'maxTemperature': t['max_temperature'],
                    'recordedAt': t['recorded_at'],
                }
                for t in history
            ],
            'periodCounts': self.period_counts(device_db_id),
        }
