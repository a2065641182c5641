import json
import sqlite3

import pytest
from cryptography.fernet import Fernet

from eldes_monitor.credentials import CredentialStore
from eldes_monitor.crypto import SecretCipher
from eldes_monitor.database import ensure_schema_and_migrate
from eldes_monitor.exceptions import WriteError
from eldes_monitor.history import HistoryReader, HistoryWriter, full_raw_data
from eldes_monitor.normalize import DeviceStatus, build_device_status

FETCHED_AT = "2025-03-01 12:00:00.000000"

DEVICE = {
    "imei": "111",
    "deviceName": "Home",
    "model": "ESIM364",
    "firmwareVersion": "02.11.00",
}


def setup_db(tmp_path):
    db_path = str(tmp_path / "history.db")
    ensure_schema_and_migrate(db_path)
    store = CredentialStore(db_path, SecretCipher(Fernet.generate_key()))
    credential_id = store.add("user@example.com", "pw")
    return db_path, credential_id


def two_partition_status(fetched_at=None):
    list_response = {"deviceListEntries": [{
        "imei": "111", "name": "Home",
        "partitions": [
            {"internalId": 1, "name": "House", "armed": True, "isReady": True},
            {"internalId": 2, "name": "Garage", "armed": False},
        ],
    }]}
    temperatures = [
        {"sensorId": 1, "sensorName": "Hall", "temperature": 21.0, "minTemperature": 30, "maxTemperature": 5},
        {"sensorId": 2, "sensorName": "Outside", "temperature": 3.5},
    ]
    return build_device_status("111", list_response, {"online": True}, temperatures, fetched_at=fetched_at)


def fetch_all(db_path, sql):
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


def test_upsert_device_is_keyed_by_credential_and_imei(tmp_path):
    db_path, credential_id = setup_db(tmp_path)
    writer = HistoryWriter(db_path)

    first = writer.upsert_device(credential_id, DEVICE)
    second = writer.upsert_device(credential_id, dict(DEVICE, deviceName="Renamed"))

    assert first == second
    assert fetch_all(db_path, "SELECT device_id, device_name FROM devices") == [("111", "Renamed")]


def test_upsert_device_for_unknown_credential_fails(tmp_path):
    db_path, _ = setup_db(tmp_path)
    with pytest.raises(WriteError):
        HistoryWriter(db_path).upsert_device(999, DEVICE)


def test_all_rows_of_a_fetch_share_one_timestamp(tmp_path):
    db_path, credential_id = setup_db(tmp_path)
    writer = HistoryWriter(db_path)
    device_db_id = writer.upsert_device(credential_id, DEVICE)

    assert writer.write_status(device_db_id, two_partition_status(FETCHED_AT)) == (2, 2)

    snapshot_times = fetch_all(db_path, "SELECT DISTINCT fetched_at FROM device_status")
    reading_times = fetch_all(db_path, "SELECT DISTINCT recorded_at FROM temperature_history")
    assert snapshot_times == [(FETCHED_AT,)]
    assert reading_times == [(FETCHED_AT,)]

    snapshots = HistoryReader(db_path).snapshots_at(device_db_id, FETCHED_AT)
    assert [(s['partition_id'], s['partition_name'], s['is_armed']) for s in snapshots] == [
        (1, "House", 1),
        (2, "Garage", 0),
    ]
    # Aggregate temperature is repeated on every partition row
    assert {s['temperature'] for s in snapshots} == {21.0}


def test_explicit_fetch_time_overrides_status_time(tmp_path):
    db_path, credential_id = setup_db(tmp_path)
    writer = HistoryWriter(db_path)
    device_db_id = writer.upsert_device(credential_id, DEVICE)

    writer.write_status(device_db_id, two_partition_status(FETCHED_AT), fetched_at="2025-03-02 00:00:00.000000")

    assert fetch_all(db_path, "SELECT DISTINCT fetched_at FROM device_status") == [("2025-03-02 00:00:00.000000",)]


def test_aggregate_only_temperature_gets_single_fallback_reading(tmp_path):
    db_path, credential_id = setup_db(tmp_path)
    writer = HistoryWriter(db_path)
    device_db_id = writer.upsert_device(credential_id, DEVICE)

    status = DeviceStatus("111", [{"partitionId": 1, "partitionName": "House", "isArmed": False}],
                          temperature=18.5, fetched_at=FETCHED_AT)
    assert writer.write_status(device_db_id, status) == (1, 1)
    assert fetch_all(db_path, "SELECT sensor_id, sensor_name, temperature FROM temperature_history") == [
        (None, None, 18.5),
    ]


def test_no_temperature_means_no_readings(tmp_path):
    db_path, credential_id = setup_db(tmp_path)
    writer = HistoryWriter(db_path)
    device_db_id = writer.upsert_device(credential_id, DEVICE)

    status = DeviceStatus("111", [{"partitionId": 1, "partitionName": "House"}], fetched_at=FETCHED_AT)
    assert writer.write_status(device_db_id, status) == (1, 0)


def test_raw_data_round_trips_through_detail(tmp_path):
    db_path, credential_id = setup_db(tmp_path)
    writer = HistoryWriter(db_path)
    device_db_id = writer.upsert_device(credential_id, DEVICE)
    status = two_partition_status(FETCHED_AT)
    writer.write_status(device_db_id, status)

    detail = HistoryReader(db_path).device_detail("111", period='all')

    raw = detail['statuses'][0]['rawData']
    assert raw == json.loads(json.dumps(full_raw_data(status)))
    assert raw['completeStatus']['temperatureDetails'][0]['sensorName'] == "Hall"
    assert raw['deviceInfoResponse'] == {"online": True}
    assert raw['fetchedAt'] == FETCHED_AT


def test_write_failure_keeps_nothing_from_the_fetch(tmp_path):
    db_path, credential_id = setup_db(tmp_path)
    writer = HistoryWriter(db_path)
    device_db_id = writer.upsert_device(credential_id, DEVICE)

    with pytest.raises(WriteError):
        # Unknown device row violates the foreign key
        writer.write_status(device_db_id + 100, two_partition_status(FETCHED_AT))

    assert fetch_all(db_path, "SELECT COUNT(*) FROM device_status") == [(0,)]
    assert fetch_all(db_path, "SELECT COUNT(*) FROM temperature_history") == [(0,)]


def test_reader_serves_latest_state(tmp_path):
    db_path, credential_id = setup_db(tmp_path)
    writer = HistoryWriter(db_path)
    device_db_id = writer.upsert_device(credential_id, DEVICE)
    writer.write_status(device_db_id, two_partition_status("2025-03-01 10:00:00.000000"))

    later = DeviceStatus("111", [
        {"partitionId": 1, "partitionName": "House", "isArmed": False},
        {"partitionId": 2, "partitionName": "Garage", "isArmed": True},
    ], temperature=22.0, fetched_at="2025-03-01 11:00:00.000000")
    writer.write_status(device_db_id, later)

    reader = HistoryReader(db_path)
    devices = reader.list_devices(credential_id)
    assert len(devices) == 1
    assert devices[0]['device_id'] == "111"
    assert devices[0]['temperature'] == 22.0
    assert devices[0]['last_status_update'] == "2025-03-01 11:00:00.000000"

    detail = reader.device_detail("111", period='all')
    assert detail['device']['name'] == "Home"
    assert [(p['partitionId'], p['isArmed']) for p in detail['partitions']] == [(1, False), (2, True)]
    assert len(detail['statuses']) == 4
    assert detail['statuses'][0]['fetchedAt'] == "2025-03-01 11:00:00.000000"
    assert [s['sensorName'] for s in detail['temperatureSensors']] == ["Hall", "Outside"]
    assert len(detail['temperatureHistory']) == 3
    assert detail['periodCounts']['all'] == 2


def test_period_filter_and_counts(tmp_path):
    db_path, credential_id = setup_db(tmp_path)
    writer = HistoryWriter(db_path)
    device_db_id = writer.upsert_device(credential_id, DEVICE)

    conn = sqlite3.connect(db_path)
    try:
        for age in ('-10 minutes', '-2 days', '-3 months'):
            conn.execute("""
                INSERT INTO temperature_history (device_id, sensor_id, sensor_name, temperature, recorded_at)
                VALUES (?, 1, 'Hall', 20.0, strftime('%Y-%m-%d %H:%M:%f', 'now', ?))
            """, (device_db_id, age))
        conn.commit()
    finally:
        conn.close()

    reader = HistoryReader(db_path)
    assert len(reader.device_detail("111", period='1h')['temperatureHistory']) == 1
    assert len(reader.device_detail("111", period='1w')['temperatureHistory']) == 2
    assert reader.period_counts(device_db_id) == {
        '1h': 1, '24h': 1, '1w': 2, '1m': 2, '1y': 3, '2y': 3, 'all': 3,
    }

    with pytest.raises(ValueError):
        reader.device_detail("111", period='5m')


def test_sensor_without_id_is_served_by_the_reader(tmp_path):
    db_path, credential_id = setup_db(tmp_path)
    writer = HistoryWriter(db_path)
    device_db_id = writer.upsert_device(credential_id, DEVICE)
    list_response = {"deviceListEntries": [{"imei": "111", "name": "Home", "partitions": []}]}
    status = build_device_status("111", list_response, None, [{"name": "Outside", "t": "4.5"}])
    assert writer.write_status(device_db_id, status) == (0, 1)

    detail = HistoryReader(db_path).device_detail("111")
    assert [(s['sensorId'], s['sensorName']) for s in detail['temperatureSensors']] == [(0, "Outside")]
    assert detail['periodCounts']['1h'] == 1
    assert detail['periodCounts']['all'] == 1


def test_unknown_device_detail(tmp_path):
    db_path, _ = setup_db(tmp_path)
    assert HistoryReader(db_path).device_detail("nope") is None
