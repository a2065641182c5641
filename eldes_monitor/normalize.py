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

"""Normalization of ELDES Cloud payloads into canonical device status.

The cloud API is inconsistent about field names between endpoints (and
firmware generations). Each canonical field has a fixed priority list of
source names; the first one holding a non-null value wins.

Canonical field     Source names, in priority order
-----------------   -------------------------------
device id           imei, deviceId
device name         deviceName, name
partition id        internalId, partitionId
partition name      partitionName, name
partition armed     isArmed, armed
zone id / name      zoneId, id / zoneName, name
zone open/tampered  isOpen, open / isTampered, tampered
sensor id           sensorId, id
sensor name         sensorName, name
sensor value        temperature, temp, value, t
temperature list    temperatureDetailsList, temperatures, <bare list>
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

DEVICE_ID_FIELDS = ('imei', 'deviceId')
DEVICE_NAME_FIELDS = ('deviceName', 'name')
PARTITION_ID_FIELDS = ('internalId', 'partitionId')
PARTITION_NAME_FIELDS = ('partitionName', 'name')
PARTITION_ARMED_FIELDS = ('isArmed', 'armed')
ZONE_ID_FIELDS = ('zoneId', 'id')
ZONE_NAME_FIELDS = ('zoneName', 'name')
ZONE_OPEN_FIELDS = ('isOpen', 'open')
ZONE_TAMPERED_FIELDS = ('isTampered', 'tampered')
SENSOR_ID_FIELDS = ('sensorId', 'id')
SENSOR_NAME_FIELDS = ('sensorName', 'name')
SENSOR_VALUE_FIELDS = ('temperature', 'temp', 'value', 't')
TEMPERATURE_LIST_FIELDS = ('temperatureDetailsList', 'temperatures')


def first_present(data: Dict[str, Any], fields: Sequence[str], default: Any = None) -> Any:
    """Return the value of the first field that is present and not None."""
    for field in fields:
        value = data.get(field)
        if value is not None:
            return value
    return default


def to_float(value: Any) -> Optional[float]:
    """Coerce numbers and numeric strings to float; anything else is None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def normalize_partition(raw: Dict[str, Any], position: Optional[int] = None) -> Dict[str, Any]:
    """
    Normalize one partition entry.

    Args:
        raw: Partition dict from the device list
        position: 1-based index used as id when the entry carries none

    Returns:
        Partition dict exposing both canonical and legacy field names
    """
    partition_id = first_present(raw, PARTITION_ID_FIELDS, position)
    name = first_present(raw, PARTITION_NAME_FIELDS)
    armed = bool(first_present(raw, PARTITION_ARMED_FIELDS, False))
    ready = raw.get('isReady')

    return {
        'partitionId': partition_id,
        'internalId': partition_id,
        'partitionName': name,
        'name': name,
        'isArmed': armed,
        'armed': armed,
        'isReady': bool(ready) if ready is not None else False,
    }


def normalize_zone(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'zoneId': first_present(raw, ZONE_ID_FIELDS),
        'zoneName': first_present(raw, ZONE_NAME_FIELDS),
        'isOpen': bool(first_present(raw, ZONE_OPEN_FIELDS, False)),
        'isTampered': bool(first_present(raw, ZONE_TAMPERED_FIELDS, False)),
    }


def normalize_device(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalize one device list entry. Returns None if it has no identifier."""
    device_id = first_present(raw, DEVICE_ID_FIELDS)
    if device_id is None or device_id == '':
        return None
    device_id = str(device_id)
    name = first_present(raw, DEVICE_NAME_FIELDS)

    raw_partitions = raw.get('partitions') or []
    # A lone partition without an explicit id is addressed as partition 1
    single = len(raw_partitions) == 1
    partitions = [
        normalize_partition(p, position=index if single else None)
        for index, p in enumerate(raw_partitions, start=1)
        if isinstance(p, dict)
    ]

    return {
        'imei': device_id,
        'deviceId': device_id,
        'deviceName': name,
        'name': name,
        'model': raw.get('model'),
        'firmwareVersion': raw.get('firmwareVersion'),
        'partitions': partitions,
        'zones': [normalize_zone(z) for z in raw.get('zones') or [] if isinstance(z, dict)],
    }


def device_list_entries(response: Any) -> List[Dict[str, Any]]:
    if isinstance(response, dict):
        entries = response.get('deviceListEntries') or []
    elif isinstance(response, list):
        entries = response
    else:
        entries = []
    return [e for e in entries if isinstance(e, dict)]


def normalize_device_list(response: Any) -> List[Dict[str, Any]]:
    """Normalize a /device/list response, dropping entries without an identifier."""
    devices = []
    for entry in device_list_entries(response):
        device = normalize_device(entry)
        if device is None:
            logger.warning("Skipping device list entry without imei or deviceId")
            continue
        devices.append(device)
    return devices


def temperature_entries(response: Any) -> List[Dict[str, Any]]:
    if isinstance(response, list):
        entries = response
    elif isinstance(response, dict):
        entries = first_present(response, TEMPERATURE_LIST_FIELDS, [])
    else:
        entries = []
    return [e for e in entries if isinstance(e, dict)] if isinstance(entries, list) else []


def normalize_sensor(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalize one temperature sensor. Returns None if it carries no value.

    min/max thresholds are passed through as reported; upstream is known to
    swap them and relabeling is left to presentation.
    """
    value = to_float(first_present(raw, SENSOR_VALUE_FIELDS))
    if value is None:
        return None

    sensor_id = first_present(raw, SENSOR_ID_FIELDS, 0)
    name = first_present(raw, SENSOR_NAME_FIELDS)
    if name is None:
        name = f"Sensor {sensor_id}"

    return {
        'sensorId': sensor_id,
        'sensorName': name,
        'temperature': value,
        'minTemperature': to_float(raw.get('minTemperature')),
        'maxTemperature': to_float(raw.get('maxTemperature')),
    }


def normalize_temperatures(response: Any) -> List[Dict[str, Any]]:
    sensors = []
    for entry in temperature_entries(response):
        sensor = normalize_sensor(entry)
        if sensor is None:
            logger.debug(f"Dropping temperature sensor without value: {entry}")
            continue
        sensors.append(sensor)
    return sensors


def find_device(devices: List[Dict[str, Any]], device_id: str) -> Optional[Dict[str, Any]]:
    for device in devices:
        if device['imei'] == device_id or device['deviceId'] == device_id:
            return device
    return None


def find_device_by_location(devices: List[Dict[str, Any]], location: str) -> Optional[Dict[str, Any]]:
    for device in devices:
        if device['deviceName'] == location or device['name'] == location:
            return device
    return None


def resolve_partition(device: Dict[str, Any],
                      partition_id: Optional[int] = None,
                      partition_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Pick a partition of a normalized device.

    A name wins over an id. With neither given, the only partition of a
    single-partition device is returned; otherwise None.
    """
    partitions = device.get('partitions') or []
    if partition_name is not None:
        for p in partitions:
            if p['partitionName'] == partition_name or p['name'] == partition_name:
                return p
        return None
    if partition_id is not None:
        for p in partitions:
            if p['partitionId'] == partition_id or p['internalId'] == partition_id:
                return p
        return None
    if len(partitions) == 1:
        return partitions[0]
    return None


class DeviceStatus:
    """Canonical status of one device as of one fetch."""

    def __init__(
        self,
        device_id: str,
        partitions: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        temperature_details: Optional[List[Dict[str, Any]]] = None,
        zones: Optional[List[Dict[str, Any]]] = None,
        raw_data: Optional[Dict[str, Any]] = None,
        device_info: Optional[Dict[str, Any]] = None,
        fetched_at: Optional[str] = None,
    ):
        self.device_id = device_id
        self.partitions = partitions
        self.temperature = temperature
        self.temperature_details = temperature_details or []
        self.zones = zones or []
        self.raw_data = raw_data or {}
        self.device_info = device_info
        self.fetched_at = fetched_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'deviceId': self.device_id,
            'imei': self.device_id,
            'partitions': self.partitions,
            'temperature': self.temperature,
            'temperatureDetails': self.temperature_details,
            'zones': self.zones,
            'deviceInfo': self.device_info,
        }

    def __repr__(self) -> str:
        return (f"<DeviceStatus {self.device_id}: {len(self.partitions)} partition(s), "
                f"{len(self.temperature_details)} sensor(s)>")


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """UTC fetch timestamp, comparable with SQLite's datetime('now')."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime('%Y-%m-%d %H:%M:%S.%f')


def build_device_status(
    device_id: str,
    device_list_response: Any,
    device_info_response: Optional[Dict[str, Any]] = None,
    temperature_response: Any = None,
    fetched_at: Optional[str] = None,
) -> DeviceStatus:
    """
    Merge the three raw payloads into one DeviceStatus.

    Args:
        device_id: IMEI of the device to extract
        device_list_response: Raw /device/list body
        device_info_response: Raw /device/info body or None
        temperature_response: Raw /device/temperatures body or None
        fetched_at: ISO timestamp of the fetch (default: now, UTC)

    Raises:
        LookupError if the device is not in the list response
    """
    device = find_device(normalize_device_list(device_list_response), device_id)
    if device is None:
        raise LookupError(f"Device {device_id} not found")

    sensors = normalize_temperatures(temperature_response)
    # Aggregate is the first sensor's reading, not an average
    temperature = sensors[0]['temperature'] if sensors else None
    fetched_at = fetched_at or utc_timestamp()

    raw_data = {
        'deviceListResponse': device_list_response,
        'deviceInfoResponse': device_info_response,
        'temperatureResponse': temperature_response,
        'device': device,
        'deviceInfo': device_info_response,
        'temperatureDetails': sensors,
        'fetchedAt': fetched_at,
    }

    return DeviceStatus(
        device_id=device['imei'],
        partitions=device['partitions'],
        temperature=temperature,
        temperature_details=sensors,
        zones=device['zones'],
        raw_data=raw_data,
        device_info=device_info_response,
        fetched_at=fetched_at,
    )
