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

"""Seed the database with a demo device and a month of temperature history.

The demo credential is never synced upstream, so the seeded rows are what the
read side serves for it.
"""

import logging
import math
import random
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from .credentials import CredentialStore
from .crypto import SecretCipher
from .history import HistoryReader, HistoryWriter
from .normalize import DeviceStatus, utc_timestamp
from .sync import DEMO_LOGIN, DEMO_SECRET

logger = logging.getLogger(__name__)

DEMO_DEVICE_ID = "999999999999999"
DEMO_DEVICE = {
    'imei': DEMO_DEVICE_ID,
    'deviceName': "Demo ELDES Device",
    'model': "ESIM364",
    'firmwareVersion': "1.0.0",
}
DEMO_SENSORS = 3


def demo_temperature(sensor_id: int, hour_of_day: int, rng: random.Random) -> float:
    """Daily sine wave peaking mid-afternoon, offset per sensor, with noise."""
    base = 18 + sensor_id * 2
    daily = math.sin((hour_of_day - 6) * math.pi / 12) * 5
    return round(base + daily + (rng.random() - 0.5) * 2, 2)


def add_demo_data(db_path: str, cipher: Optional[SecretCipher] = None, days: int = 30,
                  now: Optional[datetime] = None, seed: Optional[int] = None) -> Tuple[int, int]:
    """
    Store the demo credential, the demo device and hourly readings for it.

    Seeding is skipped when the demo device already has temperature history.

    Args:
        db_path: Migrated database to write to
        cipher: Cipher for the credential secret (default: the database key)
        days: How many days of hourly readings to generate
        now: Time of the newest reading (default: current UTC time)
        seed: Random seed for reproducible noise

    Returns:
        (credential id, temperature rows written)
    """
    store = CredentialStore(db_path, cipher or SecretCipher.for_database(db_path))
    credential = store.find_by_login(DEMO_LOGIN)
    if credential is not None:
        credential_id = credential.id
        logger.info(f"Using existing demo credential {credential_id}")
    else:
        credential_id = store.add(DEMO_LOGIN, DEMO_SECRET, label="Demo Device")

    writer = HistoryWriter(db_path)
    device_db_id = writer.upsert_device(credential_id, DEMO_DEVICE)

    if HistoryReader(db_path).period_counts(device_db_id)['all']:
        logger.info(f"Demo device {DEMO_DEVICE_ID} already has temperature history, not seeding")
        return credential_id, 0

    rng = random.Random(seed)
    now = now or datetime.now(timezone.utc)
    hours = days * 24
    readings = 0

    for i in range(hours):
        moment = now - timedelta(hours=hours - 1 - i)
        sensors = []
        for sensor_id in range(1, DEMO_SENSORS + 1):
            temperature = demo_temperature(sensor_id, i % 24, rng)
            sensors.append({
                'sensorId': sensor_id,
                'sensorName': f"Sensor {sensor_id}",
                'temperature': temperature,
                'minTemperature': round(temperature - 0.5, 2),
                'maxTemperature': round(temperature + 0.5, 2),
            })

        # Only the newest fetch records the partition state
        partitions = []
        if i == hours - 1:
            partitions = [{'partitionId': 1, 'partitionName': "Demo Area", 'isArmed': False, 'isReady': True}]

        status = DeviceStatus(DEMO_DEVICE_ID, partitions, temperature=sensors[0]['temperature'],
                              temperature_details=sensors)
        readings += writer.write_status(device_db_id, status, fetched_at=utc_timestamp(moment))[1]

    logger.info(f"Added {readings} demo temperature reading(s) over {days} day(s) "
                f"for device {DEMO_DEVICE_ID}")
    return credential_id, readings
