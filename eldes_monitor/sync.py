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

"""Synchronize ELDES Cloud device status to the local database.

A sync pass for one credential moves through

    IDLE -> AUTHENTICATING -> LISTING_DEVICES
         -> (per device: FETCHING_STATUS -> WRITING) -> IDLE

A rate limit reported by upstream ends the pass early without writing
anything, leaving previously stored rows as the data to serve. Failures of a
single device are logged and the pass continues with the next one.

Passes for the same credential are not serialized: a scheduled and a manual
pass may overlap and both append history rows.
"""

import enum
import logging
from typing import Any, Callable, Dict, List, Optional

from .cloud import EldesCloudAPI
from .credentials import CredentialStore
from .crypto import SecretCipher
from .exceptions import (
    ControlError,
    CredentialError,
    DeviceNotFoundError,
    EldesError,
    RateLimitError,
    WriteError,
    is_rate_limit_error,
)
from .history import HistoryWriter
from .normalize import find_device, resolve_partition
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

# Sentinel account giving the UI stable synthetic data without upstream calls
DEMO_LOGIN = "demo@eldes.demo"
DEMO_SECRET = "demo"

CONTROL_ACTIONS = ('arm', 'disarm')


def is_demo_credentials(login: str, secret: str) -> bool:
    return login == DEMO_LOGIN and secret == DEMO_SECRET


class SyncState(enum.Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    LISTING_DEVICES = "listing_devices"
    FETCHING_STATUS = "fetching_status"
    WRITING = "writing"


class SyncResult:
    """Outcome of one credential sync pass."""

    def __init__(self, credential_id: int):
        self.credential_id = credential_id
        self.transitions: List[SyncState] = [SyncState.IDLE]
        self.devices = 0
        self.snapshots = 0
        self.readings = 0
        self.failed_devices: List[str] = []
        self.rate_limited = False
        self.skipped = False
        self.error: Optional[str] = None

    @property
    def state(self) -> SyncState:
        return self.transitions[-1]

    def transition(self, state: SyncState):
        logger.debug(f"Credential {self.credential_id}: {self.state.value} -> {state.value}")
        self.transitions.append(state)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.rate_limited and not self.failed_devices

    def to_dict(self) -> Dict[str, Any]:
        return {
            'credential_id': self.credential_id,
            'devices': self.devices,
            'snapshots': self.snapshots,
            'readings': self.readings,
            'failed_devices': self.failed_devices,
            'rate_limited': self.rate_limited,
            'skipped': self.skipped,
            'error': self.error,
        }

    def __repr__(self) -> str:
        return (f"<SyncResult credential={self.credential_id} devices={self.devices} "
                f"snapshots={self.snapshots} readings={self.readings}>")


class EldesCloudSync:
    """Drives sync passes and device control for stored credentials."""

    def __init__(
        self,
        db_path: str,
        cipher: Optional[SecretCipher] = None,
        base_url: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client_factory: Optional[Callable[[str, str], EldesCloudAPI]] = None,
    ):
        """
        Initialize sync manager.

        Args:
            db_path: Path to SQLite database (schema must exist)
            cipher: Secret cipher (default: key from env or database)
            base_url: ELDES API root override
            retry_policy: Backoff settings handed to every client
            client_factory: Callable (login, secret) -> client, for tests
        """
        self.db_path = db_path
        self.credentials = CredentialStore(db_path, cipher or SecretCipher.for_database(db_path))
        self.writer = HistoryWriter(db_path)
        self.base_url = base_url
        self.retry_policy = retry_policy
        self._client_factory = client_factory

    def new_client(self, login: str, secret: str) -> EldesCloudAPI:
        """A fresh client; tokens are never reused across passes."""
        if self._client_factory:
            return self._client_factory(login, secret)
        return EldesCloudAPI(login, secret, base_url=self.base_url, retry_policy=self.retry_policy)

    async def verify_login(self, login: str, secret: str) -> bool:
        """
        Check an account against upstream by logging in once.

        Raises:
            AuthError for invalid credentials, RateLimitError when throttled
        """
        if is_demo_credentials(login, secret):
            return True
        return await self.new_client(login, secret).authenticate()

    async def sync_credential(self, credential_id: int) -> SyncResult:
        """Run one sync pass for a stored credential. Never raises EldesError."""
        result = SyncResult(credential_id)

        try:
            credential = self.credentials.get(credential_id)
            secret = credential.decrypt_secret()
        except CredentialError as e:
            logger.error(f"Cannot sync credential {credential_id}: {e}")
            result.error = str(e)
            return result

        if is_demo_credentials(credential.login, secret):
            logger.info(f"Skipping API call for demo credentials (credential {credential_id})")
            result.skipped = True
            return result

        api = self.new_client(credential.login, secret)

        try:
            result.transition(SyncState.AUTHENTICATING)
            await api.authenticate()
            result.transition(SyncState.LISTING_DEVICES)
            devices = await api.list_devices()
        except EldesError as e:
            if is_rate_limit_error(e):
                logger.warning(f"Rate limit hit for {credential.login}, keeping stored data")
                result.rate_limited = True
            else:
                logger.error(f"Error fetching devices for credential {credential_id}: {e}")
                result.error = str(e)
            result.transition(SyncState.IDLE)
            return result

        for device in devices:
            try:
                await self._sync_device(api, credential_id, device, result)
            except RateLimitError as e:
                # Further calls this pass would be refused as well
                logger.warning(f"Rate limit hit for {credential.login} during device sync: {e}")
                result.rate_limited = True
                break
            except Exception as e:
                logger.error(f"Unexpected error syncing device {device.get('imei')}: {e}", exc_info=True)
                result.failed_devices.append(device.get('imei'))

        result.transition(SyncState.IDLE)
        logger.info(
            f"Synced credential {credential_id}: {result.devices} device(s), "
            f"{result.snapshots} snapshot(s), {result.readings} temperature reading(s)"
        )
        return result

    async def _sync_device(self, api: EldesCloudAPI, credential_id: int,
                           device: Dict[str, Any], result: SyncResult):
        device_id = device['imei']

        try:
            device_db_id = self.writer.upsert_device(credential_id, device)
        except WriteError as e:
            logger.error(f"Error storing device {device_id}: {e}")
            result.failed_devices.append(device_id)
            return

        result.transition(SyncState.FETCHING_STATUS)
        try:
            status = await api.get_device_status(device_id)
        except RateLimitError:
            raise
        except EldesError as e:
            logger.error(f"Error fetching status for device {device_id}: {e}")
            result.failed_devices.append(device_id)
            return

        result.transition(SyncState.WRITING)
        try:
            snapshots, readings = self.writer.write_status(device_db_id, status)
        except WriteError as e:
            logger.error(f"Error storing status for device {device_id}: {e}")
            result.failed_devices.append(device_id)
            return

        result.devices += 1
        result.snapshots += snapshots
        result.readings += readings

    async def sync_all(self) -> List[SyncResult]:
        """Sync every stored credential, one after the other."""
        credential_ids = self.credentials.ids()
        logger.info(f"Starting device sync for {len(credential_ids)} credential(s)...")

        results = []
        for credential_id in credential_ids:
            try:
                results.append(await self.sync_credential(credential_id))
            except Exception as e:
                logger.error(f"Unexpected error syncing credential {credential_id}: {e}", exc_info=True)
                failed = SyncResult(credential_id)
                failed.error = str(e)
                results.append(failed)

        logger.info("Device sync completed")
        return results

    async def refresh_login(self, login: str) -> SyncResult:
        """User-triggered refresh for the credential stored under a login."""
        credential = self.credentials.find_by_login(login)
        if credential is None:
            raise CredentialError(f"No stored credentials for {login}")
        return await self.sync_credential(credential.id)

    async def control_device(
        self,
        credential_id: int,
        device_id: str,
        action: str,
        partition_id: Optional[int] = None,
        partition_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Arm or disarm a partition of a device and record the resulting status.

        The partition is chosen by name, else by id, else it is the only
        partition of the device.
        When the command is accepted but the status refresh fails, the result
        still reports success with stored False and no status.

        Raises:
            ValueError for an unknown action, CredentialError,
            DeviceNotFoundError, ControlError, RateLimitError, AuthError
        """
        if action not in CONTROL_ACTIONS:
            raise ValueError(f"Unknown action '{action}'")

        credential = self.credentials.get(credential_id)
        secret = credential.decrypt_secret()
        if is_demo_credentials(credential.login, secret):
            raise ControlError("Demo credentials cannot control devices")

        api = self.new_client(credential.login, secret)
        device = find_device(await api.list_devices(), device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device {device_id} not found in account")

        partition = resolve_partition(device, partition_id=partition_id, partition_name=partition_name)
        if partition is None:
            if partition_name is not None or partition_id is not None:
                raise ControlError(f"Partition {partition_name or partition_id} not found")
            if not device['partitions']:
                raise ControlError("No partitions found for device")
            raise ControlError(f"Device has {len(device['partitions'])} partitions, one must be selected")

        location = device['deviceName']
        if not location or not partition['partitionName']:
            raise ControlError("Device or partition has no name to address it by")

        if action == 'arm':
            await api.arm_partition(location, partition['partitionName'])
        else:
            await api.disarm_partition(location, partition['partitionName'])

        try:
            status = await api.get_device_status(device_id)
        except EldesError as e:
            logger.warning(f"{action.capitalize()} of device {device_id} accepted, but status refresh failed: {e}")
            status = None

        stored = status is not None
        if status is not None:
            try:
                device_db_id = self.writer.upsert_device(credential_id, device)
                self.writer.write_status(device_db_id, status)
            except WriteError as e:
                logger.error(f"Error storing status after {action} of device {device_id}: {e}")
                stored = False

        return {
            'success': True,
            'action': action,
            'deviceId': device_id,
            'partitionId': partition['partitionId'],
            'partitionName': partition['partitionName'],
            'stored': stored,
            'status': status.to_dict() if status is not None else None,
        }
