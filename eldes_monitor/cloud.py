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

"""ELDES Cloud API client.

Session Handling:
-----------------
- POST /auth/login with email, password and a stable hostDeviceId returns a
  bearer token (and sometimes a refresh token)
- Tokens live only in this client instance; a new instance logs in again
- Every call logs in first if no token is held yet
- A 401 from a data endpoint triggers exactly one re-login and one repeat
  of the same call; a second 401 is returned to the caller as a failure

Transport Failures:
-------------------
- Connection refused/reset, timeouts and DNS errors become
  TransientNetworkError and are retried with exponential backoff
  (see retry.py) before surfacing
- Responses mentioning the attempts limit (or HTTP 429) become
  RateLimitError so the sync pass can fall back to stored data

Endpoints:
----------
- GET  /device/list?showSupportMessages=true   devices and partitions
- GET  /device/info?imei=...                   online flag, GSM, battery
- POST /device/temperatures?imei=...           temperature sensors
- POST /device/action/arm|disarm               202 Accepted on success
"""

import asyncio
import base64
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .exceptions import (
    AuthError,
    ControlError,
    DeviceNotFoundError,
    EldesError,
    RateLimitError,
    TransientNetworkError,
    UpstreamError,
    is_rate_limit_message,
)
from .normalize import (
    DeviceStatus,
    build_device_status,
    find_device,
    find_device_by_location,
    normalize_device_list,
    normalize_temperatures,
    resolve_partition,
)
from .retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://cloud.eldesalarms.com:8083/api"

# Re-authentications allowed per call after a 401
MAX_REAUTH = 1


def generate_host_device_id(email: str) -> str:
    """Deterministic per-account device id sent with every login."""
    encoded = base64.b64encode(email.encode('utf-8')).decode('ascii')
    return f"eldes-monitor-{encoded[:16]}"


class ApiResponse:
    """Status and body of one completed HTTP exchange."""

    def __init__(self, status: int, reason: Optional[str], text: str):
        self.status = status
        self.reason = reason or ''
        self.text = text

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        if not self.text:
            return None
        try:
            return json.loads(self.text)
        except ValueError as e:
            raise UpstreamError(f"Invalid JSON in response: {e}", self.status) from e

    def describe(self) -> str:
        body = self.text.strip()
        if len(body) > 200:
            body = body[:200] + '...'
        return f"{self.status} {self.reason} {body}".strip()


class EldesCloudAPI:
    """
    Client for the ELDES Cloud alarm API.

    One instance per sync pass; the bearer token is never shared between
    instances.
    """

    WHITELABEL = "eldes"

    def __init__(
        self,
        email: str,
        password: str,
        host_device_id: Optional[str] = None,
        base_url: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
    ):
        """Initialize ELDES Cloud API client.

        Args:
            email: Account login (must be an email address)
            password: Account password
            host_device_id: Stable id of this client (derived from email if None)
            base_url: API root (default: the public ELDES cloud)
            retry_policy: Backoff settings for transient network failures
            timeout: Total timeout per HTTP request in seconds
        """
        self.email = email
        self._password = password
        self.host_device_id = host_device_id or generate_host_device_id(email or '')
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip('/')
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = aiohttp.ClientTimeout(total=timeout)

        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None

    def __repr__(self) -> str:
        state = "authenticated" if self.access_token else "not authenticated"
        return f"<EldesCloudAPI {self.email} ({state})>"

    def is_authenticated(self) -> bool:
        return self.access_token is not None

    def get_headers(self) -> Dict[str, str]:
        headers = {
            'X-Requested-With': 'XMLHttpRequest',
            'x-whitelable': self.WHITELABEL,
            'Content-Type': 'application/json; charset=UTF-8',
        }
        if self.access_token:
            headers['Authorization'] = f'Bearer {self.access_token}'
        return headers

    async def _send(self, method: str, path: str,
                    params: Optional[Dict[str, str]] = None,
                    body: Optional[Dict[str, Any]] = None) -> ApiResponse:
        """Perform one HTTP exchange, retrying transient network failures."""
        url = f"{self.base_url}{path}"
        data = json.dumps(body) if body is not None else None

        async def attempt() -> ApiResponse:
            try:
                async with aiohttp.ClientSession(timeout=self.timeout) as session:
                    async with session.request(method, url, params=params, data=data,
                                               headers=self.get_headers()) as resp:
                        payload = await resp.read()
                        text = payload.decode('utf-8', errors='replace')
                        return ApiResponse(resp.status, resp.reason, text)
            except asyncio.TimeoutError as e:
                raise TransientNetworkError(f"Request timeout: {method} {path}") from e
            except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as e:
                raise TransientNetworkError(f"Network error on {method} {path}: {e}") from e
            except aiohttp.ClientError as e:
                raise UpstreamError(f"HTTP client error on {method} {path}: {e}") from e
            except OSError as e:
                raise TransientNetworkError(f"Network error on {method} {path}: {e}") from e

        logger.debug(f"{method} {url}")
        return await retry_with_backoff(attempt, self.retry_policy)

    async def _request(self, method: str, path: str,
                       params: Optional[Dict[str, str]] = None,
                       body: Optional[Dict[str, Any]] = None) -> ApiResponse:
        """Authenticated request with at most one re-login on 401."""
        if not self.access_token:
            await self.authenticate()

        reauths = 0
        while True:
            response = await self._send(method, path, params=params, body=body)
            if response.status == 401 and reauths < MAX_REAUTH:
                reauths += 1
                logger.info(f"Session token rejected on {path}, re-authenticating")
                await self.authenticate()
                continue
            return response

    @staticmethod
    def _raise_for_status(response: ApiResponse, action: str):
        if response.ok:
            return
        message = f"Failed to {action}: {response.describe()}"
        if response.status == 429 or is_rate_limit_message(message):
            raise RateLimitError(message, response.status)
        raise UpstreamError(message, response.status)

    async def authenticate(self) -> bool:
        """
        Log in and store the session token for this instance.

        Returns:
            True on success

        Raises:
            AuthError on rejected credentials or a malformed login response,
            RateLimitError if the login attempts limit was hit
        """
        if not self.email or '@' not in self.email:
            raise AuthError(
                f'Invalid email address: "{self.email}". The login must be an email address.'
            )

        self.access_token = None
        response = await self._send('POST', '/auth/login', body={
            'email': self.email,
            'password': self._password,
            'hostDeviceId': self.host_device_id,
        })

        if not response.ok:
            message = f"Authentication failed: {response.describe()}"
            if response.status == 429 or is_rate_limit_message(message):
                logger.warning(f"ELDES login rate limited for {self.email}")
                raise RateLimitError(message, response.status)
            hint = None
            if response.status == 401:
                hint = ("Please verify that the login is a valid email address, the password "
                        "is correct and the account is valid for ELDES Cloud")
            raise AuthError(message, status=response.status, hint=hint)

        data = response.json() or {}
        token = data.get('token') if isinstance(data, dict) else None
        if not token:
            raise AuthError("No session token received", status=response.status)

        self.access_token = token
        self.refresh_token = data.get('refreshToken')
        logger.info(f"Authenticated with ELDES Cloud as {self.email}")
        return True

    async def fetch_device_list(self) -> Any:
        """Raw /device/list response body."""
        response = await self._request('GET', '/device/list', params={'showSupportMessages': 'true'})
        self._raise_for_status(response, "fetch devices")
        return response.json()

    async def list_devices(self) -> List[Dict[str, Any]]:
        """
        Get the account's devices in upstream order.

        Entries without an identifier are dropped. Each device and partition
        exposes both canonical and legacy field names (imei/deviceId,
        deviceName/name, internalId/partitionId, isArmed/armed).
        """
        return normalize_device_list(await self.fetch_device_list())

    async def get_device_info(self, imei: str) -> Optional[Dict[str, Any]]:
        """Best-effort device info (online flag, GSM strength, battery...)."""
        try:
            response = await self._request('GET', '/device/info', params={'imei': imei})
            self._raise_for_status(response, "fetch device info")
            return response.json()
        except EldesError as e:
            logger.warning(f"Could not fetch device info for device {imei}: {e}")
            return None

    async def fetch_temperatures(self, imei: str) -> Any:
        """Raw /device/temperatures response body."""
        response = await self._request('POST', '/device/temperatures', params={'imei': imei},
                                       body={'': '', 'pin': ''})
        self._raise_for_status(response, "fetch temperatures")
        return response.json()

    async def get_temperatures(self, imei: str) -> List[Dict[str, Any]]:
        """Normalized temperature sensors of a device."""
        return normalize_temperatures(await self.fetch_temperatures(imei))

    async def get_temperature(self, imei: str) -> Optional[float]:
        """Aggregate temperature (first sensor) or None."""
        sensors = await self.get_temperatures(imei)
        return sensors[0]['temperature'] if sensors else None

    async def get_device_status(self, device_id: str) -> DeviceStatus:
        """
        Fetch the canonical status of one device.

        Only the device list is essential: a failing temperature or device
        info fetch degrades to absent data with a warning.

        Raises:
            DeviceNotFoundError if the device is not in the account,
            UpstreamError (or subclasses) if the device list fetch fails
        """
        device_list_response = await self.fetch_device_list()
        if find_device(normalize_device_list(device_list_response), device_id) is None:
            raise DeviceNotFoundError(f"Device {device_id} not found")

        temperature_response = None
        try:
            temperature_response = await self.fetch_temperatures(device_id)
        except EldesError as e:
            logger.warning(f"Could not fetch temperature for device {device_id}: {e}")

        device_info = await self.get_device_info(device_id)

        status = build_device_status(
            device_id,
            device_list_response,
            device_info_response=device_info,
            temperature_response=temperature_response,
        )
        if status.temperature_details:
            logger.info(f"Temperature fetched for device {device_id}: "
                        f"{len(status.temperature_details)} sensor(s)")
        return status

    async def _resolve_address(self, location: str, partition: str):
        """Map location and partition names to (imei, partitionIndex)."""
        try:
            devices = await self.list_devices()
        except RateLimitError:
            raise
        except UpstreamError as e:
            raise ControlError(f"Could not look up device list: {e}", e.status) from e

        device = find_device_by_location(devices, location)
        if device is None:
            raise ControlError(f'Device with location "{location}" not found')
        partition_data = resolve_partition(device, partition_name=partition)
        if partition_data is None or partition_data['internalId'] is None:
            raise ControlError(f'Partition "{partition}" not found in location "{location}"')
        return device['imei'], partition_data['internalId']

    async def _control(self, action: str, location: str, partition: str) -> bool:
        imei, partition_index = await self._resolve_address(location, partition)

        response = await self._request('POST', f'/device/action/{action}', body={
            'imei': imei,
            'partitionIndex': partition_index,
        })
        if response.status == 202:
            logger.info(f"{action.capitalize()} accepted for {location} / {partition}")
            return True

        message = f"Failed to {action} partition: {response.describe()}"
        if response.status == 429 or is_rate_limit_message(message):
            raise RateLimitError(message, response.status)
        raise ControlError(message, response.status)

    async def arm_partition(self, location: str, partition: str) -> bool:
        """Arm a partition addressed by device name and partition name."""
        return await self._control('arm', location, partition)

    async def disarm_partition(self, location: str, partition: str) -> bool:
        """Disarm a partition addressed by device name and partition name."""
        return await self._control('disarm', location, partition)

    async def is_partition_armed(self, location: str, partition: str) -> bool:
        devices = await self.list_devices()
        device = find_device_by_location(devices, location)
        if device is None:
            return False
        partition_data = resolve_partition(device, partition_name=partition)
        return bool(partition_data and partition_data['isArmed'])
