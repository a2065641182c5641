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

"""FastAPI route handlers for ELDES Monitor."""

import logging
import os
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from .__version__ import __version__
from .exceptions import (
    AuthError,
    CredentialError,
    DeviceNotFoundError,
    EldesError,
    RateLimitError,
    UpstreamError,
)
from .history import PERIODS, HistoryReader
from .scheduler import SyncScheduler
from .sync import EldesCloudSync

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# Multiple keys can be specified, space-separated
API_KEYS_RAW = os.environ.get('ELDES_API_KEYS', '').strip()
API_KEYS = set(key.strip() for key in API_KEYS_RAW.split() if key.strip()) if API_KEYS_RAW else set()


def get_api_key(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Optional[str]:
    """
    Validate API key from Authorization header.

    If API keys are configured (ELDES_API_KEYS environment variable), checks Bearer token.
    If no API keys are configured, authentication is disabled.

    Raises:
        HTTPException 401 if authentication fails
    """
    if not API_KEYS:
        return None

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if credentials.credentials not in API_KEYS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return credentials.credentials


def http_error(error: EldesError) -> HTTPException:
    """Map a sync subsystem error to the HTTP status served to clients."""
    if isinstance(error, AuthError):
        return HTTPException(status_code=401, detail=error.hint or str(error))
    if isinstance(error, RateLimitError):
        return HTTPException(status_code=429, detail=str(error))
    if isinstance(error, (DeviceNotFoundError, CredentialError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, UpstreamError):
        return HTTPException(status_code=502, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


class CredentialIn(BaseModel):
    username: str
    password: str
    deviceName: Optional[str] = None


class LoginIn(BaseModel):
    username: str
    password: str


class ControlIn(BaseModel):
    action: str
    partitionId: Optional[int] = None
    partitionName: Optional[str] = None
    credentialId: Optional[int] = None


def create_app():
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="ELDES Monitor",
        description="Local history and control API for ELDES Cloud alarm systems",
        version=__version__
    )

    if API_KEYS:
        logger.info(f"API authentication enabled ({len(API_KEYS)} key(s) configured)")
    else:
        logger.info("API authentication disabled (no ELDES_API_KEYS configured)")

    return app


def register_routes(app: FastAPI, get_sync: Callable[[], EldesCloudSync],
                    get_scheduler: Callable[[], Optional[SyncScheduler]] = lambda: None):
    """Register all API routes.

    Args:
        app: FastAPI application instance
        get_sync: Callable that returns the EldesCloudSync instance
        get_scheduler: Callable that returns the process-wide SyncScheduler, if any
    """

    def sync_or_503() -> EldesCloudSync:
        sync = get_sync()
        if sync is None:
            raise HTTPException(status_code=503, detail="Sync not initialized")
        return sync

    @app.get("/status", tags=["Status"])
    async def get_status(api_key: Optional[str] = Depends(get_api_key)):
        """Service version, stored credentials and scheduler state."""
        sync = sync_or_503()
        scheduler = get_scheduler()
        return {
            "service": "ELDES Monitor",
            "version": __version__,
            "credentials": len(sync.credentials.ids()),
            "scheduler_running": bool(scheduler and scheduler.running),
        }

    @app.get("/credentials", tags=["Credentials"])
    async def list_credentials(api_key: Optional[str] = Depends(get_api_key)):
        return {"credentials": sync_or_503().credentials.list()}

    @app.post("/credentials", tags=["Credentials"])
    async def add_credential(body: CredentialIn, api_key: Optional[str] = Depends(get_api_key)):
        if not body.username or not body.password:
            raise HTTPException(status_code=400, detail="username and password are required")
        credential_id = sync_or_503().credentials.add(body.username, body.password, label=body.deviceName)
        logger.info(f"Added credentials {credential_id} for {body.username}")
        return {"id": credential_id, "message": "Credentials added successfully"}

    @app.delete("/credentials", tags=["Credentials"])
    async def delete_credential(id: int, api_key: Optional[str] = Depends(get_api_key)):
        if not sync_or_503().credentials.delete(id):
            raise HTTPException(status_code=404, detail=f"Credential {id} not found")
        return {"message": "Credentials deleted successfully"}

    @app.get("/devices", tags=["Devices"])
    async def get_devices(credential_id: int, refresh: bool = False,
                          api_key: Optional[str] = Depends(get_api_key)):
        """
        Devices of a credential with their latest stored status.

        With refresh=true a sync pass runs first; if upstream refuses
        (rate limit or outage) the stored data is returned regardless.
        """
        sync = sync_or_503()
        result = None
        if refresh:
            result = await sync.sync_credential(credential_id)
        devices = HistoryReader(sync.db_path).list_devices(credential_id)
        response = {"devices": devices}
        if result is not None:
            response["sync"] = result.to_dict()
        return response

    @app.get("/devices/{device_id}", tags=["Devices"])
    async def get_device(device_id: str, period: str = '1h', credential_id: Optional[int] = None,
                         api_key: Optional[str] = Depends(get_api_key)):
        if period not in PERIODS:
            raise HTTPException(status_code=400,
                                detail=f"period must be one of {', '.join(PERIODS)}")
        detail = HistoryReader(sync_or_503().db_path).device_detail(
            device_id, period=period, credential_id=credential_id)
        if detail is None:
            raise HTTPException(status_code=404, detail=f"Device {device_id} not found")
        return detail

    @app.post("/devices/{device_id}/control", tags=["Devices"])
    async def control_device(device_id: str, body: ControlIn,
                             api_key: Optional[str] = Depends(get_api_key)):
        """Arm or disarm a partition, then store the resulting status."""
        sync = sync_or_503()
        if body.action not in ('arm', 'disarm'):
            raise HTTPException(status_code=400, detail="action must be 'arm' or 'disarm'")

        credential_id = body.credentialId
        if credential_id is None:
            device = HistoryReader(sync.db_path).get_device(device_id)
            if device is None:
                raise HTTPException(status_code=404, detail=f"Device {device_id} not found")
            credential_id = device['credential_id']

        try:
            return await sync.control_device(
                credential_id, device_id, body.action,
                partition_id=body.partitionId, partition_name=body.partitionName,
            )
        except EldesError as e:
            logger.error(f"Failed to {body.action} device {device_id}: {e}")
            raise http_error(e)

    @app.post("/sync", tags=["Sync"])
    async def sync_now(credential_id: Optional[int] = None,
                       api_key: Optional[str] = Depends(get_api_key)):
        sync = sync_or_503()
        if credential_id is not None:
            results = [await sync.sync_credential(credential_id)]
        else:
            results = await sync.sync_all()
        return {"results": [r.to_dict() for r in results]}

    @app.post("/sync/start", tags=["Sync"])
    async def start_scheduler(api_key: Optional[str] = Depends(get_api_key)):
        scheduler = get_scheduler()
        if scheduler is None:
            raise HTTPException(status_code=503, detail="Scheduler not configured")
        started = scheduler.start()
        return {
            "started": started,
            "running": scheduler.running,
            "message": "Scheduler started" if started else "Scheduler already running",
        }

    @app.post("/login/verify", tags=["Credentials"])
    async def verify_login(body: LoginIn, api_key: Optional[str] = Depends(get_api_key)):
        try:
            await sync_or_503().verify_login(body.username, body.password)
        except EldesError as e:
            raise http_error(e)
        return {"valid": True}
