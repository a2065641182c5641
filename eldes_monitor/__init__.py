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

"""ELDES Monitor - local history and control for ELDES Cloud alarm systems."""

from .__version__ import __version__

__author__ = "ELDES Monitor Contributors"
__description__ = "Local history and control for ELDES Cloud alarm systems"

from .exceptions import (
    EldesError,
    AuthError,
    UpstreamError,
    RateLimitError,
    TransientNetworkError,
    ControlError,
    DeviceNotFoundError,
    WriteError,
    CredentialError,
    is_rate_limit_error,
)
from .database import DB_SCHEMA, ensure_schema_and_migrate
from .retry import RetryPolicy, retry_with_backoff
from .normalize import DeviceStatus, build_device_status
from .cloud import EldesCloudAPI
from .crypto import SecretCipher
from .credentials import CredentialStore
from .history import HistoryWriter, HistoryReader
from .sync import EldesCloudSync, SyncResult, SyncState
from .scheduler import SyncScheduler
from .demo import add_demo_data

__all__ = [
    "__version__",
    "EldesError",
    "AuthError",
    "UpstreamError",
    "RateLimitError",
    "TransientNetworkError",
    "ControlError",
    "DeviceNotFoundError",
    "WriteError",
    "CredentialError",
    "is_rate_limit_error",
    "DB_SCHEMA",
    "ensure_schema_and_migrate",
    "RetryPolicy",
    "retry_with_backoff",
    "DeviceStatus",
    "build_device_status",
    "EldesCloudAPI",
    "SecretCipher",
    "CredentialStore",
    "HistoryWriter",
    "HistoryReader",
    "EldesCloudSync",
    "SyncResult",
    "SyncState",
    "SyncScheduler",
    "add_demo_data",
]
