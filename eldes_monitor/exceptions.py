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

"""Error taxonomy for the ELDES Cloud sync subsystem.

Low-level transport failures are converted into these at the client boundary,
so nothing above the sync orchestrator needs to handle aiohttp exceptions.
"""

from typing import Optional


class EldesError(Exception):
    """Base class for all ELDES Monitor errors."""


class AuthError(EldesError):
    """Login rejected or the auth endpoint failed."""

    def __init__(self, message: str, status: Optional[int] = None, hint: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.hint = hint


class UpstreamError(EldesError):
    """Non-2xx answer (or unusable answer) from an ELDES data endpoint."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitError(UpstreamError):
    """Upstream refused the call because of its attempts/rate limit."""


class TransientNetworkError(UpstreamError):
    """Connection refused, reset, timed out or name resolution failed."""


class ControlError(UpstreamError):
    """Arm/disarm could not be addressed or was not accepted (HTTP 202)."""


class DeviceNotFoundError(UpstreamError):
    """Requested device is not in the account's device list."""


class WriteError(EldesError):
    """Persisting a snapshot or reading failed."""


class CredentialError(EldesError):
    """Unknown credential or a secret that cannot be decrypted."""


RATE_LIMIT_MARKERS = ('attempts.limit', 'rate limit', 'too many requests')


def is_rate_limit_message(message: str) -> bool:
    message = message.lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def is_rate_limit_error(error: BaseException) -> bool:
    """Return True if the error signals the upstream attempts/rate limit."""
    return isinstance(error, RateLimitError) or is_rate_limit_message(str(error))
