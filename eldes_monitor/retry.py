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

"""Retry with exponential backoff for transient network failures.

Only errors that look like connection refused/reset, timeouts, DNS failures
or generic network trouble are retried. Everything else (authentication,
4xx business errors) propagates on the first attempt.

This is independent of the client's re-authenticate-once-on-401 handling;
both may apply to the same request.
"""

import asyncio
import errno
import logging
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from .exceptions import EldesError, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0

RETRYABLE_ERRORS = (
    'econnrefused',
    'etimedout',
    'enotfound',
    'econnreset',
    'eai_again',
    'connection refused',
    'connection reset',
    'timeout',
    'timed out',
    'name or service not known',
    'temporary failure in name resolution',
    'fetch failed',
    'network',
)


def _error_code(error: BaseException) -> str:
    code = getattr(error, 'code', None)
    if isinstance(code, str):
        return code
    err_no = getattr(error, 'errno', None)
    if isinstance(err_no, int):
        return errno.errorcode.get(err_no, '')
    return ''


def is_retryable_error(error: BaseException, indicators: Iterable[str] = RETRYABLE_ERRORS) -> bool:
    """Classify an error as transient by matching its message, name and code."""
    if isinstance(error, TransientNetworkError):
        return True
    if isinstance(error, EldesError):
        # Already classified by the client as a non-transient failure
        return False

    error_string = f"{error} {type(error).__name__} {_error_code(error)}".lower()
    return any(indicator in error_string for indicator in indicators)


class RetryPolicy:
    """Bounded exponential backoff settings."""

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.is_retryable = is_retryable

    def delays(self):
        """Yield the wait before each retry."""
        delay = self.initial_delay
        for _ in range(self.max_retries):
            yield delay
            delay = min(delay * self.backoff_multiplier, self.max_delay)

    async def run(self, func: Callable[[], Awaitable[T]],
                  sleep: Optional[Callable[[float], Awaitable[None]]] = None) -> T:
        return await retry_with_backoff(func, self, sleep=sleep)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Await func(), retrying transient failures with exponential backoff.

    Args:
        func: Zero-argument coroutine function to call
        policy: Retry settings (default: 3 retries, 1s doubling up to 10s)
        sleep: Awaitable sleep function (defaults to asyncio.sleep)

    Returns:
        Result of the first successful call

    Raises:
        The last error unchanged once retries are exhausted, or the first
        non-retryable error immediately.
    """
    policy = policy or RetryPolicy()
    sleep = sleep or asyncio.sleep
    delays = policy.delays()
    attempts = policy.max_retries + 1

    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except Exception as e:
            if not policy.is_retryable(e):
                raise
            delay = next(delays, None)
            if delay is None:
                logger.error(f"All {attempts} attempts failed. Last error: {e}")
                raise
            logger.warning(
                f"Attempt {attempt}/{attempts} failed: {e}. Retrying in {delay:g}s..."
            )
            await sleep(delay)

    raise AssertionError("unreachable")
