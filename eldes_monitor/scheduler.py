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

"""Periodic sync of all stored credentials."""

import asyncio
import logging
import time
from typing import Callable, Optional

from .sync import EldesCloudSync

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 3600


def seconds_until_next_run(now: float, interval: float = DEFAULT_INTERVAL) -> float:
    """Seconds until the next wall-clock multiple of interval (top of the hour by default)."""
    remaining = interval - (now % interval)
    return remaining if remaining > 0 else interval


class SyncScheduler:
    """Runs a full sync immediately on start and then on every interval boundary."""

    def __init__(self, sync: EldesCloudSync, interval: float = DEFAULT_INTERVAL,
                 clock: Callable[[], float] = time.time):
        self.sync = sync
        self.interval = interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the background loop. Returns False if it is already running."""
        if self.running:
            logger.debug("Sync scheduler already running")
            return False

        self._task = asyncio.create_task(self._loop())
        logger.info(f"Started device sync scheduler (every {self.interval / 60:.0f} minute(s))")
        return True

    async def run_once(self):
        self.runs += 1
        try:
            return await self.sync.sync_all()
        except Exception as e:
            logger.error(f"Error during scheduled sync: {e}", exc_info=True)
            return []

    async def _loop(self):
        while True:
            try:
                await self.run_once()
                sleep_time = seconds_until_next_run(self._clock(), self.interval)
                logger.info(f"Next device sync in {sleep_time / 60:.0f} minute(s)")
                await asyncio.sleep(sleep_time)
            except asyncio.CancelledError:
                logger.info("Device sync scheduler cancelled")
                break

    async def stop(self):
        """Stop the background loop, waiting for it to finish."""
        if self.running:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("Stopped device sync scheduler")
        self._task = None
