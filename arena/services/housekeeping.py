"""
Housekeeping - periodic cleanup of abandoned matches.

Runs MatchOperations.expire_stale_matches on a fixed interval.
"""

import asyncio
from typing import Optional

from arena.config import Config
from arena.database.match_operations import ExpiryReport, MatchOperations
from arena.utils.exceptions import StorageUnavailable
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


class MatchHousekeeper:
    """Background task expiring stale waiting and playing matches"""
    
    def __init__(self, matches: MatchOperations, interval_seconds: Optional[float] = None):
        self.matches = matches
        self.interval_seconds = interval_seconds or Config.HOUSEKEEPING_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task] = None
    
    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
    
    async def run_once(self) -> ExpiryReport:
        return await self.matches.expire_stale_matches()
    
    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Housekeeping started, every {self.interval_seconds}s")
    
    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Housekeeping stopped")
    
    async def _loop(self):
        while True:
            try:
                await self.run_once()
            except StorageUnavailable as e:
                logger.warning(f"Housekeeping skipped: {e}")
            except Exception:
                logger.exception("Housekeeping sweep failed")
            await asyncio.sleep(self.interval_seconds)
