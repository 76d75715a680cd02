"""Depth-aware request pacer to stay under the meetings API rate limit"""

import asyncio
import time
from typing import Optional

from config import get_logger

logger = get_logger(__name__).bind(component="upstream")


class RequestPacer:
    """Enforce a cooldown between consecutive upstream requests.

    The cooldown grows with truncation-recovery depth:
    interval_ms * (depth + 1). Requests are serialized through a lock so
    concurrent callers still respect the spacing.
    """

    def __init__(self, interval_ms: int):
        self.interval_ms = max(0, int(interval_ms))
        self._last_request: Optional[float] = None
        self._lock = asyncio.Lock()

    def cooldown_seconds(self, depth: int = 0) -> float:
        return self.interval_ms * (max(0, depth) + 1) / 1000.0

    async def wait(self, depth: int = 0):
        """Sleep until the depth-scaled cooldown since the last request has elapsed"""
        async with self._lock:
            if self._last_request is not None and self.interval_ms > 0:
                elapsed = time.monotonic() - self._last_request
                remaining = self.cooldown_seconds(depth) - elapsed
                if remaining > 0:
                    logger.debug("pacing request", sleep_seconds=round(remaining, 3), depth=depth)
                    await asyncio.sleep(remaining)
            self._last_request = time.monotonic()
