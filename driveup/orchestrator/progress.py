"""Progress reporting for a single upload."""
import asyncio
import logging
import time
from typing import Callable, Optional

from ..models import UploadProgress
from ..protocols import ProgressCallback

logger = logging.getLogger(__name__)


def format_speed(bytes_per_second: float) -> str:
    if bytes_per_second >= 1024 ** 3:
        return f"{bytes_per_second / 1024 ** 3:.2f} GB/s"
    if bytes_per_second >= 1024 ** 2:
        return f"{bytes_per_second / 1024 ** 2:.2f} MB/s"
    if bytes_per_second >= 1024:
        return f"{bytes_per_second / 1024:.2f} KB/s"
    return f"{bytes_per_second:.0f} B/s"


def format_duration(seconds: float) -> str:
    if seconds < 0:
        return "0s"
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


class ProgressTracker:
    """
    Turns byte counts into ``UploadProgress`` snapshots.

    Speed is measured since the previous report; the first report of a
    run uses the average since the tracker started, counting only bytes
    past ``initial_bytes`` (what an earlier run already uploaded). ETA
    is derived from that speed.
    """

    def __init__(
        self,
        total_bytes: int,
        callback: Optional[ProgressCallback] = None,
        clock: Callable[[], float] = time.monotonic,
        initial_bytes: int = 0,
    ):
        self._total = total_bytes
        self._callback = callback
        self._clock = clock
        self._started = clock()
        self._last_time: Optional[float] = None
        self._last_bytes = initial_bytes

    def snapshot(self, transferred: int, instant: bool = False) -> UploadProgress:
        now = self._clock()
        elapsed = now - self._started

        if self._last_time is None:
            speed = (transferred - self._last_bytes) / elapsed if elapsed > 0 else 0.0
        else:
            window = now - self._last_time
            speed = (transferred - self._last_bytes) / window if window > 0 else 0.0
        self._last_time = now
        self._last_bytes = transferred

        remaining = max(self._total - transferred, 0)
        eta = remaining / speed if speed > 0 else 0.0
        percent = 100.0 if self._total <= 0 else min(transferred * 100.0 / self._total, 100.0)

        return UploadProgress(
            percent=percent,
            bytes_transferred=transferred,
            total_bytes=self._total,
            speed=speed,
            speed_text=format_speed(speed),
            eta=eta,
            eta_text=format_duration(eta),
            elapsed=elapsed,
            instant=instant,
        )

    async def report(self, transferred: int, instant: bool = False) -> None:
        if self._callback is None:
            return
        progress = self.snapshot(transferred, instant=instant)
        try:
            result = self._callback(progress)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error("Error in progress callback: %s", e)

    async def complete(self, instant: bool = False) -> None:
        await self.report(self._total, instant=instant)
