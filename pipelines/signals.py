"""Cancellation token shared between a running crawl and job control."""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from .errors import CrawlInterrupted

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCEL = "cancel"
PAUSE = "pause"


class CancellationToken:
    """Fired by cancel/pause so an in-flight fetch or delay stops early."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    def fire(self, reason: str = CANCEL):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.debug(f"Cancellation token fired: {reason}")

    def clear(self):
        self.reason = None
        self._event.clear()

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; returns True if the token interrupted it."""
        if self.fired:
            return True
        if delay <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            CrawlInterrupted: when the token fired before the awaitable finished
        """
        if self.fired:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise CrawlInterrupted(self.reason)

        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            stop.cancel()
        if work.done():
            return work.result()
        work.cancel()
        raise CrawlInterrupted(self.reason)
