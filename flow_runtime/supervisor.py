# flow_runtime/supervisor.py
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from .models import CancelReason

logger = logging.getLogger(__name__)


class CancelSignal:
    """Flag shared between the supervisor and node handlers.

    Handlers either poll ``is_set()`` or ``await wait()``; nothing is killed.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[CancelReason] = None

    def is_set(self) -> bool:
        return self._event.is_set()

    def set(self, reason: CancelReason) -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> CancelReason:
        await self._event.wait()
        return self.reason

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True when woken by cancellation."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


class Supervisor:
    """Enforces the run-level wall clock budget and explicit cancellation."""

    def __init__(self, budget: float, on_cancel: Callable[[CancelReason], Awaitable[None]]):
        self.budget = budget
        self.signal = CancelSignal()
        self._on_cancel = on_cancel
        self._started: Optional[float] = None
        self._timer: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._started = time.monotonic()
        self._timer = asyncio.create_task(self._countdown())

    def remaining(self) -> Optional[float]:
        if self._started is None:
            return None
        return max(0.0, self.budget - (time.monotonic() - self._started))

    async def _countdown(self) -> None:
        await asyncio.sleep(self.budget)
        logger.info("run budget of %ss exhausted", self.budget)
        await self.cancel(CancelReason.TIMEOUT)

    async def cancel(self, reason: CancelReason) -> bool:
        if not self.signal.set(reason):
            return False
        await self._on_cancel(reason)
        self.stop()
        return True

    def stop(self) -> None:
        if self._timer is not None and not self._timer.done():
            if self._timer is not asyncio.current_task():
                self._timer.cancel()
        self._timer = None
