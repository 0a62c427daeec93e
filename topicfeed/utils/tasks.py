"""
Scheduling helpers for topicfeed.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class DebouncedTask:
    """
    A single cancellable slot for a delayed coroutine.

    Scheduling replaces whatever occupies the slot: a timer that has not fired
    yet and a run that is already in flight are both cancelled.
    """
    def __init__(self, delay: float, name: str = "task"):
        self.delay = delay
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        """Whether a scheduled run is waiting or in flight."""
        return self._task is not None and not self._task.done()

    def schedule(self, factory: Callable[[], Awaitable], delay: Optional[float] = None) -> asyncio.Task:
        """
        Cancel the current occupant and schedule factory() after the delay.

        Args:
            factory: Zero-argument callable returning the coroutine to run
            delay: Override for the slot's default delay, in seconds

        Returns:
            The scheduled task
        """
        self.cancel()
        wait = self.delay if delay is None else delay
        self._task = asyncio.get_running_loop().create_task(self._run(factory, wait))
        return self._task

    async def _run(self, factory: Callable[[], Awaitable], wait: float):
        if wait > 0:
            await asyncio.sleep(wait)
        try:
            await factory()
        except Exception:
            logger.exception(f"Scheduled {self.name} run failed")

    def cancel(self) -> bool:
        """
        Cancel the occupant of the slot.

        Returns:
            True if something was cancelled
        """
        if self.pending:
            logger.debug(f"Cancelling pending {self.name} run")
            self._task.cancel()
            return True
        return False

    async def wait(self):
        """Wait until the slot is idle, following any rescheduling on the way."""
        while self.pending:
            await asyncio.wait({self._task})
