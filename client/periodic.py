from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[None]]


class PeriodicTask:
    """Runs an async callback on a fixed interval until stopped.

    ``stop()`` revokes the loop synchronously: once it returns, the callback is
    never entered again, even if a sleep was already in flight.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        *,
        run_immediately: bool = False,
    ) -> None:
        self._name = name
        self._interval = max(0.0, interval)
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name=self._name)
        logger.debug("Periodic task %s started (interval=%.2fs)", self._name, self._interval)

    def stop(self) -> None:
        self._running = False
        task = self._task
        self._task = None
        if task is None:
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is current:
            # Stopped from inside its own callback; the loop exits on return.
            return
        if not task.done():
            task.cancel()
        logger.debug("Periodic task %s stopped", self._name)

    async def _run(self) -> None:
        try:
            if self._run_immediately:
                await self._invoke()
            while self._running:
                await asyncio.sleep(self._interval)
                if not self._running:
                    return
                await self._invoke()
        except asyncio.CancelledError:
            return

    async def _invoke(self) -> None:
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic task %s callback failed", self._name)
