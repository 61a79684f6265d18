"""Two-clock countdown for an active call session.

A local one-second tick keeps the displayed clock smooth; an independent,
slower resync against the matchmaking backend corrects drift and detects a
session the backend no longer considers active.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from shared.protocol import (
    DEFAULT_SESSION_SECONDS,
    SESSION_POLL_INTERVAL_SECONDS,
    TIMER_TICK_SECONDS,
    MatchmakingStatus,
    MatchState,
)

from .api_client import ApiError, MatchmakingApi
from .broker import dispatch
from .periodic import PeriodicTask

logger = logging.getLogger(__name__)

ERROR_VERIFY_SESSION = "Failed to verify session"

TeardownCallback = Callable[[], Awaitable[None]]
ExpiredCallback = Callable[[str], Awaitable[None] | None]
RedirectCallback = Callable[[], Awaitable[None] | None]
TickCallback = Callable[[int], Awaitable[None] | None]
TimerErrorCallback = Callable[[str], Awaitable[None] | None]


class TimerState(str, Enum):
    RUNNING = "running"
    EXPIRING = "expiring"
    TERMINAL = "terminal"
    REDIRECTED = "redirected"


def format_clock(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


class SessionTimer:
    def __init__(
        self,
        session_id: str,
        api: MatchmakingApi,
        *,
        teardown: TeardownCallback,
        on_expired: ExpiredCallback,
        on_redirect: RedirectCallback,
        on_tick: Optional[TickCallback] = None,
        on_error: Optional[TimerErrorCallback] = None,
        initial_seconds: int = DEFAULT_SESSION_SECONDS,
        tick_interval: float = TIMER_TICK_SECONDS,
        resync_interval: float = SESSION_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._session_id = session_id
        self._api = api
        self._teardown = teardown
        self._on_expired = on_expired
        self._on_redirect = on_redirect
        self._on_tick = on_tick
        self._on_error = on_error
        self._time_left = max(0, int(initial_seconds))
        self._state = TimerState.RUNNING
        self._tick_task = PeriodicTask(f"session-tick-{session_id}", tick_interval, self.tick)
        self._resync_task = PeriodicTask(f"session-resync-{session_id}", resync_interval, self.resync)

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def time_left(self) -> int:
        return self._time_left

    @property
    def running(self) -> bool:
        return self._state is TimerState.RUNNING

    def to_dict(self) -> dict[str, object]:
        return {
            "state": self._state.value,
            "time_left": self._time_left,
            "display": format_clock(self._time_left),
        }

    async def start(self) -> None:
        """Resync once, then start the tick and resync loops."""
        if not self.running or self._tick_task.running:
            return
        await self.resync()
        if not self.running:
            return
        self._tick_task.start()
        self._resync_task.start()

    def stop(self) -> None:
        self._tick_task.stop()
        self._resync_task.stop()

    async def tick(self) -> None:
        if not self.running:
            return
        self._time_left = max(0, self._time_left - 1)
        await dispatch(self._on_tick, self._time_left)
        if self._time_left == 0:
            await self._expire()

    async def resync(self) -> None:
        if not self.running:
            return
        try:
            status = await self._api.get_status()
        except ApiError as exc:
            logger.error("Session check failed: %s", exc)
            await dispatch(self._on_error, ERROR_VERIFY_SESSION)
            return
        await self.apply_status(status)

    async def apply_status(self, status: MatchmakingStatus) -> None:
        if not self.running:
            return
        if status.status is not MatchState.IN_SESSION or status.session_id != self._session_id:
            logger.info(
                "Session %s no longer active (status=%s, session=%s); redirecting",
                self._session_id,
                status.status.value,
                status.session_id,
            )
            self._state = TimerState.REDIRECTED
            self.stop()
            await dispatch(self._on_redirect)
            return
        if status.time_left_ms is None:
            return
        self._time_left = max(0, status.time_left_ms // 1000)
        await dispatch(self._on_tick, self._time_left)
        if self._time_left == 0:
            await self._expire()

    async def _expire(self) -> None:
        if not self.running:
            return
        logger.info("Session %s time is up", self._session_id)
        self._state = TimerState.EXPIRING
        self.stop()
        try:
            await self._teardown()
        except Exception:
            logger.exception("Teardown failed for session %s", self._session_id)
        self._state = TimerState.TERMINAL
        await dispatch(self._on_expired, self._session_id)
