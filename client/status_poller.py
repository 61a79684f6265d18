from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from shared.protocol import (
    LANDING_POLL_INTERVAL_SECONDS,
    MIN_QUEUE_FOR_MATCH,
    MatchmakingStatus,
    MatchState,
)

from .api_client import ApiError, MatchmakingApi
from .broker import dispatch
from .periodic import PeriodicTask

logger = logging.getLogger(__name__)

STATUS_CHECKING = "Checking status..."
STATUS_CONNECTED = "Connected"
STATUS_SESSION_FOUND = "Active video call found, redirecting..."
STATUS_CHAT_FOUND = "Active chat found, redirecting..."
STATUS_MATCHING = "Attempting to create match..."
STATUS_MATCH_FOUND = "Match found! Redirecting..."
STATUS_MATCH_FAILED = "Match creation failed, retrying..."
STATUS_CONNECTION_LOST = "Connection lost, retrying..."

ERROR_SERVER = "Failed to connect to server"
ERROR_JOIN = "Failed to join matchmaking"
ERROR_CANCEL = "Failed to cancel matchmaking"

NavigateCallback = Callable[[str], Awaitable[None] | None]
ChangeCallback = Callable[[], Awaitable[None] | None]


def format_time(ms: int) -> str:
    seconds = max(0, int(ms)) // 1000
    return f"{seconds // 60}:{seconds % 60:02d}"


def format_elapsed(seconds: float) -> str:
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s ago"
    return f"{seconds // 60}m {seconds % 60}s ago"


class StatusPoller:
    """Landing-page matchmaking status loop.

    Polls the backend on a fixed interval and redirects to the call or chat
    page once the backend reports an active session. While queued with enough
    people waiting it asks the backend to form a match.
    """

    def __init__(
        self,
        api: MatchmakingApi,
        *,
        navigate: NavigateCallback,
        interval: float = LANDING_POLL_INTERVAL_SECONDS,
        on_change: Optional[ChangeCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._api = api
        self._navigate = navigate
        self._on_change = on_change
        self._clock = clock
        self._task = PeriodicTask("landing-status-poll", interval, self.check_status, run_immediately=True)
        self._status = MatchmakingStatus(status=MatchState.IDLE)
        self._connection_status = ""
        self._error: Optional[str] = None
        self._is_searching = False
        self._redirecting = False
        self._last_update = clock()

    @property
    def status(self) -> MatchmakingStatus:
        return self._status

    @property
    def connection_status(self) -> str:
        return self._connection_status

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_searching(self) -> bool:
        return self._is_searching

    @property
    def redirecting(self) -> bool:
        return self._redirecting

    def open(self) -> None:
        self._task.start()

    def close(self) -> None:
        self._task.stop()
        self._redirecting = False

    async def check_status(self) -> None:
        if self._redirecting:
            return
        logger.debug("Checking matchmaking status...")
        self._connection_status = STATUS_CHECKING
        try:
            status = await self._api.get_status()
        except ApiError as exc:
            logger.error("Status check failed: %s", exc)
            self._connection_status = STATUS_CONNECTION_LOST
            self._error = ERROR_SERVER
            await self._changed()
            return
        if self._redirecting:
            return

        logger.debug("Status received: %s", status.to_dict())
        self._status = status
        self._last_update = self._clock()
        self._connection_status = STATUS_CONNECTED

        if status.status is MatchState.IN_SESSION and status.session_id:
            await self._redirect(f"/call/{status.session_id}", STATUS_SESSION_FOUND)
            return
        if status.status is MatchState.IN_CHAT and status.session_id:
            await self._redirect(f"/chat/{status.session_id}", STATUS_CHAT_FOUND)
            return
        if status.status is MatchState.QUEUED and (status.total_in_queue or 0) >= MIN_QUEUE_FOR_MATCH:
            if await self._try_match():
                return
        await self._changed()

    async def _try_match(self) -> bool:
        self._connection_status = STATUS_MATCHING
        try:
            result = await self._api.create_match()
        except ApiError as exc:
            logger.error("Match creation failed: %s", exc)
            self._connection_status = STATUS_MATCH_FAILED
            return False
        session_id = result.get("sessionId")
        if not session_id:
            logger.debug("No match formed yet: %s", result)
            return False
        await self._redirect(f"/call/{session_id}", STATUS_MATCH_FOUND)
        return True

    async def _redirect(self, path: str, message: str) -> None:
        self._redirecting = True
        self._connection_status = message
        self._task.stop()
        logger.info("Redirecting to %s", path)
        await self._changed()
        await dispatch(self._navigate, path)

    async def start_matching(self) -> None:
        logger.info("Starting matchmaking process...")
        self._error = None
        self._is_searching = True
        try:
            response = await self._api.join()
        except ApiError as exc:
            logger.error("Failed to join matchmaking: %s", exc)
            self._error = ERROR_JOIN
            self._is_searching = False
        else:
            if response.get("error"):
                logger.error("Join matchmaking error: %s", response["error"])
                self._error = str(response["error"])
                self._is_searching = False
        await self._changed()

    async def cancel_search(self) -> None:
        self._error = None
        try:
            await self._api.cancel()
        except ApiError as exc:
            logger.error("Failed to cancel matchmaking: %s", exc)
            self._error = ERROR_CANCEL
        else:
            self._is_searching = False
        await self._changed()

    def time_since_update(self) -> str:
        return format_elapsed(self._clock() - self._last_update)

    def snapshot(self) -> Dict[str, object]:
        status = self._status
        return {
            "status": status.status.value,
            "session_id": status.session_id,
            "queue_position": status.queue_position,
            "total_in_queue": status.total_in_queue,
            "cooldown_end": status.cooldown_end,
            "connection_status": self._connection_status,
            "error": self._error,
            "is_searching": self._is_searching,
            "redirecting": self._redirecting,
            "last_updated": self.time_since_update(),
        }

    async def _changed(self) -> None:
        await dispatch(self._on_change)
