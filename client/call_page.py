from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional

from shared.config import ClientConfig

from .api_client import MatchmakingApi
from .broker import SignalingBroker, dispatch
from .peer_session import MediaFactory, PeerIdAllocator, PeerSessionManager, RemoteFrameCallback
from .session_timer import SessionTimer

logger = logging.getLogger(__name__)

NavigateCallback = Callable[[str], Awaitable[None] | None]
PublishCallback = Callable[[Dict[str, object]], Awaitable[None] | None]


class CallPage:
    """One visit to ``/call/{session_id}``: a peer session plus its countdown."""

    def __init__(
        self,
        session_id: str,
        config: ClientConfig,
        api: MatchmakingApi,
        broker: SignalingBroker,
        *,
        acquire_media: MediaFactory,
        navigate: NavigateCallback,
        publish: Optional[PublishCallback] = None,
        on_remote_frame: Optional[RemoteFrameCallback] = None,
        allocator: Optional[PeerIdAllocator] = None,
    ) -> None:
        self.session_id = session_id
        self._navigate = navigate
        self._publish = publish
        self._timer_error: Optional[str] = None
        self._closed = False
        self.manager = PeerSessionManager(
            session_id,
            config.user_id,
            broker,
            api,
            acquire_media=acquire_media,
            allocator=allocator,
            ice_servers=config.ice_servers,
            discovery_interval=config.discovery_interval,
            call_timeout=config.call_timeout,
            on_status=self._on_status,
            on_change=self._publish_call_state,
            on_remote_frame=on_remote_frame,
        )
        self.timer = SessionTimer(
            session_id,
            api,
            teardown=self.manager.close,
            on_expired=self._on_expired,
            on_redirect=self._on_redirect,
            on_tick=self._on_tick,
            on_error=self._on_timer_error,
            resync_interval=config.session_poll_interval,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        logger.info("Opening call page for session %s", self.session_id)
        await self.manager.start()
        if self._closed:
            return
        await self.timer.start()
        if self._closed:
            self.timer.stop()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.timer.stop()
        await self.manager.close()
        logger.info("Closed call page for session %s", self.session_id)

    def toggle_mute(self) -> bool:
        return self.manager.toggle_mute()

    def toggle_video(self) -> bool:
        return self.manager.toggle_video()

    def retry(self) -> bool:
        return self.manager.redial()

    def snapshot(self) -> Dict[str, object]:
        return {"call": self._call_state(), "timer": self.timer.to_dict()}

    def _call_state(self) -> Dict[str, object]:
        state = self.manager.snapshot()
        state["session_id"] = self.session_id
        if self._timer_error and not state.get("error"):
            state["error"] = self._timer_error
        return state

    async def _on_status(self, status: str, error: Optional[str]) -> None:
        await self._publish_call_state()

    async def _publish_call_state(self) -> None:
        if self._publish is None:
            return
        await dispatch(self._publish, {"type": "call_state", "payload": self._call_state()})

    async def _on_tick(self, time_left: int) -> None:
        if self._publish is None:
            return
        await dispatch(self._publish, {"type": "timer", "payload": self.timer.to_dict()})

    async def _on_timer_error(self, message: str) -> None:
        self._timer_error = message
        await self._publish_call_state()

    async def _on_expired(self, session_id: str) -> None:
        await dispatch(self._navigate, f"/chat/{session_id}")

    async def _on_redirect(self) -> None:
        await dispatch(self._navigate, "/")
