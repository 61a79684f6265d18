from __future__ import annotations

import asyncio
import base64
import logging
import time
import webbrowser
from functools import partial
from typing import Dict, List, Optional, Set, Tuple

import cv2
import numpy as np
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from shared.config import ClientConfig

from .api_client import MatchmakingApi
from .broker import SignalingBroker
from .call_page import CallPage
from .media import acquire_local_media
from .peer_session import MediaFactory
from .peerjs_broker import PeerJSBroker
from .status_poller import StatusPoller

logger = logging.getLogger(__name__)

ROUTE_LANDING = "landing"
ROUTE_CALL = "call"
ROUTE_CHAT = "chat"
VIDEO_PUSH_FPS = 10.0
JPEG_QUALITY = 70


def parse_route(path: str) -> Tuple[str, Optional[str]]:
    """Split a client route into ``(kind, session_id)``.

    ``/`` is the landing page, ``/call/{id}`` and ``/chat/{id}`` carry a
    session identifier. Anything else raises ``ValueError``.
    """
    parts = [part for part in str(path).strip().split("/") if part]
    if not parts:
        return ROUTE_LANDING, None
    if len(parts) == 2 and parts[0] in (ROUTE_CALL, ROUTE_CHAT):
        return parts[0], parts[1]
    raise ValueError(f"Unknown route: {path}")


def encode_jpeg(image: np.ndarray, quality: int = JPEG_QUALITY) -> Optional[str]:
    ok, buffer = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        return None
    return base64.b64encode(buffer.tobytes()).decode("ascii")


class WebSocketHub:
    """Tracks active UI WebSocket connections."""

    def __init__(self) -> None:
        self._connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return bool(self._connections)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.append(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            if ws in self._connections:
                self._connections.remove(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        async with self._lock:
            for ws in list(self._connections):
                try:
                    if ws.application_state == WebSocketState.CONNECTED:
                        await ws.send_json(message)
                except Exception:
                    logger.exception("Failed to send %s to UI socket", message.get("type"))
                    self._connections.remove(ws)


class ClientApp:
    """Local UI server and page router for the matchmaking client.

    Exactly one page is live at a time: the landing page (a
    :class:`StatusPoller`), a call page (a :class:`CallPage`) or the chat
    placeholder. Leaving a page tears it down before the next one starts.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        api: Optional[MatchmakingApi] = None,
        broker: Optional[SignalingBroker] = None,
        acquire_media: Optional[MediaFactory] = None,
    ) -> None:
        self._config = config
        self._api = api or MatchmakingApi(config.api_url, config.auth_token)
        self._broker = broker or PeerJSBroker(
            config.broker_host,
            config.broker_port,
            config.broker_path,
            config.broker_key,
            secure=config.broker_secure,
        )
        self._acquire_media = acquire_media or partial(acquire_local_media, config.camera_index)
        self._ws_hub = WebSocketHub()
        self._route = "/"
        self._poller: Optional[StatusPoller] = None
        self._call_page: Optional[CallPage] = None
        self._chat_session: Optional[str] = None
        self._nav_lock = asyncio.Lock()
        self._nav_tasks: Set[asyncio.Task[None]] = set()
        self._last_frame_at = 0.0
        self._app = FastAPI()
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def route(self) -> str:
        return self._route

    @property
    def call_page(self) -> Optional[CallPage]:
        return self._call_page

    @property
    def poller(self) -> Optional[StatusPoller]:
        return self._poller

    def _configure_routes(self) -> None:
        @self._app.get("/api/state")
        async def state() -> Dict[str, object]:
            return self._build_snapshot()

        @self._app.post("/api/matchmaking/join")
        async def join() -> Dict[str, object]:
            poller = self._require_poller()
            await poller.start_matching()
            return poller.snapshot()

        @self._app.post("/api/matchmaking/cancel")
        async def cancel() -> Dict[str, object]:
            poller = self._require_poller()
            await poller.cancel_search()
            return poller.snapshot()

        @self._app.post("/api/call/mute")
        async def toggle_mute() -> Dict[str, object]:
            page = self._require_call_page()
            return {"is_muted": page.toggle_mute()}

        @self._app.post("/api/call/video")
        async def toggle_video() -> Dict[str, object]:
            page = self._require_call_page()
            return {"is_video_off": page.toggle_video()}

        @self._app.post("/api/call/retry")
        async def retry() -> Dict[str, object]:
            page = self._require_call_page()
            return {"retrying": page.retry()}

        @self._app.websocket("/ws/control")
        async def ws_control(websocket: WebSocket) -> None:
            await self._ws_hub.connect(websocket)
            try:
                await websocket.send_json({"type": "route", "payload": {"path": self._route}})
                await websocket.send_json({"type": "state_snapshot", "payload": self._build_snapshot()})
                while True:
                    data = await websocket.receive_json()
                    if isinstance(data, dict):
                        await self._handle_ui_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                await self._ws_hub.disconnect(websocket)

    def _require_poller(self) -> StatusPoller:
        if self._poller is None:
            raise HTTPException(status_code=412, detail="Not on the landing page")
        return self._poller

    def _require_call_page(self) -> CallPage:
        if self._call_page is None:
            raise HTTPException(status_code=412, detail="No active call")
        return self._call_page

    def _build_snapshot(self) -> Dict[str, object]:
        return {
            "route": self._route,
            "user_id": self._config.user_id,
            "landing": self._poller.snapshot() if self._poller else None,
            "call": self._call_page.snapshot() if self._call_page else None,
            "chat": {"session_id": self._chat_session} if self._chat_session else None,
        }

    async def navigate(self, path: str) -> None:
        """Leave the current page and enter ``path``."""
        kind, session_id = parse_route(path)
        page: Optional[CallPage] = None
        async with self._nav_lock:
            target = "/" if kind == ROUTE_LANDING else f"/{kind}/{session_id}"
            if target == self._route and self._page_active():
                return
            await self._leave_current()
            self._route = target
            logger.info("Navigating to %s", target)
            if kind == ROUTE_LANDING:
                self._poller = StatusPoller(
                    self._api,
                    navigate=self.request_navigation,
                    interval=self._config.landing_poll_interval,
                    on_change=self._publish_landing,
                )
                self._poller.open()
            elif kind == ROUTE_CALL:
                page = CallPage(
                    session_id or "",
                    self._config,
                    self._api,
                    self._broker,
                    acquire_media=self._acquire_media,
                    navigate=self.request_navigation,
                    publish=self._ws_hub.broadcast,
                    on_remote_frame=self._on_remote_frame,
                )
                self._call_page = page
            else:
                self._chat_session = session_id
            await self._ws_hub.broadcast({"type": "route", "payload": {"path": target}})
        if page is not None:
            try:
                await page.open()
            except Exception:
                logger.exception("Failed to open call page for session %s", page.session_id)

    def request_navigation(self, path: str) -> None:
        """Schedule :meth:`navigate` from inside a page's own callbacks."""
        task = asyncio.create_task(self._navigate_logged(path))
        self._nav_tasks.add(task)
        task.add_done_callback(self._nav_tasks.discard)

    async def _navigate_logged(self, path: str) -> None:
        try:
            await self.navigate(path)
        except ValueError as exc:
            logger.warning("Ignoring navigation: %s", exc)
        except Exception:
            logger.exception("Navigation to %s failed", path)

    def _page_active(self) -> bool:
        return self._poller is not None or self._call_page is not None or self._chat_session is not None

    async def _leave_current(self) -> None:
        poller = self._poller
        self._poller = None
        if poller is not None:
            poller.close()
        page = self._call_page
        self._call_page = None
        if page is not None:
            await page.close()
        self._chat_session = None

    async def _publish_landing(self) -> None:
        poller = self._poller
        if poller is None:
            return
        await self._ws_hub.broadcast({"type": "session_status", "payload": poller.snapshot()})

    async def _on_remote_frame(self, image: np.ndarray) -> None:
        page = self._call_page
        if page is None or not self._ws_hub.active:
            return
        now = time.monotonic()
        if now - self._last_frame_at < 1.0 / VIDEO_PUSH_FPS:
            return
        self._last_frame_at = now
        frame_b64 = await asyncio.to_thread(encode_jpeg, image)
        if frame_b64 is None:
            return
        await self._ws_hub.broadcast(
            {
                "type": "video_frame",
                "payload": {
                    "session_id": page.session_id,
                    "frame": frame_b64,
                },
            }
        )

    async def _handle_ui_message(self, data: Dict[str, object]) -> None:
        """Handle messages coming from the web UI via WebSocket."""

        kind = data.get("type")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            payload = {}
        page = self._call_page
        poller = self._poller
        if kind == "toggle_mute":
            if page is not None:
                page.toggle_mute()
        elif kind == "toggle_video":
            if page is not None:
                page.toggle_video()
        elif kind == "retry_call":
            if page is not None:
                page.retry()
        elif kind == "join":
            if poller is not None:
                await poller.start_matching()
        elif kind == "cancel":
            if poller is not None:
                await poller.cancel_search()
        elif kind == "navigate":
            path = payload.get("path")
            if isinstance(path, str):
                self.request_navigation(path)
        else:
            logger.debug("Ignoring UI message %s", kind)

    async def shutdown(self) -> None:
        async with self._nav_lock:
            await self._leave_current()
        for task in list(self._nav_tasks):
            task.cancel()
        await self._api.close()

    async def run(self, host: str = "127.0.0.1", port: int = 8100, *, open_browser: bool = True) -> None:
        import uvicorn

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        url = f"http://{host}:{port}" if host != "0.0.0.0" else f"http://127.0.0.1:{port}"
        if open_browser:
            webbrowser.open_new_tab(url)

        await self.navigate("/")
        try:
            await server.serve()
        finally:
            await self.shutdown()
