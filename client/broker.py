"""Signaling broker contract used by the peer session manager.

A broker registers this participant under a peer identifier, relays call
offers between peers and hands back :class:`MediaCall` objects. Anything that
can do that (PeerJS, a custom WebSocket relay, an in-memory loopback for tests)
plugs in behind :class:`SignalingBroker`.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Protocol

from shared.protocol import BrokerErrorType

if TYPE_CHECKING:
    from .media import LocalMedia

logger = logging.getLogger(__name__)


class BrokerError(RuntimeError):
    """Error reported by the signaling broker or by a call it created."""

    def __init__(self, error_type: BrokerErrorType, message: str = "") -> None:
        super().__init__(message or error_type.value)
        self.type = error_type


class CallState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


class CallDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


@dataclass(slots=True)
class RemoteMedia:
    """The partner's stream as first delivered by the broker."""

    audio_muted: bool = False
    video_off: bool = False
    audio: Any = None
    video: Any = None


OpenCallback = Callable[[], Awaitable[None] | None]
ErrorCallback = Callable[[BrokerError], Awaitable[None] | None]
DisconnectedCallback = Callable[[], Awaitable[None] | None]
IncomingCallCallback = Callable[["MediaCall"], Awaitable[None] | None]

StreamCallback = Callable[["MediaCall", RemoteMedia], Awaitable[None] | None]
MuteCallback = Callable[["MediaCall", str, bool], Awaitable[None] | None]
CallErrorCallback = Callable[["MediaCall", BrokerError], Awaitable[None] | None]
CloseCallback = Callable[["MediaCall"], Awaitable[None] | None]
FrameCallback = Callable[[Any], Awaitable[None] | None]


async def dispatch(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Invoke a callback that may or may not be a coroutine, logging failures."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if asyncio.iscoroutine(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Callback %r failed", callback)


class MediaCall:
    """One outbound or inbound media session with a remote peer.

    ``answer()`` and ``close()`` are synchronous: implementations negotiate and
    tear down in background tasks, and report progress through the callbacks
    registered with :meth:`bind`.
    """

    def __init__(self, remote_id: str, connection_id: str, direction: CallDirection) -> None:
        self.remote_id = remote_id
        self.connection_id = connection_id
        self.direction = direction
        self.state = CallState.CONNECTING
        self._on_stream: Optional[StreamCallback] = None
        self._on_mute: Optional[MuteCallback] = None
        self._on_error: Optional[CallErrorCallback] = None
        self._on_close: Optional[CloseCallback] = None
        self._on_frame: Optional[FrameCallback] = None

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(remote_id={self.remote_id!r}, "
            f"connection_id={self.connection_id!r}, direction={self.direction.value}, "
            f"state={self.state.value})"
        )

    @property
    def is_open(self) -> bool:
        return self.state in (CallState.CONNECTING, CallState.CONNECTED)

    def bind(
        self,
        *,
        on_stream: Optional[StreamCallback] = None,
        on_mute: Optional[MuteCallback] = None,
        on_error: Optional[CallErrorCallback] = None,
        on_close: Optional[CloseCallback] = None,
        on_frame: Optional[FrameCallback] = None,
    ) -> None:
        self._on_stream = on_stream
        self._on_mute = on_mute
        self._on_error = on_error
        self._on_close = on_close
        self._on_frame = on_frame

    def answer(self, media: "LocalMedia") -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    async def _emit_stream(self, remote: RemoteMedia) -> None:
        if not self.is_open:
            return
        self.state = CallState.CONNECTED
        await dispatch(self._on_stream, self, remote)

    async def _emit_mute(self, kind: str, muted: bool) -> None:
        if not self.is_open:
            return
        await dispatch(self._on_mute, self, kind, muted)

    async def _emit_frame(self, frame: Any) -> None:
        if self.state is not CallState.CONNECTED:
            return
        await dispatch(self._on_frame, frame)

    async def _emit_error(self, error: BrokerError) -> None:
        if not self.is_open:
            return
        self.state = CallState.FAILED
        await dispatch(self._on_error, self, error)

    async def _emit_close(self) -> None:
        if self.state is CallState.CLOSED:
            return
        self.state = CallState.CLOSED
        await dispatch(self._on_close, self)


class BrokerConnection(Protocol):
    """A registered signaling endpoint."""

    peer_id: str

    def call(self, remote_id: str, media: "LocalMedia") -> MediaCall:
        ...

    async def reconnect(self) -> None:
        ...

    async def destroy(self) -> None:
        ...


class SignalingBroker(Protocol):
    async def register(
        self,
        peer_id: str,
        ice_servers: List[str],
        *,
        on_open: OpenCallback,
        on_error: ErrorCallback,
        on_disconnected: DisconnectedCallback,
        on_call: IncomingCallCallback,
    ) -> BrokerConnection:
        ...
