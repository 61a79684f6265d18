"""Peer session establishment and recovery for one call-page visit.

The manager owns the peer identity, the local media and at most one live
:class:`~client.broker.MediaCall`. Broker and call events arrive through the
``handle_*`` methods; each one checks the current :class:`PeerState` and moves
it along the transition table below, so interleavings of inbound and outbound
events can be exercised by calling the handlers directly.

Both participants dial as soon as the partner's peer id shows up on the
backend. When an inbound offer meets our own outbound attempt that is still
``calling``, the call dialed by the lexicographically smaller peer id wins on
both sides, so exactly one call survives.
"""
from __future__ import annotations

import asyncio
import logging
import random
import secrets
import string
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set

from shared.protocol import (
    DEFAULT_CALL_TIMEOUT_SECONDS,
    DEFAULT_ICE_SERVERS,
    DISCOVERY_POLL_INTERVAL_SECONDS,
    MAX_REGISTRATION_ATTEMPTS,
    BrokerErrorType,
    RemoteMediaState,
)

from .api_client import ApiError, MatchmakingApi
from .broker import (
    BrokerConnection,
    BrokerError,
    CallDirection,
    CallState,
    MediaCall,
    RemoteMedia,
    SignalingBroker,
    dispatch,
)
from .media import LocalMedia, MediaAcquisitionError
from .periodic import PeriodicTask

logger = logging.getLogger(__name__)

STATUS_INITIALIZING = "Initializing..."
STATUS_REGISTERED = "Connected to server"
STATUS_CALL_CONNECTING = "Call connecting..."
STATUS_CONNECTED = "Connected"
STATUS_CALL_ENDED = "Call ended"
STATUS_RECONNECTING = "Disconnected - Attempting to reconnect..."
STATUS_POLL_RETRY = "Connection lost, retrying..."
STATUS_REDIALING = "Looking for partner..."

ERROR_MEDIA = "Failed to access camera/microphone"
ERROR_PARTNER = "Failed to connect with partner"
ERROR_CALL = "Call connection failed"

_PEER_ID_ALPHABET = string.ascii_lowercase + string.digits

MediaFactory = Callable[[], Awaitable[LocalMedia]]
StatusCallback = Callable[[str, Optional[str]], Awaitable[None] | None]
ChangeCallback = Callable[[], Awaitable[None] | None]
RemoteFrameCallback = Callable[[Any], Awaitable[None] | None]


class PeerState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    CALLING = "calling"
    ANSWERING = "answering"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"
    DESTROYED = "destroyed"


_TRANSITIONS: Dict[PeerState, FrozenSet[PeerState]] = {
    PeerState.UNREGISTERED: frozenset({PeerState.REGISTERING, PeerState.DESTROYED}),
    PeerState.REGISTERING: frozenset(
        {PeerState.REGISTERING, PeerState.REGISTERED, PeerState.FAILED, PeerState.DESTROYED}
    ),
    PeerState.REGISTERED: frozenset(
        {PeerState.CALLING, PeerState.ANSWERING, PeerState.FAILED, PeerState.DESTROYED}
    ),
    PeerState.CALLING: frozenset(
        {PeerState.ANSWERING, PeerState.CONNECTED, PeerState.CLOSED, PeerState.DESTROYED}
    ),
    PeerState.ANSWERING: frozenset({PeerState.CONNECTED, PeerState.CLOSED, PeerState.DESTROYED}),
    PeerState.CONNECTED: frozenset({PeerState.CLOSED, PeerState.DESTROYED}),
    PeerState.CLOSED: frozenset({PeerState.CALLING, PeerState.ANSWERING, PeerState.DESTROYED}),
    PeerState.FAILED: frozenset({PeerState.DESTROYED}),
    PeerState.DESTROYED: frozenset(),
}

_ANSWERABLE_STATES = frozenset({PeerState.REGISTERED, PeerState.CALLING, PeerState.CLOSED})


class InvalidStateTransition(RuntimeError):
    """Raised on a move the transition table does not allow."""


def can_transition(current: PeerState, target: PeerState) -> bool:
    return target in _TRANSITIONS[current]


class PeerIdAllocator:
    """Issues ``{session}-{user}-{suffix}`` peer ids, never the same one twice."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or secrets.SystemRandom()
        self._issued: Set[str] = set()

    def _suffix(self) -> str:
        length = self._rng.randint(11, 13)
        return "".join(self._rng.choice(_PEER_ID_ALPHABET) for _ in range(length))

    def allocate(self, session_id: str, user_id: str) -> str:
        while True:
            candidate = f"{session_id}-{user_id}-{self._suffix()}"
            if candidate not in self._issued:
                self._issued.add(candidate)
                return candidate

    def issued(self, peer_id: str) -> bool:
        return peer_id in self._issued


class PeerSessionManager:
    """Drives registration, media, partner discovery and the single live call."""

    def __init__(
        self,
        session_id: str,
        user_id: str,
        broker: SignalingBroker,
        api: MatchmakingApi,
        *,
        acquire_media: MediaFactory,
        allocator: Optional[PeerIdAllocator] = None,
        ice_servers: Optional[List[str]] = None,
        discovery_interval: float = DISCOVERY_POLL_INTERVAL_SECONDS,
        call_timeout: Optional[float] = DEFAULT_CALL_TIMEOUT_SECONDS,
        max_registration_attempts: int = MAX_REGISTRATION_ATTEMPTS,
        on_status: Optional[StatusCallback] = None,
        on_change: Optional[ChangeCallback] = None,
        on_remote_frame: Optional[RemoteFrameCallback] = None,
    ) -> None:
        self._session_id = session_id
        self._user_id = user_id
        self._broker = broker
        self._api = api
        self._acquire_media = acquire_media
        self._allocator = allocator or PeerIdAllocator()
        self._ice_servers = list(ice_servers) if ice_servers is not None else list(DEFAULT_ICE_SERVERS)
        self._discovery_interval = discovery_interval
        self._call_timeout = call_timeout
        self._max_registration_attempts = max(1, max_registration_attempts)
        self._on_status = on_status
        self._on_change = on_change
        self._on_remote_frame = on_remote_frame

        self._state = PeerState.UNREGISTERED
        self._peer_id: Optional[str] = None
        self._registration_attempts = 0
        self._connection: Optional[BrokerConnection] = None
        self._broker_connected = False
        self._media: Optional[LocalMedia] = None
        self._published = False
        self._partner_peer_id: Optional[str] = None
        self._call: Optional[MediaCall] = None
        self._call_timer: Optional[asyncio.TimerHandle] = None
        self._discovery: Optional[PeriodicTask] = None
        self._remote_media = RemoteMediaState()
        self._status = STATUS_INITIALIZING
        self._error: Optional[str] = None
        self._notifications: Set[asyncio.Task[None]] = set()

    @property
    def state(self) -> PeerState:
        return self._state

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def peer_id(self) -> Optional[str]:
        return self._peer_id

    @property
    def partner_peer_id(self) -> Optional[str]:
        return self._partner_peer_id

    @property
    def media(self) -> Optional[LocalMedia]:
        return self._media

    @property
    def current_call(self) -> Optional[MediaCall]:
        return self._call

    @property
    def remote_media(self) -> RemoteMediaState:
        return self._remote_media

    @property
    def status(self) -> str:
        return self._status

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def broker_connected(self) -> bool:
        return self._broker_connected

    @property
    def registration_attempts(self) -> int:
        return self._registration_attempts

    @property
    def destroyed(self) -> bool:
        return self._state is PeerState.DESTROYED

    def snapshot(self) -> Dict[str, object]:
        media = self._media
        return {
            "state": self._state.value,
            "status": self._status,
            "error": self._error,
            "peer_id": self._peer_id,
            "partner_peer_id": self._partner_peer_id,
            "broker_connected": self._broker_connected,
            "in_call": self._call is not None,
            "media": media.to_dict() if media is not None else {"is_muted": False, "is_video_off": False},
            "remote": self._remote_media.to_dict(),
        }

    # -- state and reporting -------------------------------------------------

    def _set_state(self, target: PeerState) -> None:
        current = self._state
        if not can_transition(current, target):
            raise InvalidStateTransition(f"{current.value} -> {target.value}")
        if current is not target:
            logger.debug("Peer session %s: %s -> %s", self._session_id, current.value, target.value)
        self._state = target
        self._notify_change()

    def _report(self, status: Optional[str] = None, *, error: Optional[str] = None, clear_error: bool = False) -> None:
        if status is not None:
            self._status = status
        if error is not None:
            self._error = error
        elif clear_error:
            self._error = None
        if self._on_status is not None:
            self._spawn(dispatch(self._on_status, self._status, self._error))

    def _notify_change(self) -> None:
        if self._on_change is not None:
            self._spawn(dispatch(self._on_change))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)  # type: ignore[arg-type]
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    def _is_stale(self, peer_id: Optional[str]) -> bool:
        return peer_id is not None and peer_id != self._peer_id

    # -- registration --------------------------------------------------------

    async def start(self) -> None:
        if self._state is not PeerState.UNREGISTERED:
            return
        self._report(STATUS_INITIALIZING)
        await self._register()

    async def _register(self) -> None:
        self._set_state(PeerState.REGISTERING)
        self._registration_attempts += 1
        peer_id = self._allocator.allocate(self._session_id, self._user_id)
        self._peer_id = peer_id
        logger.info(
            "Registering peer id %s (attempt %d/%d)",
            peer_id,
            self._registration_attempts,
            self._max_registration_attempts,
        )
        try:
            connection = await self._broker.register(
                peer_id,
                self._ice_servers,
                on_open=partial(self.handle_open, peer_id=peer_id),
                on_error=partial(self.handle_broker_error, peer_id=peer_id),
                on_disconnected=partial(self.handle_disconnected, peer_id=peer_id),
                on_call=partial(self.handle_incoming_call, peer_id=peer_id),
            )
        except BrokerError as exc:
            await self.handle_broker_error(exc, peer_id=peer_id)
            return
        if self.destroyed or self._peer_id != peer_id:
            await connection.destroy()
            return
        self._connection = connection

    async def handle_open(self, *, peer_id: Optional[str] = None) -> None:
        if self._is_stale(peer_id) or self.destroyed:
            return
        self._broker_connected = True
        if self._state is not PeerState.REGISTERING:
            logger.info("Signaling connection re-opened for %s", self._peer_id)
            self._report(STATUS_CONNECTED if self._state is PeerState.CONNECTED else STATUS_REGISTERED)
            return
        logger.info("Peer connection opened: %s", self._peer_id)
        self._set_state(PeerState.REGISTERED)
        self._report(STATUS_REGISTERED)
        await self._prepare_and_discover()

    async def _prepare_and_discover(self) -> None:
        try:
            media = await self._acquire_media()
        except MediaAcquisitionError as exc:
            logger.error("Failed to get local stream: %s", exc)
            if not self.destroyed:
                self._set_state(PeerState.FAILED)
                self._report(error=ERROR_MEDIA)
            return
        if self.destroyed:
            media.stop()
            return
        self._media = media
        self._notify_change()

        peer_id = self._peer_id
        try:
            await self._api.update_peer_id(self._session_id, peer_id)
        except ApiError as exc:
            logger.error("Peer setup failed: %s", exc)
            if not self.destroyed:
                self._set_state(PeerState.FAILED)
                self._report(error=ERROR_PARTNER)
            return
        logger.info("Stored peer id %s for session %s", peer_id, self._session_id)
        if self.destroyed:
            # Teardown ran while the publish was in flight and skipped the clear.
            await self._clear_peer_id()
            return
        self._published = True
        self._start_discovery()

    async def handle_broker_error(self, error: BrokerError, *, peer_id: Optional[str] = None) -> None:
        if self._is_stale(peer_id) or self.destroyed:
            return
        logger.error("Peer error: type=%s message=%s", error.type.value, error)
        if error.type is BrokerErrorType.UNAVAILABLE_ID and self._state is PeerState.REGISTERING:
            if self._registration_attempts < self._max_registration_attempts:
                logger.info("Peer id %s is taken; retrying with a new one", self._peer_id)
                stale = self._connection
                self._connection = None
                if stale is not None:
                    await stale.destroy()
                if not self.destroyed:
                    await self._register()
                return
        self._report(error=f"Connection error: {error.type.value}")
        if self._state is PeerState.REGISTERING:
            self._set_state(PeerState.FAILED)

    async def handle_disconnected(self, *, peer_id: Optional[str] = None) -> None:
        if self._is_stale(peer_id) or self.destroyed:
            return
        logger.warning("Peer disconnected, attempting reconnect")
        self._broker_connected = False
        self._report(STATUS_RECONNECTING)
        connection = self._connection
        if connection is None:
            return
        try:
            await connection.reconnect()
        except BrokerError as exc:
            await self.handle_broker_error(exc, peer_id=self._peer_id)

    # -- partner discovery ---------------------------------------------------

    def _start_discovery(self, *, immediate: bool = True) -> None:
        self._stop_discovery()
        self._discovery = PeriodicTask(
            f"partner-discovery-{self._session_id}",
            self._discovery_interval,
            self._poll_partner,
            run_immediately=immediate,
        )
        self._discovery.start()

    def _stop_discovery(self) -> None:
        discovery = self._discovery
        self._discovery = None
        if discovery is not None:
            discovery.stop()

    async def _poll_partner(self) -> None:
        if self.destroyed or self._discovery is None:
            return
        logger.debug("Checking for partner peer id")
        try:
            status = await self._api.get_status()
        except ApiError as exc:
            logger.warning("Partner lookup failed: %s", exc)
            self._report(STATUS_POLL_RETRY)
            return
        if self.destroyed or self._discovery is None:
            return
        partner = status.partner_peer_id
        if not partner:
            logger.debug("No partner peer id yet, retrying in %.1fs", self._discovery_interval)
            return
        logger.info("Partner peer id found: %s", partner)
        self._stop_discovery()
        self._partner_peer_id = partner
        self.dial(partner)

    def redial(self) -> bool:
        """Look for the partner again after a call ended, reusing local media."""
        if self._state is not PeerState.CLOSED or self._media is None or self._media.stopped:
            return False
        logger.info("Re-dialing partner for session %s", self._session_id)
        self._partner_peer_id = None
        self._report(STATUS_REDIALING, clear_error=True)
        self._start_discovery()
        return True

    # -- call racing ---------------------------------------------------------

    def dial(self, remote_id: str) -> Optional[MediaCall]:
        """Start an outbound call unless a call already exists."""
        if self.destroyed:
            return None
        if self._call is not None:
            logger.info("Already in a call with %s; not dialing %s", self._call.remote_id, remote_id)
            return None
        if self._media is None or self._connection is None:
            logger.warning("Cannot dial %s before registration and media are ready", remote_id)
            return None
        if self._state not in (PeerState.REGISTERED, PeerState.CLOSED):
            logger.warning("Cannot dial %s while %s", remote_id, self._state.value)
            return None
        try:
            call = self._connection.call(remote_id, self._media)
        except BrokerError as exc:
            logger.error("Call initiation failed: %s", exc)
            self._report(error=ERROR_CALL)
            self._partner_peer_id = None
            self._start_discovery(immediate=False)
            return None
        logger.info("Attempting to initiate call to %s", remote_id)
        self._adopt(call, PeerState.CALLING)
        return call

    async def handle_incoming_call(self, call: MediaCall, *, peer_id: Optional[str] = None) -> None:
        if self._is_stale(peer_id) or self.destroyed:
            return
        logger.info("Received incoming call from %s", call.remote_id)
        if self._media is None:
            logger.warning("Local media not ready; ignoring incoming call from %s", call.remote_id)
            call.close()
            return
        current = self._call
        if current is not None:
            if not self._inbound_wins(current, call):
                logger.info("Already in a call, ignoring incoming call from %s", call.remote_id)
                call.close()
                return
            logger.info("Simultaneous dial with %s; answering the inbound call", call.remote_id)
            self._release_call()
        if self._state not in _ANSWERABLE_STATES:
            logger.info("Ignoring incoming call from %s while %s", call.remote_id, self._state.value)
            call.close()
            return
        self._adopt(call, PeerState.ANSWERING)
        call.answer(self._media)

    def _inbound_wins(self, current: MediaCall, incoming: MediaCall) -> bool:
        if self._state is not PeerState.CALLING:
            return False
        if current.direction is not CallDirection.OUTBOUND or current.state is not CallState.CONNECTING:
            return False
        return self._peer_id is not None and incoming.remote_id < self._peer_id

    def _adopt(self, call: MediaCall, state: PeerState) -> None:
        self._set_state(state)
        self._stop_discovery()
        self._call = call
        self._remote_media.reset()
        call.bind(
            on_stream=self.handle_call_stream,
            on_mute=self.handle_remote_mute,
            on_error=self.handle_call_error,
            on_close=self.handle_call_close,
            on_frame=self._on_remote_frame,
        )
        if state is PeerState.CALLING and self._call_timeout:
            loop = asyncio.get_running_loop()
            self._call_timer = loop.call_later(self._call_timeout, self._on_call_timeout, call)
        self._report(STATUS_CALL_CONNECTING, clear_error=True)

    def _on_call_timeout(self, call: MediaCall) -> None:
        self._call_timer = None
        if call is not self._call or self._state is not PeerState.CALLING:
            return
        logger.warning("Outbound call to %s unanswered after %.0fs", call.remote_id, self._call_timeout or 0)
        self._spawn(self.handle_call_error(call, BrokerError(BrokerErrorType.PEER_UNAVAILABLE, "Call timed out")))

    def _cancel_call_timeout(self) -> None:
        timer = self._call_timer
        self._call_timer = None
        if timer is not None:
            timer.cancel()

    def _release_call(self) -> None:
        call = self._call
        self._call = None
        self._cancel_call_timeout()
        self._remote_media.reset()
        if call is not None and call.is_open:
            try:
                call.close()
            except Exception:
                logger.exception("Failed to close call with %s", call.remote_id)

    async def handle_call_stream(self, call: MediaCall, remote: RemoteMedia) -> None:
        if call is not self._call or self.destroyed:
            return
        logger.info("Received remote stream from %s", call.remote_id)
        self._cancel_call_timeout()
        self._remote_media.is_muted = remote.audio_muted
        self._remote_media.is_video_off = remote.video_off
        if self._state is not PeerState.CONNECTED:
            self._set_state(PeerState.CONNECTED)
        self._report(STATUS_CONNECTED, clear_error=True)

    async def handle_remote_mute(self, call: MediaCall, kind: str, muted: bool) -> None:
        if call is not self._call or self.destroyed:
            return
        if kind == "audio":
            self._remote_media.is_muted = muted
        elif kind == "video":
            self._remote_media.is_video_off = muted
        else:
            return
        self._notify_change()

    async def handle_call_error(self, call: MediaCall, error: BrokerError) -> None:
        if call is not self._call or self.destroyed:
            return
        logger.error("Call error with %s: %s", call.remote_id, error)
        self._release_call()
        self._set_state(PeerState.CLOSED)
        self._report(error=ERROR_CALL)

    async def handle_call_close(self, call: MediaCall) -> None:
        if call is not self._call or self.destroyed:
            return
        logger.info("Call with %s closed", call.remote_id)
        self._release_call()
        self._set_state(PeerState.CLOSED)
        self._report(STATUS_CALL_ENDED)

    # -- local controls ------------------------------------------------------

    def toggle_mute(self) -> bool:
        media = self._media
        if media is None or media.stopped:
            return False
        muted = media.toggle_mute()
        self._notify_change()
        return muted

    def toggle_video(self) -> bool:
        media = self._media
        if media is None or media.stopped:
            return False
        video_off = media.toggle_video()
        self._notify_change()
        return video_off

    # -- teardown ------------------------------------------------------------

    async def close(self) -> None:
        if self.destroyed:
            return
        logger.info("Tearing down peer session %s", self._session_id)
        self._set_state(PeerState.DESTROYED)
        self._stop_discovery()
        self._release_call()
        if self._media is not None:
            self._media.stop()
        connection = self._connection
        self._connection = None
        self._broker_connected = False
        if connection is not None:
            try:
                await connection.destroy()
            except Exception:
                logger.exception("Failed to release signaling connection")
        if self._published:
            self._published = False
            await self._clear_peer_id()

    async def _clear_peer_id(self) -> None:
        try:
            await self._api.update_peer_id(self._session_id, None)
        except ApiError as exc:
            logger.error("Failed to remove peer id: %s", exc)
