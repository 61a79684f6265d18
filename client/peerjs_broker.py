"""PeerJS-server compatible signaling broker.

Speaks the JSON envelope protocol of a PeerJS server over a WebSocket
(``OPEN``, ``ID-TAKEN``, ``OFFER``, ``ANSWER``, ``CANDIDATE``, ``LEAVE``...)
and carries the media itself over aiortc peer connections, so this client can
call browser peers that use the PeerJS library.
"""
from __future__ import annotations

import asyncio
import json
import logging
import secrets
import string
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import websockets
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.protocol import (
    BROKER_HEARTBEAT_INTERVAL_SECONDS,
    DEFAULT_BROKER_HOST,
    DEFAULT_BROKER_KEY,
    DEFAULT_BROKER_PATH,
    DEFAULT_BROKER_PORT,
    BrokerErrorType,
    BrokerMessageType,
)

from .broker import (
    BrokerError,
    CallDirection,
    DisconnectedCallback,
    ErrorCallback,
    IncomingCallCallback,
    MediaCall,
    OpenCallback,
    RemoteMedia,
    dispatch,
)
from .media import LocalMedia, RemoteTrackMonitor
from .periodic import PeriodicTask

logger = logging.getLogger(__name__)

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits
CONNECT_TIMEOUT_SECONDS = 10.0


def random_token(length: int = 10) -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def build_broker_url(
    host: str,
    port: int,
    path: str,
    key: str,
    peer_id: str,
    token: str,
    *,
    secure: bool = True,
) -> str:
    if not path.startswith("/"):
        path = "/" + path
    if not path.endswith("/"):
        path += "/"
    scheme = "wss" if secure else "ws"
    query = urlencode({"key": key, "id": peer_id, "token": token})
    return f"{scheme}://{host}:{port}{path}peerjs?{query}"


def encode_message(
    message_type: BrokerMessageType,
    payload: Optional[Dict[str, Any]] = None,
    *,
    dst: Optional[str] = None,
) -> str:
    envelope: Dict[str, Any] = {"type": message_type.value}
    if payload is not None:
        envelope["payload"] = payload
    if dst is not None:
        envelope["dst"] = dst
    return json.dumps(envelope, separators=(",", ":"))


def decode_message(raw: str | bytes) -> Optional[Dict[str, Any]]:
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        return None
    return message


def _session_description(payload: Dict[str, Any], default_type: str) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=str(payload.get("sdp", "")), type=str(payload.get("type") or default_type))


class PeerJSBroker:
    """Factory for :class:`PeerJSConnection` endpoints on one PeerJS server."""

    def __init__(
        self,
        host: str = DEFAULT_BROKER_HOST,
        port: int = DEFAULT_BROKER_PORT,
        path: str = DEFAULT_BROKER_PATH,
        key: str = DEFAULT_BROKER_KEY,
        *,
        secure: bool = True,
        heartbeat_interval: float = BROKER_HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self.host = host
        self.port = port
        self.path = path
        self.key = key
        self.secure = secure
        self.heartbeat_interval = heartbeat_interval

    async def register(
        self,
        peer_id: str,
        ice_servers: List[str],
        *,
        on_open: OpenCallback,
        on_error: ErrorCallback,
        on_disconnected: DisconnectedCallback,
        on_call: IncomingCallCallback,
    ) -> "PeerJSConnection":
        if not ice_servers:
            raise ValueError("At least one STUN server is required")
        connection = PeerJSConnection(
            self,
            peer_id,
            ice_servers,
            on_open=on_open,
            on_error=on_error,
            on_disconnected=on_disconnected,
            on_call=on_call,
        )
        await connection.connect()
        return connection


class PeerJSConnection:
    """One registered peer id on a PeerJS server."""

    def __init__(
        self,
        broker: PeerJSBroker,
        peer_id: str,
        ice_servers: List[str],
        *,
        on_open: OpenCallback,
        on_error: ErrorCallback,
        on_disconnected: DisconnectedCallback,
        on_call: IncomingCallCallback,
    ) -> None:
        self.peer_id = peer_id
        self.ice_servers = list(ice_servers)
        self._broker = broker
        self._token = random_token()
        self._on_open = on_open
        self._on_error = on_error
        self._on_disconnected = on_disconnected
        self._on_call = on_call
        self._ws: Optional[Any] = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._heartbeat = PeriodicTask(
            f"broker-heartbeat-{peer_id}",
            broker.heartbeat_interval,
            self._send_heartbeat,
        )
        self._calls: Dict[str, PeerJSMediaCall] = {}
        self._open = False
        self._destroyed = False

    @property
    def url(self) -> str:
        broker = self._broker
        return build_broker_url(
            broker.host,
            broker.port,
            broker.path,
            broker.key,
            self.peer_id,
            self._token,
            secure=broker.secure,
        )

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])

    async def connect(self) -> None:
        logger.info("Connecting to signaling broker %s:%s as %s", self._broker.host, self._broker.port, self.peer_id)
        try:
            ws = await asyncio.wait_for(websockets.connect(self.url), timeout=CONNECT_TIMEOUT_SECONDS)
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            logger.warning("Unable to reach signaling broker: %s", exc)
            await dispatch(self._on_error, BrokerError(BrokerErrorType.NETWORK, f"Lost connection to server: {exc}"))
            return
        if self._destroyed:
            await ws.close()
            return
        self._ws = ws
        self._recv_task = asyncio.create_task(self._recv_loop(ws), name=f"broker-recv-{self.peer_id}")
        self._heartbeat.start()

    async def reconnect(self) -> None:
        if self._destroyed:
            return
        if self._ws is not None:
            return
        logger.info("Reconnecting to signaling broker as %s", self.peer_id)
        await self.connect()

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._open = False
        self._heartbeat.stop()
        calls = list(self._calls.values())
        self._calls.clear()
        for call in calls:
            call.close()
        for call in calls:
            await call.wait_closed()
        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("Error while closing broker socket", exc_info=True)
        task = self._recv_task
        self._recv_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.info("Signaling connection %s destroyed", self.peer_id)

    def call(self, remote_id: str, media: LocalMedia) -> "PeerJSMediaCall":
        if self._destroyed:
            raise BrokerError(BrokerErrorType.NETWORK, "Cannot call a peer from a destroyed connection")
        call = PeerJSMediaCall(self, remote_id, f"mc_{random_token()}", CallDirection.OUTBOUND)
        self._calls[call.connection_id] = call
        call.start_offer(media)
        return call

    async def send(self, message: str) -> None:
        ws = self._ws
        if ws is None:
            logger.debug("Dropping broker message while disconnected: %s", message[:80])
            return
        try:
            await ws.send(message)
        except ConnectionClosed:
            logger.warning("Broker socket closed while sending")

    def forget(self, call: "PeerJSMediaCall") -> None:
        if self._calls.get(call.connection_id) is call:
            del self._calls[call.connection_id]

    async def _send_heartbeat(self) -> None:
        await self.send(encode_message(BrokerMessageType.HEARTBEAT))

    async def _recv_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                message = decode_message(raw)
                if message is None:
                    logger.debug("Ignoring malformed broker message")
                    continue
                await self._handle_message(message)
        except ConnectionClosed as exc:
            logger.info("Signaling broker closed the connection: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error while receiving from signaling broker")
        finally:
            self._heartbeat.stop()
            self._open = False
            if self._ws is ws:
                self._ws = None
        if not self._destroyed:
            await dispatch(self._on_disconnected)

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        kind = message["type"]
        payload = message.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        src = message.get("src")
        if kind == BrokerMessageType.OPEN.value:
            self._open = True
            await dispatch(self._on_open)
        elif kind == BrokerMessageType.ID_TAKEN.value:
            await self._abort(BrokerErrorType.UNAVAILABLE_ID, f'ID "{self.peer_id}" is taken')
        elif kind == BrokerMessageType.INVALID_KEY.value:
            await self._abort(BrokerErrorType.INVALID_KEY, f'API KEY "{self._broker.key}" is invalid')
        elif kind == BrokerMessageType.ERROR.value:
            detail = payload.get("msg")
            await dispatch(self._on_error, BrokerError(BrokerErrorType.SERVER_ERROR, str(detail or "Server error")))
        elif kind == BrokerMessageType.OFFER.value:
            await self._handle_offer(src, payload)
        elif kind == BrokerMessageType.ANSWER.value:
            call = self._calls.get(payload.get("connectionId", ""))
            if call is not None:
                await call.handle_answer(payload.get("sdp") or {})
        elif kind == BrokerMessageType.CANDIDATE.value:
            call = self._calls.get(payload.get("connectionId", ""))
            if call is not None:
                await call.handle_candidate(payload.get("candidate") or {})
        elif kind == BrokerMessageType.LEAVE.value:
            for call in self._calls_with(src):
                logger.info("Peer %s left; closing call %s", src, call.connection_id)
                call.close()
        elif kind == BrokerMessageType.EXPIRE.value:
            for call in self._calls_with(src):
                await call._emit_error(BrokerError(BrokerErrorType.PEER_UNAVAILABLE, f"Could not connect to peer {src}"))
                call.close()
        elif kind == BrokerMessageType.HEARTBEAT.value:
            pass
        else:
            logger.debug("Unhandled broker message %s", kind)

    async def _handle_offer(self, src: Optional[str], payload: Dict[str, Any]) -> None:
        if not src:
            return
        if payload.get("type") != "media":
            logger.info("Ignoring %s connection offer from %s", payload.get("type"), src)
            return
        connection_id = str(payload.get("connectionId") or f"mc_{random_token()}")
        if connection_id in self._calls:
            logger.debug("Duplicate offer %s from %s", connection_id, src)
            return
        call = PeerJSMediaCall(
            self,
            src,
            connection_id,
            CallDirection.INBOUND,
            offer=payload.get("sdp") or {},
        )
        self._calls[connection_id] = call
        await dispatch(self._on_call, call)

    async def _abort(self, error_type: BrokerErrorType, message: str) -> None:
        logger.warning("Signaling broker rejected %s: %s", self.peer_id, message)
        await self.destroy()
        await dispatch(self._on_error, BrokerError(error_type, message))

    def _calls_with(self, remote_id: Optional[str]) -> List["PeerJSMediaCall"]:
        return [call for call in self._calls.values() if call.remote_id == remote_id]


class PeerJSMediaCall(MediaCall):
    """A media connection negotiated through a PeerJS server."""

    def __init__(
        self,
        connection: PeerJSConnection,
        remote_id: str,
        connection_id: str,
        direction: CallDirection,
        *,
        offer: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(remote_id, connection_id, direction)
        self._connection = connection
        self._offer = offer
        self._pc: Optional[RTCPeerConnection] = None
        self._negotiation: Optional[asyncio.Task[None]] = None
        self._close_task: Optional[asyncio.Task[None]] = None
        self._stream_task: Optional[asyncio.Task[None]] = None
        self._pending_candidates: List[Dict[str, Any]] = []
        self._monitors: List[RemoteTrackMonitor] = []
        self._remote = RemoteMedia()
        self._stream_emitted = False

    def start_offer(self, media: LocalMedia) -> None:
        self._negotiation = asyncio.create_task(self._negotiate(self._make_offer, media))

    def answer(self, media: LocalMedia) -> None:
        if self.direction is not CallDirection.INBOUND or self._negotiation is not None:
            logger.warning("Call %s cannot be answered", self.connection_id)
            return
        self._negotiation = asyncio.create_task(self._negotiate(self._make_answer, media))

    def close(self) -> None:
        if self._close_task is not None:
            return
        self._close_task = asyncio.create_task(self._shutdown())

    async def wait_closed(self) -> None:
        task = self._close_task
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except Exception:
            logger.debug("Call %s shutdown failed", self.connection_id, exc_info=True)

    async def handle_answer(self, sdp: Dict[str, Any]) -> None:
        pc = self._pc
        if pc is None or not self.is_open:
            return
        try:
            await pc.setRemoteDescription(_session_description(sdp, "answer"))
            await self._flush_candidates()
        except Exception as exc:
            logger.exception("Failed to apply answer from %s", self.remote_id)
            await self._emit_error(BrokerError(BrokerErrorType.WEBRTC, str(exc)))
            self.close()

    async def handle_candidate(self, candidate: Dict[str, Any]) -> None:
        pc = self._pc
        if pc is None or pc.remoteDescription is None:
            self._pending_candidates.append(candidate)
            return
        await self._add_candidate(pc, candidate)

    def _create_peer_connection(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._connection.rtc_configuration())

        @pc.on("track")
        def on_track(track) -> None:
            self._on_remote_track(track)

        @pc.on("connectionstatechange")
        async def on_state_change() -> None:
            logger.info("Call %s with %s: connection state %s", self.connection_id, self.remote_id, pc.connectionState)
            if pc.connectionState == "failed":
                await self._emit_error(BrokerError(BrokerErrorType.WEBRTC, "Negotiation of connection failed"))
                self.close()

        return pc

    async def _negotiate(self, step, media: LocalMedia) -> None:
        try:
            await step(media)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Negotiation with %s failed", self.remote_id)
            await self._emit_error(BrokerError(BrokerErrorType.WEBRTC, str(exc)))
            self.close()

    async def _make_offer(self, media: LocalMedia) -> None:
        pc = self._pc = self._create_peer_connection()
        for track in media.tracks:
            pc.addTrack(track)
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        description = pc.localDescription
        await self._connection.send(
            encode_message(
                BrokerMessageType.OFFER,
                {
                    "sdp": {"type": description.type, "sdp": description.sdp},
                    "type": "media",
                    "connectionId": self.connection_id,
                    "metadata": None,
                },
                dst=self.remote_id,
            )
        )
        logger.info("Sent offer %s to %s", self.connection_id, self.remote_id)

    async def _make_answer(self, media: LocalMedia) -> None:
        pc = self._pc = self._create_peer_connection()
        await pc.setRemoteDescription(_session_description(self._offer or {}, "offer"))
        for track in media.tracks:
            pc.addTrack(track)
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        await self._flush_candidates()
        description = pc.localDescription
        await self._connection.send(
            encode_message(
                BrokerMessageType.ANSWER,
                {
                    "sdp": {"type": description.type, "sdp": description.sdp},
                    "type": "media",
                    "connectionId": self.connection_id,
                },
                dst=self.remote_id,
            )
        )
        logger.info("Answered call %s from %s", self.connection_id, self.remote_id)

    async def _flush_candidates(self) -> None:
        pc = self._pc
        if pc is None:
            return
        pending = self._pending_candidates
        self._pending_candidates = []
        for candidate in pending:
            await self._add_candidate(pc, candidate)

    async def _add_candidate(self, pc: RTCPeerConnection, payload: Dict[str, Any]) -> None:
        raw = payload.get("candidate")
        if not raw:
            return
        if raw.startswith("candidate:"):
            raw = raw[len("candidate:"):]
        try:
            candidate = candidate_from_sdp(raw)
            candidate.sdpMid = payload.get("sdpMid")
            candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
            await pc.addIceCandidate(candidate)
        except Exception:
            logger.debug("Ignoring unusable ICE candidate from %s", self.remote_id, exc_info=True)

    def _on_remote_track(self, track) -> None:
        if not self.is_open:
            return
        if track.kind == "video":
            self._remote.video = track
            monitor = RemoteTrackMonitor(track, self._emit_mute, on_frame=self._emit_frame)
        else:
            self._remote.audio = track
            monitor = RemoteTrackMonitor(track, self._emit_mute)
        monitor.start()
        self._monitors.append(monitor)
        if not self._stream_emitted:
            self._stream_emitted = True
            self._stream_task = asyncio.create_task(self._emit_stream(self._remote))

    async def _shutdown(self) -> None:
        negotiation = self._negotiation
        if negotiation is not None and not negotiation.done() and negotiation is not asyncio.current_task():
            negotiation.cancel()
        for monitor in self._monitors:
            monitor.stop()
        self._monitors.clear()
        if self._pc is not None:
            try:
                await self._pc.close()
            except Exception:
                logger.debug("Error while closing peer connection %s", self.connection_id, exc_info=True)
        self._connection.forget(self)
        await self._emit_close()
