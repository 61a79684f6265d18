"""Core protocol primitives shared across the client.

The client talks to two remote parties: the matchmaking API (JSON over HTTPS,
camelCase keys) and a PeerJS-compatible signaling broker (JSON over WebSocket).
This module centralises the message schemas and the defaults both halves rely
on so the call page and the landing page stay in sync.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class MatchState(str, Enum):
    """Matchmaking states reported by the backend."""

    IDLE = "idle"
    QUEUED = "queued"
    IN_SESSION = "in_session"
    IN_CHAT = "in_chat"
    COOLDOWN = "cooldown"
    CONNECTING = "connecting"
    ERROR = "error"

    @classmethod
    def parse(cls, value: object) -> "MatchState":
        try:
            return cls(str(value))
        except ValueError:
            return cls.ERROR


class BrokerErrorType(str, Enum):
    """Error kinds surfaced by the signaling broker."""

    UNAVAILABLE_ID = "unavailable-id"
    INVALID_KEY = "invalid-key"
    INVALID_ID = "invalid-id"
    NETWORK = "network"
    PEER_UNAVAILABLE = "peer-unavailable"
    SERVER_ERROR = "server-error"
    WEBRTC = "webrtc"


class BrokerMessageType(str, Enum):
    """Envelope types exchanged with a PeerJS signaling server."""

    OPEN = "OPEN"
    ERROR = "ERROR"
    ID_TAKEN = "ID-TAKEN"
    INVALID_KEY = "INVALID-KEY"
    HEARTBEAT = "HEARTBEAT"
    OFFER = "OFFER"
    ANSWER = "ANSWER"
    CANDIDATE = "CANDIDATE"
    LEAVE = "LEAVE"
    EXPIRE = "EXPIRE"


@dataclass(slots=True)
class MatchmakingStatus:
    """Payload of ``GET /matchmaking/status``."""

    status: MatchState
    session_id: Optional[str] = None
    partner_id: Optional[str] = None
    peer_ids: Dict[str, str] = field(default_factory=dict)
    time_left_ms: Optional[int] = None
    queue_position: Optional[int] = None
    total_in_queue: Optional[int] = None
    cooldown_end: Optional[int] = None

    @property
    def partner_peer_id(self) -> Optional[str]:
        if not self.partner_id:
            return None
        return self.peer_ids.get(self.partner_id) or None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.session_id is not None:
            data["sessionId"] = self.session_id
        if self.partner_id is not None:
            data["partnerId"] = self.partner_id
        if self.peer_ids:
            data["peerIds"] = dict(self.peer_ids)
        if self.time_left_ms is not None:
            data["timeLeft"] = self.time_left_ms
        if self.queue_position is not None:
            data["queuePosition"] = self.queue_position
        if self.total_in_queue is not None:
            data["totalInQueue"] = self.total_in_queue
        if self.cooldown_end is not None:
            data["cooldownEnd"] = self.cooldown_end
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchmakingStatus":
        raw_peer_ids = data.get("peerIds")
        peer_ids: Dict[str, str] = {}
        if isinstance(raw_peer_ids, dict):
            peer_ids = {
                str(user): str(peer)
                for user, peer in raw_peer_ids.items()
                if isinstance(peer, str) and peer
            }
        return cls(
            status=MatchState.parse(data.get("status", MatchState.IDLE.value)),
            session_id=_optional_str(data.get("sessionId")),
            partner_id=_optional_str(data.get("partnerId")),
            peer_ids=peer_ids,
            time_left_ms=_optional_int(data.get("timeLeft")),
            queue_position=_optional_int(data.get("queuePosition")),
            total_in_queue=_optional_int(data.get("totalInQueue")),
            cooldown_end=_optional_int(data.get("cooldownEnd")),
        )


@dataclass(slots=True)
class RemoteMediaState:
    """Observed state of the partner's tracks."""

    is_muted: bool = False
    is_video_off: bool = False

    def reset(self) -> None:
        self.is_muted = False
        self.is_video_off = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_muted": self.is_muted,
            "is_video_off": self.is_video_off,
        }


def _optional_str(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _optional_int(value: object) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


DEFAULT_ICE_SERVERS: List[str] = [
    "stun:stun.l.google.com:19302",
    "stun:global.stun.twilio.com:3478",
]

DEFAULT_BROKER_HOST = "0.peerjs.com"
DEFAULT_BROKER_PORT = 443
DEFAULT_BROKER_PATH = "/"
DEFAULT_BROKER_KEY = "peerjs"
BROKER_HEARTBEAT_INTERVAL_SECONDS = 5.0

DEFAULT_API_URL = "http://127.0.0.1:3000/api"
DEFAULT_SESSION_SECONDS = 3600
DISCOVERY_POLL_INTERVAL_SECONDS = 1.0
SESSION_POLL_INTERVAL_SECONDS = 5.0
LANDING_POLL_INTERVAL_SECONDS = 5.0
TIMER_TICK_SECONDS = 1.0
DEFAULT_CALL_TIMEOUT_SECONDS = 30.0
MAX_REGISTRATION_ATTEMPTS = 5
MIN_QUEUE_FOR_MATCH = 2
