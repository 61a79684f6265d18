"""Runtime configuration for the client."""
from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from typing import List, Optional

from shared.protocol import (
    DEFAULT_API_URL,
    DEFAULT_BROKER_HOST,
    DEFAULT_BROKER_KEY,
    DEFAULT_BROKER_PATH,
    DEFAULT_BROKER_PORT,
    DEFAULT_CALL_TIMEOUT_SECONDS,
    DEFAULT_ICE_SERVERS,
    DISCOVERY_POLL_INTERVAL_SECONDS,
    LANDING_POLL_INTERVAL_SECONDS,
    SESSION_POLL_INTERVAL_SECONDS,
)


@dataclass(slots=True)
class ClientConfig:
    user_id: str
    api_url: str = DEFAULT_API_URL
    auth_token: Optional[str] = None
    broker_host: str = DEFAULT_BROKER_HOST
    broker_port: int = DEFAULT_BROKER_PORT
    broker_path: str = DEFAULT_BROKER_PATH
    broker_key: str = DEFAULT_BROKER_KEY
    broker_secure: bool = True
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    camera_index: int = 0
    call_timeout: Optional[float] = DEFAULT_CALL_TIMEOUT_SECONDS
    discovery_interval: float = DISCOVERY_POLL_INTERVAL_SECONDS
    session_poll_interval: float = SESSION_POLL_INTERVAL_SECONDS
    landing_poll_interval: float = LANDING_POLL_INTERVAL_SECONDS

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "ClientConfig":
        call_timeout: Optional[float] = args.call_timeout
        if call_timeout is not None and call_timeout <= 0:
            call_timeout = None
        return cls(
            user_id=args.user_id,
            api_url=args.api_url.rstrip("/"),
            auth_token=args.auth_token or None,
            broker_host=args.broker_host,
            broker_port=args.broker_port,
            broker_path=args.broker_path,
            broker_key=args.broker_key,
            broker_secure=not args.insecure_broker,
            ice_servers=list(args.stun) if args.stun else list(DEFAULT_ICE_SERVERS),
            camera_index=args.camera_index,
            call_timeout=call_timeout,
        )
