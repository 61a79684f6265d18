import argparse

from shared.config import ClientConfig
from shared.protocol import (
    DEFAULT_CALL_TIMEOUT_SECONDS,
    DEFAULT_ICE_SERVERS,
    MatchmakingStatus,
    MatchState,
    RemoteMediaState,
)


def test_status_from_dict_reads_camel_case_keys() -> None:
    status = MatchmakingStatus.from_dict(
        {
            "status": "in_session",
            "sessionId": "s1",
            "partnerId": "bob",
            "peerIds": {"alice": "s1-alice-abc", "bob": "s1-bob-xyz"},
            "timeLeft": 42_500,
            "queuePosition": 3,
            "totalInQueue": 7,
        }
    )
    assert status.status is MatchState.IN_SESSION
    assert status.session_id == "s1"
    assert status.partner_peer_id == "s1-bob-xyz"
    assert status.time_left_ms == 42_500
    assert status.queue_position == 3
    assert status.total_in_queue == 7
    assert status.cooldown_end is None


def test_partner_peer_id_requires_published_entry() -> None:
    status = MatchmakingStatus.from_dict(
        {"status": "in_session", "sessionId": "s1", "partnerId": "bob", "peerIds": {"alice": "p1", "bob": None}}
    )
    assert status.partner_peer_id is None
    assert MatchmakingStatus.from_dict({"status": "queued"}).partner_peer_id is None


def test_unknown_status_maps_to_error() -> None:
    assert MatchmakingStatus.from_dict({"status": "teleporting"}).status is MatchState.ERROR
    assert MatchmakingStatus.from_dict({}).status is MatchState.IDLE


def test_status_to_dict_omits_missing_fields() -> None:
    status = MatchmakingStatus(status=MatchState.QUEUED, queue_position=1, total_in_queue=2)
    assert status.to_dict() == {"status": "queued", "queuePosition": 1, "totalInQueue": 2}


def test_malformed_numbers_are_dropped() -> None:
    status = MatchmakingStatus.from_dict({"status": "in_session", "timeLeft": "soon", "queuePosition": True})
    assert status.time_left_ms is None
    assert status.queue_position is None


def test_remote_media_state_reset() -> None:
    state = RemoteMediaState(is_muted=True, is_video_off=True)
    state.reset()
    assert state.to_dict() == {"is_muted": False, "is_video_off": False}


def _args(**overrides) -> argparse.Namespace:
    values = dict(
        user_id="alice",
        api_url="https://api.example.com/api/",
        auth_token="",
        broker_host="broker.example.com",
        broker_port=9000,
        broker_path="/signal",
        broker_key="k",
        insecure_broker=True,
        stun=None,
        camera_index=1,
        call_timeout=DEFAULT_CALL_TIMEOUT_SECONDS,
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def test_config_from_args_defaults() -> None:
    config = ClientConfig.from_args(_args())
    assert config.api_url == "https://api.example.com/api"
    assert config.auth_token is None
    assert config.broker_secure is False
    assert config.ice_servers == DEFAULT_ICE_SERVERS
    assert config.call_timeout == DEFAULT_CALL_TIMEOUT_SECONDS


def test_config_from_args_overrides() -> None:
    config = ClientConfig.from_args(_args(stun=["stun:stun.example.org:3478"], call_timeout=0, auth_token="t0k"))
    assert config.ice_servers == ["stun:stun.example.org:3478"]
    assert config.call_timeout is None
    assert config.auth_token == "t0k"
