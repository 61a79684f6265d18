import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from client.api_client import ApiError
from client.status_poller import (
    ERROR_CANCEL,
    ERROR_JOIN,
    ERROR_SERVER,
    STATUS_CONNECTION_LOST,
    STATUS_MATCH_FAILED,
    StatusPoller,
    format_elapsed,
    format_time,
)
from shared.protocol import MatchmakingStatus, MatchState


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _poller(status: MatchmakingStatus, **kwargs):
    api = AsyncMock()
    api.get_status.return_value = status
    navigate = MagicMock()
    poller = StatusPoller(api, navigate=navigate, **kwargs)
    return poller, api, navigate


def test_format_helpers() -> None:
    assert format_time(65_000) == "1:05"
    assert format_time(999) == "0:00"
    assert format_elapsed(12) == "12s ago"
    assert format_elapsed(65) == "1m 5s ago"


@pytest.mark.anyio
async def test_active_session_redirects_to_call_page_once() -> None:
    poller, api, navigate = _poller(MatchmakingStatus(status=MatchState.IN_SESSION, session_id="s1"))

    await poller.check_status()
    await poller.check_status()

    navigate.assert_called_once_with("/call/s1")
    assert poller.redirecting is True
    api.get_status.assert_awaited_once()


@pytest.mark.anyio
async def test_active_chat_redirects_to_chat_page() -> None:
    poller, _, navigate = _poller(MatchmakingStatus(status=MatchState.IN_CHAT, session_id="s7"))
    await poller.check_status()
    navigate.assert_called_once_with("/chat/s7")


@pytest.mark.anyio
async def test_queue_with_enough_people_requests_match() -> None:
    poller, api, navigate = _poller(MatchmakingStatus(status=MatchState.QUEUED, queue_position=1, total_in_queue=2))
    api.create_match.return_value = {"sessionId": "s9"}

    await poller.check_status()

    api.create_match.assert_awaited_once()
    navigate.assert_called_once_with("/call/s9")


@pytest.mark.anyio
async def test_lonely_queue_does_not_request_match() -> None:
    poller, api, navigate = _poller(MatchmakingStatus(status=MatchState.QUEUED, queue_position=1, total_in_queue=1))
    await poller.check_status()
    api.create_match.assert_not_awaited()
    navigate.assert_not_called()
    assert poller.snapshot()["queue_position"] == 1


@pytest.mark.anyio
async def test_match_failure_reports_retry() -> None:
    poller, api, navigate = _poller(MatchmakingStatus(status=MatchState.QUEUED, total_in_queue=3))
    api.create_match.side_effect = ApiError("conflict", status_code=409)

    await poller.check_status()

    assert poller.connection_status == STATUS_MATCH_FAILED
    assert poller.redirecting is False
    navigate.assert_not_called()


@pytest.mark.anyio
async def test_poll_failure_sets_connection_lost() -> None:
    poller, api, navigate = _poller(MatchmakingStatus(status=MatchState.IDLE))
    api.get_status.side_effect = ApiError("offline")

    await poller.check_status()

    assert poller.connection_status == STATUS_CONNECTION_LOST
    assert poller.error == ERROR_SERVER
    navigate.assert_not_called()


@pytest.mark.anyio
async def test_start_matching_and_cancel() -> None:
    on_change = AsyncMock()
    poller, api, _ = _poller(MatchmakingStatus(status=MatchState.IDLE), on_change=on_change)
    api.join.return_value = {"status": "queued"}

    await poller.start_matching()
    assert poller.is_searching is True
    assert poller.error is None

    await poller.cancel_search()
    assert poller.is_searching is False
    assert on_change.await_count == 2


@pytest.mark.anyio
async def test_start_matching_surfaces_server_error() -> None:
    poller, api, _ = _poller(MatchmakingStatus(status=MatchState.IDLE))
    api.join.return_value = {"error": "In cooldown"}

    await poller.start_matching()

    assert poller.is_searching is False
    assert poller.error == "In cooldown"


@pytest.mark.anyio
async def test_join_and_cancel_failures() -> None:
    poller, api, _ = _poller(MatchmakingStatus(status=MatchState.IDLE))
    api.join.side_effect = ApiError("down")
    await poller.start_matching()
    assert poller.error == ERROR_JOIN
    assert poller.is_searching is False

    api.cancel.side_effect = ApiError("down")
    await poller.cancel_search()
    assert poller.error == ERROR_CANCEL


@pytest.mark.anyio
async def test_time_since_update_tracks_last_successful_poll() -> None:
    clock = FakeClock()
    poller, api, _ = _poller(MatchmakingStatus(status=MatchState.IDLE), clock=clock)

    await poller.check_status()
    clock.now += 65
    assert poller.time_since_update() == "1m 5s ago"

    api.get_status.side_effect = ApiError("offline")
    await poller.check_status()
    assert poller.snapshot()["last_updated"] == "1m 5s ago"


@pytest.mark.anyio
async def test_open_polls_immediately_and_close_resets_redirect_flag() -> None:
    poller, api, navigate = _poller(MatchmakingStatus(status=MatchState.IN_SESSION, session_id="s1"), interval=0.01)

    poller.open()
    await asyncio.sleep(0.05)

    api.get_status.assert_awaited_once()
    navigate.assert_called_once_with("/call/s1")

    poller.close()
    assert poller.redirecting is False
