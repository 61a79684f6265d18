import asyncio
from unittest.mock import AsyncMock

import numpy as np
import pytest
from aiortc.mediastreams import MediaStreamError

from client.media import (
    BLACK_FRAMES_FOR_OFF,
    SILENT_FRAMES_FOR_MUTE,
    LocalMedia,
    RemoteTrackMonitor,
    is_black_frame,
    is_silent_frame,
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


class DummyTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.enabled = True
        self.stop_count = 0

    def stop(self) -> None:
        self.stop_count += 1


class StalledTrack:
    kind = "video"

    async def recv(self):
        await asyncio.sleep(3600)


class EndedTrack:
    kind = "audio"

    async def recv(self):
        raise MediaStreamError


def test_toggle_flips_every_track_of_one_kind() -> None:
    mics = [DummyTrack("audio"), DummyTrack("audio")]
    camera = DummyTrack("video")
    media = LocalMedia(audio_tracks=mics, video_tracks=[camera])

    assert media.toggle_mute() is True
    assert [track.enabled for track in mics] == [False, False]
    assert camera.enabled is True
    assert media.to_dict() == {"is_muted": True, "is_video_off": False}

    assert media.toggle_mute() is False
    assert all(track.enabled for track in mics)

    assert media.toggle_video() is True
    assert media.is_video_off is True


def test_stop_is_idempotent() -> None:
    tracks = [DummyTrack("audio"), DummyTrack("video")]
    media = LocalMedia(audio_tracks=tracks[:1], video_tracks=tracks[1:])

    media.stop()
    media.stop()

    assert media.stopped
    assert [track.stop_count for track in tracks] == [1, 1]


def test_stop_continues_past_a_failing_track() -> None:
    class BrokenTrack(DummyTrack):
        def stop(self) -> None:
            super().stop()
            raise RuntimeError("device gone")

    broken = BrokenTrack("audio")
    camera = DummyTrack("video")
    media = LocalMedia(audio_tracks=[broken], video_tracks=[camera])

    media.stop()

    assert broken.stop_count == 1
    assert camera.stop_count == 1


def test_frame_classifiers() -> None:
    assert is_black_frame(np.zeros((4, 4, 3), dtype=np.uint8))
    assert not is_black_frame(np.full((4, 4, 3), 120, dtype=np.uint8))
    assert is_silent_frame(np.zeros(960, dtype=np.int16))
    quiet = np.zeros(960, dtype=np.int16)
    quiet[10] = 1
    assert not is_silent_frame(quiet)


@pytest.mark.anyio
async def test_monitor_needs_a_run_of_black_frames() -> None:
    on_change = AsyncMock()
    monitor = RemoteTrackMonitor(StalledTrack(), on_change)

    for _ in range(BLACK_FRAMES_FOR_OFF - 1):
        await monitor.observe(True)
    await monitor.observe(False)
    on_change.assert_not_awaited()

    for _ in range(BLACK_FRAMES_FOR_OFF):
        await monitor.observe(True)
    on_change.assert_awaited_once_with("video", True)
    assert monitor.muted is True

    await monitor.observe(False)
    on_change.assert_awaited_with("video", False)
    assert on_change.await_count == 2


@pytest.mark.anyio
async def test_audio_monitor_uses_silence_threshold() -> None:
    on_change = AsyncMock()
    monitor = RemoteTrackMonitor(EndedTrack(), on_change)

    for _ in range(SILENT_FRAMES_FOR_MUTE):
        await monitor.observe(True)

    on_change.assert_awaited_once_with("audio", True)


@pytest.mark.anyio
async def test_stalled_track_counts_as_off() -> None:
    on_change = AsyncMock()
    monitor = RemoteTrackMonitor(StalledTrack(), on_change, stall_timeout=0.02)

    monitor.start()
    await asyncio.sleep(0.1)
    monitor.stop()

    on_change.assert_awaited_once_with("video", True)


@pytest.mark.anyio
async def test_monitor_exits_when_track_ends() -> None:
    on_change = AsyncMock()
    monitor = RemoteTrackMonitor(EndedTrack(), on_change)

    monitor.start()
    await asyncio.sleep(0.01)

    on_change.assert_not_awaited()
    monitor.stop()
