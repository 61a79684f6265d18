from __future__ import annotations

import asyncio
import fractions
import logging
import threading
import time
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

import av
import cv2
import numpy as np
import sounddevice as sd
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.mediastreams import MediaStreamError

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
CHANNELS = 1
FRAME_SAMPLES = int(SAMPLE_RATE * 0.02)  # 20ms
AUDIO_QUEUE_SIZE = 50

BLACK_LEVEL_THRESHOLD = 10.0
BLACK_FRAMES_FOR_OFF = 15
SILENT_FRAMES_FOR_MUTE = 25
REMOTE_STALL_TIMEOUT_SECONDS = 2.0

ChangeCallback = Callable[[str, bool], Awaitable[None] | None]
RemoteFrameCallback = Callable[[np.ndarray], Awaitable[None] | None]


class MediaAcquisitionError(RuntimeError):
    """Raised when the camera or microphone cannot be opened."""


class LocalTrack(Protocol):
    kind: str
    enabled: bool

    def stop(self) -> None:
        ...


class CameraTrack(VideoStreamTrack):
    """Webcam capture exposed as an aiortc video track.

    A disabled track keeps producing frames, but black ones, the same way a
    browser track with ``enabled = false`` does.
    """

    def __init__(self, capture: cv2.VideoCapture, *, width: int = 640, height: int = 360) -> None:
        super().__init__()
        self.enabled = True
        self._capture = capture
        self._width = width
        self._height = height
        self._lock = threading.Lock()
        self._stopped = False
        self._black = np.zeros((height, width, 3), dtype=np.uint8)

    async def recv(self) -> av.VideoFrame:
        pts, time_base = await self.next_timestamp()
        image: Optional[np.ndarray] = None
        if self.enabled:
            image = await asyncio.to_thread(self._read_frame)
        if image is None:
            image = self._black
        frame = av.VideoFrame.from_ndarray(image, format="bgr24")
        frame.pts = pts
        frame.time_base = time_base
        return frame

    def _read_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._stopped:
                return None
            ret, frame = self._capture.read()
        if not ret:
            return None
        return cv2.resize(frame, (self._width, self._height))

    def stop(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self._capture.release()
        super().stop()


class MicrophoneTrack(MediaStreamTrack):
    """Microphone capture exposed as an aiortc audio track (48 kHz mono s16)."""

    kind = "audio"

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self.enabled = True
        self._loop = loop
        self._queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=AUDIO_QUEUE_SIZE)
        self._stream: Optional[sd.InputStream] = None
        self._stopped = False
        self._pts = 0
        self._time_base = fractions.Fraction(1, SAMPLE_RATE)

    def open(self) -> None:
        """Open the input device. Blocking; run it off the event loop."""
        stream = sd.InputStream(
            samplerate=SAMPLE_RATE,
            channels=CHANNELS,
            dtype="int16",
            blocksize=FRAME_SAMPLES,
            callback=self._capture_callback,
        )
        stream.start()
        self._stream = stream

    def _capture_callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio input status: %s", status)
        if self._stopped:
            return
        payload = np.array(indata, dtype=np.int16).flatten().tobytes()
        self._loop.call_soon_threadsafe(self._enqueue, payload)

    def _enqueue(self, payload: Optional[bytes]) -> None:
        if self._queue.full():
            # Drop the oldest block rather than fall behind real time.
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(payload)

    async def recv(self) -> av.AudioFrame:
        if self._stopped:
            raise MediaStreamError
        payload = await self._queue.get()
        if payload is None or self._stopped:
            raise MediaStreamError
        samples = np.frombuffer(payload, dtype=np.int16)
        if not self.enabled:
            samples = np.zeros_like(samples)
        frame = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = SAMPLE_RATE
        frame.pts = self._pts
        frame.time_base = self._time_base
        self._pts += samples.size
        return frame

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError:
                logger.exception("Error while closing microphone stream")
        self._enqueue(None)
        super().stop()


class LocalMedia:
    """The local capture handle: audio and video tracks with enabled flags."""

    def __init__(self, audio_tracks: Sequence[LocalTrack], video_tracks: Sequence[LocalTrack]) -> None:
        self._audio: List[LocalTrack] = list(audio_tracks)
        self._video: List[LocalTrack] = list(video_tracks)
        self._stopped = False

    @property
    def audio_tracks(self) -> List[LocalTrack]:
        return list(self._audio)

    @property
    def video_tracks(self) -> List[LocalTrack]:
        return list(self._video)

    @property
    def tracks(self) -> List[LocalTrack]:
        return self._audio + self._video

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def is_muted(self) -> bool:
        return bool(self._audio) and not any(track.enabled for track in self._audio)

    @property
    def is_video_off(self) -> bool:
        return bool(self._video) and not any(track.enabled for track in self._video)

    def toggle_mute(self) -> bool:
        """Flip every audio track and return the new muted flag."""
        for track in self._audio:
            track.enabled = not track.enabled
        return self.is_muted

    def toggle_video(self) -> bool:
        """Flip every video track and return the new camera-off flag."""
        for track in self._video:
            track.enabled = not track.enabled
        return self.is_video_off

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in self.tracks:
            try:
                track.stop()
            except Exception:
                logger.exception("Failed to stop %s track", getattr(track, "kind", "media"))

    def to_dict(self) -> dict[str, bool]:
        return {
            "is_muted": self.is_muted,
            "is_video_off": self.is_video_off,
        }


async def acquire_local_media(camera_index: int = 0, *, width: int = 640, height: int = 360) -> LocalMedia:
    """Open the camera and microphone. Raises :class:`MediaAcquisitionError`."""
    try:
        capture = await asyncio.to_thread(cv2.VideoCapture, camera_index)
    except cv2.error as exc:
        raise MediaAcquisitionError(f"Unable to open camera {camera_index}: {exc}") from exc
    if not capture.isOpened():
        capture.release()
        raise MediaAcquisitionError(f"Camera {camera_index} is not available")

    microphone = MicrophoneTrack(asyncio.get_running_loop())
    try:
        await asyncio.to_thread(microphone.open)
    except (sd.PortAudioError, OSError, ValueError) as exc:
        capture.release()
        microphone.stop()
        raise MediaAcquisitionError(f"Unable to open microphone: {exc}") from exc

    camera = CameraTrack(capture, width=width, height=height)
    logger.info("Acquired local media (camera %s, microphone %s Hz)", camera_index, SAMPLE_RATE)
    return LocalMedia(audio_tracks=[microphone], video_tracks=[camera])


def is_black_frame(image: np.ndarray, threshold: float = BLACK_LEVEL_THRESHOLD) -> bool:
    return image.size == 0 or float(image.mean()) <= threshold


def is_silent_frame(samples: np.ndarray) -> bool:
    # Disabled browser tracks send digital silence; a quiet room never does.
    return int(np.count_nonzero(samples)) == 0


class RemoteTrackMonitor:
    """Infers mute/unmute of a remote track from the frames it delivers.

    Video counts as off after a run of black frames, audio as muted after a run
    of all-zero frames; either counts as off when frames stop arriving.
    """

    def __init__(
        self,
        track: MediaStreamTrack,
        on_change: ChangeCallback,
        *,
        on_frame: Optional[RemoteFrameCallback] = None,
        stall_timeout: float = REMOTE_STALL_TIMEOUT_SECONDS,
    ) -> None:
        self._track = track
        self._kind = track.kind
        self._on_change = on_change
        self._on_frame = on_frame
        self._stall_timeout = stall_timeout
        self._threshold = BLACK_FRAMES_FOR_OFF if self._kind == "video" else SILENT_FRAMES_FOR_MUTE
        self._off_run = 0
        self._muted = False
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def muted(self) -> bool:
        return self._muted

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"remote-{self._kind}-monitor")

    def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        last_frame_at = time.monotonic()
        try:
            while True:
                try:
                    frame = await asyncio.wait_for(self._track.recv(), timeout=self._stall_timeout)
                except asyncio.TimeoutError:
                    logger.debug("Remote %s track stalled for %.1fs", self._kind, time.monotonic() - last_frame_at)
                    await self._set_muted(True)
                    continue
                except MediaStreamError:
                    logger.debug("Remote %s track ended", self._kind)
                    return
                last_frame_at = time.monotonic()
                if self._kind == "video":
                    image = frame.to_ndarray(format="bgr24")
                    await self.observe(is_black_frame(image))
                    if self._on_frame is not None:
                        result = self._on_frame(image)
                        if asyncio.iscoroutine(result):
                            await result
                else:
                    await self.observe(is_silent_frame(frame.to_ndarray()))
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("Remote %s track monitor failed", self._kind)

    async def observe(self, off: bool) -> None:
        if not off:
            self._off_run = 0
            await self._set_muted(False)
            return
        self._off_run += 1
        if self._off_run >= self._threshold:
            await self._set_muted(True)

    async def _set_muted(self, muted: bool) -> None:
        if muted == self._muted:
            return
        self._muted = muted
        result = self._on_change(self._kind, muted)
        if asyncio.iscoroutine(result):
            await result
