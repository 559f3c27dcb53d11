from __future__ import annotations

import asyncio
import logging
import math
import threading
from typing import Callable, Optional

import numpy as np

from audio.backend import PlaybackBackend
from audio.errors import StreamConnectError, SupersededLoad
from audio.media import MediaHandle
from audio.nodes import AudioNode
from buffers import AudioRingBuffer
from config import PITCH_SHIFT_WINDOW_SEC
from dsp import DSPBase, make_dsp
from models import PlaybackMode, ReadyState
from utils import cents_to_semitones, clamp

logger = logging.getLogger(__name__)

# Advisory progress text per media event.
PROGRESS_MESSAGES = {
    "loadedmetadata": "Metadata loaded",
    "waiting": "Buffering...",
    "canplay": "Ready to play",
    "playing": "Playing",
    "stalled": "Connection stalled...",
    "error": "Error loading stream",
}


class MediaSourceNode(AudioNode):
    """Graph node wrapping a media handle."""

    def __init__(self, media: MediaHandle):
        super().__init__(media.channels)
        self.media = media

    def render(self, frames: int) -> np.ndarray:
        return self.media.read(frames)


class PitchShiftNode(AudioNode):
    """Shifts its input by `pitch` semitones without changing duration."""

    def __init__(
        self,
        sample_rate: int,
        channels: int,
        pitch: float = 0.0,
        window_size: float = PITCH_SHIFT_WINDOW_SEC,
        dsp_factory: Callable[[int, int], tuple[DSPBase, str]] = make_dsp,
    ):
        super().__init__(channels)
        self.sample_rate = sample_rate
        self.window_size = window_size
        self._dsp, self.dsp_name = dsp_factory(sample_rate, channels)
        self._fifo = AudioRingBuffer(channels, max_seconds=2.0, sample_rate=sample_rate)
        self._lock = threading.Lock()
        self._pitch = 0.0
        self.pitch = pitch

    @property
    def pitch(self) -> float:
        return self._pitch

    @pitch.setter
    def pitch(self, semitones: float) -> None:
        with self._lock:
            self._pitch = clamp(float(semitones), -12.0, 12.0)
            if not self._disposed:
                self._dsp.set_controls(1.0, self._pitch, True, False)

    def render(self, frames: int) -> np.ndarray:
        x = self.pull(frames)
        with self._lock:
            if self._disposed:
                return np.zeros((frames, self.channels), dtype=np.float32)
            y = self._dsp.process(x)
            if y.size:
                self._fifo.push_nowait(y)
            return self._fifo.pop(frames)

    def dispose(self) -> None:
        super().dispose()
        with self._lock:
            self._fifo.clear()
            self._dsp.release()


class StreamBackend(PlaybackBackend):
    """
    Network-streamed playback. Signal path: media source -> pitch shift -> output.
    Rate goes to the media handle, detune only to the pitch-shift node.

    Must be constructed on the running event loop: the metadata wait is a future
    on that loop.
    """
    mode = PlaybackMode.STREAM

    def __init__(
        self,
        url: str,
        output: AudioNode,
        rate: float = 1.0,
        detune: int = 0,
        media_factory: Callable[[str], MediaHandle] = MediaHandle,
        dsp_factory: Callable[[int, int], tuple[DSPBase, str]] = make_dsp,
        notify: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.url = url
        self._notify = notify
        self._on_error_cb = on_error
        self._metadata: asyncio.Future = asyncio.get_running_loop().create_future()
        self._disposed = False

        self.media = media_factory(url)
        self.source_node = MediaSourceNode(self.media)
        self.pitch_node: Optional[PitchShiftNode] = None
        try:
            self.media.preserves_pitch = False
            self.media.playback_rate = rate
            for name in PROGRESS_MESSAGES:
                self.media.add_event_listener(name, self._make_progress_listener(name))
            self.media.add_event_listener("loadedmetadata", self._on_metadata)
            self.media.add_event_listener("error", self._on_error)

            self.pitch_node = PitchShiftNode(
                self.media.sample_rate,
                self.media.channels,
                pitch=cents_to_semitones(detune),
                dsp_factory=dsp_factory,
            )
            self.source_node.connect(self.pitch_node)
            self.pitch_node.to_destination(output)
            self.media.load()
        except Exception:
            logger.warning("Stream setup failed for %s; releasing media", url)
            self._disposed = True
            self.source_node.dispose()
            if self.pitch_node is not None:
                self.pitch_node.dispose()
            self.media.detach()
            self._metadata.cancel()
            raise

    def _make_progress_listener(self, name: str) -> Callable:
        message = PROGRESS_MESSAGES[name]

        def listener(*_args) -> None:
            logger.debug("Stream event %s: %s", name, self.url)
            if self._notify is not None:
                self._notify(message)
        return listener

    def _on_metadata(self) -> None:
        if not self._metadata.done():
            self._metadata.set_result(self.media.duration)

    def _on_error(self, message: str) -> None:
        if not self._metadata.done():
            self._metadata.set_exception(
                StreamConnectError(f"Failed to load stream: {message}", details=message)
            )
        elif self._on_error_cb is not None:
            self._on_error_cb(message)

    async def wait_for_metadata(self) -> float:
        """Duration once metadata is known; raises StreamConnectError or SupersededLoad."""
        if not self._metadata.done() and self.media.ready_state.value >= ReadyState.HAVE_METADATA.value:
            self._metadata.set_result(self.media.duration)
        return await self._metadata

    def play(self) -> None:
        self.media.play()

    def pause(self) -> None:
        self.media.pause()

    def stop(self) -> None:
        self.media.pause()
        if not self._disposed:
            self.media.current_time = 0.0

    def seek(self, seconds: float) -> None:
        self.media.current_time = seconds

    def set_rate(self, rate: float) -> None:
        self.media.playback_rate = rate

    def set_detune(self, cents: int) -> None:
        self.pitch_node.pitch = cents_to_semitones(cents)

    def current_time(self) -> float:
        return self.media.current_time

    def duration(self) -> float:
        duration = self.media.duration
        return duration if math.isfinite(duration) else math.nan

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.source_node.disconnect()
        self.pitch_node.dispose()
        self.media.pause()
        self.media.detach()
        if not self._metadata.done():
            self._metadata.set_exception(SupersededLoad(self.url))
