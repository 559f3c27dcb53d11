from __future__ import annotations

import asyncio
import logging
import math
from functools import partial
from typing import Awaitable, Callable, Optional

from PySide6 import QtCore

from audio.backend import PlaybackBackend
from audio.errors import DecodeError, OutputError, StreamConnectError, SupersededLoad
from audio.local_backend import LocalBackend, decode_audio
from audio.media import MediaHandle
from audio.nodes import AudioNode
from audio.output import AudioOutput
from audio.stream_backend import StreamBackend
from audio.transport import Transport
from config import (
    CHANNELS,
    DETUNE_MAX_CENTS,
    DETUNE_MIN_CENTS,
    RATE_MAX,
    RATE_MIN,
    SAMPLE_RATE,
)
from dsp import DSPBase, make_dsp
from models import DecodedAudio, EngineState, PlaybackMode
from utils import clamp

logger = logging.getLogger(__name__)

Decoder = Callable[[bytes], Awaitable[DecodedAudio]]
ProgressCallback = Callable[[str], None]


class PlaybackEngine(QtCore.QObject):
    """
    One control surface over local (decoded, time-stretched) and streamed
    (progressive, pitch-shifted) playback.

    Loads are coroutines and must run on the asyncio loop that owns the engine.
    Every other operation is synchronous and safe to call with no source loaded.
    """
    modeChanged = QtCore.Signal(object)      # PlaybackMode
    playingChanged = QtCore.Signal(bool)
    durationChanged = QtCore.Signal(float)
    loadProgress = QtCore.Signal(str)
    errorOccurred = QtCore.Signal(str)

    def __init__(
        self,
        output: Optional[AudioNode] = None,
        sample_rate: int = SAMPLE_RATE,
        channels: int = CHANNELS,
        decoder: Optional[Decoder] = None,
        media_factory: Optional[Callable[[str], MediaHandle]] = None,
        dsp_factory: Callable[[int, int], tuple[DSPBase, str]] = make_dsp,
        parent=None,
    ):
        super().__init__(parent)
        self.sample_rate = sample_rate
        self.channels = channels
        self.output = output if output is not None else AudioOutput(sample_rate, channels)
        self._decoder = decoder or partial(decode_audio, sample_rate=sample_rate, channels=channels)
        self._media_factory = media_factory or partial(
            MediaHandle,
            sample_rate=sample_rate,
            channels=channels,
            dsp_factory=dsp_factory,
        )
        self._dsp_factory = dsp_factory
        self._transport = Transport()

        self._mode = PlaybackMode.NONE
        self._backend: Optional[PlaybackBackend] = None
        self._playing = False
        self._rate = 1.0
        self._detune = 0
        self._generation = 0

    # State

    @property
    def mode(self) -> PlaybackMode:
        return self._mode

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def current_rate(self) -> float:
        return self._rate

    @property
    def current_detune(self) -> int:
        return self._detune

    @property
    def backend(self) -> Optional[PlaybackBackend]:
        return self._backend

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def state(self) -> EngineState:
        return EngineState(
            mode=self._mode,
            is_playing=self._playing,
            current_rate=self._rate,
            current_detune=self._detune,
            has_backend=self._backend is not None,
        )

    def _set_mode(self, mode: PlaybackMode) -> None:
        if self._mode != mode:
            self._mode = mode
            self.modeChanged.emit(mode)

    def _set_playing(self, playing: bool) -> None:
        if self._playing != playing:
            self._playing = playing
            self.playingChanged.emit(playing)

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    # Lifecycle

    def _teardown(self) -> None:
        backend = self._backend
        if backend is None:
            return
        try:
            backend.stop()
        finally:
            backend.dispose()
            self._backend = None
            self._set_playing(False)
            self._set_mode(PlaybackMode.NONE)
        logger.debug("Disposed %s backend", backend.mode.value)

    def _install(self, backend: PlaybackBackend) -> None:
        self._backend = backend
        self._set_mode(backend.mode)
        self.durationChanged.emit(self.get_duration())

    def _make_notifier(self, generation: int, on_progress: Optional[ProgressCallback]) -> ProgressCallback:
        def notify(message: str) -> None:
            if not self._is_current(generation):
                return
            self.loadProgress.emit(message)
            if on_progress is not None:
                on_progress(message)
        return notify

    async def load_file(self, data: bytes) -> float:
        """Decode `data` fully and make it the active source. Returns its duration."""
        generation = self._next_generation()
        logger.info("Loading local audio (%d bytes)", len(data or b""))
        try:
            audio = await self._decoder(data)
            if audio.frames == 0:
                raise DecodeError("Decoded audio is empty")
        except DecodeError as e:
            if not self._is_current(generation):
                logger.debug("Superseded local load failed: %s", e)
                return 0.0
            logger.warning("Local decode failed: %s", e)
            raise

        if not self._is_current(generation):
            logger.debug("Discarding superseded local load")
            return 0.0

        self._teardown()
        backend = LocalBackend(
            audio,
            self._transport,
            self.output,
            rate=self._rate,
            detune=self._detune,
            dsp_factory=self._dsp_factory,
        )
        self._install(backend)
        return self.get_duration()

    async def load_url(self, url: str, on_progress: Optional[ProgressCallback] = None) -> float:
        """
        Stream `url`. Returns the duration once metadata arrives (0.0 when the
        stream reports none). Raises StreamConnectError if the connection fails.
        """
        generation = self._next_generation()
        logger.info("Loading stream: %s", url)
        self._teardown()

        notify = self._make_notifier(generation, on_progress)
        notify("Connecting...")
        try:
            backend = StreamBackend(
                url,
                self.output,
                rate=self._rate,
                detune=self._detune,
                media_factory=self._media_factory,
                dsp_factory=self._dsp_factory,
                notify=notify,
                on_error=partial(self._on_stream_error, generation),
            )
        except (RuntimeError, OSError) as e:
            logger.error("Stream setup failed: %s", e)
            raise StreamConnectError(f"Failed to load stream: {e}", details=str(e)) from e
        self._install(backend)

        try:
            await backend.wait_for_metadata()
        except SupersededLoad:
            logger.debug("Discarding superseded stream load: %s", url)
            return 0.0
        except StreamConnectError as e:
            if self._backend is backend:
                self._teardown()
            if not self._is_current(generation):
                return 0.0
            logger.warning("Stream connection failed: %s", e.details)
            raise
        except asyncio.CancelledError:
            if self._backend is backend:
                self._teardown()
            else:
                backend.dispose()
            raise

        if not self._is_current(generation):
            logger.debug("Discarding superseded stream load: %s", url)
            return 0.0
        duration = self.get_duration()
        logger.info("Stream ready: %s (%.2fs)", url, duration)
        self.durationChanged.emit(duration)
        return duration

    def _on_stream_error(self, generation: int, message: str) -> None:
        if not self._is_current(generation):
            return
        logger.error("Stream error: %s", message)
        self._set_playing(False)
        self.errorOccurred.emit(message)

    def shutdown(self) -> None:
        self._next_generation()
        self._teardown()
        close = getattr(self.output, "close", None)
        if close is not None:
            close()

    # Transport

    def play(self) -> None:
        backend = self._backend
        if backend is None:
            return
        start = getattr(self.output, "start", None)
        if start is not None:
            try:
                start()
            except OutputError as e:
                logger.error("%s", e)
                self.errorOccurred.emit(str(e))
                return
        backend.play()
        self._set_playing(True)

    def pause(self) -> None:
        if self._backend is None:
            return
        self._backend.pause()
        self._set_playing(False)

    def stop(self) -> None:
        if self._backend is None:
            return
        self._backend.stop()
        self._set_playing(False)

    def seek(self, seconds: float) -> None:
        if self._backend is None or not math.isfinite(seconds):
            return
        duration = self.get_duration()
        hi = duration if duration > 0 else math.inf
        self._backend.seek(clamp(seconds, 0.0, hi))

    def set_playback_rate(self, rate: float) -> None:
        if not math.isfinite(rate):
            return
        self._rate = clamp(float(rate), RATE_MIN, RATE_MAX)
        if self._backend is not None:
            self._backend.set_rate(self._rate)

    def set_detune(self, cents: float) -> None:
        if not math.isfinite(cents):
            return
        self._detune = int(round(clamp(cents, DETUNE_MIN_CENTS, DETUNE_MAX_CENTS)))
        if self._backend is not None:
            self._backend.set_detune(self._detune)

    def get_current_time(self) -> float:
        if self._backend is None:
            return 0.0
        seconds = self._backend.current_time()
        return seconds if math.isfinite(seconds) else 0.0

    def get_duration(self) -> float:
        if self._backend is None:
            return 0.0
        duration = self._backend.duration()
        if not math.isfinite(duration) or duration <= 0:
            return 0.0
        return duration
