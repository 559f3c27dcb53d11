from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Optional

import numpy as np

from audio.backend import PlaybackBackend
from audio.errors import DecodeError
from audio.nodes import AudioNode
from audio.transport import Transport
from buffers import AudioRingBuffer
from config import CHANNELS, SAMPLE_RATE
from dsp import DSPBase, make_dsp, make_ffmpeg_cmd
from models import DecodedAudio, PlaybackMode, TransportState
from utils import cents_to_semitones, have_exe

logger = logging.getLogger(__name__)

DSPFactory = Callable[[int, int], tuple[DSPBase, str]]


async def decode_audio(
    data: bytes,
    sample_rate: int = SAMPLE_RATE,
    channels: int = CHANNELS,
) -> DecodedAudio:
    """Decode a complete encoded file (any format ffmpeg reads) into float32 PCM."""
    if not data:
        raise DecodeError("No audio data to decode")
    if not have_exe("ffmpeg"):
        raise DecodeError("ffmpeg not found in PATH.")

    cmd = make_ffmpeg_cmd("pipe:0", 0.0, sample_rate, channels)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise DecodeError(f"Failed to start ffmpeg: {e}") from e

    try:
        stdout, stderr = await proc.communicate(data)
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        raise

    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="ignore").strip()
        raise DecodeError(detail or f"ffmpeg exited with code {proc.returncode}")

    frame_bytes = channels * 4
    usable = len(stdout) - (len(stdout) % frame_bytes)
    if usable <= 0:
        raise DecodeError("Decoded audio is empty")
    samples = np.frombuffer(stdout[:usable], dtype=np.float32).reshape((-1, channels)).copy()
    return DecodedAudio(samples=samples, sample_rate=sample_rate)


class GrainPlayer(AudioNode):
    """
    Plays a decoded buffer through a time-stretch DSP: `playback_rate` changes
    tempo without touching pitch, `detune` (cents) shifts pitch without touching
    tempo. The read position follows the synced transport.
    """
    READ_BLOCK = 2048

    def __init__(self, audio: DecodedAudio, dsp_factory: DSPFactory = make_dsp):
        super().__init__(audio.channels)
        self.buffer: Optional[DecodedAudio] = audio
        self.sample_rate = audio.sample_rate
        self._dsp, self.dsp_name = dsp_factory(audio.sample_rate, audio.channels)
        self._fifo = AudioRingBuffer(audio.channels, max_seconds=2.0, sample_rate=audio.sample_rate)
        self._lock = threading.Lock()
        self._playback_rate = 1.0
        self._detune = 0
        self._transport: Optional[Transport] = None
        self._started = False
        self._read_frame = 0
        self._serial = -1
        self._apply_controls()

    @property
    def playback_rate(self) -> float:
        return self._playback_rate

    @playback_rate.setter
    def playback_rate(self, rate: float) -> None:
        with self._lock:
            self._playback_rate = float(rate)
            self._apply_controls()

    @property
    def detune(self) -> int:
        return self._detune

    @detune.setter
    def detune(self, cents: int) -> None:
        with self._lock:
            self._detune = cents
            self._apply_controls()

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    def _apply_controls(self) -> None:
        if self.buffer is None:
            return
        self._dsp.set_controls(self._playback_rate, cents_to_semitones(self._detune), True, False)

    def sync(self, transport: Transport) -> "GrainPlayer":
        with self._lock:
            self._transport = transport
        transport.sync(self)
        return self

    def unsync(self) -> None:
        with self._lock:
            transport, self._transport = self._transport, None
        if transport is not None:
            transport.unsync(self)

    def start(self) -> "GrainPlayer":
        with self._lock:
            self._started = True
            self._serial = -1
        return self

    def stop(self) -> None:
        with self._lock:
            self._started = False

    def _reposition(self, seconds: float) -> None:
        total = self.buffer.frames
        self._read_frame = min(total, max(0, int(round(seconds * self.sample_rate))))
        self._dsp.reset()
        self._fifo.clear()

    def render(self, frames: int) -> np.ndarray:
        with self._lock:
            transport = self._transport
            if self.buffer is None or transport is None or not self._started:
                return np.zeros((frames, self.channels), dtype=np.float32)
            state, seconds, serial = transport.snapshot()
            if state != TransportState.STARTED:
                return np.zeros((frames, self.channels), dtype=np.float32)
            if serial != self._serial:
                self._reposition(seconds)
                self._serial = serial

            samples = self.buffer.samples
            total = samples.shape[0]
            while self._fifo.frames_available() < frames and self._read_frame < total:
                end = min(total, self._read_frame + self.READ_BLOCK)
                y = self._dsp.process(samples[self._read_frame:end])
                self._read_frame = end
                if end >= total:
                    tail = self._dsp.flush()
                    if tail.size:
                        y = np.vstack([y, tail]) if y.size else tail
                if y.size:
                    self._fifo.push_nowait(y)
            out = self._fifo.pop(frames)
            transport.advance(frames / float(self.sample_rate) * self._playback_rate, serial)
        return out

    def dispose(self) -> None:
        # Disconnect first: it waits for an in-flight render to finish.
        super().dispose()
        self.unsync()
        with self._lock:
            self._started = False
            self._fifo.clear()
            if self.buffer is not None:
                self._dsp.release()
            self.buffer = None


class LocalBackend(PlaybackBackend):
    """Fully buffered playback of a decoded file, clocked by the shared transport."""
    mode = PlaybackMode.LOCAL

    def __init__(
        self,
        audio: DecodedAudio,
        transport: Transport,
        output: AudioNode,
        rate: float = 1.0,
        detune: int = 0,
        dsp_factory: DSPFactory = make_dsp,
    ):
        if audio.frames == 0:
            raise DecodeError("Decoded audio is empty")
        self.audio = audio
        self.transport = transport
        self.player: Optional[GrainPlayer] = GrainPlayer(audio, dsp_factory)
        self.player.playback_rate = rate
        self.player.detune = detune
        transport.stop()
        transport.set_limit(audio.duration)
        self.player.sync(transport).start()
        self.player.to_destination(output)
        logger.info(
            "Local backend ready: %.2fs, %d ch, dsp=%s",
            audio.duration,
            audio.channels,
            self.player.dsp_name,
        )

    def play(self) -> None:
        if self.transport.state != TransportState.STARTED:
            self.transport.start()

    def pause(self) -> None:
        self.transport.pause()

    def stop(self) -> None:
        self.transport.stop()

    def seek(self, seconds: float) -> None:
        self.transport.seek(seconds)

    def set_rate(self, rate: float) -> None:
        if self.player is not None:
            self.player.playback_rate = rate

    def set_detune(self, cents: int) -> None:
        if self.player is not None:
            self.player.detune = cents

    def current_time(self) -> float:
        return self.transport.seconds

    def duration(self) -> float:
        return self.audio.duration

    def dispose(self) -> None:
        self.transport.stop()
        self.transport.cancel()
        player, self.player = self.player, None
        if player is not None:
            player.dispose()
