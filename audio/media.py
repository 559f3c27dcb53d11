from __future__ import annotations

import asyncio
import logging
import math
import subprocess
import threading
from collections import defaultdict
from typing import Callable, Optional

import numpy as np

from buffers import AudioRingBuffer
from config import (
    BUFFER_PRESETS,
    CHANNELS,
    DEFAULT_BUFFER_PRESET,
    SAMPLE_RATE,
    STREAM_CONNECT_TIMEOUT_SEC,
    STREAM_PREBUFFER_SEC,
)
from dsp import DSPBase, make_dsp, make_ffmpeg_cmd, probe_duration
from models import BufferPreset, ReadyState
from utils import have_exe

logger = logging.getLogger(__name__)

MEDIA_EVENTS = ("loadedmetadata", "waiting", "canplay", "playing", "stalled", "ended", "error")

# Durations already probed in this process, keyed by URL.
_duration_cache: dict[str, float] = {}


def clear_duration_cache() -> None:
    _duration_cache.clear()


# -----------------------------
# Network decoder thread
# -----------------------------

class StreamDecoderThread(threading.Thread):
    """
    Reads float32 PCM for a URL from ffmpeg and pushes it into the media ring buffer.
    The ring's capacity is the read-ahead limit: a full ring blocks the reader.
    """
    def __init__(self,
                 url: str,
                 start_sec: float,
                 sample_rate: int,
                 channels: int,
                 ring: AudioRingBuffer,
                 prebuffer_sec: float,
                 state_cb: Callable[[str, Optional[str]], None]):
        super().__init__(daemon=True)
        self.url = url
        self.start_sec = float(start_sec)
        self.sample_rate = sample_rate
        self.channels = channels
        self.ring = ring
        self._prebuffer_frames = int(prebuffer_sec * sample_rate)
        self._state_cb = state_cb
        self._stop = threading.Event()
        self._proc: Optional[subprocess.Popen] = None
        self._read_frames = 4096
        self._frame_bytes = channels * 4
        self._byte_buffer = bytearray()

    def stop(self) -> None:
        self._stop.set()
        try:
            if self._proc and self._proc.poll() is None:
                self._proc.terminate()
        except OSError:
            pass

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _read_pcm_chunk(self, stdout) -> Optional[np.ndarray]:
        if self._stop.is_set():
            return None
        while len(self._byte_buffer) < self._frame_bytes:
            chunk = stdout.read(self._read_frames * self._frame_bytes)
            if not chunk:
                break
            self._byte_buffer.extend(chunk)
        usable = len(self._byte_buffer) - (len(self._byte_buffer) % self._frame_bytes)
        if usable <= 0:
            return None
        data = bytes(self._byte_buffer[:usable])
        del self._byte_buffer[:usable]
        return np.frombuffer(data, dtype=np.float32).reshape((-1, self.channels))

    def run(self) -> None:
        if not have_exe("ffmpeg"):
            self._state_cb("error", "ffmpeg not found in PATH.")
            return
        cmd = make_ffmpeg_cmd(self.url, self.start_sec, self.sample_rate, self.channels)
        try:
            self._proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            self._state_cb("error", f"Failed to start ffmpeg: {e}")
            return

        stdout = self._proc.stdout
        if stdout is None:
            self._state_cb("error", "ffmpeg stdout not available")
            return

        self._state_cb("loading", None)
        ready_sent = False
        try:
            while not self._stop.is_set():
                x = self._read_pcm_chunk(stdout)
                if x is None:
                    break
                self.ring.push_blocking(x, stop_event=self._stop)
                if not ready_sent and self.ring.frames_available() >= self._prebuffer_frames:
                    self._state_cb("ready", None)
                    ready_sent = True
        except (OSError, ValueError) as e:
            if not self._stop.is_set():
                self._state_cb("error", f"Stream decode error: {e}")
            return
        finally:
            if self._proc.poll() is None:
                self._proc.terminate()

        if self._stop.is_set():
            return
        returncode = self._proc.wait()
        if returncode != 0:
            stderr = self._proc.stderr.read() if self._proc.stderr else b""
            detail = stderr.decode("utf-8", errors="ignore").strip()
            self._state_cb("error", detail or f"ffmpeg exited with code {returncode}")
            return
        if not ready_sent:
            self._state_cb("ready", None)
        self._state_cb("eof", None)


# -----------------------------
# Media handle
# -----------------------------

class MediaHandle:
    """
    A streaming media endpoint bound to a URL, modelled on an HTML media element.

    Bytes arrive progressively: a decoder thread fills a bounded ring buffer and the
    audio thread pulls from it through `read()`. Duration is probed separately and
    arrives with the `loadedmetadata` event. Listeners always run on the asyncio
    loop that called `load()`.
    """

    def __init__(
        self,
        url: str,
        sample_rate: int = SAMPLE_RATE,
        channels: int = CHANNELS,
        buffer_preset: Optional[BufferPreset] = None,
        dsp_factory: Callable[[int, int], tuple[DSPBase, str]] = make_dsp,
        probe: Callable[[str, float], float] = probe_duration,
        decoder_cls: type[StreamDecoderThread] = StreamDecoderThread,
    ):
        self.src = url
        self.sample_rate = sample_rate
        self.channels = channels
        self._preserves_pitch = True
        self._playback_rate = 1.0
        self._buffer_preset = buffer_preset or BUFFER_PRESETS[DEFAULT_BUFFER_PRESET]
        self._ring = AudioRingBuffer(channels, self._buffer_preset.ring_max_seconds, sample_rate)
        self._fifo = AudioRingBuffer(channels, 2.0, sample_rate)
        self._dsp, self.dsp_name = dsp_factory(sample_rate, channels)
        self._probe = probe
        self._decoder_cls = decoder_cls
        self._decoder: Optional[StreamDecoderThread] = None
        self._listeners: dict[str, list[Callable]] = defaultdict(list)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()
        self._position_sec = 0.0
        self._eof = False
        self._ended = False
        self._waiting = False
        self._detached = False
        self.paused = True
        self.error: Optional[str] = None

        cached = _duration_cache.get(url)
        if cached is not None:
            self.duration = cached
            self.ready_state = ReadyState.HAVE_METADATA
        else:
            self.duration = math.nan
            self.ready_state = ReadyState.HAVE_NOTHING
        self._apply_rate()

    # Events

    def add_event_listener(self, name: str, callback: Callable) -> None:
        if name not in MEDIA_EVENTS:
            raise ValueError(f"Unknown media event: {name}")
        self._listeners[name].append(callback)

    def remove_event_listener(self, name: str, callback: Callable) -> None:
        if callback in self._listeners.get(name, []):
            self._listeners[name].remove(callback)

    def _call_soon(self, fn: Callable, *args) -> None:
        loop = self._loop
        if loop is None:
            fn(*args)
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # Loop already closed; nobody is left to listen.
            pass

    def _fire(self, name: str, *args) -> None:
        if self._detached:
            return
        for callback in list(self._listeners.get(name, [])):
            callback(*args)

    # Rate

    @property
    def playback_rate(self) -> float:
        return self._playback_rate

    @playback_rate.setter
    def playback_rate(self, rate: float) -> None:
        with self._lock:
            self._playback_rate = float(rate)
            self._apply_rate()

    @property
    def preserves_pitch(self) -> bool:
        """
        True: the handle owns pitch correction for the source.
        False: pitch is left to nodes downstream of the handle. Rate stays a
        tempo-only change in both cases.
        """
        return self._preserves_pitch

    @preserves_pitch.setter
    def preserves_pitch(self, value: bool) -> None:
        with self._lock:
            self._preserves_pitch = bool(value)

    def _apply_rate(self) -> None:
        # Pitch held at 0 semitones; rate never shifts it.
        self._dsp.set_controls(self._playback_rate, 0.0, True, False)

    # Lifecycle

    def load(self) -> None:
        """Begin connecting: probe metadata and start reading ahead."""
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        logger.debug("Media load: %s", self.src)
        if self.ready_state == ReadyState.HAVE_NOTHING:
            threading.Thread(target=self._probe_metadata, args=(self.src,), daemon=True).start()
        else:
            self._call_soon(self._fire, "loadedmetadata")
        self._start_decoder(self._position_sec)

    def _probe_metadata(self, url: str) -> None:
        try:
            duration = self._probe(url, STREAM_CONNECT_TIMEOUT_SEC)
        except RuntimeError as e:
            self._call_soon(self._on_error, str(e))
            return
        self._call_soon(self._on_metadata, url, duration)

    def _on_metadata(self, url: str, duration: float) -> None:
        if self._detached or url != self.src:
            return
        self.duration = duration
        if math.isfinite(duration):
            _duration_cache[url] = duration
        if self.ready_state.value < ReadyState.HAVE_METADATA.value:
            self.ready_state = ReadyState.HAVE_METADATA
        logger.debug("Media metadata: duration=%s", duration)
        self._fire("loadedmetadata")

    def _on_error(self, message: str) -> None:
        if self._detached:
            return
        self.error = message
        logger.warning("Media error for %s: %s", self.src, message)
        self._fire("error", message)

    def _on_decoder_state(self, decoder: StreamDecoderThread, kind: str, msg: Optional[str]) -> None:
        if self._detached or decoder is not self._decoder:
            return
        if kind == "error":
            self._on_error(msg or "Unknown stream error")
        elif kind == "ready":
            if self.ready_state.value < ReadyState.HAVE_ENOUGH_DATA.value:
                self.ready_state = ReadyState.HAVE_ENOUGH_DATA
            self._fire("canplay")
            with self._lock:
                resumed = self._waiting and not self.paused
                if resumed:
                    self._waiting = False
            if resumed:
                self._fire("playing")
        elif kind == "eof":
            self._eof = True

    def _start_decoder(self, start_sec: float) -> None:
        self._stop_decoder()
        self._ring.clear()
        self._eof = False
        decoder: Optional[StreamDecoderThread] = None

        def state_cb(kind: str, msg: Optional[str]) -> None:
            self._call_soon(self._on_decoder_state, decoder, kind, msg)

        decoder = self._decoder_cls(
            url=self.src,
            start_sec=start_sec,
            sample_rate=self.sample_rate,
            channels=self.channels,
            ring=self._ring,
            prebuffer_sec=min(STREAM_PREBUFFER_SEC, self._buffer_preset.target_sec),
            state_cb=state_cb,
        )
        self._decoder = decoder
        decoder.start()

    def _stop_decoder(self) -> None:
        decoder, self._decoder = self._decoder, None
        if decoder is not None:
            decoder.stop()

    def play(self) -> None:
        if self._detached:
            return
        if self._ended:
            self.current_time = 0.0
        with self._lock:
            self.paused = False
            buffered = self._ring.frames_available() > 0 or self._eof
            self._waiting = not buffered
        self._call_soon(self._fire, "playing" if buffered else "waiting")

    def pause(self) -> None:
        self.paused = True

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._position_sec

    @current_time.setter
    def current_time(self, seconds: float) -> None:
        seconds = max(0.0, float(seconds))
        if math.isfinite(self.duration):
            seconds = min(seconds, self.duration)
        with self._lock:
            self._position_sec = seconds
            self._ended = False
            self._dsp.reset()
            self._fifo.clear()
        if not self._detached:
            self._start_decoder(seconds)

    def read(self, frames: int) -> np.ndarray:
        """Audio-thread pull: `frames` output frames at the current rate."""
        with self._lock:
            if self.paused or self._detached or self._ended:
                return np.zeros((frames, self.channels), dtype=np.float32)
            want_src = max(1, int(math.ceil(frames * self._playback_rate)))
            consumed = 0
            while self._fifo.frames_available() < frames:
                chunk = np.zeros((want_src, self.channels), dtype=np.float32)
                got = self._ring.pop_into(chunk)
                if got <= 0:
                    break
                consumed += got
                y = self._dsp.process(chunk[:got])
                if y.size:
                    self._fifo.push_nowait(y)
            starved = self._fifo.frames_available() < frames
            out = self._fifo.pop(frames)
            self._position_sec += consumed / float(self.sample_rate)
            ended = starved and self._eof and self._ring.frames_available() == 0
            stalled = resumed = False
            if ended:
                self._ended = True
                self.paused = True
            elif starved != self._waiting:
                self._waiting = starved
                stalled, resumed = starved, not starved

        if ended:
            self._call_soon(self._fire, "ended")
        elif stalled:
            self._call_soon(self._fire, "stalled")
            self._call_soon(self._fire, "waiting")
        elif resumed:
            self._call_soon(self._fire, "playing")
        return out

    def detach(self) -> None:
        """Equivalent of clearing `src`: stop network reads now and drop buffers."""
        self.paused = True
        self._detached = True
        self._stop_decoder()
        self._listeners.clear()
        with self._lock:
            self._ring.clear()
            self._fifo.clear()
            self._dsp.release()
        self.src = ""
