from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np

try:
    import sounddevice as sd
    _sounddevice_import_error = None
except Exception as e:
    sd = None
    _sounddevice_import_error = e

from audio.errors import OutputError
from audio.nodes import AudioNode
from config import BUFFER_PRESETS, CHANNELS, DEFAULT_BUFFER_PRESET, SAMPLE_RATE
from models import BufferPreset

logger = logging.getLogger(__name__)


class AudioOutput(AudioNode):
    """
    The single shared output destination. A PortAudio callback pulls one block
    per period from whichever node is connected; silence when nothing is.
    """

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        channels: int = CHANNELS,
        buffer_preset: Optional[BufferPreset] = None,
        device: Optional[int] = None,
    ):
        super().__init__(channels)
        self.sample_rate = sample_rate
        self._buffer_preset = buffer_preset or BUFFER_PRESETS[DEFAULT_BUFFER_PRESET]
        self._device = device
        self._stream = None
        self._fade_out_ramp = np.linspace(1.0, 0.0, 32, dtype=np.float32)
        self._callback_underflows = 0
        self._callback_time_max = 0.0

    @property
    def active(self) -> bool:
        return self._stream is not None and bool(getattr(self._stream, "active", False))

    def render(self, frames: int) -> np.ndarray:
        return self.pull(frames)

    def _callback(self, outdata, frames, time_info, status) -> None:
        start = time.perf_counter()
        outdata.fill(0)
        block = self.render(frames)
        n = min(frames, block.shape[0])
        outdata[:n] = block[:n]
        if n < frames:
            fade = min(n, self._fade_out_ramp.shape[0])
            if fade > 1:
                outdata[n - fade:n] *= self._fade_out_ramp[:fade, None]
        if status and getattr(status, "output_underflow", False):
            self._callback_underflows += 1
        elapsed = time.perf_counter() - start
        if elapsed > self._callback_time_max:
            self._callback_time_max = elapsed

    def start(self) -> None:
        """Open (or resume) the device stream. Raises OutputError when unavailable."""
        if sd is None:
            raise OutputError(f"sounddevice not available: {_sounddevice_import_error}")
        if self._stream is not None:
            if not self._stream.active:
                self._stream.start()
            return
        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                blocksize=self._buffer_preset.blocksize_frames,
                latency=self._buffer_preset.latency,
                device=self._device,
                callback=self._callback,
            )
            self._stream.start()
        except Exception as e:
            self._stream = None
            raise OutputError(f"Audio output error: {e}") from e
        logger.info(
            "Audio output started: %d Hz, %d ch, blocksize=%d",
            self.sample_rate,
            self.channels,
            self._buffer_preset.blocksize_frames,
        )

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning("Error closing audio output: %s", e)
        if self._callback_underflows:
            logger.info(
                "Audio output closed: underflows=%d cb_max=%.2fms",
                self._callback_underflows,
                self._callback_time_max * 1000.0,
            )
