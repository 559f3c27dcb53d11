from __future__ import annotations

import ctypes
import ctypes.util
import json
import logging
import math
import os
import subprocess
import sys
from typing import List, Optional

import numpy as np

from utils import clamp, have_exe, safe_float, semitones_to_factor

logger = logging.getLogger(__name__)

TEMPO_RANGE = (0.5, 2.0)
PITCH_RANGE_ST = (-12.0, 12.0)


def _silence(channels: int) -> np.ndarray:
    return np.zeros((0, channels), dtype=np.float32)


def _as_float32(x: np.ndarray) -> np.ndarray:
    return x if x.dtype == np.float32 else x.astype(np.float32, copy=False)


# -----------------------------
# DSP Interfaces
# -----------------------------

class DSPBase:
    """
    Streaming tempo/pitch processor over (frames, channels) float32 blocks.

    key_lock: tempo changes keep pitch; pitch_semitones shifts independently.
    tape_mode: tempo is applied as plain rate (speed and pitch together).
    """
    name: str = "DSP"
    def set_controls(self, tempo: float, pitch_semitones: float, key_lock: bool, tape_mode: bool) -> None:
        raise NotImplementedError
    def reset(self) -> None:
        raise NotImplementedError
    def process(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError
    def flush(self) -> np.ndarray:
        """Drain any remaining buffered audio and return it."""
        return np.zeros((0, 2), dtype=np.float32)
    def release(self) -> None:
        """Free native resources. The instance must not be used afterwards."""


# -----------------------------
# SoundTouch DSP (ctypes)
# -----------------------------

class SoundTouchUnavailable(RuntimeError):
    pass


_FLOAT_P = ctypes.POINTER(ctypes.c_float)
_HANDLE = ctypes.c_void_p

# C API subset: name -> (argtypes, restype)
_SOUNDTOUCH_API = {
    "soundtouch_createInstance": ([], _HANDLE),
    "soundtouch_destroyInstance": ([_HANDLE], None),
    "soundtouch_setSampleRate": ([_HANDLE, ctypes.c_uint], None),
    "soundtouch_setChannels": ([_HANDLE, ctypes.c_uint], None),
    "soundtouch_setTempo": ([_HANDLE, ctypes.c_float], None),
    "soundtouch_setRate": ([_HANDLE, ctypes.c_float], None),
    "soundtouch_setPitchSemiTones": ([_HANDLE, ctypes.c_float], None),
    "soundtouch_putSamples": ([_HANDLE, _FLOAT_P, ctypes.c_uint], None),
    "soundtouch_receiveSamples": ([_HANDLE, _FLOAT_P, ctypes.c_uint], ctypes.c_uint),
    "soundtouch_numSamples": ([_HANDLE], ctypes.c_uint),
    "soundtouch_flush": ([_HANDLE], None),
    "soundtouch_clear": ([_HANDLE], None),
}


def _soundtouch_candidates() -> List[str]:
    candidates: List[str] = []
    explicit = os.environ.get("SOUNDTOUCH_DLL", "").strip()
    if explicit:
        candidates.append(explicit)

    here = os.path.abspath(os.path.dirname(__file__))
    if sys.platform.startswith("win"):
        bundled = "SoundTouchDLL_x64.dll"
    elif sys.platform == "darwin":
        bundled = "libSoundTouch.dylib"
    else:
        bundled = "libSoundTouch.so"
    candidates.append(os.path.join(here, bundled))

    for name in ("SoundTouch", "soundtouch", "SoundTouchDLL", "soundtouchdll", "libSoundTouch"):
        found = ctypes.util.find_library(name)
        if found:
            candidates.append(found)
    return candidates


def _load_soundtouch() -> ctypes.CDLL:
    errors = []
    for path in _soundtouch_candidates():
        try:
            lib = ctypes.CDLL(path)
        except OSError as e:
            errors.append(f"{path}: {e}")
            continue
        for fn_name, (argtypes, restype) in _SOUNDTOUCH_API.items():
            fn = getattr(lib, fn_name, None)
            if fn is None:
                raise SoundTouchUnavailable(f"{path} does not export {fn_name}")
            fn.argtypes = argtypes
            fn.restype = restype
        return lib
    raise SoundTouchUnavailable("Could not load SoundTouch library. Tried:\n" + "\n".join(errors[:8]))


class SoundTouchDSP(DSPBase):
    """SoundTouch through its C API; float32 interleaved, counts in frames."""
    name = "SoundTouch"
    DRAIN_BLOCK = 8192

    def __init__(self, sample_rate: int, channels: int):
        self.sr = int(sample_rate)
        self.ch = int(channels)
        self._lib = _load_soundtouch()
        handle = self._lib.soundtouch_createInstance()
        if not handle:
            raise SoundTouchUnavailable("soundtouch_createInstance returned NULL")
        self._inst: Optional[ctypes.c_void_p] = _HANDLE(handle)
        self._lib.soundtouch_setSampleRate(self._inst, self.sr)
        self._lib.soundtouch_setChannels(self._inst, self.ch)

        self.tempo = 1.0
        self.pitch_st = 0.0
        self.key_lock = True
        self.tape_mode = False
        self.set_controls(1.0, 0.0, True, False)

    def release(self) -> None:
        inst, self._inst = self._inst, None
        if inst:
            self._lib.soundtouch_destroyInstance(inst)

    def __del__(self):
        try:
            self.release()
        except Exception:
            pass

    def reset(self) -> None:
        if self._inst:
            self._lib.soundtouch_clear(self._inst)

    @staticmethod
    def _engine_params(tempo: float, pitch_st: float, key_lock: bool, tape_mode: bool) -> tuple[float, float, float]:
        """(tempo, rate, pitch semitones) for the SoundTouch setters."""
        if tape_mode:
            return 1.0, tempo, 0.0
        if key_lock:
            return tempo, 1.0, pitch_st
        return 1.0, tempo, pitch_st

    def set_controls(self, tempo: float, pitch_semitones: float, key_lock: bool, tape_mode: bool) -> None:
        self.tempo = clamp(float(tempo), *TEMPO_RANGE)
        self.pitch_st = clamp(float(pitch_semitones), *PITCH_RANGE_ST)
        self.key_lock = bool(key_lock)
        self.tape_mode = bool(tape_mode)
        if not self._inst:
            return
        st_tempo, st_rate, st_pitch = self._engine_params(self.tempo, self.pitch_st, self.key_lock, self.tape_mode)
        self._lib.soundtouch_setTempo(self._inst, st_tempo)
        self._lib.soundtouch_setRate(self._inst, st_rate)
        self._lib.soundtouch_setPitchSemiTones(self._inst, st_pitch)

    def process(self, x: np.ndarray) -> np.ndarray:
        if x.size == 0 or not self._inst:
            return _silence(self.ch)
        if x.ndim != 2 or x.shape[1] != self.ch:
            raise ValueError(f"SoundTouchDSP expects (n,{self.ch}) float32, got {x.shape}")
        x = np.ascontiguousarray(_as_float32(x))
        self._lib.soundtouch_putSamples(self._inst, x.ctypes.data_as(_FLOAT_P), x.shape[0])
        return self._receive_all()

    def _receive_all(self) -> np.ndarray:
        blocks = []
        while self._lib.soundtouch_numSamples(self._inst) > 0:
            block = np.empty((self.DRAIN_BLOCK, self.ch), dtype=np.float32)
            got = self._lib.soundtouch_receiveSamples(self._inst, block.ctypes.data_as(_FLOAT_P), self.DRAIN_BLOCK)
            if got <= 0:
                break
            blocks.append(block[:got])
            if got < self.DRAIN_BLOCK:
                break
        if not blocks:
            return _silence(self.ch)
        return blocks[0] if len(blocks) == 1 else np.concatenate(blocks)

    def flush(self) -> np.ndarray:
        if not self._inst:
            return _silence(self.ch)
        self._lib.soundtouch_flush(self._inst)
        return self._receive_all()


# -----------------------------
# Fallback DSP: PhaseVocoder + Resampler
# -----------------------------

class StreamingResampler:
    """
    Linear-interpolating streaming resampler: speed and pitch move together.
    factor > 1.0 plays faster and higher, factor < 1.0 slower and lower.
    """
    def __init__(self, channels: int):
        self.channels = channels
        self.factor = 1.0
        self._phase = 0.0
        self._tail: Optional[np.ndarray] = None

    def reset(self):
        self._phase = 0.0
        self._tail = None

    def set_factor(self, factor: float):
        self.factor = clamp(float(factor), 0.25, 4.0)

    def process(self, x: np.ndarray) -> np.ndarray:
        if x.size == 0:
            return _silence(self.channels)
        x = _as_float32(x)
        if self._tail is not None:
            x = np.concatenate([self._tail, x])
        # The last frame is kept to interpolate across block boundaries.
        self._tail = x[-1:].copy()
        last = x.shape[0] - 1
        if last < 1:
            return _silence(self.channels)

        count = int(math.floor((last - 1e-6 - self._phase) / self.factor)) + 1
        if count <= 0:
            self._phase -= last
            return _silence(self.channels)

        pos = self._phase + np.arange(count, dtype=np.float64) * self.factor
        idx = pos.astype(np.int64)
        w = (pos - idx).astype(np.float32)[:, None]
        out = x[idx] * (1.0 - w) + x[idx + 1] * w
        self._phase = float(pos[-1]) + self.factor - last
        return out.astype(np.float32, copy=False)


class PhaseVocoderTimeStretch:
    """
    Streaming phase-vocoder time stretch; ratio = output duration / input duration.
    All channels are transformed together.
    """
    def __init__(self, sample_rate: int, channels: int, n_fft: int = 2048, hop_a: int = 512):
        self.sr = sample_rate
        self.channels = channels
        self.n_fft = int(n_fft)
        self.hop_a = int(hop_a)
        self.ratio = 1.0
        self.hop_s = self.hop_a
        self.window = np.hanning(self.n_fft).astype(np.float32)[:, None]
        bins = self.n_fft // 2 + 1
        self._expected = (2.0 * np.pi * np.arange(bins) / self.n_fft)[:, None]
        self._last_phase = np.zeros((bins, channels))
        self._synth_phase = np.zeros((bins, channels))
        self._pending = _silence(channels)
        self._overlap = _silence(channels)
        self._write = 0

    def reset(self):
        self._last_phase.fill(0.0)
        self._synth_phase.fill(0.0)
        self._pending = _silence(self.channels)
        self._overlap = _silence(self.channels)
        self._write = 0

    def set_ratio(self, ratio: float):
        self.ratio = clamp(float(ratio), 0.25, 4.0)
        self.hop_s = max(1, int(round(self.hop_a * self.ratio)))

    def _stretch_frame(self, frame: np.ndarray) -> np.ndarray:
        spectrum = np.fft.rfft(frame * self.window, axis=0)
        phase = np.angle(spectrum)
        deviation = phase - self._last_phase - self._expected * self.hop_a
        deviation = (deviation + np.pi) % (2.0 * np.pi) - np.pi
        self._synth_phase += (self._expected + deviation / self.hop_a) * self.hop_s
        self._last_phase = phase
        y = np.fft.irfft(np.abs(spectrum) * np.exp(1j * self._synth_phase), n=self.n_fft, axis=0)
        return (y * self.window).astype(np.float32)

    def process(self, x: np.ndarray) -> np.ndarray:
        if x.size:
            self._pending = np.concatenate([self._pending, _as_float32(x)])

        while self._pending.shape[0] >= self.n_fft:
            frame = self._pending[:self.n_fft]
            self._pending = self._pending[self.hop_a:]
            end = self._write + self.n_fft
            if self._overlap.shape[0] < end:
                pad = np.zeros((end - self._overlap.shape[0], self.channels), dtype=np.float32)
                self._overlap = np.concatenate([self._overlap, pad])
            self._overlap[self._write:end] += self._stretch_frame(frame)
            self._write += self.hop_s

        # Samples before the write head get no further overlap-add.
        done = self._overlap[:self._write].copy()
        self._overlap = self._overlap[self._write:]
        self._write = 0
        return done


class FallbackTempoPitch(DSPBase):
    """Phase vocoder for tempo, resampler for pitch; resampler only in tape mode."""
    name = "PhaseVocoder"
    def __init__(self, sample_rate: int, channels: int):
        self.sr = sample_rate
        self.ch = channels
        self._pv = PhaseVocoderTimeStretch(sample_rate, channels, n_fft=2048, hop_a=512)
        self._rs = StreamingResampler(channels)
        self._stretch = True
        self.set_controls(1.0, 0.0, True, False)

    def reset(self) -> None:
        self._pv.reset()
        self._rs.reset()

    def set_controls(self, tempo: float, pitch_semitones: float, key_lock: bool, tape_mode: bool) -> None:
        self.tempo = clamp(float(tempo), *TEMPO_RANGE)
        self.pitch_st = clamp(float(pitch_semitones), *PITCH_RANGE_ST)
        self.key_lock = bool(key_lock)
        self.tape_mode = bool(tape_mode)
        self._stretch = self.key_lock and not self.tape_mode

        if self._stretch:
            # Stretch by shift/tempo, then resample by shift: duration scales 1/tempo, pitch by shift.
            shift = semitones_to_factor(self.pitch_st)
            self._pv.set_ratio(shift / self.tempo)
            self._rs.set_factor(shift)
        else:
            self._rs.set_factor(self.tempo)

    def process(self, x: np.ndarray) -> np.ndarray:
        if x.size == 0:
            return _silence(self.ch)
        x = _as_float32(x)
        if self._stretch:
            x = self._pv.process(x)
            if x.size == 0:
                return x
        return self._rs.process(x)

    def flush(self) -> np.ndarray:
        return _silence(self.ch)


def make_dsp(sample_rate: int, channels: int) -> tuple[DSPBase, str]:
    """Best available processor and a display name. TEMPOPITCH_DSP forces one."""
    mode = os.environ.get("TEMPOPITCH_DSP", "auto").strip().lower()
    if mode == "phasevocoder":
        return FallbackTempoPitch(sample_rate, channels), "PhaseVocoder (forced)"
    try:
        return SoundTouchDSP(sample_rate, channels), "SoundTouch"
    except SoundTouchUnavailable as e:
        if mode == "soundtouch":
            raise
        logger.debug("SoundTouch unavailable, using phase vocoder: %s", e)
        return FallbackTempoPitch(sample_rate, channels), f"PhaseVocoder (SoundTouch unavailable: {e})"


# -----------------------------
# FFmpeg decoding
# -----------------------------

def make_ffmpeg_cmd(source: str, start_sec: float, sample_rate: int, channels: int) -> List[str]:
    """Decode a path, URL or "pipe:0" to interleaved float32 PCM on stdout."""
    cmd = ["ffmpeg", "-hide_banner", "-loglevel", "error"]
    if source != "pipe:0":
        cmd.append("-nostdin")
    if start_sec > 0:
        cmd += ["-ss", str(max(0.0, start_sec))]
    if "://" in source:
        cmd += ["-reconnect", "1", "-reconnect_streamed", "1"]
    return cmd + [
        "-i", source,
        "-vn",
        "-ac", str(channels),
        "-ar", str(sample_rate),
        "-f", "f32le",
        "pipe:1",
    ]


def make_ffprobe_cmd(source: str) -> List[str]:
    return [
        "ffprobe",
        "-v", "error",
        "-print_format", "json",
        "-show_entries", "format=duration",
        source,
    ]


def parse_ffprobe_duration(stdout: str) -> float:
    """Duration in seconds from ffprobe JSON; NaN when absent (live or unbounded)."""
    try:
        data = json.loads(stdout or "{}")
    except json.JSONDecodeError:
        return math.nan
    fmt = data.get("format", {}) or {}
    raw = fmt.get("duration")
    if raw in (None, "", "N/A"):
        return math.nan
    duration = safe_float(str(raw), math.nan)
    if not math.isfinite(duration) or duration < 0:
        return math.nan
    return duration


def probe_duration(source: str, timeout: float) -> float:
    """
    Blocking ffprobe call. Raises RuntimeError carrying ffprobe's stderr on failure.
    """
    if not have_exe("ffprobe"):
        raise RuntimeError("ffprobe not found in PATH.")
    try:
        p = subprocess.run(
            make_ffprobe_cmd(source),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"Timed out after {timeout:.0f}s waiting for stream metadata") from None
    if p.returncode != 0:
        detail = (p.stderr or "").strip() or f"ffprobe exited with code {p.returncode}"
        raise RuntimeError(detail)
    return parse_ffprobe_duration(p.stdout)
