from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto

import numpy as np


@dataclass(frozen=True)
class BufferPreset:
    blocksize_frames: int
    latency: str | float
    target_sec: float
    high_sec: float
    low_sec: float
    ring_max_seconds: float


class PlaybackMode(Enum):
    NONE = "none"
    LOCAL = "local"
    STREAM = "stream"


class TransportState(Enum):
    STOPPED = auto()
    STARTED = auto()
    PAUSED = auto()


class ReadyState(Enum):
    HAVE_NOTHING = 0
    HAVE_METADATA = 1
    HAVE_CURRENT_DATA = 2
    HAVE_FUTURE_DATA = 3
    HAVE_ENOUGH_DATA = 4


@dataclass(frozen=True)
class DecodedAudio:
    """Fully decoded PCM, float32 shaped (frames, channels)."""
    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frames / float(self.sample_rate)


@dataclass(frozen=True)
class EngineState:
    mode: PlaybackMode
    is_playing: bool
    current_rate: float
    current_detune: int
    has_backend: bool


@dataclass
class SourceInfo:
    title: str
    thumbnail_url: str
    duration_sec: float
    uploader_name: str


@dataclass(frozen=True)
class AuthStatus:
    logged_in: bool
    name: str = ""


@dataclass(frozen=True)
class AuthFlow:
    verification_url: str
    user_code: str


@dataclass(frozen=True)
class PlaybackProgress:
    position_sec: float
    duration_sec: float
    fraction: float
