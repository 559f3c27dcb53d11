from __future__ import annotations

import os

from models import BufferPreset
from utils import env_float

SAMPLE_RATE = 44100
CHANNELS = 2

# Tempo multiplier and detune bounds exposed to callers.
RATE_MIN = 0.5
RATE_MAX = 2.0
DETUNE_MIN_CENTS = -1200
DETUNE_MAX_CENTS = 1200

BUFFER_PRESETS = {
    "Low latency": BufferPreset(
        blocksize_frames=512,
        latency="low",
        target_sec=0.6,
        high_sec=0.9,
        low_sec=0.3,
        ring_max_seconds=2.0,
    ),
    "Balanced": BufferPreset(
        blocksize_frames=1024,
        latency="high",
        target_sec=1.2,
        high_sec=1.8,
        low_sec=0.6,
        ring_max_seconds=3.0,
    ),
    "Stable": BufferPreset(
        blocksize_frames=2048,
        latency="high",
        target_sec=2.5,
        high_sec=3.5,
        low_sec=1.2,
        ring_max_seconds=5.0,
    ),
}
DEFAULT_BUFFER_PRESET = os.environ.get("TEMPOPITCH_BUFFER_PRESET", "Balanced")
if DEFAULT_BUFFER_PRESET not in BUFFER_PRESETS:
    DEFAULT_BUFFER_PRESET = "Balanced"

# Streaming
STREAM_PREBUFFER_SEC = 0.6
STREAM_CONNECT_TIMEOUT_SEC = env_float("TEMPOPITCH_STREAM_TIMEOUT", 20.0, 1.0, 300.0)
PITCH_SHIFT_WINDOW_SEC = 0.1

# Remote source resolver
API_BASE_URL = os.environ.get("TEMPOPITCH_API_URL", "http://localhost:3001/api").rstrip("/")
USER_AGENT = "TempoPitch-Stream-Engine/1.0"
REQUEST_TIMEOUT_SEC = 7
