from __future__ import annotations

import math
import os
import shutil


def have_exe(name: str) -> bool:
    return shutil.which(name) is not None

def clamp(x: float, lo: float, hi: float) -> float:
    return lo if x < lo else hi if x > hi else x

def semitones_to_factor(semitones: float) -> float:
    return float(2.0 ** (semitones / 12.0))

def cents_to_semitones(cents: float) -> float:
    # Pitch-shift units are semitones; engine state keeps cents.
    return cents / 100

def format_time(seconds: float) -> str:
    if not math.isfinite(seconds) or seconds < 0:
        seconds = 0.0
    total = int(seconds + 0.5)
    m, s = divmod(total, 60)
    h, m = divmod(m, 60)
    if h > 0:
        return f"{h:d}:{m:02d}:{s:02d}"
    return f"{m:d}:{s:02d}"

def safe_float(x: str, default: float = 0.0) -> float:
    try:
        return float(x)
    except Exception:
        return default

def env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")

def env_float(name: str, default: float, lo: float, hi: float) -> float:
    """Float environment variable, clamped; falls back to default on junk."""
    value = safe_float(os.environ.get(name, str(default)), default)
    if not math.isfinite(value):
        value = default
    return clamp(value, lo, hi)
