from __future__ import annotations

from models import PlaybackMode


class PlaybackBackend:
    """Mode-specific playback implementation owned by the engine."""
    mode: PlaybackMode = PlaybackMode.NONE

    def play(self) -> None:
        raise NotImplementedError
    def pause(self) -> None:
        raise NotImplementedError
    def stop(self) -> None:
        raise NotImplementedError
    def seek(self, seconds: float) -> None:
        raise NotImplementedError
    def set_rate(self, rate: float) -> None:
        raise NotImplementedError
    def set_detune(self, cents: int) -> None:
        raise NotImplementedError
    def current_time(self) -> float:
        raise NotImplementedError
    def duration(self) -> float:
        """Known duration in seconds; NaN while unknown."""
        raise NotImplementedError
    def dispose(self) -> None:
        """Release every owned resource. Idempotent."""
        raise NotImplementedError
