from __future__ import annotations

import threading
from typing import Protocol

from models import TransportState


class TransportSynced(Protocol):
    def unsync(self) -> None: ...


class Transport:
    """
    Shared playback clock. `seconds` is the source position; synced players read
    it on every render and push it forward by the source time they consumed.

    Every seek or stop bumps `serial` so a render that started before the jump
    cannot advance the clock past it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._state = TransportState.STOPPED
        self._seconds = 0.0
        self._serial = 0
        self._limit = float("inf")
        self._synced: list[TransportSynced] = []

    @property
    def state(self) -> TransportState:
        with self._lock:
            return self._state

    @property
    def seconds(self) -> float:
        with self._lock:
            return self._seconds

    @seconds.setter
    def seconds(self, value: float) -> None:
        self.seek(value)

    def snapshot(self) -> tuple[TransportState, float, int]:
        with self._lock:
            return self._state, self._seconds, self._serial

    def set_limit(self, seconds: float) -> None:
        with self._lock:
            self._limit = max(0.0, float(seconds))

    def start(self) -> None:
        with self._lock:
            self._state = TransportState.STARTED

    def pause(self) -> None:
        with self._lock:
            if self._state == TransportState.STARTED:
                self._state = TransportState.PAUSED

    def stop(self) -> None:
        with self._lock:
            self._state = TransportState.STOPPED
            self._seconds = 0.0
            self._serial += 1

    def seek(self, seconds: float) -> None:
        with self._lock:
            self._seconds = min(max(0.0, float(seconds)), self._limit)
            self._serial += 1

    def advance(self, seconds: float, serial: int) -> bool:
        with self._lock:
            if serial != self._serial or self._state != TransportState.STARTED:
                return False
            self._seconds = min(self._seconds + seconds, self._limit)
            return True

    def sync(self, player: TransportSynced) -> None:
        with self._lock:
            if player not in self._synced:
                self._synced.append(player)

    def unsync(self, player: TransportSynced) -> None:
        with self._lock:
            if player in self._synced:
                self._synced.remove(player)

    @property
    def synced(self) -> tuple[TransportSynced, ...]:
        with self._lock:
            return tuple(self._synced)

    def cancel(self) -> None:
        """Drop every synced player and the end-of-source limit."""
        with self._lock:
            players, self._synced = self._synced, []
            self._limit = float("inf")
        for player in players:
            player.unsync()
