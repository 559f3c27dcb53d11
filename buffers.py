from __future__ import annotations

import threading
from collections import deque
from typing import Optional

import numpy as np


class AudioRingBuffer:
    """
    Bounded, thread-safe PCM FIFO of (frames, channels) float32 blocks.

    push_blocking(frames, stop_event): waits for room; gives up once stop_event is set
    push_nowait(frames): keeps what fits, drops the rest
    pop(n) / pop_into(out): always fill the request, zero-padding on underrun
    """

    def __init__(self, channels: int, max_seconds: float, sample_rate: int):
        self.channels = channels
        self.sample_rate = sample_rate
        self.max_frames = max(1, int(max_seconds * sample_rate))
        self._blocks: deque[np.ndarray] = deque()
        self._frames = 0
        self._lock = threading.Lock()
        self._space = threading.Condition(self._lock)

    def _check(self, frames: np.ndarray) -> np.ndarray:
        if frames.dtype != np.float32:
            frames = frames.astype(np.float32, copy=False)
        if frames.ndim != 2 or frames.shape[1] != self.channels:
            raise ValueError(f"frames must be (n,{self.channels}) float32, got {frames.shape} {frames.dtype}")
        return frames

    def clear(self) -> None:
        with self._space:
            self._blocks.clear()
            self._frames = 0
            self._space.notify_all()

    def frames_available(self) -> int:
        with self._lock:
            return self._frames

    def frames_free(self) -> int:
        with self._lock:
            return self.max_frames - self._frames

    def push_blocking(self, frames: np.ndarray, stop_event: Optional[threading.Event]) -> None:
        if frames.size == 0:
            return
        frames = self._check(frames)[:self.max_frames]
        with self._space:
            while frames.shape[0]:
                if stop_event is not None and stop_event.is_set():
                    return
                room = self.max_frames - self._frames
                if room <= 0:
                    self._space.wait(timeout=0.05)
                    continue
                self._blocks.append(frames[:room])
                self._frames += min(room, frames.shape[0])
                frames = frames[room:]

    def push_nowait(self, frames: np.ndarray) -> int:
        """Returns the number of frames accepted."""
        if frames.size == 0:
            return 0
        frames = self._check(frames)
        with self._lock:
            take = max(0, min(self.max_frames - self._frames, frames.shape[0]))
            if take:
                self._blocks.append(frames[:take])
                self._frames += take
            return take

    def pop(self, n: int) -> np.ndarray:
        out = np.zeros((max(0, n), self.channels), dtype=np.float32)
        if n > 0:
            self.pop_into(out)
        return out

    def pop_into(self, out: np.ndarray) -> int:
        """Fill `out` from the head of the queue; returns the frames that were real audio."""
        if out.ndim != 2 or out.shape[1] != self.channels or out.dtype != np.float32:
            raise ValueError(f"out must be (n,{self.channels}) float32, got {out.shape} {out.dtype}")
        want = out.shape[0]
        filled = 0
        with self._space:
            while filled < want and self._blocks:
                head = self._blocks[0]
                take = min(want - filled, head.shape[0])
                out[filled:filled + take] = head[:take]
                filled += take
                if take == head.shape[0]:
                    self._blocks.popleft()
                else:
                    self._blocks[0] = head[take:]
                self._frames -= take
            if filled:
                self._space.notify_all()
        out[filled:] = 0.0
        return filled
