import threading

import numpy as np
import pytest

from buffers import AudioRingBuffer


def test_push_nowait_drops_overflow():
    ring = AudioRingBuffer(2, max_seconds=1.0, sample_rate=10)

    accepted = ring.push_nowait(np.ones((15, 2), dtype=np.float32))

    assert accepted == 10
    assert ring.frames_available() == 10
    assert ring.frames_free() == 0
    assert ring.push_nowait(np.ones((1, 2), dtype=np.float32)) == 0


def test_pop_pads_with_silence():
    ring = AudioRingBuffer(2, max_seconds=1.0, sample_rate=10)
    ring.push_nowait(np.full((3, 2), 0.5, dtype=np.float32))
    out = np.ones((5, 2), dtype=np.float32)

    filled = ring.pop_into(out)

    assert filled == 3
    assert np.all(out[:3] == 0.5)
    assert np.all(out[3:] == 0.0)
    assert ring.frames_available() == 0


def test_pop_splits_chunks():
    ring = AudioRingBuffer(1, max_seconds=1.0, sample_rate=100)
    ring.push_nowait(np.arange(6, dtype=np.float32).reshape(-1, 1))

    assert ring.pop(4)[:, 0].tolist() == [0, 1, 2, 3]
    assert ring.pop(2)[:, 0].tolist() == [4, 5]
    assert ring.frames_available() == 0


def test_push_blocking_returns_once_stopped():
    ring = AudioRingBuffer(2, max_seconds=1.0, sample_rate=10)
    ring.push_blocking(np.ones((10, 2), dtype=np.float32), stop_event=None)
    stop = threading.Event()
    stop.set()

    ring.push_blocking(np.ones((5, 2), dtype=np.float32), stop_event=stop)

    assert ring.frames_available() == 10


def test_rejects_wrong_channel_count():
    ring = AudioRingBuffer(2, max_seconds=1.0, sample_rate=10)
    with pytest.raises(ValueError):
        ring.push_nowait(np.ones((4, 1), dtype=np.float32))
