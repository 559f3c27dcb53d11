"""Fakes for the audio device, the decoder, the media handle and the DSP.

They let the engine run its full load/teardown lifecycle without ffmpeg,
an audio device or a network.
"""

from __future__ import annotations

import asyncio
import math
from collections import defaultdict

import numpy as np
import pytest

from audio.engine import PlaybackEngine
from audio.errors import DecodeError, OutputError
from audio.nodes import AudioNode
from dsp import DSPBase
from models import DecodedAudio, ReadyState

FAKE_SAMPLE_RATE = 100


class _StubDSP(DSPBase):
    """Pass-through DSP that records the last controls it was given."""

    def __init__(self, owner: "_StubDSPFactory", sample_rate: int, channels: int):
        self.owner = owner
        self.sample_rate = sample_rate
        self.channels = channels
        self.tempo = 1.0
        self.pitch_st = 0.0
        self.key_lock = True
        self.tape_mode = False
        self.released = False

    def set_controls(self, tempo, pitch_semitones, key_lock, tape_mode):
        self.tempo = tempo
        self.pitch_st = pitch_semitones
        self.key_lock = key_lock
        self.tape_mode = tape_mode

    def reset(self):
        pass

    def process(self, x):
        return np.array(x, dtype=np.float32, copy=True)

    def flush(self):
        return np.zeros((0, self.channels), dtype=np.float32)

    def release(self):
        if not self.released:
            self.released = True
            self.owner.live -= 1


class _StubDSPFactory:
    def __init__(self):
        self.created = []
        self.live = 0
        self.max_live = 0

    def __call__(self, sample_rate, channels):
        dsp = _StubDSP(self, sample_rate, channels)
        self.created.append(dsp)
        self.live += 1
        self.max_live = max(self.max_live, self.live)
        return dsp, "Stub"


class _FakeOutput(AudioNode):
    def __init__(self, channels: int = 2, fail_start: bool = False):
        super().__init__(channels)
        self.sample_rate = FAKE_SAMPLE_RATE
        self.fail_start = fail_start
        self.starts = 0
        self.closed = False

    def render(self, frames):
        return self.pull(frames)

    def start(self):
        if self.fail_start:
            raise OutputError("Audio output error: no device")
        self.starts += 1

    def close(self):
        self.closed = True


class _FakeMediaHandle:
    """Media element stand-in; tests fire its lifecycle events by hand."""

    def __init__(self, url: str, auto_duration=None, cached_duration=None):
        self.src = url
        self.sample_rate = FAKE_SAMPLE_RATE
        self.channels = 2
        self.preserves_pitch = True
        self.playback_rate = 1.0
        self.current_time = 0.0
        self.paused = True
        self.loaded = False
        self.detached = False
        self.error = None
        self._auto_duration = auto_duration
        self._listeners = defaultdict(list)
        if cached_duration is not None:
            self.duration = cached_duration
            self.ready_state = ReadyState.HAVE_METADATA
        else:
            self.duration = math.nan
            self.ready_state = ReadyState.HAVE_NOTHING

    def add_event_listener(self, name, callback):
        self._listeners[name].append(callback)

    def remove_event_listener(self, name, callback):
        if callback in self._listeners[name]:
            self._listeners[name].remove(callback)

    def fire(self, name, *args):
        for callback in list(self._listeners[name]):
            callback(*args)

    def load(self):
        self.loaded = True
        if self._auto_duration is not None:
            asyncio.get_running_loop().call_soon(self.resolve, self._auto_duration)

    def resolve(self, duration):
        self.duration = duration
        self.ready_state = ReadyState.HAVE_METADATA
        self.fire("loadedmetadata")

    def fail(self, message):
        self.error = message
        self.fire("error", message)

    def play(self):
        self.paused = False

    def pause(self):
        self.paused = True

    def read(self, frames):
        return np.full((frames, self.channels), 0.25, dtype=np.float32)

    def detach(self):
        self.paused = True
        self.detached = True
        self._listeners.clear()
        self.src = ""


class _MediaFactory:
    def __init__(self, auto_duration=None):
        self.auto_duration = auto_duration
        self.created = []

    def __call__(self, url):
        media = _FakeMediaHandle(url, auto_duration=self.auto_duration)
        self.created.append(media)
        return media

    @property
    def alive(self):
        return sum(1 for media in self.created if not media.detached)


async def fake_decode(data: bytes) -> DecodedAudio:
    """Payload is the duration in seconds as ASCII; b"BAD..." fails."""
    if not data or data.startswith(b"BAD"):
        raise DecodeError("Invalid data found when processing input")
    frames = int(round(float(data.decode("ascii")) * FAKE_SAMPLE_RATE))
    return DecodedAudio(samples=np.zeros((frames, 2), dtype=np.float32), sample_rate=FAKE_SAMPLE_RATE)


async def start_stream(engine, media_factory, url, duration=120.0, on_progress=None):
    task = asyncio.ensure_future(engine.load_url(url, on_progress))
    await asyncio.sleep(0)
    media_factory.created[-1].resolve(duration)
    return await task


@pytest.fixture
def dsp_factory():
    return _StubDSPFactory()


@pytest.fixture
def make_output():
    return _FakeOutput


@pytest.fixture
def output(make_output):
    return make_output()


@pytest.fixture
def media_factory():
    return _MediaFactory()


@pytest.fixture
def make_media_factory():
    return _MediaFactory


@pytest.fixture
def make_media():
    return _FakeMediaHandle


@pytest.fixture
def decoder():
    return fake_decode


@pytest.fixture
def stream_loader():
    return start_stream


@pytest.fixture
def engine(output, media_factory, dsp_factory):
    eng = PlaybackEngine(
        output=output,
        decoder=fake_decode,
        media_factory=media_factory,
        dsp_factory=dsp_factory,
    )
    yield eng
    eng.shutdown()
