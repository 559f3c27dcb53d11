import asyncio

import numpy as np
import pytest

from audio.media import MediaHandle, clear_duration_cache
from models import ReadyState


class _BufferedDecoder:
    """Decoder stand-in that delivers a fixed amount of PCM as soon as it starts."""

    instances = []

    def __init__(self, url, start_sec, sample_rate, channels, ring, prebuffer_sec, state_cb):
        self.url = url
        self.start_sec = start_sec
        self.ring = ring
        self.channels = channels
        self.state_cb = state_cb
        self.stopped = False
        _BufferedDecoder.instances.append(self)

    def start(self):
        self.ring.push_nowait(np.full((200, self.channels), 0.1, dtype=np.float32))
        self.state_cb("ready", None)
        self.state_cb("eof", None)

    def stop(self):
        self.stopped = True


class _TrickleDecoder(_BufferedDecoder):
    """Delivers a little PCM and keeps the stream open."""

    def start(self):
        self.ring.push_nowait(np.full((50, self.channels), 0.1, dtype=np.float32))
        self.state_cb("ready", None)


def _media(dsp_factory, probe=lambda url, timeout: 42.0, url="https://example/track"):
    return MediaHandle(
        url,
        sample_rate=100,
        channels=2,
        dsp_factory=dsp_factory,
        probe=probe,
        decoder_cls=_BufferedDecoder,
    )


@pytest.fixture(autouse=True)
def _reset():
    clear_duration_cache()
    _BufferedDecoder.instances.clear()
    yield
    clear_duration_cache()


def test_metadata_arrives_on_the_loop(dsp_factory):
    async def run():
        media = _media(dsp_factory)
        loaded = asyncio.get_running_loop().create_future()
        media.add_event_listener("loadedmetadata", lambda: loaded.set_result(media.duration))
        media.load()
        return media, await asyncio.wait_for(loaded, 5.0)

    media, duration = asyncio.run(run())

    assert duration == 42.0
    assert media.ready_state.value >= ReadyState.HAVE_METADATA.value


def test_cached_duration_is_available_at_construction(dsp_factory):
    async def run():
        first = _media(dsp_factory)
        loaded = asyncio.get_running_loop().create_future()
        first.add_event_listener("loadedmetadata", lambda: loaded.set_result(True))
        first.load()
        await asyncio.wait_for(loaded, 5.0)

    asyncio.run(run())
    second = _media(dsp_factory)

    assert second.ready_state == ReadyState.HAVE_METADATA
    assert second.duration == 42.0


def test_probe_failure_fires_error(dsp_factory):
    def probe(url, timeout):
        raise RuntimeError("Server returned 404 Not Found")

    async def run():
        media = _media(dsp_factory, probe=probe)
        failed = asyncio.get_running_loop().create_future()
        media.add_event_listener("error", failed.set_result)
        media.load()
        return media, await asyncio.wait_for(failed, 5.0)

    media, message = asyncio.run(run())

    assert message == "Server returned 404 Not Found"
    assert media.error == message


def test_unknown_event_name_is_rejected(dsp_factory):
    media = _media(dsp_factory)
    with pytest.raises(ValueError):
        media.add_event_listener("progress", lambda: None)


def test_rate_is_a_key_locked_tempo_change(dsp_factory):
    media = _media(dsp_factory)
    dsp = dsp_factory.created[-1]

    for preserves_pitch in (True, False):
        media.preserves_pitch = preserves_pitch
        for rate in (0.5, 1.5, 2.0):
            media.playback_rate = rate
            assert (dsp.tempo, dsp.pitch_st, dsp.key_lock, dsp.tape_mode) == (rate, 0.0, True, False)
    assert media.preserves_pitch is False


def test_read_consumes_source_at_playback_rate(dsp_factory):
    media = _media(dsp_factory, url="https://example/read")
    media.preserves_pitch = False
    media._start_decoder(0.0)
    media.playback_rate = 2.0
    media.play()

    out = media.read(50)

    assert out.shape == (50, 2)
    assert np.allclose(out, 0.1)
    assert media.current_time == 1.0


def test_read_is_silent_while_paused(dsp_factory):
    media = _media(dsp_factory, url="https://example/paused")
    media._start_decoder(0.0)

    out = media.read(10)

    assert np.all(out == 0.0)
    assert media.current_time == 0.0


def test_detach_stops_reading(dsp_factory):
    media = _media(dsp_factory, url="https://example/detach")
    media._start_decoder(0.0)
    decoder = _BufferedDecoder.instances[-1]
    media.play()

    media.detach()

    assert decoder.stopped
    assert media.src == ""
    assert media.paused
    assert np.all(media.read(10) == 0.0)
    assert dsp_factory.created[-1].released


def test_seek_restarts_decoder_at_position(dsp_factory):
    media = _media(dsp_factory, url="https://example/seek")
    media.duration = 30.0
    media._start_decoder(0.0)

    media.current_time = 12.0
    media.current_time = 99.0

    assert _BufferedDecoder.instances[-2].start_sec == 12.0
    assert _BufferedDecoder.instances[-1].start_sec == 30.0
    assert media.current_time == 30.0


def test_stall_and_resume_fire_once_each(dsp_factory):
    media = MediaHandle(
        "https://example/trickle",
        sample_rate=100,
        channels=2,
        dsp_factory=dsp_factory,
        probe=lambda url, timeout: 42.0,
        decoder_cls=_TrickleDecoder,
    )
    events = []
    for name in ("playing", "waiting", "stalled", "ended"):
        media.add_event_listener(name, lambda name=name: events.append(name))
    media._start_decoder(0.0)

    media.play()
    media.read(100)
    media.read(10)
    media._ring.push_nowait(np.full((100, 2), 0.1, dtype=np.float32))
    media.read(10)

    assert events == ["playing", "stalled", "waiting", "playing"]
