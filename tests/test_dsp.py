import math

import numpy as np
import pytest

import dsp
from dsp import (
    FallbackTempoPitch,
    SoundTouchUnavailable,
    StreamingResampler,
    make_dsp,
    make_ffmpeg_cmd,
    parse_ffprobe_duration,
    probe_duration,
)


def test_make_dsp_forced_phase_vocoder(monkeypatch):
    monkeypatch.setenv("TEMPOPITCH_DSP", "phasevocoder")

    engine, name = make_dsp(44100, 2)

    assert isinstance(engine, FallbackTempoPitch)
    assert name == "PhaseVocoder (forced)"


def test_make_dsp_falls_back_without_soundtouch(monkeypatch):
    monkeypatch.setenv("TEMPOPITCH_DSP", "auto")

    def unavailable(*_args):
        raise SoundTouchUnavailable("not installed")

    monkeypatch.setattr(dsp, "SoundTouchDSP", unavailable)

    engine, name = make_dsp(44100, 2)

    assert isinstance(engine, FallbackTempoPitch)
    assert "not installed" in name


def test_make_dsp_soundtouch_required(monkeypatch):
    monkeypatch.setenv("TEMPOPITCH_DSP", "soundtouch")

    def unavailable(*_args):
        raise SoundTouchUnavailable("not installed")

    monkeypatch.setattr(dsp, "SoundTouchDSP", unavailable)

    with pytest.raises(SoundTouchUnavailable):
        make_dsp(44100, 2)


def test_resampler_changes_length_by_factor():
    fast = StreamingResampler(2)
    fast.set_factor(2.0)
    slow = StreamingResampler(2)
    slow.set_factor(0.5)
    x = np.ones((1000, 2), dtype=np.float32)

    assert fast.process(x).shape == (500, 2)
    assert slow.process(x).shape == (1998, 2)


def test_tape_mode_resamples_only():
    stretch = FallbackTempoPitch(44100, 2)
    stretch.set_controls(2.0, 5.0, False, True)

    y = stretch.process(np.ones((1000, 2), dtype=np.float32))

    assert y.shape == (500, 2)
    assert stretch.pitch_st == 5.0


def test_controls_are_clamped():
    stretch = FallbackTempoPitch(44100, 1)
    stretch.set_controls(4.0, -20.0, True, False)

    assert stretch.tempo == 2.0
    assert stretch.pitch_st == -12.0


@pytest.mark.parametrize(
    "stdout,expected",
    [
        ('{"format": {"duration": "183.250000"}}', 183.25),
        ('{"format": {"duration": "N/A"}}', math.nan),
        ('{"format": {}}', math.nan),
        ("not json", math.nan),
        ('{"format": {"duration": "-4"}}', math.nan),
    ],
)
def test_parse_ffprobe_duration(stdout, expected):
    result = parse_ffprobe_duration(stdout)
    if math.isnan(expected):
        assert math.isnan(result)
    else:
        assert result == expected


def test_ffmpeg_cmd_for_pipe_and_url():
    pipe_cmd = make_ffmpeg_cmd("pipe:0", 0.0, 44100, 2)
    assert "-nostdin" not in pipe_cmd
    assert "-ss" not in pipe_cmd
    assert pipe_cmd[-3:] == ["-f", "f32le", "pipe:1"]

    url_cmd = make_ffmpeg_cmd("https://example/stream", 12.5, 48000, 1)
    assert "-nostdin" in url_cmd
    assert url_cmd[url_cmd.index("-ss") + 1] == "12.5"
    assert "-reconnect" in url_cmd
    assert url_cmd[url_cmd.index("-ar") + 1] == "48000"


def test_probe_duration_without_ffprobe(monkeypatch):
    monkeypatch.setattr(dsp, "have_exe", lambda name: False)

    with pytest.raises(RuntimeError, match="ffprobe not found"):
        probe_duration("https://example/stream", 1.0)
