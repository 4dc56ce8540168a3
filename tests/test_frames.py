from __future__ import annotations

import wave
from pathlib import Path

import numpy as np
import pytest

from waveform import DecodeFailure, InvalidDimensions, WavFrameSource, pcm_to_float, readable_wav, reduce


def test_windows_follow_frames_per_sample_and_keep_drift(make_wav) -> None:
    path = make_wav(np.linspace(-0.5, 0.5, 10))
    with WavFrameSource(path, 3) as source:
        assert (source.frames, source.channels, source.sample_rate) == (10, 1, 8000)
        assert source.frames_per_sample == 3
        windows = list(source)

    # 10 frames in windows of 3: four windows for a width of three.
    assert len(windows) == 4
    assert all(w.shape == (3, 1) for w in windows)
    last = windows[-1]
    assert not np.isnan(last[0, 0])
    assert np.isnan(last[1:]).all()


def test_short_clips_get_one_frame_per_window(make_wav) -> None:
    path = make_wav([0.25, -0.5])
    with WavFrameSource(path, 10) as source:
        assert source.frames_per_sample == 1
        assert reduce(source, "peak", source.channels) == pytest.approx([0.25, 0.5])


def test_stereo_frames_are_scaled_to_floats(make_wav) -> None:
    path = make_wav(np.tile([0.5, -0.25], (8, 1)))
    with WavFrameSource(path, 2) as source:
        assert source.channels == 2
        windows = list(source)
    assert len(windows) == 2
    np.testing.assert_allclose(windows[0], [[0.5, -0.25]] * 4)


def test_pcm_sample_widths() -> None:
    np.testing.assert_allclose(pcm_to_float(bytes([128, 255, 0]), 1), [0.0, 127 / 128, -1.0])
    np.testing.assert_allclose(pcm_to_float(np.array([16384, -32768], "<i2").tobytes(), 2), [0.5, -1.0])
    np.testing.assert_allclose(pcm_to_float(b"\x00\x00\x40\x00\x00\xc0", 3), [0.5, -0.5])
    np.testing.assert_allclose(pcm_to_float(np.array([2 ** 30], "<i4").tobytes(), 4), [0.5])
    with pytest.raises(DecodeFailure):
        pcm_to_float(b"\x00" * 5, 5)


def test_24_bit_wav(tmp_path: Path) -> None:
    path = tmp_path / "deep.wav"
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(3)
        wf.setframerate(8000)
        wf.writeframes(b"\x00\x00\x40" * 4 + b"\x00\x00\xc0" * 4)
    with WavFrameSource(path, 2) as source:
        assert reduce(source, "peak", 1) == pytest.approx([0.5, 0.5])


def test_unreadable_wav_is_a_decode_failure(tmp_path: Path) -> None:
    path = tmp_path / "broken.wav"
    path.write_text("not a wav file")
    with pytest.raises(DecodeFailure):
        WavFrameSource(path, 10)


@pytest.mark.parametrize("width", [0, -1])
def test_width_must_be_positive(make_wav, width: int) -> None:
    with pytest.raises(InvalidDimensions):
        WavFrameSource(make_wav([0.0] * 4), width)


def test_float_wav_is_not_read_as_integer_pcm(make_float_wav, make_wav) -> None:
    path = make_float_wav([0.5, -0.5] * 8)
    assert readable_wav(path) is False
    assert readable_wav(make_wav([0.5, -0.5])) is True
    with pytest.raises(DecodeFailure):
        WavFrameSource(path, 10)
