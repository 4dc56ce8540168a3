from __future__ import annotations

import struct
import wave
from pathlib import Path

import numpy as np
import pytest


def write_wav(path: Path, data, *, sample_rate: int = 8000) -> Path:
    """Write float frames shaped (frames, channels) as 16-bit PCM."""
    data = np.asarray(data, dtype=np.float64)
    if data.ndim == 1:
        data = data.reshape(-1, 1)
    ints = np.clip(np.round(data * 32768.0), -32768, 32767).astype("<i2")
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(data.shape[1])
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(ints.tobytes())
    return path


@pytest.fixture
def make_wav(tmp_path: Path):
    def _make(data, name: str = "tone.wav", **kwargs) -> Path:
        return write_wav(tmp_path / name, data, **kwargs)

    return _make


def write_float_wav(path: Path, data, *, sample_rate: int = 8000) -> Path:
    """Write float frames as a 32-bit IEEE float WAV (format tag 3)."""
    data = np.asarray(data, dtype="<f4")
    if data.ndim == 1:
        data = data.reshape(-1, 1)
    channels = data.shape[1]
    payload = data.tobytes()
    fmt = struct.pack("<HHIIHH", 3, channels, sample_rate, sample_rate * channels * 4, channels * 4, 32)
    with open(path, "wb") as f:
        f.write(b"RIFF" + struct.pack("<I", 4 + 8 + len(fmt) + 8 + len(payload)) + b"WAVE")
        f.write(b"fmt " + struct.pack("<I", len(fmt)) + fmt)
        f.write(b"data" + struct.pack("<I", len(payload)) + payload)
    return path


@pytest.fixture
def make_float_wav(tmp_path: Path):
    def _make(data, name: str = "float.wav", **kwargs) -> Path:
        return write_float_wav(tmp_path / name, data, **kwargs)

    return _make
