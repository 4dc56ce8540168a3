#!/usr/bin/env python3
"""Waveform: render PNG waveform images from audio files."""

import argparse
import math
import os
import re
import subprocess
import sys
import time
import wave
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image, ImageDraw

__version__ = "0.1.0"

METHODS = ("peak", "rms")
DEFAULT_OPTIONS = {
    "method": "peak",
    "width": 1800,
    "height": 280,
    "background_color": "#666666",
    "color": "#00ccff",
}
TRANSPARENCY_MASK = "#00ff00"
TRANSPARENCY_ALTERNATE = "#ffff00"  # used when the mask is the background color
TRANSPARENT_PIXEL = (0, 0, 0, 0)
HEX_COLOR = re.compile(r"#?([0-9a-fA-F]{6})")


class WaveformError(Exception):
    """Base class for every error raised by this module."""


class InvalidMethod(WaveformError, ValueError):
    pass


class InvalidDimensions(WaveformError, ValueError):
    pass


class UnparsableColor(WaveformError, ValueError):
    pass


class DestinationExists(WaveformError, FileExistsError):
    pass


class SourceNotFound(WaveformError, FileNotFoundError):
    pass


class DecodeFailure(WaveformError, RuntimeError):
    pass


class Transparent:
    """Marker for "no color": fully transparent pixels."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "TRANSPARENT"


TRANSPARENT = Transparent()


@dataclass(frozen=True)
class ConcreteColor:
    hex: str
    rgba: tuple

    @classmethod
    def from_hex(cls, value: str) -> "ConcreteColor":
        rgba = parse_hex(value)
        return cls("#%02x%02x%02x" % rgba[:3], rgba)


def parse_hex(value) -> tuple:
    """Parse a 6 digit hex color (optionally prefixed with '#') to opaque RGBA."""
    if not isinstance(value, str):
        raise UnparsableColor(f"Color must be a hex string, got {value!r}")
    match = HEX_COLOR.fullmatch(value.strip())
    if not match:
        raise UnparsableColor(f"Unable to parse color '{value}', expected #rrggbb")
    digits = match.group(1)
    r, g, b = (int(digits[i:i + 2], 16) for i in (0, 2, 4))
    return (r, g, b, 255)


def parse_color(value):
    """Turn a color option into a ConcreteColor or TRANSPARENT."""
    if isinstance(value, (ConcreteColor, Transparent)):
        return value
    if isinstance(value, str) and value.strip().lower() == "transparent":
        return TRANSPARENT
    return ConcreteColor.from_hex(value)


def _window_array(window) -> np.ndarray:
    """Return the window as a (frames, channels) float array, NaN rows for missing frames."""
    if isinstance(window, np.ndarray):
        values = window.astype(np.float64, copy=False)
        return values.reshape(-1, 1) if values.ndim == 1 else values

    rows = [frame for frame in window if frame is not None]
    channels = len(np.atleast_1d(rows[0])) if rows else 1
    values = np.full((len(window), channels), np.nan)
    for i, frame in enumerate(window):
        if frame is not None:
            values[i] = np.atleast_1d(np.asarray(frame, dtype=np.float64))
    return values


def _present(values: np.ndarray) -> np.ndarray:
    return ~np.isnan(values).all(axis=1)


def channel_peak(window, channel: int = 0) -> float:
    """Peak absolute value reached on `channel`; missing frames are skipped."""
    values = _window_array(window)
    if values.shape[0] == 0:
        return 0.0
    column = values[_present(values), channel]
    if column.size == 0:
        return 0.0
    return float(np.abs(column).max())


def channel_rms(window, channel: int = 0) -> float:
    """Spread of `channel` around its mean over the window.

    Missing frames count towards the window length but add nothing to the
    sums. This is the standard deviation of the samples rather than a true
    root-mean-square; waveforms drawn with it are calibrated to that.
    """
    values = _window_array(window)
    size = values.shape[0]
    if size == 0:
        return 0.0
    column = values[_present(values), channel]
    avg = column.sum() / size
    return float(math.sqrt(((column - avg) ** 2).sum() / size))


def peak(window, channels: int = 1) -> list:
    """Per channel peaks, not necessarily taken from the same frame."""
    return [channel_peak(window, channel) for channel in range(channels)]


def rms(window, channels: int = 1) -> list:
    return [channel_rms(window, channel) for channel in range(channels)]


REDUCERS = {"peak": peak, "rms": rms}


def check_method(method) -> str:
    if method not in REDUCERS:
        raise InvalidMethod(f"Unknown sampling method {method!r}, expected one of {', '.join(METHODS)}")
    return method


def reduce(windows, method: str = "peak", channel_count: int = 1) -> list:
    """Reduce each frame window to one signed amplitude per pixel column.

    Each channel is reduced on its own with the given method, then the
    "visual" amplitude of the column is the mean across channels.
    """
    reducer = REDUCERS[check_method(method)]
    samples = []
    for window in windows:
        amplitudes = reducer(window, channel_count)
        samples.append(sum(amplitudes) / len(amplitudes) if amplitudes else 0.0)
    return samples


def _check_dimensions(width, height):
    for name, value in (("width", width), ("height", height)):
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise InvalidDimensions(f"Image {name} must be a positive integer, got {value!r}")


@dataclass(frozen=True)
class RenderConfig:
    width: int = DEFAULT_OPTIONS["width"]
    height: int = DEFAULT_OPTIONS["height"]
    background: object = DEFAULT_OPTIONS["background_color"]
    color: object = DEFAULT_OPTIONS["color"]

    def __post_init__(self):
        _check_dimensions(self.width, self.height)
        object.__setattr__(self, "background", parse_color(self.background))
        object.__setattr__(self, "color", parse_color(self.color))

    @classmethod
    def from_options(cls, options: dict) -> "RenderConfig":
        return cls(
            width=options["width"],
            height=options["height"],
            background=options["background_color"],
            color=options["color"],
        )


def mask_color_for(background) -> ConcreteColor:
    """Pick the mask color, avoiding one that would wipe out the background."""
    if isinstance(background, ConcreteColor) and background.hex == TRANSPARENCY_MASK:
        return ConcreteColor.from_hex(TRANSPARENCY_ALTERNATE)
    return ConcreteColor.from_hex(TRANSPARENCY_MASK)


def apply_mask(image: Image.Image, mask: tuple) -> Image.Image:
    """Make every pixel exactly equal to `mask` fully transparent."""
    pixels = np.array(image)
    matches = np.all(pixels == np.array(mask, dtype=pixels.dtype), axis=-1)
    pixels[matches] = TRANSPARENT_PIXEL
    return Image.fromarray(pixels)


def render(samples, config: RenderConfig) -> Image.Image:
    """Draw one vertical bar per sample, centered on the image's zero line."""
    width, height = config.width, config.height
    _check_dimensions(width, height)

    background = config.background
    background_pixel = TRANSPARENT_PIXEL if background is TRANSPARENT else background.rgba

    mask = None
    if config.color is TRANSPARENT:
        mask = mask_color_for(background).rgba
        color = mask
    else:
        color = config.color.rgba

    image = Image.new("RGBA", (width, height), background_pixel)
    draw = ImageDraw.Draw(image)
    # "zero" is the middle of the image, half the amplitude goes above it
    # and half below.
    zero = height / 2.0
    bottom_row = height - 1

    for x, sample in enumerate(samples):
        if x >= width:
            break
        amplitude = float(sample) * height / 2.0
        # Pillow needs integer pixel positions; round() is half-to-even.
        y0, y1 = sorted((round(zero - amplitude), round(zero + amplitude)))
        if y1 < 0 or y0 > bottom_row:
            continue
        draw.line([(x, max(y0, 0)), (x, min(y1, bottom_row))], fill=color)

    if mask is not None:
        image = apply_mask(image, mask)
    return image


class Timer:
    def __init__(self):
        self.started = time.perf_counter()
        self.stopped = None

    def elapsed(self) -> float:
        end = self.stopped if self.stopped is not None else time.perf_counter()
        return end - self.started

    def end(self) -> float:
        if self.stopped is None:
            self.stopped = time.perf_counter()
        return self.elapsed()


class Log:
    """Prints progress and timings to a stream; io=None keeps it quiet."""

    def __init__(self, io=sys.stdout):
        self.io = io

    def out(self, msg: str):
        if self.io is not None:
            print(msg, end="", file=self.io, flush=True)

    def start(self) -> Timer:
        return Timer()

    def done(self, timer: Timer, msg: str = ""):
        self.out(f"{msg} ({timer.end():.3f}s)\n")

    @contextmanager
    def timed(self, message: str = None):
        timer = self.start()
        if message:
            self.out(message)
        try:
            yield timer
        finally:
            self.done(timer)


def pcm_to_float(raw: bytes, sample_width: int) -> np.ndarray:
    """Scale little-endian integer PCM to floats in [-1, 1)."""
    if sample_width == 1:
        return (np.frombuffer(raw, dtype=np.uint8).astype(np.float64) - 128.0) / 128.0
    if sample_width == 2:
        return np.frombuffer(raw, dtype="<i2").astype(np.float64) / 32768.0
    if sample_width == 3:
        b = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3).astype(np.int32)
        ints = b[:, 0] | (b[:, 1] << 8) | (b[:, 2] << 16)
        ints = (ints ^ 0x800000) - 0x800000
        return ints.astype(np.float64) / 8388608.0
    if sample_width == 4:
        return np.frombuffer(raw, dtype="<i4").astype(np.float64) / 2147483648.0
    raise DecodeFailure(f"Unsupported sample width: {sample_width} bytes")


class WavFrameSource:
    """Reads a WAV file as one frame window per output pixel column.

    The window length is fixed up front from the frame count and the
    requested width; reading continues until the file runs out, so the
    number of windows can differ slightly from `width`.
    """

    def __init__(self, path, width: int):
        if isinstance(width, bool) or not isinstance(width, int) or width <= 0:
            raise InvalidDimensions(f"Image width must be a positive integer, got {width!r}")
        self.path = str(path)
        try:
            self._wav = wave.open(self.path, "rb")
        except (wave.Error, EOFError) as e:
            raise DecodeFailure(f"Unable to read WAV file '{self.path}': {e}") from e
        self.channels = self._wav.getnchannels()
        self.sample_width = self._wav.getsampwidth()
        self.sample_rate = self._wav.getframerate()
        self.frames = self._wav.getnframes()
        self.frames_per_sample = max(1, self.frames // width)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self._wav.close()

    def __iter__(self):
        frame_bytes = self.sample_width * self.channels
        while True:
            raw = self._wav.readframes(self.frames_per_sample)
            count = len(raw) // frame_bytes
            if count == 0:
                break
            values = pcm_to_float(raw[:count * frame_bytes], self.sample_width).reshape(count, self.channels)
            if count < self.frames_per_sample:
                missing = np.full((self.frames_per_sample - count, self.channels), np.nan)
                values = np.vstack([values, missing])
            yield values


def readable_wav(path) -> bool:
    """True when the wave module can read `path` as integer PCM."""
    try:
        with wave.open(str(path), "rb") as wav:
            return wav.getsampwidth() in (1, 2, 3, 4)
    except (wave.Error, EOFError):
        return False


def to_wav(src: str, dest: str, log: Log = None) -> bool:
    """Decode `src` to a WAV file at `dest` with ffmpeg. Returns True on success."""
    log = log or Log(None)
    if os.path.exists(dest):
        raise DestinationExists(f"Destination WAV file '{dest}' exists!")

    timer = log.start()
    log.out(f"Decoding source audio '{src}' to WAV...")
    try:
        subprocess.run(
            ["ffmpeg", "-i", src, "-f", "wav", "-acodec", "pcm_s16le", dest],
            capture_output=True,
        )
    except FileNotFoundError:
        log.done(timer, " ffmpeg not found")
        return False
    log.done(timer)
    return os.path.isfile(dest)


class Waveform:
    """A waveform generator bound to one audio file.

    Anything that is not a WAV file is first decoded to a WAV next to it
    with ffmpeg, so available input formats depend on the local ffmpeg.
    WAVs the wave module cannot read (32-bit float, for one) go through
    ffmpeg too, into a sibling ".pcm.wav".

    Example:

        waveform = Waveform("mp3s/Kickstart My Heart.mp3", log=Log())
        waveform.generate("waves/Kickstart My Heart.png")
        waveform.generate("waves/Kickstart My Heart rms.png", method="rms")
    """

    def __init__(self, audio, log: Log = None):
        if not audio:
            raise SourceNotFound("No source audio filename given, must be an existing sound file.")
        audio = str(audio)
        if not os.path.exists(audio):
            raise SourceNotFound(f"Source audio file '{audio}' not found.")

        self.log = log or Log(None)

        if Path(audio).suffix.lower() != ".wav":
            self._decode(audio, str(Path(audio).with_suffix(".wav")))
        elif not readable_wav(audio):
            # float or extensible WAVs the wave module can't read
            self._decode(audio, str(Path(audio).with_suffix("")) + ".pcm.wav")
        else:
            self.audio = audio

    def _decode(self, audio: str, dest: str):
        self.audio = dest
        if not to_wav(audio, dest, self.log):
            raise DecodeFailure(
                f"Unable to decode source '{audio}' to WAV. "
                "Do you have ffmpeg installed with an appropriate decoder for your source file?"
            )

    def frames(self, width: int, method: str = "peak") -> list:
        """One amplitude per horizontal pixel, sampled with `method` (peak or rms)."""
        check_method(method)
        with WavFrameSource(self.audio, width) as source:
            with self.log.timed(f"Sampling {source.frames_per_sample} frames per sample..."):
                return reduce(self._progress(source), method, source.channels)

    def _progress(self, windows):
        for window in windows:
            yield window
            self.log.out(".")

    def generate(self, filename, **options) -> str:
        """Render the waveform to a PNG at `filename`.

        Options (defaults in DEFAULT_OPTIONS):
          method: "peak" looks more dynamic, "rms" is smoother.
          width, height: image size in pixels.
          background_color: hex color or "transparent".
          color: hex color, or "transparent" for a cutout effect on a
            solid background.
        """
        if not filename:
            raise ValueError("No destination filename given for waveform")
        filename = str(filename)
        if os.path.exists(filename):
            raise DestinationExists(f"Destination file {filename} exists")

        unknown = set(options) - set(DEFAULT_OPTIONS)
        if unknown:
            raise TypeError(f"Unknown waveform options: {', '.join(sorted(unknown))}")
        options = {**DEFAULT_OPTIONS, **options}
        config = RenderConfig.from_options(options)
        method = check_method(options["method"])

        timer = self.log.start()
        samples = self.frames(config.width, method)
        with self.log.timed("Drawing..."):
            image = render(samples, config)
        image.save(filename, format="PNG")
        self.log.done(timer, f"Generated waveform '{filename}'")
        return filename


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Generate a waveform PNG from an audio file.")
    parser.add_argument("source", help="Path to the source audio file (WAV, or anything ffmpeg decodes)")
    parser.add_argument("destination", help="Path of the PNG to create (must not exist)")
    parser.add_argument(
        "--method", "-m", default=DEFAULT_OPTIONS["method"], choices=METHODS,
        help="Sampling method: peak or rms (default: peak)"
    )
    parser.add_argument(
        "--width", "-W", type=int, default=DEFAULT_OPTIONS["width"],
        help="Image width in pixels (default: 1800)"
    )
    parser.add_argument(
        "--height", "-H", type=int, default=DEFAULT_OPTIONS["height"],
        help="Image height in pixels (default: 280)"
    )
    parser.add_argument(
        "--background-color", "-b", default=DEFAULT_OPTIONS["background_color"],
        help="Background color as hex, or 'transparent' (default: #666666)"
    )
    parser.add_argument(
        "--color", "-c", default=DEFAULT_OPTIONS["color"],
        help="Waveform color as hex, or 'transparent' (default: #00ccff)"
    )
    parser.add_argument("--quiet", "-q", action="store_true", help="Don't print progress")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    log = Log(None if args.quiet else sys.stdout)

    try:
        waveform = Waveform(args.source, log)
        waveform.generate(
            args.destination,
            method=args.method,
            width=args.width,
            height=args.height,
            background_color=args.background_color,
            color=args.color,
        )
    except WaveformError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
