"""
Audio codec for synthesized speech.

The speech backend returns headerless PCM plus a MIME-like descriptor such as
``audio/L16;rate=24000``. ``wrap_as_playable_audio`` prepends a canonical
44-byte RIFF/WAVE header so the bytes can be served as a .wav file.
"""

import re
import struct
from pydantic import BaseModel

import config

WAV_HEADER_SIZE = 44
PCM_FORMAT_TAG = 1

# Widths of the header fields: channels, block align and bits are 16-bit,
# sample rate, byte rate and sizes are 32-bit
MAX_U16 = 0xFFFF
MAX_U32 = 0xFFFFFFFF

# Default PCM profile used for duration estimates when nothing better is known
DEFAULT_PLAYBACK_PROFILE = (44100, 2, 16)  # sample rate, channels, bits per sample


class AudioFormat(BaseModel):
    """Effective PCM parameters of an audio payload."""
    channels: int = config.AUDIO_DEFAULT_CHANNELS
    sample_rate: int = config.AUDIO_DEFAULT_SAMPLE_RATE
    bits_per_sample: int = config.AUDIO_DEFAULT_BITS_PER_SAMPLE

    @property
    def block_align(self) -> int:
        return self.channels * self.bits_per_sample // 8

    @property
    def byte_rate(self) -> int:
        return self.sample_rate * self.block_align


def _positive_int(value: str, upper: int) -> int | None:
    try:
        number = int(value.strip())
    except (TypeError, ValueError):
        return None
    return number if 0 < number <= upper else None


def _fit_header_fields(fmt: AudioFormat) -> AudioFormat:
    """Reset fields to defaults until the derived header values fit their widths."""
    defaults = AudioFormat()
    for field in ("channels", "bits_per_sample"):
        if fmt.block_align <= MAX_U16:
            break
        setattr(fmt, field, getattr(defaults, field))
    for field in ("sample_rate", "channels", "bits_per_sample"):
        if fmt.byte_rate <= MAX_U32:
            break
        setattr(fmt, field, getattr(defaults, field))
    return fmt


def parse_format_descriptor(descriptor: str | None) -> AudioFormat:
    """Parse a descriptor like ``audio/L16;codec=pcm;rate=24000``.

    Unknown, malformed or out-of-range parts fall back to the defaults, so the
    result always fits a WAVE header. This never raises.
    """
    fmt = AudioFormat()
    if not descriptor or not isinstance(descriptor, str):
        return fmt

    parts = [part.strip() for part in descriptor.split(";")]
    for part in parts:
        key, _, value = part.partition("=")
        key = key.strip().lower()

        if "/" in key:
            match = re.search(r"\bl(\d+)\b", key.split("/", 1)[1])
            bits = _positive_int(match.group(1), MAX_U16) if match else None
            if bits and bits % 8 == 0:
                fmt.bits_per_sample = bits
        elif key == "rate":
            rate = _positive_int(value, MAX_U32)
            if rate:
                fmt.sample_rate = rate
        elif key == "channels":
            channels = _positive_int(value, MAX_U16)
            if channels:
                fmt.channels = channels

    return _fit_header_fields(fmt)


def build_wav_header(data_length: int, fmt: AudioFormat) -> bytes:
    """Canonical 44-byte WAVE header for a PCM payload of ``data_length`` bytes."""
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_length,
        b"WAVE",
        b"fmt ",
        16,
        PCM_FORMAT_TAG,
        fmt.channels,
        fmt.sample_rate,
        fmt.byte_rate,
        fmt.block_align,
        fmt.bits_per_sample,
        b"data",
        data_length,
    )


def wrap_as_playable_audio(raw_payload: bytes, format_descriptor: str | None) -> bytes:
    """Prepend a WAVE header to raw PCM. Pure and deterministic."""
    fmt = parse_format_descriptor(format_descriptor)
    return build_wav_header(len(raw_payload), fmt) + bytes(raw_payload)


def read_wav_format(buffer: bytes) -> AudioFormat:
    """Recover the PCM parameters from a header written by ``build_wav_header``."""
    if len(buffer) < WAV_HEADER_SIZE or buffer[0:4] != b"RIFF" or buffer[8:12] != b"WAVE":
        raise ValueError("Not a canonical WAVE buffer")

    channels, sample_rate = struct.unpack_from("<HI", buffer, 22)
    (bits_per_sample,) = struct.unpack_from("<H", buffer, 34)
    return AudioFormat(channels=channels, sample_rate=sample_rate, bits_per_sample=bits_per_sample)


def estimate_duration_seconds(byte_length: int, fmt: AudioFormat | None = None) -> float:
    """Approximate playback length as bytes / byte rate.

    Without a known format the fixed 44.1 kHz, 16-bit, stereo profile is used.
    """
    if fmt is None:
        sample_rate, channels, bits = DEFAULT_PLAYBACK_PROFILE
        fmt = AudioFormat(channels=channels, sample_rate=sample_rate, bits_per_sample=bits)
    if fmt.byte_rate <= 0:
        return 0.0
    return round(byte_length / fmt.byte_rate, 2)
