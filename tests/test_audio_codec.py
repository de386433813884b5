"""Test WAV wrapping of raw PCM."""
import struct

import pytest

from audio.codec import (
    WAV_HEADER_SIZE,
    AudioFormat,
    estimate_duration_seconds,
    parse_format_descriptor,
    read_wav_format,
    wrap_as_playable_audio,
)


def test_parse_full_descriptor():
    """Bit depth comes from the L<N> token, rate and channels from parameters."""
    fmt = parse_format_descriptor("audio/L24;codec=pcm;rate=48000;channels=2")
    assert (fmt.bits_per_sample, fmt.sample_rate, fmt.channels) == (24, 48000, 2)


@pytest.mark.parametrize("descriptor", [None, "", "garbage", "audio/L16;rate=abc", "audio/mpeg;rate=-5"])
def test_parse_falls_back_to_defaults(descriptor):
    """Malformed descriptors never raise."""
    fmt = parse_format_descriptor(descriptor)
    assert fmt.channels == 1
    assert fmt.sample_rate == 22050
    assert fmt.bits_per_sample == 16


@pytest.mark.parametrize("descriptor", [
    "audio/L16;rate=5000000000",
    "audio/L16;channels=70000",
    "audio/L65536",
    "audio/L65528;channels=65535",
    "audio/L65528;rate=4000000000;channels=65535",
])
def test_out_of_range_fields_still_wrap(descriptor):
    """Values too wide for the header fall back instead of failing to pack."""
    wav = wrap_as_playable_audio(b"\x00" * 4, descriptor)
    assert len(wav) == WAV_HEADER_SIZE + 4

    fmt = read_wav_format(wav)
    assert 0 < fmt.channels <= 0xFFFF
    assert 0 < fmt.bits_per_sample <= 0xFFFF
    assert 0 < fmt.sample_rate <= 0xFFFFFFFF
    assert struct.unpack_from("<I", wav, 28)[0] == fmt.byte_rate
    assert struct.unpack_from("<H", wav, 32)[0] == fmt.block_align


def test_oversized_rate_uses_default_rate():
    """Only the offending field is replaced."""
    fmt = parse_format_descriptor("audio/L24;rate=5000000000;channels=2")
    assert (fmt.bits_per_sample, fmt.sample_rate, fmt.channels) == (24, 22050, 2)


def test_wrap_prepends_canonical_header():
    """The header encodes the format and the payload follows unchanged."""
    payload = bytes(range(200))
    wav = wrap_as_playable_audio(payload, "audio/L16;rate=24000")

    assert len(wav) == WAV_HEADER_SIZE + len(payload)
    assert wav[:4] == b"RIFF"
    assert wav[8:16] == b"WAVEfmt "
    assert struct.unpack_from("<I", wav, 4)[0] == 36 + len(payload)
    assert struct.unpack_from("<H", wav, 20)[0] == 1
    assert struct.unpack_from("<I", wav, 28)[0] == 48000
    assert struct.unpack_from("<H", wav, 32)[0] == 2
    assert wav[36:40] == b"data"
    assert struct.unpack_from("<I", wav, 40)[0] == len(payload)
    assert wav[WAV_HEADER_SIZE:] == payload


def test_wrap_is_deterministic():
    """Same inputs always give the same bytes."""
    assert wrap_as_playable_audio(b"abc", "audio/L8") == wrap_as_playable_audio(b"abc", "audio/L8")


def test_read_wav_format_round_trip():
    """Header fields can be read back."""
    wav = wrap_as_playable_audio(b"\x00" * 10, "audio/L16;rate=16000;channels=2")
    assert read_wav_format(wav) == AudioFormat(channels=2, sample_rate=16000, bits_per_sample=16)

    with pytest.raises(ValueError):
        read_wav_format(b"not a wav")


def test_estimate_duration():
    """Duration is bytes over byte rate, rounded to centiseconds."""
    assert estimate_duration_seconds(176400) == 1.0
    assert estimate_duration_seconds(48000, AudioFormat(sample_rate=24000)) == 1.0
    assert estimate_duration_seconds(1000, AudioFormat(sample_rate=24000)) == 0.02
