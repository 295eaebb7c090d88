"""Tests for the μ-law codec and resampler."""

from __future__ import annotations

import struct

import pytest

from frontdesk import codec


def _pcm(*samples: int) -> bytes:
    return struct.pack(f"<{len(samples)}h", *samples)


def _samples(pcm16: bytes) -> tuple[int, ...]:
    return struct.unpack(f"<{len(pcm16) // 2}h", pcm16)


class TestDecode:
    def test_output_is_twice_as_long(self):
        assert len(codec.decode(bytes(160))) == 320

    def test_silence_bytes_decode_to_zero(self):
        assert _samples(codec.decode(b"\xff\x7f")) == (0, 0)

    def test_extreme_bytes(self):
        assert _samples(codec.decode(b"\x00\x80")) == (-32124, 32124)

    def test_empty_input(self):
        assert codec.decode(b"") == b""


class TestEncode:
    def test_output_is_half_as_long(self):
        assert len(codec.encode(bytes(320))) == 160

    def test_zero_encodes_to_silence_byte(self):
        assert codec.encode(_pcm(0)) == b"\xff"

    def test_odd_length_input_is_rejected(self):
        with pytest.raises(ValueError):
            codec.encode(b"\x00\x00\x00")

    def test_full_scale_samples_are_clipped(self):
        assert codec.encode(_pcm(32767, -32768)) == b"\x80\x00"

    def test_quantisation_error_is_bounded(self):
        samples = list(range(-32768, 32768, 7))
        decoded = _samples(codec.decode(codec.encode(_pcm(*samples))))
        for original, restored in zip(samples, decoded, strict=True):
            assert abs(restored - original) <= abs(original) // 16 + 8

    def test_every_byte_survives_decode_then_encode(self):
        # 0x7f and 0xff both mean zero; the encoder always picks 0xff
        for byte in range(256):
            if byte == 0x7F:
                continue
            assert codec.encode(codec.decode(bytes([byte]))) == bytes([byte])


class TestResample:
    def test_same_rate_is_a_no_op(self):
        pcm = _pcm(1, 2, 3)
        assert codec.resample(pcm, 8000, 8000) == pcm

    def test_upsampling_doubles_sample_count(self):
        out = codec.upsample_to_16k(_pcm(0, 100, 200, 300))
        assert len(_samples(out)) == 8
        assert _samples(out)[:3] == (0, 50, 100)

    def test_downsampling_halves_sample_count(self):
        out = codec.downsample_to_8k(_pcm(0, 50, 100, 150))
        assert _samples(out) == (0, 100)

    def test_odd_length_input_is_rejected(self):
        with pytest.raises(ValueError):
            codec.resample(b"\x00", 8000, 16000)


class TestChunkFrames:
    def test_splits_into_20ms_frames(self):
        frames = codec.chunk_frames(bytes(400))
        assert [len(f) for f in frames] == [160, 160, 80]

    def test_empty_audio_has_no_frames(self):
        assert codec.chunk_frames(b"") == []
