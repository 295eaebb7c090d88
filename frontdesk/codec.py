"""G.711 μ-law ⇄ 16-bit linear PCM transcoding for the media stream.

The telephony provider streams 8 kHz μ-law, one byte per sample, usually in
160-byte (20 ms) frames.  The speech pipeline works on signed 16-bit
little-endian PCM.  Both directions are pure table lookups so they are safe
to call concurrently from any number of stream handlers.

Quantisation: a sample in segment *k* is reconstructed at the midpoint of a
``2 ** (k + 3)`` wide step, so ``|decode(encode(x)) - x|`` never exceeds
``|x| // 16 + 8``, including the clipped extremes beyond ±32635.
"""

from __future__ import annotations

import struct

BIAS = 0x84
CLIP = 32635
FRAME_BYTES = 160  # 20 ms at 8 kHz

_SEGMENT_ENDS = (0xFF, 0x1FF, 0x3FF, 0x7FF, 0xFFF, 0x1FFF, 0x3FFF, 0x7FFF)


def _ulaw_to_linear(byte: int) -> int:
    u = ~byte & 0xFF
    exponent = (u >> 4) & 0x07
    mantissa = u & 0x0F
    magnitude = ((mantissa << 3) + BIAS) << exponent
    return BIAS - magnitude if u & 0x80 else magnitude - BIAS


def _linear_to_ulaw(sample: int) -> int:
    sign = (sample >> 8) & 0x80
    if sign:
        sample = -sample
    if sample > CLIP:
        sample = CLIP
    sample += BIAS

    segment = 0
    for segment, end in enumerate(_SEGMENT_ENDS):
        if sample <= end:
            break

    mantissa = (sample >> (segment + 3)) & 0x0F
    return ~(sign | (segment << 4) | mantissa) & 0xFF


# ── Lookup tables (built once at import) ─────────────────────────────

# byte → 2-byte little-endian sample; byte 0 is -32124, byte 128 is +32124
DECODE_TABLE: tuple[int, ...] = tuple(_ulaw_to_linear(b) for b in range(256))
_DECODE_BYTES: tuple[bytes, ...] = tuple(struct.pack("<h", s) for s in DECODE_TABLE)

# unsigned 16-bit pattern → μ-law byte
_ENCODE_TABLE = bytes(
    _linear_to_ulaw(v - 0x10000 if v & 0x8000 else v) for v in range(0x10000)
)


# ── Public API ───────────────────────────────────────────────────────

def decode(ulaw: bytes) -> bytes:
    """Decode μ-law bytes to PCM16 LE.  Output is exactly twice as long."""
    return b"".join(_DECODE_BYTES[b] for b in ulaw)


def encode(pcm16: bytes) -> bytes:
    """Encode PCM16 LE samples to μ-law.  Output is exactly half as long.

    Raises:
        ValueError: if *pcm16* has an odd number of bytes.
    """
    if len(pcm16) % 2:
        raise ValueError(
            f"PCM16 input must have an even number of bytes, got {len(pcm16)}"
        )
    count = len(pcm16) // 2
    samples = struct.unpack(f"<{count}H", pcm16)
    return bytes(_ENCODE_TABLE[s] for s in samples)


def resample(pcm16: bytes, in_rate: int, out_rate: int) -> bytes:
    """Linear-interpolation resampler for PCM16 LE audio.

    Good enough for voice between 8 kHz and 16 kHz; not band-limited.
    """
    if len(pcm16) % 2:
        raise ValueError("PCM16 input must have an even number of bytes")
    if in_rate == out_rate or not pcm16:
        return pcm16

    samples = struct.unpack(f"<{len(pcm16) // 2}h", pcm16)
    ratio = out_rate / in_rate
    out_len = round(len(samples) * ratio)
    last = len(samples) - 1

    out: list[int] = []
    for i in range(out_len):
        pos = i / ratio
        i0 = int(pos)
        i1 = min(i0 + 1, last)
        frac = pos - i0
        value = (1 - frac) * samples[min(i0, last)] + frac * samples[i1]
        out.append(max(-32768, min(32767, int(value))))
    return struct.pack(f"<{out_len}h", *out)


def upsample_to_16k(pcm16: bytes, in_rate: int = 8000) -> bytes:
    return resample(pcm16, in_rate, 16000)


def downsample_to_8k(pcm16: bytes, in_rate: int = 16000) -> bytes:
    return resample(pcm16, in_rate, 8000)


def chunk_frames(ulaw: bytes, size: int = FRAME_BYTES) -> list[bytes]:
    """Split μ-law audio into *size*-byte frames (last one may be short)."""
    return [ulaw[i : i + size] for i in range(0, len(ulaw), size)]
