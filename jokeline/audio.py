"""Telephony audio codec: mulaw 8kHz → PCM int16 → WAV.

Twilio Media Streams carry G.711 u-law at 8kHz in 20ms frames (160 bytes).
The transcription backend wants a file upload, so buffered caller audio is
expanded to 16-bit PCM and wrapped in a minimal 44-byte WAV header.

Expansion per byte:
  1. invert all bits
  2. split into sign (bit 7), exponent (bits 4-6), mantissa (bits 0-3 + 0x10)
  3. linear = ((mantissa << (exponent + 3)) - 132) * sign
  4. shift left by 2 and clamp to int16
"""

from __future__ import annotations

import struct

import numpy as np

SAMPLE_RATE = 8000
FRAME_MS = 20
FRAME_BYTES = SAMPLE_RATE * FRAME_MS // 1000  # 160 mulaw bytes per frame

WAV_HEADER_BYTES = 44

_INT16_MIN = -32768
_INT16_MAX = 32767


def decode_mulaw_byte(value: int) -> int:
    """Expand a single mulaw byte to a signed 16-bit sample."""
    inverted = ~value & 0xFF
    sign = -1 if inverted & 0x80 else 1
    exponent = (inverted & 0x70) >> 4
    mantissa = (inverted & 0x0F) | 0x10
    linear = ((mantissa << (exponent + 3)) - 132) * sign
    linear = linear * 4
    return max(_INT16_MIN, min(_INT16_MAX, linear))


def mulaw_to_pcm16(mulaw_bytes: bytes) -> bytes:
    """Convert mulaw bytes to little-endian int16 PCM (same sample rate)."""
    if not mulaw_bytes:
        return b""

    inverted = np.invert(np.frombuffer(mulaw_bytes, dtype=np.uint8)).astype(np.int32)
    sign = np.where(inverted & 0x80, -1, 1)
    exponent = (inverted & 0x70) >> 4
    mantissa = (inverted & 0x0F) | 0x10

    linear = ((mantissa << (exponent + 3)) - 132) * sign * 4
    linear = np.clip(linear, _INT16_MIN, _INT16_MAX)
    return linear.astype("<i2").tobytes()


def pcm16_to_wav(pcm_bytes: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Prefix mono int16 PCM with a 44-byte WAV header."""
    data_size = len(pcm_bytes)
    header = b"".join([
        b"RIFF",
        struct.pack("<I", 36 + data_size),
        b"WAVE",
        b"fmt ",
        struct.pack("<I", 16),               # chunk size
        struct.pack("<H", 1),                # PCM format
        struct.pack("<H", 1),                # mono
        struct.pack("<I", sample_rate),
        struct.pack("<I", sample_rate * 2),  # byte rate
        struct.pack("<H", 2),                # block align
        struct.pack("<H", 16),               # bits per sample
        b"data",
        struct.pack("<I", data_size),
    ])
    return header + pcm_bytes


def mulaw_to_wav(mulaw_bytes: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Decode mulaw and wrap it as a WAV file ready for upload."""
    return pcm16_to_wav(mulaw_to_pcm16(mulaw_bytes), sample_rate)
