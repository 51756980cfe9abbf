from __future__ import annotations

import numpy as np

# Mu-law companding constants (G.711).
_BIAS = 0x84
_CLIP = 32635


def ulaw_decode(ulaw_bytes: bytes) -> np.ndarray:
    """Decode G.711 mu-law bytes to PCM16 int16 array."""

    data = np.frombuffer(ulaw_bytes, dtype=np.uint8)

    # Vectorized mu-law decode.
    mu = np.bitwise_not(data).astype(np.int32)
    sign = np.bitwise_and(mu, 0x80)
    exponent = np.right_shift(np.bitwise_and(mu, 0x70), 4)
    mantissa = np.bitwise_and(mu, 0x0F)

    magnitude = ((mantissa << 3) + _BIAS) << exponent
    pcm = magnitude - _BIAS
    pcm = np.where(sign != 0, -pcm, pcm)

    return pcm.astype(np.int16)


def ulaw_encode(pcm16: np.ndarray) -> bytes:
    """Encode PCM16 int16 array to G.711 mu-law bytes.

    This is a vectorized mu-law encoder suitable for realtime packetization.
    """

    if pcm16.size == 0:
        return b""

    x = pcm16.astype(np.int32)
    sign = (x < 0).astype(np.int32)
    x = np.abs(x)

    x = np.minimum(x, _CLIP)
    x = x + _BIAS

    # Find exponent and mantissa.
    exponent = np.zeros_like(x)
    for exp in range(8):
        exponent = np.where(x >= (1 << (exp + 7)), exp, exponent)

    mantissa = (x >> (exponent + 3)) & 0x0F

    ulaw = np.bitwise_not((sign << 7) | (exponent << 4) | mantissa).astype(np.uint8)
    return ulaw.tobytes()


def pcm16_upsample(pcm: np.ndarray, factor: int, *, previous: int | None = None) -> np.ndarray:
    """Upsample by an integer factor using linear interpolation.

    ``previous`` is the last sample of the preceding chunk, so consecutive
    chunks interpolate across their boundary. Output length is always
    ``pcm.size * factor``.
    """

    if factor == 1 or pcm.size == 0:
        return pcm.astype(np.int16)

    x = pcm.astype(np.float32)
    start = x[0] if previous is None else float(previous)
    prev = np.concatenate(([start], x[:-1]))
    steps = np.arange(1, factor + 1, dtype=np.float32) / factor

    out = prev[:, None] + (x - prev)[:, None] * steps[None, :]
    return np.clip(np.rint(out.reshape(-1)), -32768, 32767).astype(np.int16)


def pcm16_downsample(pcm: np.ndarray, factor: int) -> np.ndarray:
    """Downsample by an integer factor, averaging each group of samples.

    ``pcm.size`` must be a multiple of ``factor``.
    """

    if factor == 1 or pcm.size == 0:
        return pcm.astype(np.int16)
    if pcm.size % factor:
        raise ValueError(f"sample count {pcm.size} is not a multiple of {factor}")

    groups = pcm.astype(np.int32).reshape(-1, factor)
    return np.rint(groups.mean(axis=1)).astype(np.int16)
