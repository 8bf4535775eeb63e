from __future__ import annotations

import array
import sys
from dataclasses import dataclass


_BIAS = 0x84
_CLIP = 32635


def _ulaw_decode_byte(u: int) -> int:
    u = ~u & 0xFF
    sign = u & 0x80
    exponent = (u >> 4) & 0x07
    mantissa = u & 0x0F
    sample = (((mantissa << 3) + _BIAS) << exponent) - _BIAS
    return -sample if sign else sample


def _ulaw_encode_sample(sample: int) -> int:
    sign = 0x80 if sample < 0 else 0
    if sign:
        sample = -sample
    if sample > _CLIP:
        sample = _CLIP
    sample += _BIAS
    exponent = 7
    mask = 0x4000
    while exponent > 0 and not (sample & mask):
        exponent -= 1
        mask >>= 1
    mantissa = (sample >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


_ULAW_TO_PCM = [_ulaw_decode_byte(i) for i in range(256)]
# Indexed by the unsigned 16-bit view of a signed sample.
_PCM_TO_ULAW = bytes(_ulaw_encode_sample(i - 65536 if i >= 32768 else i) for i in range(65536))


def _to_samples(pcm16: bytes) -> array.array:
    samples = array.array("h")
    samples.frombytes(pcm16[: len(pcm16) - (len(pcm16) % 2)])
    if sys.byteorder == "big":
        samples.byteswap()
    return samples


def _from_samples(samples: array.array) -> bytes:
    if sys.byteorder == "big":
        samples = array.array("h", samples)
        samples.byteswap()
    return samples.tobytes()


def ulaw_to_pcm16(data: bytes) -> bytes:
    return _from_samples(array.array("h", (_ULAW_TO_PCM[b] for b in data)))


def pcm16_to_ulaw(pcm16: bytes) -> bytes:
    return bytes(_PCM_TO_ULAW[s & 0xFFFF] for s in _to_samples(pcm16))


def resample_pcm16(pcm16: bytes, src_rate: int, dst_rate: int) -> bytes:
    """Linear-interpolation resampler for mono PCM16. Adequate for speech bands."""
    if src_rate == dst_rate or not pcm16:
        return pcm16
    src = _to_samples(pcm16)
    n_out = (len(src) * dst_rate) // src_rate
    if n_out <= 0:
        return b""
    out = array.array("h", bytes(2 * n_out))
    ratio = src_rate / dst_rate
    last = len(src) - 1
    for i in range(n_out):
        pos = i * ratio
        j = int(pos)
        if j >= last:
            out[i] = src[last]
            continue
        frac = pos - j
        out[i] = int(src[j] + (src[j + 1] - src[j]) * frac)
    return _from_samples(out)


def frame_rms(pcm16: bytes) -> float:
    samples = _to_samples(pcm16)
    if not samples:
        return 0.0
    total = 0.0
    for v in samples:
        total += float(v * v)
    return (total / len(samples)) ** 0.5


def speech_threshold(sensitivity: float) -> float:
    s = max(0.0, min(1.0, float(sensitivity)))
    # higher sensitivity => lower threshold
    return 1200.0 - (800.0 * s)


def normalized_level(pcm16: bytes) -> float:
    """RMS mapped to 0..1 for UI level meters."""
    return min(1.0, frame_rms(pcm16) / 8000.0)


@dataclass(slots=True)
class ActivityDetector:
    """
    Energy-based speech activity with a hangover so short pauses inside a
    word do not flap the state.
    """

    sensitivity: float = 0.5
    hangover_frames: int = 8
    _hangover: int = 0

    def is_speech(self, pcm16: bytes) -> bool:
        if not pcm16:
            return False
        if frame_rms(pcm16) >= speech_threshold(self.sensitivity):
            self._hangover = self.hangover_frames
            return True
        if self._hangover > 0:
            self._hangover -= 1
            return True
        return False

    def reset(self) -> None:
        self._hangover = 0
