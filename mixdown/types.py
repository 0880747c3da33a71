"""Shared data types for the mixdown pipeline."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class AudioBuffer:
    """Immutable multi-channel float audio.

    samples is float32 shaped (channels, length), nominal range [-1, 1].
    The array is flagged read-only on construction.
    """
    samples: np.ndarray
    sample_rate: int

    def __post_init__(self):
        arr = np.array(self.samples, dtype=np.float32, copy=True)
        if arr.ndim != 2 or arr.shape[0] < 1:
            raise ValueError(f"samples must be shaped (channels, length), got {arr.shape}")
        if int(self.sample_rate) <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        arr.setflags(write=False)
        object.__setattr__(self, "samples", arr)
        object.__setattr__(self, "sample_rate", int(self.sample_rate))

    @classmethod
    def from_array(cls, data, sample_rate: int) -> "AudioBuffer":
        """Build from a 1-D (mono) or 2-D (channels, length) array."""
        arr = np.asarray(data, dtype=np.float32)
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        return cls(arr, sample_rate)

    @classmethod
    def silence(cls, seconds: float, sample_rate: int, channels: int = 1) -> "AudioBuffer":
        length = int(round(seconds * sample_rate))
        return cls(np.zeros((channels, length), dtype=np.float32), sample_rate)

    @property
    def num_channels(self) -> int:
        return self.samples.shape[0]

    @property
    def length(self) -> int:
        return self.samples.shape[1]

    @property
    def duration(self) -> float:
        return self.length / self.sample_rate


@dataclass(frozen=True)
class RenderedMix(AudioBuffer):
    """Stereo output of the offline mixdown."""


def validate_gain(value) -> float:
    """Return value as a float gain, rejecting negative or non-finite input."""
    gain = float(value)
    if not math.isfinite(gain) or gain < 0.0:
        raise ValueError(f"Gain must be a finite value >= 0, got {value!r}")
    return gain


@dataclass(frozen=True)
class MixRequest:
    """Two sources and their gains, read at render time."""
    instrumental: Optional[AudioBuffer]
    vocals: Optional[AudioBuffer]
    instrumental_gain: float = 0.9
    vocals_gain: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, "instrumental_gain", validate_gain(self.instrumental_gain))
        object.__setattr__(self, "vocals_gain", validate_gain(self.vocals_gain))


@dataclass(frozen=True)
class CapturedBlob:
    """Finished recording: ordered fragments joined into one payload."""
    data: bytes
    media_type: str
    fragments: int = 0

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class AudioChunk:
    """A chunk of raw PCM audio on the live monitor path."""
    samples: bytes          # 16-bit signed LE PCM, interleaved
    sample_rate: int = 48000
    channels: int = 2


class VocalSource(enum.Enum):
    """Which vocal take the next mix uses. Last writer wins."""
    RECORDED = "recorded"
    SUPPLIED = "supplied"
