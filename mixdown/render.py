"""Mixdown engine: offline, sample-accurate render of two sources to stereo.

Both sources start at sample 0 and are summed through independent gain
stages. No alignment, no clipping: the encoder clamps on the way out.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np
from scipy.signal import resample

from .config import Settings, settings as default_settings
from .errors import MixError
from .types import AudioBuffer, MixRequest, RenderedMix

log = logging.getLogger("mixdown")

OUTPUT_CHANNELS = 2
SQRT_HALF = np.float32(math.sqrt(0.5))


def to_stereo(samples: np.ndarray) -> np.ndarray:
    """Map any channel count onto two speakers.

    mono -> both sides; stereo as is; quad (L R SL SR) and 5.1
    (L R C LFE SL SR) use the usual speaker downmix; anything else
    keeps its first two channels.
    """
    n = samples.shape[0]
    if n == 1:
        return np.vstack([samples[0], samples[0]])
    if n == 2:
        return samples
    if n == 4:
        left = 0.5 * (samples[0] + samples[2])
        right = 0.5 * (samples[1] + samples[3])
        return np.vstack([left, right]).astype(np.float32)
    if n == 6:
        left = samples[0] + SQRT_HALF * (samples[2] + samples[4])
        right = samples[1] + SQRT_HALF * (samples[2] + samples[5])
        return np.vstack([left, right]).astype(np.float32)
    return samples[:2]


def resample_to(buffer: AudioBuffer, sample_rate: int) -> np.ndarray:
    """Return buffer's samples at sample_rate, keeping its duration."""
    if buffer.sample_rate == sample_rate:
        return buffer.samples
    num = int(round(buffer.length * sample_rate / buffer.sample_rate))
    if num == 0 or buffer.length == 0:
        return np.zeros((buffer.num_channels, num), dtype=np.float32)
    log.debug("Resampling %d Hz -> %d Hz (%d -> %d samples)",
              buffer.sample_rate, sample_rate, buffer.length, num)
    return resample(buffer.samples, num, axis=1).astype(np.float32)


def render_length(request: MixRequest, sample_rate: int) -> int:
    duration = max(request.instrumental.duration, request.vocals.duration)
    # round() first so 10.0s * 44100 never ceils to 441001 on float noise
    return math.ceil(round(duration * sample_rate, 6))


def render_mix(request: MixRequest, sample_rate: int = 44100) -> RenderedMix:
    """Render instrumental + vocals into one stereo buffer."""
    if request.instrumental is None or request.vocals is None:
        raise MixError("Missing instrumental or vocals buffer")

    length = render_length(request, sample_rate)
    out = np.zeros((OUTPUT_CHANNELS, length), dtype=np.float32)

    for buffer, gain in (
        (request.instrumental, request.instrumental_gain),
        (request.vocals, request.vocals_gain),
    ):
        if gain == 0.0:
            continue
        source = to_stereo(resample_to(buffer, sample_rate))
        n = min(length, source.shape[1])
        out[:, :n] += source[:, :n] * np.float32(gain)

    log.info(
        "Rendered mix: %.2fs (%d samples @ %d Hz), gains %.2f/%.2f",
        length / sample_rate, length, sample_rate,
        request.instrumental_gain, request.vocals_gain,
    )
    return RenderedMix(out, sample_rate)


class MixdownEngine:
    """Runs render_mix on the shared audio context, off the event loop."""

    def __init__(self, context, settings: Optional[Settings] = None):
        self._context = context
        self._settings = settings or default_settings

    async def render(self, request: MixRequest) -> RenderedMix:
        if request.instrumental is None or request.vocals is None:
            raise MixError("Missing instrumental or vocals buffer")
        return await self._context.run(render_mix, request, self._settings.mix_sample_rate)
