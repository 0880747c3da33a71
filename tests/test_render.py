import asyncio

import numpy as np
import pytest

from conftest import tone
from mixdown.context import AudioContext
from mixdown.errors import MixError
from mixdown.render import MixdownEngine, render_length, render_mix, to_stereo
from mixdown.types import AudioBuffer, MixRequest


def test_output_is_stereo_at_mix_rate_and_spans_longest_source():
    beat = tone(1.0, sample_rate=48000, channels=2)
    vocals = tone(1.5, sample_rate=22050)
    mix = render_mix(MixRequest(beat, vocals))
    assert mix.sample_rate == 44100
    assert mix.num_channels == 2
    assert mix.length == int(1.5 * 44100)


def test_render_length_ignores_float_noise():
    beat = AudioBuffer.silence(10.0, 48000)
    vocals = AudioBuffer.silence(3.0, 44100)
    assert render_length(MixRequest(beat, vocals), 44100) == 441000


def test_render_is_deterministic():
    req = MixRequest(tone(0.5, channels=2), tone(0.25, sample_rate=48000), 0.7, 1.3)
    first, second = render_mix(req), render_mix(req)
    assert np.array_equal(first.samples, second.samples)


def test_gains_scale_each_source():
    ones = AudioBuffer(np.full((2, 100), 0.25, dtype=np.float32), 44100)
    halves = AudioBuffer(np.full((1, 50), 0.5, dtype=np.float32), 44100)
    mix = render_mix(MixRequest(ones, halves, instrumental_gain=2.0, vocals_gain=0.5))
    assert np.allclose(mix.samples[:, :50], 0.5 + 0.25)
    assert np.allclose(mix.samples[:, 50:], 0.5)


def test_zero_gain_drops_a_source_but_keeps_length():
    beat = AudioBuffer(np.full((2, 100), 0.5, dtype=np.float32), 44100)
    vocals = AudioBuffer(np.full((1, 200), 0.5, dtype=np.float32), 44100)
    mix = render_mix(MixRequest(beat, vocals, instrumental_gain=0.0))
    assert mix.length == 200
    assert np.allclose(mix.samples, 0.5)


def test_sum_is_not_clipped():
    loud = AudioBuffer(np.full((2, 10), 0.9, dtype=np.float32), 44100)
    mix = render_mix(MixRequest(loud, loud, 1.0, 1.0))
    assert np.allclose(mix.samples, 1.8)


def test_to_stereo_speaker_rules():
    mono = np.array([[1.0, 2.0]], dtype=np.float32)
    assert to_stereo(mono).tolist() == [[1.0, 2.0], [1.0, 2.0]]

    quad = np.array([[1.0], [2.0], [3.0], [4.0]], dtype=np.float32)
    assert np.allclose(to_stereo(quad), [[2.0], [3.0]])

    surround = np.array([[1.0], [1.0], [1.0], [5.0], [0.0], [0.0]], dtype=np.float32)
    assert np.allclose(to_stereo(surround), [[1 + np.sqrt(0.5)], [1 + np.sqrt(0.5)]])

    three = np.array([[1.0], [2.0], [3.0]], dtype=np.float32)
    assert to_stereo(three).tolist() == [[1.0], [2.0]]


def test_missing_source_raises():
    with pytest.raises(MixError):
        render_mix(MixRequest(tone(0.1), None))
    with pytest.raises(MixError):
        render_mix(MixRequest(None, tone(0.1)))


def test_engine_runs_on_context():
    async def run():
        context = AudioContext(microphone=None)
        engine = MixdownEngine(context)
        try:
            mix = await engine.render(MixRequest(tone(0.2), tone(0.1)))
            with pytest.raises(MixError):
                await engine.render(MixRequest(None, tone(0.1)))
        finally:
            await context.dispose()
        return mix

    mix = asyncio.run(run())
    assert mix.length == round(0.2 * 44100)
    assert mix.num_channels == 2
