import asyncio
from fractions import Fraction

import av
import numpy as np
import pytest
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from mixdown.config import Settings
from mixdown.types import AudioBuffer
from mixdown.wav import encode_wav

SAMPLE_RATE = 48000
FRAME_SAMPLES = 960


class FakeMicrophone(MediaStreamTrack):
    """Paced s16 mono 48kHz tone, standing in for a real input device.

    After `frames` frames it either ends (ends=True) or goes quiet until
    stopped. frames=None keeps producing forever.
    """

    kind = "audio"

    def __init__(self, frames=None, ends=False, interval=0.005, amplitude=0.25):
        super().__init__()
        self.frames = frames
        self.ends = ends
        self.interval = interval
        self.amplitude = amplitude
        self.sent = 0
        self._stopped = asyncio.Event()

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        if self.frames is not None and self.sent >= self.frames:
            if self.ends:
                self.stop()
                raise MediaStreamError
            await self._stopped.wait()
            raise MediaStreamError

        await asyncio.sleep(self.interval)
        t = (np.arange(FRAME_SAMPLES) + self.sent * FRAME_SAMPLES) / SAMPLE_RATE
        tone = (self.amplitude * 32767 * np.sin(2 * np.pi * 440 * t)).astype(np.int16)
        frame = av.AudioFrame.from_ndarray(tone.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = SAMPLE_RATE
        frame.pts = self.sent * FRAME_SAMPLES
        frame.time_base = Fraction(1, SAMPLE_RATE)
        self.sent += 1
        return frame

    def stop(self):
        super().stop()
        self._stopped.set()


def microphone_factory(**kwargs):
    """AudioContext microphone factory that records every track it opens."""
    opened = []

    async def factory():
        track = FakeMicrophone(**kwargs)
        opened.append(track)
        return track

    factory.opened = opened
    return factory


def tone(seconds, sample_rate=44100, channels=1, freq=220.0, amplitude=0.5) -> AudioBuffer:
    t = np.arange(int(round(seconds * sample_rate))) / sample_rate
    wave = (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)
    return AudioBuffer(np.tile(wave, (channels, 1)), sample_rate)


def wav_bytes(buffer: AudioBuffer) -> bytes:
    return encode_wav(buffer).data


@pytest.fixture
def settings():
    # WAV capture is available in every ffmpeg build PyAV ships with
    return Settings(recording_types=["audio/wav"], _env_file=None)
