"""Playback controller: audition and monitor the instrumental.

The controller renders 20ms stereo chunks on demand. Two routes leave
it, kept apart on purpose:

  listening device  <- MonitorTrack   (what the performer hears)
  capture side      <- taps           (PCMRingBuffer per recorder)

Nothing sent to the listening device is ever fed back into a tap, so
the monitor-mix recording cannot pick up its own output.
"""

from __future__ import annotations

import asyncio
import logging
import time
from fractions import Fraction
from typing import List, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack

from .config import Settings, settings as default_settings
from .ring_buffer import PCMRingBuffer
from .render import resample_to, to_stereo
from .types import AudioBuffer, AudioChunk, validate_gain
from .wav import float_to_pcm16, interleave

log = logging.getLogger("playback")


class PlaybackController:
    """Plays a loaded instrumental from the top with a live gain."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or default_settings
        self.sample_rate = self._settings.live_sample_rate
        self.frame_samples = self._settings.frame_samples
        self._samples: Optional[np.ndarray] = None
        self._gain = validate_gain(self._settings.instrumental_gain)
        self._position = 0
        self._playing = False
        self._taps: List[PCMRingBuffer] = []

    @property
    def loaded(self) -> bool:
        return self._samples is not None

    @property
    def playing(self) -> bool:
        return self._playing

    @property
    def position(self) -> int:
        return self._position

    @property
    def gain(self) -> float:
        return self._gain

    def load(self, buffer: AudioBuffer):
        """Take a decoded instrumental, converted to the live rate and stereo."""
        self.stop()
        self._samples = to_stereo(resample_to(buffer, self.sample_rate))
        log.info("Instrumental loaded for playback: %.2fs", buffer.duration)

    def unload(self):
        self.stop()
        self._samples = None

    def play(self) -> bool:
        """Start from the top. Returns False (no-op) if nothing is loaded."""
        if self._samples is None:
            log.info("Play requested with no instrumental loaded")
            return False
        self._position = 0
        self._playing = True
        log.info("Playback started")
        return True

    def stop(self):
        """Stop and rewind. No resume: the next play() starts at 0."""
        if self._playing:
            log.info("Playback stopped at %.2fs", self._position / self.sample_rate)
        self._playing = False
        self._position = 0

    def set_gain(self, value: float):
        """Live gain change, picked up by the next chunk without a restart."""
        self._gain = validate_gain(value)

    def add_tap(self) -> PCMRingBuffer:
        capacity = int(self._settings.tap_seconds * self.sample_rate) * 2 * 2
        tap = PCMRingBuffer(capacity=max(capacity, self.frame_samples * 4))
        self._taps.append(tap)
        return tap

    def remove_tap(self, tap: PCMRingBuffer):
        if tap in self._taps:
            self._taps.remove(tap)

    def next_chunk(self) -> AudioChunk:
        """Render the next 20ms of output (silence when stopped)."""
        n = self.frame_samples
        block = np.zeros((2, n), dtype=np.float32)

        if self._playing and self._samples is not None:
            end = min(self._position + n, self._samples.shape[1])
            count = end - self._position
            block[:, :count] = self._samples[:, self._position:end] * np.float32(self._gain)
            self._position = end
            if self._position >= self._samples.shape[1]:
                # Reached the end: behave like a stop
                self._playing = False
                self._position = 0
                log.info("Playback finished")

        pcm = float_to_pcm16(interleave(block)).tobytes()
        for tap in self._taps:
            tap.write(pcm)
        return AudioChunk(samples=pcm, sample_rate=self.sample_rate, channels=2)


class MonitorTrack(MediaStreamTrack):
    """Server-side track carrying the instrumental to the listening device.

    The peer calls recv() roughly every 20ms; each call pulls one chunk
    from the controller.
    """

    kind = "audio"

    def __init__(self, controller: PlaybackController):
        super().__init__()
        self._controller = controller
        self._start_time = None
        self._frame_count = 0

    async def recv(self) -> av.AudioFrame:
        # Pace ourselves to avoid busy-spinning
        ptime = self._controller.frame_samples / self._controller.sample_rate
        if self._start_time is None:
            self._start_time = time.monotonic()

        target_time = self._start_time + self._frame_count * ptime
        now = time.monotonic()
        if target_time > now:
            await asyncio.sleep(target_time - now)

        self._frame_count += 1
        chunk = self._controller.next_chunk()
        samples = np.frombuffer(chunk.samples, dtype=np.int16)

        frame = av.AudioFrame.from_ndarray(
            samples.reshape(1, -1),  # packed s16: (1, samples * channels)
            format="s16",
            layout="stereo",
        )
        frame.sample_rate = chunk.sample_rate
        frame.pts = (self._frame_count - 1) * self._controller.frame_samples
        frame.time_base = Fraction(1, chunk.sample_rate)
        return frame


class MonitorMixTrack(MediaStreamTrack):
    """Capture-side sum of the microphone and a playback tap.

    Each microphone frame is converted to 48kHz stereo s16 and summed
    with the same number of instrumental samples read from the tap.
    """

    kind = "audio"

    def __init__(self, microphone: MediaStreamTrack, tap: PCMRingBuffer, sample_rate: int = 48000):
        super().__init__()
        self._microphone = microphone
        self._tap = tap
        self._sample_rate = sample_rate
        self._resampler = av.AudioResampler(format="s16", layout="stereo", rate=sample_rate)

    def _mix(self, frame) -> List[av.AudioFrame]:
        out = []
        for rframe in self._resampler.resample(frame):
            mic = rframe.to_ndarray().reshape(-1).astype(np.int32)
            beat = np.frombuffer(self._tap.read(mic.size * 2), dtype="<i2").astype(np.int32)
            mixed = np.clip(mic + beat, -32768, 32767).astype(np.int16)
            mixed_frame = av.AudioFrame.from_ndarray(mixed.reshape(1, -1), format="s16", layout="stereo")
            mixed_frame.sample_rate = self._sample_rate
            out.append(mixed_frame)
        return out

    async def recv(self) -> av.AudioFrame:
        while True:
            frame = await self._microphone.recv()
            mixed = self._mix(frame)
            if len(mixed) == 1:
                return mixed[0]
            if mixed:
                return self._join(mixed)
            # Resampler still buffering: wait for the next mic frame

    def _join(self, frames: List[av.AudioFrame]) -> av.AudioFrame:
        data = np.concatenate([f.to_ndarray().reshape(-1) for f in frames])
        joined = av.AudioFrame.from_ndarray(data.reshape(1, -1), format="s16", layout="stereo")
        joined.sample_rate = self._sample_rate
        return joined

    def drain(self) -> list:
        frames = []
        for frame in getattr(self._microphone, "drain", lambda: [])():
            frames.extend(self._mix(frame))
        return frames

    def stop(self):
        super().stop()
        self._microphone.stop()
