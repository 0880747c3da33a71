"""Decoder: opaque audio bytes to an AudioBuffer via PyAV."""

import io
import logging
from typing import List

import av
import numpy as np

from .errors import DecodeError
from .types import AudioBuffer

log = logging.getLogger("decoder")


def decode_bytes(data: bytes) -> AudioBuffer:
    """Decode any container/codec ffmpeg understands into planar float audio.

    Channel count and sample rate are kept as found in the stream.
    """
    if not data:
        raise DecodeError("Audio payload is empty")

    chunks: List[np.ndarray] = []
    sample_rate = 0
    try:
        with av.open(io.BytesIO(data), mode="r") as container:
            stream = next((s for s in container.streams if s.type == "audio"), None)
            if stream is None:
                raise DecodeError("No audio stream found")

            resampler = av.AudioResampler(format="fltp")

            for frame in container.decode(stream):
                for rframe in resampler.resample(frame):
                    sample_rate = sample_rate or rframe.sample_rate
                    arr = rframe.to_ndarray()
                    if arr.size:
                        chunks.append(arr.astype(np.float32, copy=True))

            for rframe in resampler.resample(None):
                sample_rate = sample_rate or rframe.sample_rate
                arr = rframe.to_ndarray()
                if arr.size:
                    chunks.append(arr.astype(np.float32, copy=True))
    except av.error.FFmpegError as e:
        raise DecodeError(f"Could not decode audio: {e}") from e

    if not chunks:
        raise DecodeError("Audio decoding produced no samples")

    samples = np.concatenate(chunks, axis=1)
    buffer = AudioBuffer(samples, sample_rate)
    log.debug(
        "Decoded %d bytes -> %d ch, %d Hz, %.2fs",
        len(data), buffer.num_channels, buffer.sample_rate, buffer.duration,
    )
    return buffer


class Decoder:
    """Async front for decode_bytes, running on the shared audio context."""

    def __init__(self, context):
        self._context = context

    async def decode(self, data: bytes) -> AudioBuffer:
        return await self._context.run(decode_bytes, data)
