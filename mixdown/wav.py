"""Container encoder: rendered float audio to canonical 16-bit PCM WAV.

Uncompressed on purpose: every player can open it, at the cost of size.
"""

import logging
import struct

import numpy as np

from .artifacts import EncodedArtifact
from .errors import DecodeError, EncodeError
from .types import AudioBuffer

log = logging.getLogger("wav")

WAV_MEDIA_TYPE = "audio/wav"
HEADER_SIZE = 44
BYTES_PER_SAMPLE = 2
PCM_FORMAT = 1

# RIFF, size, WAVE, fmt , 16, tag, channels, rate, byte rate, align, bits, data, size
_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")
_MAX_DATA = 0xFFFFFFFF - (HEADER_SIZE - 8)


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1] and scale: negatives by 32768, positives by 32767.

    The asymmetric scale spans the full int16 range without overflow.
    Values truncate toward zero.
    """
    s = np.clip(np.nan_to_num(np.asarray(samples, dtype=np.float32)), -1.0, 1.0)
    scaled = np.where(s < 0, s * np.float32(32768.0), s * np.float32(32767.0))
    return scaled.astype("<i2")


def pcm16_to_float(pcm: np.ndarray) -> np.ndarray:
    """Inverse of float_to_pcm16 (up to quantization)."""
    q = np.asarray(pcm).astype(np.float32)
    return np.where(q < 0, q / np.float32(32768.0), q / np.float32(32767.0)).astype(np.float32)


def interleave(samples: np.ndarray) -> np.ndarray:
    """(channels, length) -> flat array, all channels of frame i before frame i+1."""
    return np.ascontiguousarray(np.asarray(samples).T).reshape(-1)


def wav_header(num_channels: int, sample_rate: int, data_size: int) -> bytes:
    block_align = num_channels * BYTES_PER_SAMPLE
    byte_rate = sample_rate * block_align
    return _HEADER.pack(
        b"RIFF", 36 + data_size, b"WAVE",
        b"fmt ", 16, PCM_FORMAT, num_channels, sample_rate, byte_rate, block_align, 16,
        b"data", data_size,
    )


def encode_wav(mix: AudioBuffer, filename: str = "my-song.wav") -> EncodedArtifact:
    """Serialize a rendered mix into a WAV artifact."""
    if mix.sample_rate <= 0 or mix.num_channels < 1:
        raise EncodeError(f"Cannot encode {mix.num_channels} ch at {mix.sample_rate} Hz")

    data_size = mix.length * mix.num_channels * BYTES_PER_SAMPLE
    if data_size > _MAX_DATA:
        raise EncodeError(f"Mix too large for a WAV container ({data_size} bytes)")

    pcm = float_to_pcm16(interleave(mix.samples))
    body = wav_header(mix.num_channels, mix.sample_rate, data_size) + pcm.tobytes()

    log.info(
        "Encoded WAV: %d ch, %d Hz, %d frames, %d bytes",
        mix.num_channels, mix.sample_rate, mix.length, len(body),
    )
    return EncodedArtifact(data=body, media_type=WAV_MEDIA_TYPE, filename=filename)


def read_wav(data: bytes) -> AudioBuffer:
    """Parse a canonical 16-bit PCM WAV back into float audio."""
    if len(data) < HEADER_SIZE:
        raise DecodeError("WAV payload shorter than its header")

    (riff, _, wave, fmt, fmt_len, tag, channels, rate,
     _, _, bits, data_tag, data_size) = _HEADER.unpack_from(data)
    if riff != b"RIFF" or wave != b"WAVE" or fmt != b"fmt " or data_tag != b"data":
        raise DecodeError("Not a canonical WAV header")
    if fmt_len != 16 or tag != PCM_FORMAT or bits != 16 or channels < 1:
        raise DecodeError(f"Unsupported WAV format (tag={tag}, bits={bits}, channels={channels})")

    payload = data[HEADER_SIZE:HEADER_SIZE + data_size]
    usable = len(payload) - len(payload) % (channels * BYTES_PER_SAMPLE)
    pcm = np.frombuffer(payload[:usable], dtype="<i2")
    samples = pcm16_to_float(pcm).reshape(-1, channels).T
    return AudioBuffer(samples, rate)
