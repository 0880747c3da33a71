"""Capture session: records a live device feed into an encoded blob.

State machine:

    IDLE -> ARMED -> RECORDING -> STOPPING -> IDLE
    IDLE -> FAILED            (device permission denied / unavailable)

Arming leases the shared microphone stream. Starting negotiates the
container/codec once and begins pulling frames. Stopping is async: the
blob only exists once the encoder has been flushed, so callers await
stop() (or the completed future) before touching the data.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Iterable, List, Optional

import av
from aiortc.mediastreams import MediaStreamError

from .config import Settings, settings as default_settings
from .errors import CaptureStateError, DeviceError, DeviceLostError, EncodeError
from .types import CapturedBlob

log = logging.getLogger("capture")


@dataclass(frozen=True)
class RecordingFormat:
    """A MIME type and the PyAV muxer/encoder pair that produces it."""
    mime_type: str
    container: str
    codec: str
    frame_size: Optional[int]   # fixed encoder frame size, None = any
    extension: str


RECORDING_FORMATS = {f.mime_type: f for f in (
    RecordingFormat("audio/webm;codecs=opus", "webm", "libopus", 960, "webm"),
    RecordingFormat("audio/webm", "webm", "libopus", 960, "webm"),
    RecordingFormat("audio/ogg;codecs=opus", "ogg", "libopus", 960, "ogg"),
    RecordingFormat("audio/ogg", "ogg", "libvorbis", 64, "ogg"),
    RecordingFormat("audio/wav", "wav", "pcm_s16le", None, "wav"),
)}

# Platform default when nothing preferred is available
DEFAULT_FORMAT = RECORDING_FORMATS["audio/wav"]


def _has_encoder(name: str) -> bool:
    try:
        av.codec.Codec(name, "w")
    except ValueError:
        return False
    return True


def is_supported(fmt: RecordingFormat) -> bool:
    """True if the linked ffmpeg can both mux and encode this format."""
    return fmt.container in av.formats_available and _has_encoder(fmt.codec)


def negotiate_format(
    preferences: Iterable[str],
    supported: Callable[[RecordingFormat], bool] = is_supported,
) -> RecordingFormat:
    """Pick the first supported type from an ordered preference list."""
    for mime_type in preferences:
        fmt = RECORDING_FORMATS.get(mime_type.strip().lower())
        if fmt is None:
            log.debug("Unknown recording type %r, skipping", mime_type)
            continue
        if supported(fmt):
            return fmt
    log.info("No preferred recording type available, using %s", DEFAULT_FORMAT.mime_type)
    return DEFAULT_FORMAT


class _FragmentSink:
    """Write-only file object for PyAV: each write is one ordered fragment.

    No seek/tell, so muxers run in streaming mode.
    """

    def __init__(self):
        self.fragments: List[bytes] = []

    def write(self, data) -> int:
        if data:
            self.fragments.append(bytes(data))
        return len(data)

    def flush(self):
        pass


class _Encoder:
    """Lazily-opened PyAV output: no frames in, no bytes out."""

    def __init__(self, fmt: RecordingFormat, layout: str, sample_rate: int):
        self.fmt = fmt
        self.layout = layout
        self.sample_rate = sample_rate
        self.sink = _FragmentSink()
        self._container = None
        self._stream = None
        self._resampler = None
        self._pts = 0

    def _open(self):
        self._container = av.open(self.sink, mode="w", format=self.fmt.container)
        self._stream = self._container.add_stream(self.fmt.codec, rate=self.sample_rate)
        self._stream.codec_context.layout = self.layout
        self._resampler = av.AudioResampler(
            format=self._stream.codec_context.format.name,
            layout=self.layout,
            rate=self.sample_rate,
            frame_size=self.fmt.frame_size,
        )

    def _mux(self, frame):
        frame.pts = self._pts
        frame.time_base = Fraction(1, self.sample_rate)
        self._pts += frame.samples
        for packet in self._stream.encode(frame):
            self._container.mux(packet)

    def encode(self, frame):
        if self._container is None:
            self._open()
        for rframe in self._resampler.resample(frame):
            self._mux(rframe)

    def close(self) -> List[bytes]:
        if self._container is not None:
            for rframe in self._resampler.resample(None):
                self._mux(rframe)
            for packet in self._stream.encode(None):
                self._container.mux(packet)
            self._container.close()
            self._container = None
        return self.sink.fragments


class CaptureState(enum.Enum):
    IDLE = "idle"
    ARMED = "armed"
    RECORDING = "recording"
    STOPPING = "stopping"
    FAILED = "failed"


class CaptureSession:
    """One recorder attached to the shared device stream.

    Several sessions may record from the same microphone at once; each
    keeps its own queue, encoder and fragment list.
    """

    def __init__(
        self,
        context,
        settings: Optional[Settings] = None,
        *,
        layout: str = "mono",
        name: str = "vocals",
        wrap_source: Optional[Callable] = None,
        preferences: Optional[List[str]] = None,
    ):
        self._context = context
        self._settings = settings or default_settings
        self.layout = layout
        self.name = name
        self._wrap_source = wrap_source
        self._preferences = preferences if preferences is not None else self._settings.recording_types

        self.state = CaptureState.IDLE
        self.format: Optional[RecordingFormat] = None
        self.frames_captured = 0
        self._used = False
        self._handle = None
        self._source = None
        self._encoder: Optional[_Encoder] = None
        self._pump: Optional[asyncio.Task] = None
        self._error = None
        self._completed: Optional[asyncio.Future] = None

    @property
    def completed(self) -> Optional[asyncio.Future]:
        """Resolves with the CapturedBlob once the recorder has flushed."""
        return self._completed

    @property
    def fragments(self) -> tuple:
        return tuple(self._encoder.sink.fragments) if self._encoder else ()

    @property
    def media_type(self) -> str:
        return self.format.mime_type if self.format else ""

    async def arm(self):
        """Idle -> Armed: lease the microphone stream."""
        if self.state is CaptureState.ARMED:
            log.debug("[%s] Already armed", self.name)
            return
        if self.state is not CaptureState.IDLE or self._used:
            raise CaptureStateError(f"Cannot arm a {self.state.value} session")

        try:
            self._handle = await self._context.acquire_device()
        except DeviceError as e:
            self.state = CaptureState.FAILED
            log.warning("[%s] Device unavailable: %s", self.name, e)
            raise

        self._completed = asyncio.get_running_loop().create_future()
        self.state = CaptureState.ARMED
        log.info("[%s] Armed", self.name)

    def start(self):
        """Armed -> Recording. Irreversible for this session."""
        if self.state is not CaptureState.ARMED:
            raise CaptureStateError(f"Cannot start a {self.state.value} session")

        self.format = negotiate_format(self._preferences)
        subscription = self._handle.subscribe()
        self._source = self._wrap_source(subscription) if self._wrap_source else subscription
        self._encoder = _Encoder(self.format, self.layout, self._settings.live_sample_rate)
        self._used = True
        self.state = CaptureState.RECORDING
        self._pump = asyncio.ensure_future(self._run())
        log.info("[%s] Recording started (%s, %s)", self.name, self.format.mime_type, self.layout)

    def _encode(self, frame) -> bool:
        try:
            self._encoder.encode(frame)
        except av.error.FFmpegError as e:
            self._error = EncodeError(f"Could not encode captured audio: {e}")
            log.error("[%s] %s", self.name, self._error)
            return False
        self.frames_captured += 1
        return True

    async def _run(self):
        """Background task: pull frames from the source into the encoder."""
        while True:
            try:
                frame = await self._source.recv()
            except MediaStreamError:
                if self.state is CaptureState.RECORDING:
                    self._error = DeviceLostError("Capture device ended during recording")
                    log.warning("[%s] %s", self.name, self._error)
                break
            if not self._encode(frame):
                break

    async def stop(self) -> CapturedBlob:
        """Recording -> Stopping -> Idle. Returns the finished blob."""
        if self.state is CaptureState.STOPPING or (self.state is CaptureState.IDLE and self._used):
            return await asyncio.shield(self._completed)
        if self.state not in (CaptureState.ARMED, CaptureState.RECORDING):
            raise CaptureStateError(f"Cannot stop a {self.state.value} session")

        self.state = CaptureState.STOPPING
        fragments: List[bytes] = []
        try:
            if self._pump is not None:
                self._pump.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._pump
            if self._source is not None and self._error is None:
                for frame in self._source.drain():
                    if not self._encode(frame):
                        break
            if self._encoder is not None:
                try:
                    fragments = self._encoder.close()
                except av.error.FFmpegError as e:
                    self._error = EncodeError(f"Could not finalise captured audio: {e}")
                    fragments = list(self._encoder.sink.fragments)
        finally:
            if self._source is not None:
                self._source.stop()
            if self._handle is not None:
                await self._handle.release()
            self._used = True
            self.state = CaptureState.IDLE

        blob = CapturedBlob(b"".join(fragments), self.media_type, len(fragments))
        self._completed.set_result(blob)
        log.info(
            "[%s] Recording stopped: %d frames, %d fragments, %d bytes",
            self.name, self.frames_captured, blob.fragments, blob.size,
        )
        if self._error is not None:
            raise self._error
        return blob
