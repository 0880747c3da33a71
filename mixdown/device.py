"""Shared microphone stream: one physical device, many independent readers.

The device track is read by a single background task. Every recorder
gets its own StreamSubscription with a private queue, so stopping one
recorder never touches the frames another is still accumulating.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError

from .errors import DeviceError

log = logging.getLogger("device")


async def open_microphone(settings) -> MediaStreamTrack:
    """Open the system audio input through ffmpeg and return its track."""
    try:
        player = MediaPlayer(settings.mic_device, format=settings.mic_format or None)
    except (av.error.FFmpegError, OSError) as e:
        raise DeviceError(f"Could not open microphone {settings.mic_device!r}: {e}") from e

    if player.audio is None:
        raise DeviceError(f"Input {settings.mic_device!r} has no audio track")

    log.info("Microphone opened: %s (%s)", settings.mic_device, settings.mic_format)
    return player.audio


class StreamSubscription(MediaStreamTrack):
    """One reader's view of the shared device stream."""

    kind = "audio"

    def __init__(self, stream: "DeviceStream"):
        super().__init__()
        self._stream = stream
        self._queue: asyncio.Queue = asyncio.Queue()

    def _push(self, frame):
        self._queue.put_nowait(frame)

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        frame = await self._queue.get()
        if frame is None:
            # Device ended
            self.stop()
            raise MediaStreamError
        return frame

    def drain(self) -> list:
        """Return frames already queued but not yet received."""
        frames = []
        while True:
            try:
                frame = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if frame is not None:
                frames.append(frame)
        return frames

    def stop(self):
        super().stop()
        self._stream._unsubscribe(self)


class DeviceStream:
    """Owns the physical device track and fans frames out to subscribers."""

    def __init__(self, track: MediaStreamTrack):
        self._track = track
        self._subscribers: list[StreamSubscription] = []
        self._handles = 0
        self.ended = False
        self.frames_received = 0
        self._reader = asyncio.ensure_future(self._read_loop())

    @property
    def handles(self) -> int:
        return self._handles

    @property
    def subscribers(self) -> int:
        return len(self._subscribers)

    async def _read_loop(self):
        """Background task: pull frames from the device for as long as it lives."""
        while True:
            try:
                frame = await self._track.recv()
            except MediaStreamError:
                log.info("Microphone track ended after %d frames", self.frames_received)
                break
            self.frames_received += 1
            for sub in list(self._subscribers):
                sub._push(frame)

        self.ended = True
        for sub in list(self._subscribers):
            sub._push(None)

    def acquire(self) -> "DeviceHandle":
        self._handles += 1
        log.debug("Device handle acquired (%d live)", self._handles)
        return DeviceHandle(self)

    def subscribe(self) -> StreamSubscription:
        if self.ended:
            raise DeviceError("Microphone stream has ended")
        sub = StreamSubscription(self)
        self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: StreamSubscription):
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    async def _release(self):
        self._handles -= 1
        log.debug("Device handle released (%d live)", self._handles)
        if self._handles <= 0:
            await self.close()

    async def close(self):
        """Stop reading and release the physical device."""
        if not self._reader.done():
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        self.ended = True
        for sub in list(self._subscribers):
            sub._push(None)
        self._track.stop()
        log.info("Microphone released")


class DeviceHandle:
    """Reference-counted lease on the shared DeviceStream."""

    def __init__(self, stream: DeviceStream):
        self._stream = stream
        self._released = False

    @property
    def ended(self) -> bool:
        return self._stream.ended

    @property
    def released(self) -> bool:
        return self._released

    def subscribe(self) -> StreamSubscription:
        if self._released:
            raise DeviceError("Device handle already released")
        return self._stream.subscribe()

    async def release(self):
        if self._released:
            return
        self._released = True
        await self._stream._release()
