"""Shared audio-processing context.

One per host session, passed explicitly to every component that needs
it. Created suspended; the first decode, render or device request brings
it up. dispose() tears down the device stream and the worker thread.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, Optional

from aiortc import MediaStreamTrack

from .config import Settings, settings as default_settings
from .device import DeviceHandle, DeviceStream, open_microphone
from .errors import StudioError

log = logging.getLogger("context")

MicrophoneFactory = Callable[[], Awaitable[MediaStreamTrack]]


class AudioContext:
    """Lazily-initialised owner of the worker executor and the device stream."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        microphone: Optional[MicrophoneFactory] = None,
    ):
        self.settings = settings or default_settings
        self._microphone = microphone or functools.partial(open_microphone, self.settings)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._device: Optional[DeviceStream] = None
        self._device_lock = asyncio.Lock()
        self.state = "suspended"

    @property
    def device(self) -> Optional[DeviceStream]:
        return self._device

    def ensure(self) -> "AudioContext":
        """Bring the context up on first use. Safe to call repeatedly."""
        if self.state == "closed":
            raise StudioError("Audio context has been disposed")
        if self._executor is None:
            # One worker: decode/render/encode jobs run strictly in order
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audio")
            self.state = "running"
            log.info("Audio context started (mix rate %d Hz)", self.settings.mix_sample_rate)
        return self

    def resume(self) -> "AudioContext":
        """Explicit 'enable audio' from the host."""
        return self.ensure()

    async def run(self, fn, *args):
        """Run a CPU-bound step on the context's worker thread."""
        self.ensure()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    async def acquire_device(self) -> DeviceHandle:
        """Open the microphone once and hand out a shared lease on it."""
        self.ensure()
        async with self._device_lock:
            if self._device is None or self._device.ended:
                track = await self._microphone()
                self._device = DeviceStream(track)
                log.info("Device stream opened")
            return self._device.acquire()

    async def dispose(self):
        if self.state == "closed":
            return
        if self._device is not None:
            await self._device.close()
            self._device = None
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self.state = "closed"
        log.info("Audio context disposed")
