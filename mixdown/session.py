"""Session orchestrator: load, enable, capture, decode, mix, encode, publish.

Core flow:
  1. Instrumental decoded and handed to the playback controller
  2. Device access enabled once (repeat requests are no-ops)
  3. Vocals either recorded through CaptureSession(s) or supplied as a file
  4. Mixdown -> WAV -> published link, replacing the previous one

Every failure is caught here and turned into a status line; nothing
escapes to the host. Nothing is retried automatically.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from typing import Callable, List, Optional, Set

import httpx

from .artifacts import ArtifactRegistry, EncodedArtifact, extension_for
from .capture import CaptureSession
from .config import Settings, settings as default_settings
from .context import AudioContext
from .decoder import Decoder
from .errors import DecodeError, DeviceLostError, StudioError
from .playback import MonitorMixTrack, PlaybackController
from .render import MixdownEngine
from .types import AudioBuffer, MixRequest, VocalSource, validate_gain
from .wav import encode_wav

log = logging.getLogger("session")

# ── Status lines ──────────────────────────────────────────────

LOADING_INSTRUMENTAL = "Loading instrumental…"
INSTRUMENTAL_FAILED = "Could not load that instrumental. Try wav, mp3 or m4a."
FETCH_FAILED = "Could not fetch the instrumental. Check the link and try again."
AUDIO_ENABLED = "Audio enabled. Ready!"
AUDIO_ENABLED_NO_BEAT = "Audio enabled. Load an instrumental next."
ENABLE_FAILED = "Could not enable audio. Check microphone permissions."
ENABLE_FIRST = "Enable audio first."
LOAD_FIRST = "Load an instrumental first."
ALREADY_RECORDING = "Already recording."
RECORDING = "Recording… stop when you're done."
RECORDING_READY = "Recording ready. Rendering mix…"
RECORDING_FAILED = "Recording failed. Check the microphone and record again."
CAPTURE_FALLBACK = (
    "Could not decode the recorded audio for mixing. "
    "Try supplying your vocals as a file instead."
)
VOCALS_FAILED = "Could not load that vocals file. Try wav, mp3 or m4a."
NO_SUPPLIED_VOCALS = "Load a vocals file first."
NO_VOCALS = "Record or supply vocals first."
RENDERING_SUPPLIED = "Rendering mix with supplied vocals…"
MIX_READY = "Mix ready."
MIX_FAILED = "Mix failed. Try another file format (wav/mp3/m4a)."
BAD_GAIN = "Gain must be a number of 0 or more."


class StudioSession:
    """Owns one user's instrumental, takes, selection and published mix."""

    def __init__(
        self,
        context: Optional[AudioContext] = None,
        *,
        settings: Optional[Settings] = None,
        registry: Optional[ArtifactRegistry] = None,
        on_status: Optional[Callable[[str], object]] = None,
    ):
        self._settings = settings or (context.settings if context else default_settings)
        self.context = context or AudioContext(self._settings)
        self.registry = registry or ArtifactRegistry()
        self.playback = PlaybackController(self._settings)
        self._decoder = Decoder(self.context)
        self._engine = MixdownEngine(self.context, self._settings)
        self._on_status = on_status

        self.status = ""
        self.instrumental: Optional[AudioBuffer] = None
        self.instrumental_name = ""
        self.recorded_vocals: Optional[AudioBuffer] = None
        self.supplied_vocals: Optional[AudioBuffer] = None
        self.supplied_vocals_name = ""
        self.selection = VocalSource.RECORDED
        self.vocals_gain = validate_gain(self._settings.vocals_gain)

        self.mix_url: Optional[str] = None
        self.vocals_url: Optional[str] = None
        self.monitor_url: Optional[str] = None

        self._device = None
        self._captures: List[CaptureSession] = []
        self._tap = None
        self._pipeline_lock = asyncio.Lock()
        self._status_tasks: Set[asyncio.Future] = set()

    # ── Status ────────────────────────────────────────────────

    def _set_status(self, message: str):
        self.status = message
        log.info("Status: %s", message)
        if self._on_status is not None:
            result = self._on_status(message)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._status_tasks.add(task)
                task.add_done_callback(self._status_sent)

    def _status_sent(self, task: asyncio.Future):
        self._status_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.warning("Status callback failed: %s", task.exception())

    @property
    def audio_enabled(self) -> bool:
        return self._device is not None and not self._device.ended

    @property
    def recording(self) -> bool:
        return bool(self._captures)

    def snapshot(self) -> dict:
        """Plain-dict view for the host UI."""
        return {
            "status": self.status,
            "audio_enabled": self.audio_enabled,
            "instrumental": self.instrumental_name or None,
            "playing": self.playback.playing,
            "recording": self.recording,
            "selection": self.selection.value,
            "supplied_vocals": self.supplied_vocals_name or None,
            "instrumental_gain": self.playback.gain,
            "vocals_gain": self.vocals_gain,
            "mix_url": self.mix_url,
            "vocals_url": self.vocals_url,
            "monitor_url": self.monitor_url,
        }

    # ── Instrumental ──────────────────────────────────────────

    async def load_instrumental(self, data: bytes, name: str = "instrumental") -> bool:
        self._set_status(LOADING_INSTRUMENTAL)
        try:
            buffer = await self._decoder.decode(data)
        except DecodeError as e:
            log.warning("Instrumental %r failed to decode: %s", name, e)
            self._set_status(INSTRUMENTAL_FAILED)
            return False

        self.instrumental = buffer
        self.instrumental_name = name
        self.playback.load(buffer)
        self._set_status(f"Instrumental loaded: {name}")
        return True

    async def load_instrumental_from_url(self, url: str) -> bool:
        self._set_status(LOADING_INSTRUMENTAL)
        try:
            async with httpx.AsyncClient(timeout=self._settings.fetch_timeout) as client:
                resp = await client.get(url)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            log.warning("Instrumental fetch failed for %s: %s", url, e)
            self._set_status(FETCH_FAILED)
            return False
        name = url.rstrip("/").rsplit("/", 1)[-1] or "instrumental"
        return await self.load_instrumental(resp.content, name)

    # ── Device ────────────────────────────────────────────────

    async def enable_audio(self) -> bool:
        """Resume the context and acquire the microphone once."""
        if self.audio_enabled:
            return True
        if self._device is not None:
            # Device went away since the last enable
            await self._device.release()
            self._device = None
        try:
            self.context.resume()
            self._device = await self.context.acquire_device()
        except StudioError as e:
            log.warning("Enable audio failed: %s", e)
            self._set_status(ENABLE_FAILED)
            return False
        self._set_status(AUDIO_ENABLED if self.instrumental else AUDIO_ENABLED_NO_BEAT)
        return True

    # ── Playback ──────────────────────────────────────────────

    def play(self) -> bool:
        if not self.playback.play():
            self._set_status(LOAD_FIRST)
            return False
        return True

    def stop(self):
        self.playback.stop()

    def set_instrumental_gain(self, value) -> bool:
        try:
            self.playback.set_gain(value)
        except (TypeError, ValueError):
            self._set_status(BAD_GAIN)
            return False
        return True

    def set_vocals_gain(self, value) -> bool:
        try:
            self.vocals_gain = validate_gain(value)
        except (TypeError, ValueError):
            self._set_status(BAD_GAIN)
            return False
        return True

    # ── Recording ─────────────────────────────────────────────

    async def start_recording(self) -> bool:
        if not self.audio_enabled:
            self._set_status(ENABLE_FIRST)
            return False
        if self.instrumental is None:
            self._set_status(LOAD_FIRST)
            return False
        if self._captures:
            self._set_status(ALREADY_RECORDING)
            return False

        # A new take always switches the mix back to recorded vocals
        self.selection = VocalSource.RECORDED
        self.recorded_vocals = None
        self.vocals_url = self._release(self.vocals_url)
        self.monitor_url = self._release(self.monitor_url)

        sessions = [CaptureSession(self.context, self._settings, layout="mono", name="vocals")]
        if self._settings.capture_monitor_mix:
            self._tap = self.playback.add_tap()
            wrap = functools.partial(
                MonitorMixTrack, tap=self._tap, sample_rate=self._settings.live_sample_rate,
            )
            sessions.append(CaptureSession(
                self.context, self._settings, layout="stereo", name="monitor", wrap_source=wrap,
            ))

        try:
            for session in sessions:
                await session.arm()
                session.start()
        except StudioError as e:
            log.warning("Could not start recording: %s", e)
            for session in sessions:
                if session.completed is not None and not session.completed.done():
                    await asyncio.gather(session.stop(), return_exceptions=True)
            self._drop_tap()
            self._set_status(RECORDING_FAILED)
            return False

        self._captures = sessions
        if self._settings.monitor_while_recording:
            self.playback.play()
        self._set_status(RECORDING)
        return True

    async def stop_recording(self) -> Optional[str]:
        """Flush every recorder, publish the takes, then mix the vocals."""
        if not self._captures:
            return None
        captures, self._captures = self._captures, []
        if self._settings.monitor_while_recording:
            self.playback.stop()

        results = await asyncio.gather(*(c.stop() for c in captures), return_exceptions=True)
        self._drop_tap()

        for i, (capture, result) in enumerate(zip(captures, results)):
            if not isinstance(result, BaseException):
                continue
            if not isinstance(result, StudioError):
                raise result
            if isinstance(result, DeviceLostError) and capture.completed.done():
                # Keep whatever was captured before the device went away
                log.warning("[%s] %s; keeping partial take", capture.name, result)
                results[i] = capture.completed.result()
                continue
            log.warning("Recording failed: %s", result)
            self._set_status(RECORDING_FAILED)
            return None

        vocals_blob = results[0]
        if vocals_blob.size:
            self.vocals_url = self._publish(EncodedArtifact(
                vocals_blob.data, vocals_blob.media_type,
                f"{self._settings.vocals_basename}.{extension_for(vocals_blob.media_type)}",
            ))
        if len(results) > 1 and results[1].size:
            monitor_blob = results[1]
            self.monitor_url = self._publish(EncodedArtifact(
                monitor_blob.data, monitor_blob.media_type,
                f"{self._settings.monitor_basename}.{extension_for(monitor_blob.media_type)}",
            ))

        self._set_status(RECORDING_READY)
        try:
            self.recorded_vocals = await self._decoder.decode(vocals_blob.data)
        except DecodeError as e:
            log.warning("Recorded vocals failed to decode (%s): %s", vocals_blob.media_type, e)
            self._set_status(CAPTURE_FALLBACK)
            return None

        self.selection = VocalSource.RECORDED
        return await self._mixdown(self.recorded_vocals)

    def _drop_tap(self):
        if self._tap is not None:
            self.playback.remove_tap(self._tap)
            self._tap = None

    # ── Supplied vocals ───────────────────────────────────────

    async def load_supplied_vocals(self, data: bytes, name: str = "vocals") -> bool:
        try:
            buffer = await self._decoder.decode(data)
        except DecodeError as e:
            log.warning("Supplied vocals %r failed to decode: %s", name, e)
            self.supplied_vocals = None
            self.supplied_vocals_name = ""
            self._set_status(VOCALS_FAILED)
            return False
        self.supplied_vocals = buffer
        self.supplied_vocals_name = name
        self._set_status(f"Supplied vocals loaded: {name}")
        return True

    async def use_supplied_vocals(self) -> Optional[str]:
        if self.supplied_vocals is None:
            self._set_status(NO_SUPPLIED_VOCALS)
            return None
        self.selection = VocalSource.SUPPLIED
        if self.instrumental is None:
            self._set_status(LOAD_FIRST)
            return None
        self._set_status(RENDERING_SUPPLIED)
        return await self._mixdown(self.supplied_vocals)

    def clear_supplied_vocals(self):
        self.supplied_vocals = None
        self.supplied_vocals_name = ""
        self.selection = VocalSource.RECORDED

    # ── Mixdown ───────────────────────────────────────────────

    def selected_vocals(self) -> Optional[AudioBuffer]:
        if self.selection is VocalSource.SUPPLIED:
            return self.supplied_vocals
        return self.recorded_vocals

    async def render_mix(self) -> Optional[str]:
        """Re-render with the current selection and gains."""
        if self.instrumental is None:
            self._set_status(LOAD_FIRST)
            return None
        vocals = self.selected_vocals()
        if vocals is None:
            self._set_status(NO_VOCALS)
            return None
        return await self._mixdown(vocals)

    async def _mixdown(self, vocals: AudioBuffer) -> Optional[str]:
        """Render -> encode -> publish, one artifact at a time."""
        async with self._pipeline_lock:
            self.mix_url = self._release(self.mix_url)
            request = MixRequest(
                instrumental=self.instrumental,
                vocals=vocals,
                instrumental_gain=self.playback.gain,
                vocals_gain=self.vocals_gain,
            )
            try:
                mix = await self._engine.render(request)
                artifact = await self.context.run(encode_wav, mix, self._settings.mix_filename)
            except StudioError as e:
                log.error("Mixdown failed: %s", e)
                self._set_status(MIX_FAILED)
                return None
            self.mix_url = self._publish(artifact)
        self._set_status(MIX_READY)
        return self.mix_url

    # ── Artifacts ─────────────────────────────────────────────

    def _publish(self, artifact: EncodedArtifact) -> str:
        return self.registry.publish(artifact)

    def _release(self, url: Optional[str]) -> None:
        self.registry.revoke(url)
        return None

    def artifact(self, url: Optional[str]) -> Optional[EncodedArtifact]:
        return self.registry.resolve(url) if url else None

    # ── Teardown ──────────────────────────────────────────────

    async def close(self):
        captures, self._captures = self._captures, []
        if captures:
            await asyncio.gather(*(c.stop() for c in captures), return_exceptions=True)
        self._drop_tap()
        self.playback.unload()
        for url in (self.mix_url, self.vocals_url, self.monitor_url):
            self.registry.revoke(url)
        self.mix_url = self.vocals_url = self.monitor_url = None
        if self._device is not None:
            await self._device.release()
            self._device = None
        await self.context.dispose()
        log.info("Session closed")
