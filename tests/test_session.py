import asyncio

import numpy as np
import pytest

from conftest import microphone_factory, tone, wav_bytes
from mixdown import session as studio
from mixdown.config import Settings
from mixdown.context import AudioContext
from mixdown.decoder import decode_bytes
from mixdown.errors import DeviceError
from mixdown.session import StudioSession
from mixdown.types import VocalSource
from mixdown.wav import read_wav

BEAT = wav_bytes(tone(2.0, channels=2))


def _studio(settings, factory=None):
    statuses = []
    context = AudioContext(settings, microphone=factory or microphone_factory())
    return StudioSession(context, settings=settings, on_status=statuses.append), statuses


def test_enable_audio_is_idempotent(settings):
    factory = microphone_factory()

    async def run():
        session, statuses = _studio(settings, factory)
        try:
            assert await session.enable_audio()
            assert await session.enable_audio()
            assert session.audio_enabled
            assert statuses == [studio.AUDIO_ENABLED_NO_BEAT]
        finally:
            await session.close()

    asyncio.run(run())
    assert len(factory.opened) == 1
    assert factory.opened[0].readyState == "ended"


def test_enable_audio_failure_sets_status(settings):
    async def denied():
        raise DeviceError("permission denied")

    async def run():
        session, statuses = _studio(settings, denied)
        try:
            assert not await session.enable_audio()
            assert not session.audio_enabled
            assert statuses[-1] == studio.ENABLE_FAILED
        finally:
            await session.close()

    asyncio.run(run())


def test_recording_needs_device_and_instrumental(settings):
    async def run():
        session, statuses = _studio(settings)
        try:
            assert not await session.start_recording()
            assert statuses[-1] == studio.ENABLE_FIRST
            await session.enable_audio()
            assert not await session.start_recording()
            assert statuses[-1] == studio.LOAD_FIRST
            assert not session.recording
        finally:
            await session.close()

    asyncio.run(run())


def test_record_then_mix(settings):
    async def run():
        session, statuses = _studio(settings)
        try:
            assert await session.load_instrumental(BEAT, "beat.wav")
            await session.enable_audio()
            assert await session.start_recording()
            assert session.recording
            await asyncio.sleep(0.1)
            url = await session.stop_recording()

            assert url == session.mix_url
            assert session.vocals_url.endswith("/my-vocals.wav")
            assert session.selection is VocalSource.RECORDED
            assert statuses[-2:] == [studio.RECORDING_READY, studio.MIX_READY]

            mix_art = session.artifact(url)
            assert mix_art.filename == "my-song.wav"
            mix = read_wav(mix_art.data)
            vocals = decode_bytes(session.artifact(session.vocals_url).data)
            return mix, vocals
        finally:
            await session.close()

    mix, vocals = asyncio.run(run())
    assert mix.sample_rate == 44100
    assert mix.num_channels == 2
    assert mix.length == 88200
    assert vocals.sample_rate == 48000
    assert vocals.num_channels == 1
    assert vocals.length > 0


def test_empty_take_suggests_supplied_vocals(settings):
    async def run():
        session, statuses = _studio(settings, microphone_factory(frames=0))
        try:
            await session.load_instrumental(BEAT, "beat.wav")
            await session.enable_audio()
            await session.start_recording()
            assert await session.stop_recording() is None
            assert statuses[-1] == studio.CAPTURE_FALLBACK
            assert session.mix_url is None
            assert session.vocals_url is None
            assert session.recorded_vocals is None
        finally:
            await session.close()

    asyncio.run(run())


def test_device_lost_keeps_partial_take(settings):
    async def run():
        session, statuses = _studio(settings, microphone_factory(frames=10, ends=True))
        try:
            await session.load_instrumental(BEAT, "beat.wav")
            await session.enable_audio()
            await session.start_recording()
            await asyncio.sleep(0.2)
            url = await session.stop_recording()
            assert url is not None
            assert statuses[-1] == studio.MIX_READY
            assert session.recorded_vocals.length == 10 * 960
            assert not session.audio_enabled
        finally:
            await session.close()

    asyncio.run(run())


def test_supplied_vocals_path_and_remix(settings):
    async def run():
        session, statuses = _studio(settings)
        try:
            await session.load_instrumental(BEAT, "beat.wav")
            assert await session.load_supplied_vocals(wav_bytes(tone(3.0, sample_rate=48000)), "vox.wav")
            first = await session.use_supplied_vocals()
            assert session.selection is VocalSource.SUPPLIED
            assert statuses[-2:] == [studio.RENDERING_SUPPLIED, studio.MIX_READY]
            assert read_wav(session.artifact(first).data).length == 3 * 44100

            assert session.set_vocals_gain(0.5)
            second = await session.render_mix()
            assert second != first
            assert first not in session.registry
            assert second in session.registry
            return first, second
        finally:
            await session.close()

    asyncio.run(run())


def test_new_recording_switches_back_to_recorded(settings):
    async def run():
        session, _ = _studio(settings)
        try:
            await session.load_instrumental(BEAT, "beat.wav")
            await session.load_supplied_vocals(wav_bytes(tone(1.0)), "vox.wav")
            await session.use_supplied_vocals()
            await session.enable_audio()
            await session.start_recording()
            assert session.selection is VocalSource.RECORDED
            await asyncio.sleep(0.05)
            await session.stop_recording()
            assert session.selection is VocalSource.RECORDED

            session.clear_supplied_vocals()
            assert session.supplied_vocals is None
        finally:
            await session.close()

    asyncio.run(run())


def test_bad_uploads_set_status(settings):
    async def run():
        session, statuses = _studio(settings)
        try:
            assert not await session.load_instrumental(b"", "empty.mp3")
            assert statuses[-1] == studio.INSTRUMENTAL_FAILED
            assert session.instrumental is None

            assert not await session.load_supplied_vocals(b"", "empty.wav")
            assert statuses[-1] == studio.VOCALS_FAILED

            assert await session.use_supplied_vocals() is None
            assert statuses[-1] == studio.NO_SUPPLIED_VOCALS

            assert await session.render_mix() is None
            assert statuses[-1] == studio.LOAD_FIRST

            assert not session.set_instrumental_gain(-2)
            assert statuses[-1] == studio.BAD_GAIN

            assert not session.play()
            assert statuses[-1] == studio.LOAD_FIRST
        finally:
            await session.close()

    asyncio.run(run())


def test_unfetchable_instrumental_url(settings):
    async def run():
        session, statuses = _studio(settings)
        try:
            assert not await session.load_instrumental_from_url("ftp://example.invalid/beat.wav")
            assert statuses[-1] == studio.FETCH_FAILED
        finally:
            await session.close()

    asyncio.run(run())


def test_monitor_mix_take_is_published():
    settings = Settings(recording_types=["audio/wav"], capture_monitor_mix=True, _env_file=None)

    async def run():
        session, _ = _studio(settings)
        try:
            await session.load_instrumental(BEAT, "beat.wav")
            await session.enable_audio()
            await session.start_recording()
            await asyncio.sleep(0.1)
            assert await session.stop_recording() is not None
            assert session.monitor_url.endswith("/my-take.wav")
            take = decode_bytes(session.artifact(session.monitor_url).data)
            assert take.num_channels == 2
            assert not session.playback._taps
        finally:
            await session.close()

    asyncio.run(run())


def test_close_revokes_everything(settings):
    async def run():
        session, _ = _studio(settings)
        await session.load_instrumental(BEAT, "beat.wav")
        await session.load_supplied_vocals(wav_bytes(tone(0.5)), "vox.wav")
        url = await session.use_supplied_vocals()
        await session.enable_audio()
        await session.close()
        assert url not in session.registry
        assert session.mix_url is None
        assert not session.playback.loaded
        assert session.context.state == "closed"

    asyncio.run(run())


def test_snapshot_shape(settings):
    async def run():
        session, _ = _studio(settings)
        try:
            await session.load_instrumental(BEAT, "beat.wav")
            return session.snapshot()
        finally:
            await session.close()

    snap = asyncio.run(run())
    assert snap["instrumental"] == "beat.wav"
    assert snap["selection"] == "recorded"
    assert snap["instrumental_gain"] == pytest.approx(0.9)
    assert snap["mix_url"] is None
    assert not snap["audio_enabled"]


def test_supplied_vocals_win_until_next_recording(settings):
    supplied = tone(1.0, freq=1000.0, amplitude=0.5)
    n = supplied.length

    async def run():
        session, _ = _studio(settings)
        try:
            await session.load_instrumental(BEAT, "beat.wav")
            assert session.set_instrumental_gain(0)
            await session.enable_audio()

            await session.start_recording()
            await asyncio.sleep(0.1)
            recorded_url = await session.stop_recording()
            recorded_mix = read_wav(session.artifact(recorded_url).data)

            await session.load_supplied_vocals(wav_bytes(supplied), "vox.wav")
            supplied_mix = read_wav(session.artifact(await session.use_supplied_vocals()).data)
            remix = read_wav(session.artifact(await session.render_mix()).data)
            assert session.selection is VocalSource.SUPPLIED

            await session.start_recording()
            assert session.selection is VocalSource.RECORDED
            await asyncio.sleep(0.1)
            retake_mix = read_wav(session.artifact(await session.stop_recording()).data)
            return recorded_mix, supplied_mix, remix, retake_mix
        finally:
            await session.close()

    recorded_mix, supplied_mix, remix, retake_mix = asyncio.run(run())
    expected = np.vstack([supplied.samples[0], supplied.samples[0]])

    for mix in (supplied_mix, remix):
        assert mix.length == 88200
        assert np.max(np.abs(mix.samples[:, :n] - expected)) < 1e-3
        assert not mix.samples[:, n:].any()

    for mix in (recorded_mix, retake_mix):
        assert np.max(np.abs(mix.samples[:, :n] - expected)) > 0.1


def test_enable_audio_replaces_a_lost_device(settings):
    factory = microphone_factory(frames=3, ends=True)

    async def run():
        session, statuses = _studio(settings, factory)
        try:
            assert await session.enable_audio()
            lost = session.context.device
            await asyncio.sleep(0.1)
            assert not session.audio_enabled

            assert await session.enable_audio()
            assert session.audio_enabled
            assert session.context.device is not lost
            assert lost.handles == 0
            assert statuses.count(studio.AUDIO_ENABLED_NO_BEAT) == 2
        finally:
            await session.close()

    asyncio.run(run())
    assert len(factory.opened) == 2


def test_async_status_callback_failures_are_collected(settings):
    delivered = []

    async def on_status(message):
        if message == studio.LOAD_FIRST:
            raise ConnectionResetError("socket closed")
        delivered.append(message)

    async def run():
        context = AudioContext(settings, microphone=microphone_factory())
        session = StudioSession(context, settings=settings, on_status=on_status)
        try:
            assert not session.play()
            assert not session.set_vocals_gain(-1)
            assert len(session._status_tasks) == 2
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            assert not session._status_tasks
        finally:
            await session.close()

    asyncio.run(run())
    assert delivered == [studio.BAD_GAIN]
