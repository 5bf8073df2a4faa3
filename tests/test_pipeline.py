"""Tests for the local audio pipeline."""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from aiortc.mediastreams import MediaStreamError

from conftest import FakeAudioSource, tone
from vortex_mesh.audio.frames import frame_to_float
from vortex_mesh.audio.pipeline import (
    LEVEL_DENOISE,
    LEVEL_GATE,
    LEVEL_RAW,
    LocalAudioPipeline,
    ProcessedAudioTrack,
    ProcessingContext,
)
from vortex_mesh.errors import DeviceUnavailableError


@pytest.fixture
def pipeline(config, microphone):
    return LocalAudioPipeline(config, microphone)


async def peak(track):
    samples, _ = frame_to_float(await track.recv())
    return float(np.max(np.abs(samples)))


# =============================================================================
# Chain construction
# =============================================================================


class TestBuild:
    """Tests for building the processing chain."""

    @pytest.mark.asyncio
    async def test_start_builds_full_chain(self, pipeline, microphone):
        listener = MagicMock()
        pipeline.add_track_listener(listener)
        await pipeline.start()

        assert pipeline.level == LEVEL_DENOISE
        assert pipeline.track.stage_names == ["denoise", "gate"]
        assert pipeline.raw_track is microphone.sources[0]
        assert pipeline.denoiser is not None
        listener.assert_called_once_with(pipeline.track)

    @pytest.mark.asyncio
    async def test_denoise_disabled_uses_gate_only(self, config, microphone):
        config.denoise_enabled = False
        pipeline = LocalAudioPipeline(config, microphone)
        await pipeline.start()
        assert pipeline.level == LEVEL_GATE
        assert pipeline.track.stage_names == ["gate"]

    @pytest.mark.asyncio
    async def test_denoiser_failure_falls_back_to_gate(self, pipeline):
        with patch.object(
            LocalAudioPipeline, "_make_denoise_stage", side_effect=RuntimeError("no fft")
        ):
            await pipeline.start()
        assert pipeline.level == LEVEL_GATE
        assert pipeline.denoiser is None

    @pytest.mark.asyncio
    async def test_gate_failure_falls_back_to_raw(self, pipeline):
        with patch.object(
            LocalAudioPipeline, "_make_gate_stage", side_effect=RuntimeError("broken")
        ):
            await pipeline.start()
        assert pipeline.level == LEVEL_RAW
        assert pipeline.track.stage_names == []
        assert await peak(pipeline.track) > 0.1

    @pytest.mark.asyncio
    async def test_async_device_factory(self, config):
        source = FakeAudioSource([tone(0.2)])

        async def factory():
            return object(), source

        pipeline = LocalAudioPipeline(config, factory)
        await pipeline.start()
        assert pipeline.raw_track is source

    @pytest.mark.asyncio
    async def test_device_failure_leaves_no_track(self, pipeline, microphone):
        microphone.error = DeviceUnavailableError("no microphone")
        listener = MagicMock()
        pipeline.add_track_listener(listener)
        await pipeline.start()

        assert pipeline.track is None
        assert pipeline.level is None
        assert pipeline.device_error == "no microphone"
        listener.assert_called_once_with(None)

    @pytest.mark.asyncio
    async def test_unexpected_device_error_is_recorded(self, pipeline, microphone):
        microphone.error = OSError("busy")
        await pipeline.start()
        assert pipeline.track is None
        assert "busy" in pipeline.device_error

    @pytest.mark.asyncio
    async def test_set_denoise_rebuilds(self, pipeline):
        await pipeline.start()
        old = pipeline.track

        await pipeline.set_denoise(False)
        assert pipeline.level == LEVEL_GATE
        assert pipeline.track is not old
        assert old.readyState == "ended"

    @pytest.mark.asyncio
    async def test_intensity_change_is_applied_in_place(self, pipeline):
        await pipeline.start()
        track = pipeline.track
        await pipeline.set_denoise(True, intensity=0.8)
        assert pipeline.track is track
        assert pipeline.denoiser.intensity == pytest.approx(0.8)


# =============================================================================
# Processing
# =============================================================================


class TestProcessing:
    """Tests for frames flowing through the track."""

    @pytest.mark.asyncio
    async def test_loud_audio_passes(self, pipeline):
        await pipeline.start()
        assert await peak(pipeline.track) > 0.1

    @pytest.mark.asyncio
    async def test_muted_sends_silence(self, pipeline):
        await pipeline.start()
        pipeline.toggle_mute()
        assert await peak(pipeline.track) == 0.0

    @pytest.mark.asyncio
    async def test_suspended_context_sends_silence(self, pipeline):
        await pipeline.start()
        pipeline.suspend_context()
        assert await peak(pipeline.track) == 0.0

        assert await pipeline.resume_context()
        assert not await pipeline.resume_context()
        assert await peak(pipeline.track) > 0.1

    @pytest.mark.asyncio
    async def test_failing_stage_is_dropped(self):
        def boom(samples, sample_rate, start_time):
            raise RuntimeError("stage exploded")

        track = ProcessedAudioTrack(
            FakeAudioSource([tone(0.4), tone(0.4)]),
            [("boom", boom), ("half", lambda s, sr, t: s * 0.5)],
            ProcessingContext(),
        )
        assert await peak(track) == pytest.approx(0.2, abs=1e-2)
        assert track.stage_names == ["half"]

    @pytest.mark.asyncio
    async def test_source_end_stops_track(self):
        track = ProcessedAudioTrack(FakeAudioSource([]), [], ProcessingContext())
        with pytest.raises(MediaStreamError):
            await track.recv()
        assert track.readyState == "ended"

    @pytest.mark.asyncio
    async def test_voice_listener_follows_speech(self, pipeline):
        events = []
        pipeline.add_voice_listener(events.append)
        await pipeline.start()
        for _ in range(4):
            await pipeline.track.recv()

        assert pipeline.is_speaking
        assert events == [True]

        pipeline.toggle_mute()
        await pipeline.track.recv()
        assert events == [True, False]


# =============================================================================
# Controls
# =============================================================================


class TestControls:
    """Tests for mute, deafen and push-to-talk."""

    def test_deafen_also_mutes(self, pipeline):
        assert pipeline.toggle_deafen()
        assert pipeline.muted
        assert not pipeline.toggle_deafen()
        assert pipeline.muted

    def test_unmute_clears_deafen(self, pipeline):
        pipeline.toggle_deafen()
        assert not pipeline.toggle_mute()
        assert not pipeline.deafened

    def test_push_to_talk(self, pipeline):
        pipeline.press_push_to_talk()
        assert not pipeline.ptt_held

        pipeline.set_push_to_talk(True)
        assert pipeline.is_blocked
        pipeline.press_push_to_talk()
        assert not pipeline.is_blocked
        pipeline.release_push_to_talk()
        assert pipeline.is_blocked

    def test_threshold(self, pipeline):
        pipeline.set_threshold(0.05)
        assert pipeline.threshold == 0.05


# =============================================================================
# Device lifecycle
# =============================================================================


class TestDevice:
    """Tests for device loss and reacquisition."""

    @pytest.mark.asyncio
    async def test_ended_capture_notifies(self, pipeline):
        ended = MagicMock()
        pipeline.add_device_ended_listener(ended)
        await pipeline.start()

        pipeline.raw_track.stop()
        ended.assert_called_once()
        assert pipeline.has_ended_tracks()

    @pytest.mark.asyncio
    async def test_reacquire_replaces_device_silently(self, pipeline, microphone):
        ended = MagicMock()
        pipeline.add_device_ended_listener(ended)
        await pipeline.start()
        old_track = pipeline.track

        await pipeline.reacquire_device()

        assert len(microphone.sources) == 2
        assert microphone.sources[0].readyState == "ended"
        assert pipeline.raw_track is microphone.sources[1]
        assert pipeline.track is not old_track
        assert not pipeline.has_ended_tracks()
        ended.assert_not_called()

    @pytest.mark.asyncio
    async def test_reacquire_failure_raises(self, pipeline, microphone):
        await pipeline.start()
        microphone.error = DeviceUnavailableError("unplugged")

        with pytest.raises(DeviceUnavailableError):
            await pipeline.reacquire_device()
        assert pipeline.track is None
        assert pipeline.device_error == "unplugged"

    @pytest.mark.asyncio
    async def test_set_device_updates_config(self, pipeline, config):
        await pipeline.start()
        await pipeline.set_device("hw:1", "alsa")
        assert config.audio_device == "hw:1"
        assert config.audio_format == "alsa"

    @pytest.mark.asyncio
    async def test_close(self, pipeline, microphone):
        ended = MagicMock()
        pipeline.add_device_ended_listener(ended)
        await pipeline.start()
        track = pipeline.track

        await pipeline.close()

        assert pipeline.track is None
        assert track.readyState == "ended"
        assert microphone.sources[0].readyState == "ended"
        assert pipeline.context.state == ProcessingContext.CLOSED
        ended.assert_not_called()
