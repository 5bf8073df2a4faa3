"""Local audio pipeline: microphone capture to the track every peer receives.

The raw capture track is wrapped in a ``ProcessedAudioTrack`` that runs a
chain of stages over each frame (denoise, then gate). The chain is rebuilt
end to end whenever the device or the denoise setting changes; the old
processed track is stopped so nothing keeps pulling from the source.

Build fallback: if the denoise stage cannot be constructed the pipeline
uses the gate alone, and if even that fails it sends the raw capture.
A stage that raises while processing is dropped from the chain the same
way. The pipeline never falls back to silence.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional, Tuple

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError

from vortex_mesh.audio.denoise import SpectralDenoiser
from vortex_mesh.audio.frames import float_to_frame, frame_to_float
from vortex_mesh.audio.gate import NoiseGate, frame_rms
from vortex_mesh.audio.vad import VoiceActivityDetector
from vortex_mesh.config import Config, get_config
from vortex_mesh.errors import DeviceUnavailableError

logger = logging.getLogger(__name__)

# Names of the chain variants, best first
LEVEL_DENOISE = "denoise+gate"
LEVEL_GATE = "gate"
LEVEL_RAW = "raw"

Stage = Callable[[np.ndarray, int, float], np.ndarray]
DeviceFactory = Callable[[], Any]
TrackListener = Callable[[Optional[MediaStreamTrack]], Any]


def open_microphone(device: str = "default", capture_format: str = "pulse") -> Tuple[MediaPlayer, MediaStreamTrack]:
    """Open a capture device through ffmpeg.

    Raises:
        DeviceUnavailableError: If the device cannot be opened or has no audio.
    """
    try:
        player = MediaPlayer(device, format=capture_format)
    except Exception as e:
        raise DeviceUnavailableError(
            f"Cannot open audio device {device!r} ({capture_format}): {e}"
        ) from e
    if player.audio is None:
        raise DeviceUnavailableError(f"Audio device {device!r} produced no audio stream")
    return player, player.audio


class ProcessingContext:
    """Run state of the processing graph.

    A suspended context passes silence; the OS may suspend it while the app
    is in the background.
    """

    RUNNING = "running"
    SUSPENDED = "suspended"
    CLOSED = "closed"

    def __init__(self):
        self.state = self.RUNNING

    def suspend(self):
        if self.state == self.RUNNING:
            self.state = self.SUSPENDED
            logger.debug("Audio processing context suspended")

    async def resume(self) -> bool:
        """Resume if suspended. Returns True if the context was suspended."""
        if self.state != self.SUSPENDED:
            return False
        self.state = self.RUNNING
        logger.info("Audio processing context resumed")
        return True

    def close(self):
        self.state = self.CLOSED


class ProcessedAudioTrack(MediaStreamTrack):
    """Audio track that runs ``stages`` over every frame of ``source``.

    Args:
        source: Raw capture track.
        stages: ``stage(samples, sample_rate, start_time) -> samples``.
        context: Processing context; while suspended, frames are silenced.
        on_level: Called with the RMS of each raw frame (voice activity).
    """

    kind = "audio"

    def __init__(
        self,
        source: MediaStreamTrack,
        stages: List[Tuple[str, Stage]],
        context: ProcessingContext,
        on_level: Optional[Callable[[float], None]] = None,
    ):
        super().__init__()
        self.source = source
        self.stages = list(stages)
        self.context = context
        self.on_level = on_level
        self._samples_seen = 0

    @property
    def stage_names(self) -> List[str]:
        return [name for name, _ in self.stages]

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        try:
            frame = await self.source.recv()
        except MediaStreamError:
            self.stop()
            raise

        samples, sample_rate = frame_to_float(frame)
        start_time = self._samples_seen / float(sample_rate)
        self._samples_seen += samples.shape[-1]

        if self.on_level is not None:
            self.on_level(frame_rms(samples))

        if self.context.state != ProcessingContext.RUNNING:
            return float_to_frame(np.zeros_like(samples), frame)

        for name, stage in list(self.stages):
            try:
                samples = stage(samples, sample_rate, start_time)
            except Exception as e:
                logger.error(f"Audio stage {name} failed, removing it from the chain: {e}")
                self.stages = [(n, s) for n, s in self.stages if n != name]
        return float_to_frame(samples, frame)


class LocalAudioPipeline:
    """Owns the capture device and the processed outgoing track.

    Args:
        config: Gate threshold, denoise defaults and capture device.
        device_factory: Returns ``(player, track)``; defaults to the configured
            microphone.

    Attributes:
        raw_track: Device capture track (None without a device).
        track: Processed track sent to peers (None without a device).
        level: Which chain variant is active (``denoise+gate``, ``gate``, ``raw``).
        device_error: Message shown to the user when capture failed.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        device_factory: Optional[DeviceFactory] = None,
    ):
        self.config = config or get_config()
        self.device_factory = device_factory or (
            lambda: open_microphone(self.config.audio_device, self.config.audio_format)
        )

        self.context = ProcessingContext()
        self.gate = NoiseGate(self.config.noise_gate_threshold, self.config.noise_gate)
        self.denoiser: Optional[SpectralDenoiser] = None
        self.denoise_enabled = self.config.denoise_enabled
        self.denoise_intensity = self.config.denoise_intensity
        self.vad = VoiceActivityDetector()
        self.is_speaking = False

        self.player: Optional[Any] = None
        self.raw_track: Optional[MediaStreamTrack] = None
        self.track: Optional[ProcessedAudioTrack] = None
        self.level: Optional[str] = None
        self.device_error: Optional[str] = None

        self.muted = False
        self.deafened = False
        self.push_to_talk = False
        self.ptt_held = False

        self._track_listeners: List[TrackListener] = []
        self._device_ended_listeners: List[Callable[[], None]] = []
        self._voice_listeners: List[Callable[[bool], None]] = []
        self._releasing = False
        self._lock = asyncio.Lock()

    # ── listeners ────────────────────────────────────────────────────────

    def add_track_listener(self, listener: TrackListener):
        """Register ``listener(track)``, called after every rebuild."""
        self._track_listeners.append(listener)

    def add_device_ended_listener(self, listener: Callable[[], None]):
        """Register ``listener()`` for a capture track that ends unexpectedly."""
        self._device_ended_listeners.append(listener)

    def add_voice_listener(self, listener: Callable[[bool], None]):
        self._voice_listeners.append(listener)

    async def _publish(self):
        for listener in list(self._track_listeners):
            try:
                result = listener(self.track)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Audio track listener failed: {e}")

    # ── gate state ───────────────────────────────────────────────────────

    @property
    def threshold(self) -> float:
        return self.gate.threshold

    @property
    def is_open(self) -> bool:
        return self.gate.is_open

    @property
    def is_blocked(self) -> bool:
        """Muted, or push-to-talk enabled without the key held."""
        return self.muted or (self.push_to_talk and not self.ptt_held)

    def set_threshold(self, threshold: float):
        self.gate.set_threshold(threshold)
        logger.info(f"Noise gate threshold set to {self.gate.threshold}")

    def set_muted(self, muted: bool):
        self.muted = muted
        if not muted:
            self.deafened = False
        logger.info(f"Microphone {'muted' if muted else 'unmuted'}")

    def toggle_mute(self) -> bool:
        self.set_muted(not self.muted)
        return self.muted

    def toggle_deafen(self) -> bool:
        """Deafening also mutes; un-deafening leaves mute as it was."""
        self.deafened = not self.deafened
        if self.deafened:
            self.muted = True
        logger.info(f"Output {'deafened' if self.deafened else 'undeafened'}")
        return self.deafened

    def set_push_to_talk(self, enabled: bool):
        self.push_to_talk = enabled
        self.ptt_held = False

    def press_push_to_talk(self):
        if self.push_to_talk:
            self.ptt_held = True

    def release_push_to_talk(self):
        self.ptt_held = False

    def _on_level(self, rms: float):
        speaking = self.vad.update(rms, muted=self.is_blocked)
        if speaking == self.is_speaking:
            return
        self.is_speaking = speaking
        for listener in list(self._voice_listeners):
            try:
                listener(speaking)
            except Exception as e:
                logger.error(f"Voice listener failed: {e}")

    # ── chain construction ───────────────────────────────────────────────

    def _make_denoise_stage(self) -> Stage:
        self.denoiser = SpectralDenoiser(self.denoise_intensity, self.config.denoise)
        denoiser = self.denoiser
        return lambda samples, sample_rate, start_time: denoiser.process(samples, sample_rate)

    def _make_gate_stage(self) -> Stage:
        gate = self.gate

        def stage(samples: np.ndarray, sample_rate: int, start_time: float) -> np.ndarray:
            return gate.process(samples, sample_rate, start_time, blocked=self.is_blocked)

        return stage

    def _build_stages(self) -> Tuple[str, List[Tuple[str, Stage]]]:
        if self.denoise_enabled:
            try:
                stages = [
                    ("denoise", self._make_denoise_stage()),
                    ("gate", self._make_gate_stage()),
                ]
                return LEVEL_DENOISE, stages
            except Exception as e:
                logger.warning(f"Denoiser unavailable, using gate only: {e}")
                self.denoiser = None
        try:
            return LEVEL_GATE, [("gate", self._make_gate_stage())]
        except Exception as e:
            logger.warning(f"Noise gate unavailable, sending raw audio: {e}")
            return LEVEL_RAW, []

    def _build(self):
        if self.track is not None:
            self.track.stop()
            self.track = None
        if self.raw_track is None:
            self.level = None
            return

        self.level, stages = self._build_stages()
        self.track = ProcessedAudioTrack(
            self.raw_track, stages, self.context, on_level=self._on_level
        )
        logger.info(f"Audio pipeline built ({self.level})")

    async def rebuild(self):
        """Rebuild the chain for the current device and publish the new track."""
        async with self._lock:
            self._build()
        await self._publish()

    # ── device ───────────────────────────────────────────────────────────

    async def start(self):
        """Open the capture device and build the pipeline.

        A device failure is recorded in ``device_error`` and leaves the
        pipeline without a local track.
        """
        try:
            await self._acquire()
        except DeviceUnavailableError as e:
            logger.error(f"Microphone unavailable: {e}")
        await self.rebuild()

    async def _acquire(self):
        self._release_device()
        try:
            result = self.device_factory()
            if inspect.isawaitable(result):
                result = await result
        except DeviceUnavailableError as e:
            self.device_error = str(e)
            raise
        except Exception as e:
            self.device_error = str(e)
            raise DeviceUnavailableError(str(e)) from e

        self.player, self.raw_track = result
        self.device_error = None
        raw_track = self.raw_track

        @raw_track.on("ended")
        def on_ended():
            if self._releasing or raw_track is not self.raw_track:
                return
            logger.warning("Capture track ended")
            for listener in list(self._device_ended_listeners):
                try:
                    listener()
                except Exception as e:
                    logger.error(f"Device ended listener failed: {e}")

    def _release_device(self):
        self._releasing = True
        try:
            if self.raw_track is not None and self.raw_track.readyState != "ended":
                self.raw_track.stop()
        finally:
            self._releasing = False
        self.raw_track = None
        self.player = None

    def has_ended_tracks(self) -> bool:
        """True if the capture track feeding the pipeline has ended."""
        return self.raw_track is not None and self.raw_track.readyState == "ended"

    async def reacquire_device(self):
        """Reopen the capture device and rebuild.

        Raises:
            DeviceUnavailableError: If the device cannot be reopened; the
                pipeline is left without a local track.
        """
        try:
            await self._acquire()
        except DeviceUnavailableError:
            await self.rebuild()
            raise
        logger.info("Capture device reacquired")
        await self.rebuild()

    async def set_device(self, device: str, capture_format: Optional[str] = None):
        self.config.audio_device = device
        if capture_format is not None:
            self.config.audio_format = capture_format
        await self.reacquire_device()

    async def set_denoise(self, enabled: bool, intensity: Optional[float] = None):
        """Toggle denoising (rebuilds) or adjust its intensity (in place)."""
        if intensity is not None:
            self.denoise_intensity = intensity
            if self.denoiser is not None:
                self.denoiser.set_intensity(intensity)
        if enabled != self.denoise_enabled:
            self.denoise_enabled = enabled
            await self.rebuild()

    # ── context ──────────────────────────────────────────────────────────

    def suspend_context(self):
        self.context.suspend()

    async def resume_context(self) -> bool:
        return await self.context.resume()

    async def close(self):
        """Stop the processed track and release the device."""
        if self.track is not None:
            self.track.stop()
            self.track = None
        self._release_device()
        self.context.close()
        self.level = None
        logger.info("Audio pipeline closed")
