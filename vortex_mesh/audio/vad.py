"""Voice activity detection for the local microphone and remote peers.

Both detectors debounce on consecutive evaluations so the speaking
indicator does not flicker while the level hovers near the threshold. The
local detector also uses asymmetric thresholds; remote peers use a plain
threshold and report their level alongside the decision.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List

from aiortc.mediastreams import MediaStreamError, MediaStreamTrack

from vortex_mesh.audio.frames import frame_to_float
from vortex_mesh.audio.gate import frame_rms
from vortex_mesh.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

DEFAULT_VAD_THRESHOLD = 0.01

LOCAL_OPEN_RATIO = 1.3
LOCAL_CLOSE_RATIO = 0.65
LOCAL_ACTIVATION_FRAMES = 3
LOCAL_DEACTIVATION_FRAMES = 12

REMOTE_ACTIVATION_FRAMES = 3
REMOTE_DEACTIVATION_FRAMES = 8


class VoiceActivityDetector:
    """Local speaking detector with hysteresis and frame debouncing.

    Activates after ``activation_frames`` consecutive evaluations above
    ``threshold * 1.3`` and deactivates after ``deactivation_frames``
    consecutive evaluations below ``threshold * 0.65``.
    """

    def __init__(
        self,
        threshold: float = DEFAULT_VAD_THRESHOLD,
        activation_frames: int = LOCAL_ACTIVATION_FRAMES,
        deactivation_frames: int = LOCAL_DEACTIVATION_FRAMES,
    ):
        self.threshold = threshold
        self.activation_frames = activation_frames
        self.deactivation_frames = deactivation_frames
        self.is_active = False
        self._active_count = 0
        self._inactive_count = 0

    def reset(self):
        self.is_active = False
        self._active_count = 0
        self._inactive_count = 0

    def update(self, rms: float, muted: bool = False) -> bool:
        """Feed one RMS evaluation and return whether the user is speaking."""
        if muted:
            self.reset()
            return False

        if not self.is_active:
            if rms > self.threshold * LOCAL_OPEN_RATIO:
                self._active_count += 1
                self._inactive_count = 0
                if self._active_count >= self.activation_frames:
                    self.is_active = True
            else:
                self._active_count = 0
        elif rms < self.threshold * LOCAL_CLOSE_RATIO:
            self._inactive_count += 1
            self._active_count = 0
            if self._inactive_count >= self.deactivation_frames:
                self.is_active = False
        else:
            self._inactive_count = 0
        return self.is_active


@dataclass
class VoiceLevel:
    """Speaking state and last measured level of one remote peer."""

    is_active: bool = False
    level: float = 0.0


class RemoteVoiceActivity:
    """Per-peer speaking detector with a plain threshold."""

    def __init__(
        self,
        threshold: float = DEFAULT_VAD_THRESHOLD,
        activation_frames: int = REMOTE_ACTIVATION_FRAMES,
        deactivation_frames: int = REMOTE_DEACTIVATION_FRAMES,
    ):
        self.threshold = threshold
        self.activation_frames = activation_frames
        self.deactivation_frames = deactivation_frames
        self.state = VoiceLevel()
        self._active_count = 0
        self._inactive_count = 0

    def update(self, rms: float) -> VoiceLevel:
        if rms > self.threshold:
            self._active_count += 1
            self._inactive_count = 0
        else:
            self._inactive_count += 1
            self._active_count = 0

        is_active = self._active_count >= self.activation_frames or (
            self.state.is_active and self._inactive_count < self.deactivation_frames
        )
        self.state = VoiceLevel(is_active=is_active, level=rms)
        return self.state


VoiceListener = Callable[[str, VoiceLevel], None]


class RemoteVoiceMonitor:
    """Reads remote audio tracks and keeps one detector per peer.

    Listeners are called with ``(peer_id, VoiceLevel)`` whenever a peer's
    speaking state flips. A peer's detector is discarded when its stream
    goes away.
    """

    def __init__(self, threshold: float = DEFAULT_VAD_THRESHOLD):
        self.threshold = threshold
        self.detectors: Dict[str, RemoteVoiceActivity] = {}
        self._readers: Dict[str, asyncio.Task] = {}
        self._listeners: List[VoiceListener] = []
        self._tasks = BackgroundTasks("remote-vad")

    def add_listener(self, listener: VoiceListener):
        self._listeners.append(listener)

    def activity(self) -> Dict[str, VoiceLevel]:
        return {peer_id: d.state for peer_id, d in self.detectors.items()}

    def feed(self, peer_id: str, rms: float) -> VoiceLevel:
        detector = self.detectors.get(peer_id)
        if detector is None:
            detector = RemoteVoiceActivity(self.threshold)
            self.detectors[peer_id] = detector
        was_active = detector.state.is_active
        state = detector.update(rms)
        if state.is_active != was_active:
            self._notify(peer_id, state)
        return state

    def _notify(self, peer_id: str, state: VoiceLevel):
        for listener in list(self._listeners):
            try:
                listener(peer_id, state)
            except Exception as e:
                logger.error(f"Voice activity listener failed for {peer_id}: {e}")

    def watch(self, peer_id: str, track: MediaStreamTrack):
        """Start reading ``track`` for ``peer_id``, replacing any previous reader."""
        self.discard(peer_id)
        self._readers[peer_id] = self._tasks.spawn(
            self._read(peer_id, track), f"vad-{peer_id}"
        )

    async def _read(self, peer_id: str, track: MediaStreamTrack):
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.debug(f"Remote audio from {peer_id} ended")
                return
            samples, _ = frame_to_float(frame)
            self.feed(peer_id, frame_rms(samples))

    def discard(self, peer_id: str):
        reader = self._readers.pop(peer_id, None)
        if reader is not None:
            reader.cancel()
        detector = self.detectors.pop(peer_id, None)
        if detector is not None and detector.state.is_active:
            self._notify(peer_id, VoiceLevel())

    async def close(self):
        for peer_id in list(self.detectors) + list(self._readers):
            self.discard(peer_id)
        await self._tasks.cancel_all()
