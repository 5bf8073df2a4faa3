"""Screen-share publishing under a shared bandwidth budget.

The total bitrate budget is split evenly across viewers with a per-viewer
floor; above a viewer-count threshold the framerate drops to protect
headroom. The cap is re-applied whenever the viewer count changes.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Awaitable, Callable, Optional, Union

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import VideoFrame

from vortex_mesh.config import ScreenShareSettings
from vortex_mesh.errors import DeviceUnavailableError, ScreenShareError
from vortex_mesh.mesh.coordinator import EVENT_PEER_COUNT, MeshCoordinator
from vortex_mesh.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

Capture = Union[MediaStreamTrack, Callable[[], Union[MediaStreamTrack, Awaitable[MediaStreamTrack]]]]


@dataclass(frozen=True)
class EncodingCap:
    """Per-viewer encoder limits.

    Attributes:
        max_bitrate: Bits per second per viewer.
        max_framerate: Frames per second.
    """

    max_bitrate: int
    max_framerate: int


def compute_encoding_cap(peer_count: int, settings: ScreenShareSettings) -> EncodingCap:
    """Split the shared budget across ``peer_count`` viewers.

    Args:
        peer_count: Number of viewers (treated as at least 1).
        settings: Budget, floor and framerate targets.

    Returns:
        EncodingCap with ``max(floor, total // viewers)`` and the high
        framerate up to ``fps_peer_threshold`` viewers, the low one above.
    """
    viewers = max(1, peer_count)
    bitrate = max(settings.min_bitrate, settings.total_bitrate // viewers)
    if viewers > settings.fps_peer_threshold:
        framerate = settings.low_fps
    else:
        framerate = settings.high_fps
    return EncodingCap(max_bitrate=bitrate, max_framerate=framerate)


class FramerateCappedTrack(MediaStreamTrack):
    """Video track that forwards at most ``max_framerate`` frames per second.

    Ends when its source ends.
    """

    kind = "video"

    def __init__(self, source: MediaStreamTrack, max_framerate: int):
        super().__init__()
        self.source = source
        self.max_framerate = max_framerate
        self._last_time: Optional[float] = None

        @source.on("ended")
        def on_source_ended():
            self.stop()

    def set_max_framerate(self, max_framerate: int):
        self.max_framerate = max(1, max_framerate)

    @staticmethod
    def _frame_time(frame: VideoFrame) -> float:
        if frame.pts is not None and frame.time_base is not None:
            return float(frame.pts * Fraction(frame.time_base))
        return time.monotonic()

    async def recv(self) -> VideoFrame:
        min_gap = 1.0 / self.max_framerate
        while True:
            frame = await self.source.recv()
            now = self._frame_time(frame)
            # 10% slack so a source running at exactly the cap is not halved
            if self._last_time is None or now - self._last_time >= min_gap * 0.9:
                self._last_time = now
                return frame


def open_screen_capture(
    display: str = ":0.0", capture_format: str = "x11grab", framerate: int = 30
) -> MediaStreamTrack:
    """Open a screen grabber through FFmpeg.

    Raises:
        DeviceUnavailableError: If the display cannot be captured.
    """
    try:
        player = MediaPlayer(
            display, format=capture_format, options={"framerate": str(framerate)}
        )
    except Exception as e:
        raise DeviceUnavailableError(f"Cannot capture screen {display}: {e}") from e
    if player.video is None:
        raise DeviceUnavailableError(f"Screen source {display} has no video")
    return player.video


class ScreenShareController:
    """Publishes one screen track to every connection in the sub-room.

    Args:
        coordinator: Mesh coordinator whose connections carry the share.
        settings: Bandwidth budget.
    """

    def __init__(self, coordinator: MeshCoordinator, settings: Optional[ScreenShareSettings] = None):
        self.coordinator = coordinator
        self.settings = settings or ScreenShareSettings()
        self.is_sharing = False
        self.track: Optional[FramerateCappedTrack] = None
        self.current_cap: Optional[EncodingCap] = None
        self._tasks = BackgroundTasks("screen-share")
        self._lock = asyncio.Lock()

        coordinator.add_listener(self._on_mesh_event)
        coordinator.add_sub_room_hook(self._on_sub_room_change)

    async def start(self, capture: Capture):
        """Start sharing.

        Args:
            capture: A video track, or a callable (sync or async) returning one.

        Raises:
            ScreenShareError: If capture or publishing fails. The presenter
                flag is rolled back first.
        """
        async with self._lock:
            if self.is_sharing:
                return
            self.is_sharing = True
            source = None
            try:
                source = capture() if callable(capture) else capture
                if inspect.isawaitable(source):
                    source = await source
                cap = compute_encoding_cap(self.coordinator.peer_count, self.settings)
                self.track = FramerateCappedTrack(source, cap.max_framerate)
                await self.coordinator.publish_presence(is_screen_sharing=True)
                await self.coordinator.publish_screen_track(self.track)
                await self._apply_cap_locked()
            except Exception as e:
                logger.error(f"Screen share failed to start: {e}")
                await self._rollback(source)
                raise ScreenShareError(f"Screen share failed: {e}", cause=e) from e

            @self.track.on("ended")
            def on_ended():
                if self.is_sharing:
                    logger.info("Screen capture ended by the system")
                    self._tasks.spawn(self.stop(), "capture-ended")

            logger.info(f"Screen share started to {self.coordinator.peer_count} peers")

    async def _rollback(self, source: Optional[MediaStreamTrack]):
        self.is_sharing = False
        track, self.track = self.track, None
        self.current_cap = None
        if source is not None:
            source.stop()
        if track is not None:
            track.stop()
        if self.coordinator.screen_track is not None:
            await self.coordinator.withdraw_screen_track()
        await self.coordinator.publish_presence(is_screen_sharing=False)

    async def stop(self):
        """Stop sharing and renegotiate every connection. No-op if not sharing."""
        async with self._lock:
            if not self.is_sharing:
                return
            self.is_sharing = False
            track, self.track = self.track, None
            self.current_cap = None
            if track is not None:
                track.source.stop()
                track.stop()
            await self.coordinator.withdraw_screen_track()
            await self.coordinator.publish_presence(is_screen_sharing=False)
            logger.info("Screen share stopped")

    async def apply_cap(self):
        """Re-apply the bandwidth cap to every connection."""
        async with self._lock:
            await self._apply_cap_locked()

    async def _apply_cap_locked(self):
        if not self.is_sharing or self.track is None:
            return
        cap = compute_encoding_cap(self.coordinator.peer_count, self.settings)
        self.current_cap = cap
        self.track.set_max_framerate(cap.max_framerate)
        for conn in self.coordinator.connections:
            if conn.is_closed:
                continue
            try:
                await conn.transport.set_video_encoding(cap.max_bitrate, cap.max_framerate)
            except Exception as e:
                logger.warning(f"Could not cap screen share for {conn.peer_id}: {e}")
        logger.info(
            f"Screen share cap: {cap.max_bitrate} bps at {cap.max_framerate} fps "
            f"per viewer ({self.coordinator.peer_count} viewers)"
        )

    def _on_mesh_event(self, kind: str, peer_id: Optional[str], payload: Any):
        if kind == EVENT_PEER_COUNT and self.is_sharing:
            self._tasks.spawn(self.apply_cap(), "reapply-cap")

    async def _on_sub_room_change(self, old: Optional[str], new: Optional[str]):
        if self.is_sharing:
            logger.info(f"Leaving sub-room {old}, stopping screen share")
            await self.stop()

    async def close(self):
        await self.stop()
        await self._tasks.cancel_all()
