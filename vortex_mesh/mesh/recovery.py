"""Repair of state corrupted by OS-level suspension.

Backgrounded apps can come back with a suspended audio context, ended
capture tracks and dead peer connections. The monitor waits a short settle
delay after the app becomes visible again, then repairs each of these.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from vortex_mesh.errors import DeviceUnavailableError
from vortex_mesh.mesh.coordinator import MeshCoordinator
from vortex_mesh.tasks import BackgroundTasks

if TYPE_CHECKING:
    from vortex_mesh.audio.pipeline import LocalAudioPipeline

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY = 0.5


@dataclass
class RecoveryReport:
    """What a recovery pass repaired.

    Attributes:
        resumed_context: The audio processing context was suspended.
        reacquired_device: An ended capture track was replaced.
        broken_connections: Connections found failed, disconnected or closed.
    """

    resumed_context: bool = False
    reacquired_device: bool = False
    broken_connections: int = 0


class RecoveryMonitor:
    """Tracks visibility and repairs the session on return to foreground.

    Args:
        coordinator: Mesh coordinator to re-evaluate.
        pipeline: Local audio pipeline to resume and reacquire.
        settle_delay: Seconds to wait after becoming visible.
    """

    def __init__(
        self,
        coordinator: MeshCoordinator,
        pipeline: "LocalAudioPipeline",
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ):
        self.coordinator = coordinator
        self.pipeline = pipeline
        self.settle_delay = settle_delay
        self.visible = True
        self.last_report: Optional[RecoveryReport] = None
        self._was_hidden = False
        # Bumped on every visibility change; a pending pass only runs if
        # nothing happened during its settle delay
        self._generation = 0
        self._tasks = BackgroundTasks("recovery")

        pipeline.add_device_ended_listener(self.on_device_track_ended)

    def on_visibility_changed(self, visible: bool):
        self._generation += 1
        if not visible:
            self.visible = False
            self._was_hidden = True
            logger.debug("App hidden")
            return

        self.visible = True
        if not self._was_hidden:
            return
        self._was_hidden = False
        logger.info(f"App visible again, recovering in {self.settle_delay}s")
        self._tasks.spawn(self._recover_after_settle(self._generation), "recover")

    async def _recover_after_settle(self, generation: int):
        await asyncio.sleep(self.settle_delay)
        if generation != self._generation or not self.visible:
            logger.debug("Recovery pass superseded by a newer visibility change")
            return
        await self.recover()

    async def recover(self) -> RecoveryReport:
        """Run one repair pass now."""
        report = RecoveryReport()

        report.resumed_context = await self.pipeline.resume_context()

        if self.pipeline.has_ended_tracks():
            report.reacquired_device = await self._reacquire()

        broken = [conn for conn in self.coordinator.connections if conn.is_broken]
        report.broken_connections = len(broken)
        if broken:
            logger.info(
                f"Found {len(broken)} broken connections: "
                f"{', '.join(conn.peer_id for conn in broken)}"
            )
        # Reconcile after a device swap as well as after breakage
        if broken or report.reacquired_device:
            await self.coordinator.reevaluate()

        self.last_report = report
        return report

    async def on_focus(self):
        """Check capture tracks when the window regains focus."""
        await self.pipeline.resume_context()
        if self.pipeline.has_ended_tracks():
            await self._reacquire()

    def on_device_track_ended(self):
        """A capture track ended unexpectedly."""
        if not self.visible:
            logger.debug("Capture track ended while hidden, deferring to recovery")
            return
        logger.warning("Capture track ended, reacquiring device")
        self._tasks.spawn(self._reacquire(), "reacquire")

    async def _reacquire(self) -> bool:
        try:
            await self.pipeline.reacquire_device()
        except DeviceUnavailableError as e:
            logger.error(f"Could not reacquire capture device: {e}")
            return False
        return True

    async def close(self):
        self._generation += 1
        await self._tasks.cancel_all()
