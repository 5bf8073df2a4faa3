"""Bandwidth statistics across all open connections.

The poller only reads transport counters; it never changes connection
state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from vortex_mesh.mesh.coordinator import MeshCoordinator

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1.0


@dataclass
class BandwidthSample:
    """Total bytes across open connections at one instant."""

    timestamp: float
    bytes_sent: int
    bytes_received: int


@dataclass
class BandwidthStats:
    """Totals and rates derived from consecutive samples.

    Attributes:
        total_bytes_sent: Bytes sent across open connections.
        total_bytes_received: Bytes received across open connections.
        upload_rate: Bytes per second sent since the previous sample.
        download_rate: Bytes per second received since the previous sample.
    """

    total_bytes_sent: int = 0
    total_bytes_received: int = 0
    upload_rate: float = 0.0
    download_rate: float = 0.0


def compute_stats(
    previous: Optional[BandwidthSample], current: BandwidthSample
) -> BandwidthStats:
    """Derive rates from two samples.

    Totals drop when a connection closes; rates are clamped at zero rather
    than going negative.
    """
    stats = BandwidthStats(
        total_bytes_sent=current.bytes_sent,
        total_bytes_received=current.bytes_received,
    )
    if previous is None:
        return stats
    elapsed = current.timestamp - previous.timestamp
    if elapsed <= 0:
        return stats
    stats.upload_rate = max(0.0, (current.bytes_sent - previous.bytes_sent) / elapsed)
    stats.download_rate = max(
        0.0, (current.bytes_received - previous.bytes_received) / elapsed
    )
    return stats


def format_rate(bytes_per_second: float) -> str:
    kilobytes = bytes_per_second / 1024
    if kilobytes < 1:
        return f"{round(bytes_per_second)} B/s"
    if kilobytes < 1024:
        return f"{kilobytes:.1f} KB/s"
    return f"{kilobytes / 1024:.2f} MB/s"


def format_total(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    kilobytes = num_bytes / 1024
    if kilobytes < 1024:
        return f"{kilobytes:.1f} KB"
    megabytes = kilobytes / 1024
    if megabytes < 1024:
        return f"{megabytes:.1f} MB"
    return f"{megabytes / 1024:.2f} GB"


class BandwidthStatsPoller:
    """Samples transport counters on a fixed interval.

    Args:
        coordinator: Source of open connections.
        interval: Seconds between samples.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        coordinator: MeshCoordinator,
        interval: float = DEFAULT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.coordinator = coordinator
        self.interval = interval
        self.clock = clock
        self.stats = BandwidthStats()
        self._previous: Optional[BandwidthSample] = None
        self._listeners: List[Callable[[BandwidthStats], None]] = []
        self._task: Optional[asyncio.Task] = None

    def add_listener(self, listener: Callable[[BandwidthStats], None]):
        self._listeners.append(listener)

    async def sample(self) -> BandwidthSample:
        sent = received = 0
        for conn in self.coordinator.connections:
            if conn.is_closed:
                continue
            try:
                counters = await conn.transport.get_counters()
            except Exception as e:
                logger.debug(f"Stats unavailable for {conn.peer_id}: {e}")
                continue
            sent += counters.bytes_sent
            received += counters.bytes_received
        return BandwidthSample(self.clock(), sent, received)

    async def poll_once(self) -> BandwidthStats:
        """Take a sample and update ``stats``."""
        current = await self.sample()
        self.stats = compute_stats(self._previous, current)
        self._previous = current
        for listener in list(self._listeners):
            try:
                listener(self.stats)
            except Exception as e:
                logger.error(f"Bandwidth listener failed: {e}")
        return self.stats

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def _run(self):
        try:
            while True:
                await self.poll_once()
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.debug("Bandwidth poller stopped")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
