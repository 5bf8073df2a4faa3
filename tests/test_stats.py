"""Tests for bandwidth statistics."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeTransport
from vortex_mesh.mesh.stats import (
    BandwidthSample,
    BandwidthStats,
    BandwidthStatsPoller,
    compute_stats,
    format_rate,
    format_total,
)


class TestComputeStats:
    def test_first_sample_has_no_rates(self):
        stats = compute_stats(None, BandwidthSample(1.0, 100, 200))
        assert stats == BandwidthStats(100, 200, 0.0, 0.0)

    def test_rates_from_deltas(self):
        stats = compute_stats(BandwidthSample(1.0, 100, 200), BandwidthSample(3.0, 2100, 1200))
        assert stats.upload_rate == 1000.0
        assert stats.download_rate == 500.0

    def test_rates_clamped_when_connection_closes(self):
        stats = compute_stats(BandwidthSample(1.0, 5000, 5000), BandwidthSample(2.0, 1000, 6000))
        assert stats.upload_rate == 0.0
        assert stats.download_rate == 1000.0
        assert stats.total_bytes_sent == 1000

    def test_zero_elapsed(self):
        stats = compute_stats(BandwidthSample(1.0, 0, 0), BandwidthSample(1.0, 10, 10))
        assert stats.upload_rate == 0.0


class TestFormatting:
    @pytest.mark.parametrize(
        "rate,expected",
        [
            (0, "0 B/s"),
            (512, "512 B/s"),
            (2048, "2.0 KB/s"),
            (3 * 1024 * 1024, "3.00 MB/s"),
        ],
    )
    def test_format_rate(self, rate, expected):
        assert format_rate(rate) == expected

    @pytest.mark.parametrize(
        "total,expected",
        [
            (500, "500 B"),
            (1536, "1.5 KB"),
            (5 * 1024 * 1024, "5.0 MB"),
            (2 * 1024**3, "2.00 GB"),
        ],
    )
    def test_format_total(self, total, expected):
        assert format_total(total) == expected


# =============================================================================
# Poller
# =============================================================================


def connection(peer_id, sent, received, closed=False):
    conn = MagicMock()
    conn.peer_id = peer_id
    conn.is_closed = closed
    conn.transport = FakeTransport()
    conn.transport.counters.bytes_sent = sent
    conn.transport.counters.bytes_received = received
    return conn


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def coordinator():
    coordinator = MagicMock()
    coordinator.connections = [
        connection("bob", 1000, 2000),
        connection("carol", 500, 500),
        connection("dave", 99999, 99999, closed=True),
    ]
    return coordinator


class TestPoller:
    """Tests for the periodic poller."""

    @pytest.mark.asyncio
    async def test_sample_skips_closed_connections(self, coordinator, clock):
        poller = BandwidthStatsPoller(coordinator, clock=clock)
        sample = await poller.sample()
        assert (sample.bytes_sent, sample.bytes_received) == (1500, 2500)

    @pytest.mark.asyncio
    async def test_sample_skips_unavailable_stats(self, coordinator, clock):
        coordinator.connections[1].transport.get_counters = AsyncMock(
            side_effect=RuntimeError("closed")
        )
        poller = BandwidthStatsPoller(coordinator, clock=clock)
        sample = await poller.sample()
        assert sample.bytes_sent == 1000

    @pytest.mark.asyncio
    async def test_poll_computes_rates_and_notifies(self, coordinator, clock):
        poller = BandwidthStatsPoller(coordinator, clock=clock)
        listener = MagicMock()
        poller.add_listener(listener)

        await poller.poll_once()
        coordinator.connections[0].transport.counters.bytes_sent += 3000
        clock.now = 2.0
        stats = await poller.poll_once()

        assert stats.total_bytes_sent == 4500
        assert stats.upload_rate == 1500.0
        assert stats.download_rate == 0.0
        assert poller.stats is stats
        assert listener.call_count == 2

    @pytest.mark.asyncio
    async def test_start_and_stop(self, coordinator, clock):
        poller = BandwidthStatsPoller(coordinator, interval=0.01, clock=clock)
        listener = MagicMock()
        poller.add_listener(listener)

        poller.start()
        poller.start()
        await asyncio.sleep(0.05)
        await poller.stop()

        calls = listener.call_count
        assert calls >= 2
        await asyncio.sleep(0.03)
        assert listener.call_count == calls
