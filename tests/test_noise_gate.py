"""Tests for the noise gate."""

import numpy as np
import pytest

from conftest import SAMPLE_RATE, tone
from vortex_mesh.audio.gate import NoiseGate, frame_rms
from vortex_mesh.config import NoiseGateSettings

THRESHOLD = 0.02
LOUD = 0.1
QUIET = 0.001


@pytest.fixture
def gate():
    return NoiseGate(THRESHOLD, NoiseGateSettings())


class TestFrameRms:
    def test_sine_rms(self):
        # 20 ms at 400 Hz is a whole number of periods
        rms = frame_rms(tone(0.2, frequency=400.0))
        assert rms == pytest.approx(0.2 / np.sqrt(2), rel=1e-3)

    def test_empty(self):
        assert frame_rms(np.zeros(0)) == 0.0


class TestOpening:
    """Tests for the opening threshold and attack."""

    def test_opens_above_threshold(self, gate):
        assert gate.update(LOUD, now=0.0) == 1.0
        assert gate.is_open

    def test_reaches_full_gain_within_15ms(self, gate):
        gate.update(LOUD, now=1.0)
        assert gate.gain_at(1.015) > 0.99

    def test_level_between_thresholds_does_not_open(self, gate):
        # Open requires threshold * 1.1
        gate.update(THRESHOLD * 1.05, now=0.0)
        assert not gate.is_open


class TestClosing:
    """Tests for hysteresis and hold."""

    def test_stays_open_during_hold(self, gate):
        gate.update(LOUD, now=0.0)
        for t in (0.05, 0.10, 0.15, 0.20):
            gate.update(QUIET, now=t)
            assert gate.is_open

    def test_closes_after_hold(self, gate):
        gate.update(LOUD, now=0.0)
        gate.update(QUIET, now=0.1)
        gate.update(QUIET, now=0.26)
        assert not gate.is_open
        assert gate.gain_at(0.26) > 0.9
        assert gate.gain_at(0.26 + 0.5) < 0.01

    def test_level_above_close_threshold_refreshes_hold(self, gate):
        gate.update(LOUD, now=0.0)
        # Below the open threshold but above threshold * 0.8
        gate.update(THRESHOLD * 0.9, now=0.2)
        gate.update(QUIET, now=0.3)
        assert gate.is_open
        gate.update(QUIET, now=0.46)
        assert not gate.is_open

    def test_threshold_change(self, gate):
        gate.set_threshold(0.5)
        gate.update(LOUD, now=0.0)
        assert not gate.is_open
        gate.set_threshold(-1)
        assert gate.threshold == 0.0


class TestBlocking:
    """Tests for mute and push-to-talk blocking."""

    def test_blocked_forces_zero_immediately(self, gate):
        gate.update(LOUD, now=0.0)
        assert gate.update(LOUD, now=0.01, blocked=True) == 0.0
        assert not gate.is_open
        assert gate.gain_at(0.01) == 0.0

    def test_blocked_block_is_silent(self, gate):
        samples = tone(LOUD).reshape(1, -1)
        gate.process(samples, SAMPLE_RATE, 0.0)
        out = gate.process(samples, SAMPLE_RATE, 0.02, blocked=True)
        assert np.all(out == 0)


class TestProcess:
    """Tests for block processing."""

    def test_loud_block_passes(self, gate):
        samples = tone(0.2).reshape(1, -1)
        out = gate.process(samples, SAMPLE_RATE, 0.0)
        # After the few-millisecond attack the block is untouched
        np.testing.assert_allclose(out[:, 720:], samples[:, 720:], atol=2e-3)

    def test_quiet_block_is_silenced(self, gate):
        samples = tone(QUIET).reshape(1, -1)
        out = gate.process(samples, SAMPLE_RATE, 0.0)
        assert np.max(np.abs(out)) == 0.0

    def test_rms_sampled_once_per_interval(self, gate):
        quiet = tone(QUIET).reshape(1, -1)
        loud = tone(0.2).reshape(1, -1)
        gate.process(quiet, SAMPLE_RATE, 0.0)
        # 20 ms later the gate has not re-evaluated yet
        gate.process(loud, SAMPLE_RATE, 0.02)
        assert not gate.is_open
        gate.process(loud, SAMPLE_RATE, 0.05)
        assert gate.is_open
