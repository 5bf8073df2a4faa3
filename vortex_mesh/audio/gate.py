"""Noise gate with hysteresis, hold time and click-free ramps.

The gate opens when RMS rises above ``threshold * open_ratio`` and may only
close once RMS has stayed below ``threshold * close_ratio`` past the hold
deadline. Gain ramps exponentially: fast on open so onsets are not clipped,
slow on close to avoid clicks. Mute and push-to-talk force the gain to zero
without a ramp.
"""

import math
from typing import Optional

import numpy as np

from vortex_mesh.config import NoiseGateSettings

DEFAULT_THRESHOLD = 0.02


def frame_rms(samples: np.ndarray) -> float:
    """Root-mean-square energy of float samples in [-1, 1]."""
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


class NoiseGate:
    """Binary-intent gain control.

    Args:
        threshold: Operator-configured RMS threshold on a 0..1 scale.
        settings: Ratios and time constants.

    Attributes:
        is_open: Current gate intent.
        hold_until: Time before which an open gate will not close.
    """

    def __init__(
        self,
        threshold: float = DEFAULT_THRESHOLD,
        settings: Optional[NoiseGateSettings] = None,
    ):
        self.settings = settings or NoiseGateSettings()
        self.threshold = threshold
        self.is_open = False
        self.hold_until = 0.0
        self._target = 0.0
        self._tau = self.settings.release_time
        self._anchor_gain = 0.0
        self._anchor_time = 0.0
        self._last_sample: Optional[float] = None

    @property
    def open_threshold(self) -> float:
        return self.threshold * self.settings.open_ratio

    @property
    def close_threshold(self) -> float:
        return self.threshold * self.settings.close_ratio

    def set_threshold(self, threshold: float):
        self.threshold = max(0.0, float(threshold))

    def gain_at(self, now: float) -> float:
        """Gain at time ``now`` along the current ramp."""
        elapsed = max(0.0, now - self._anchor_time)
        if self._tau <= 0:
            return self._target
        decay = math.exp(-elapsed / self._tau)
        return self._target + (self._anchor_gain - self._target) * decay

    def _ramp_to(self, target: float, tau: float, now: float):
        self._anchor_gain = self.gain_at(now)
        self._anchor_time = now
        self._target = target
        self._tau = tau

    def update(self, rms: float, now: float, blocked: bool = False) -> float:
        """Evaluate one RMS sample.

        Args:
            rms: RMS of the most recent audio.
            now: Sample time in seconds.
            blocked: Muted, or push-to-talk engaged without the key held.

        Returns:
            The gain target after this evaluation.
        """
        self._last_sample = now

        if blocked:
            self.is_open = False
            self.hold_until = 0.0
            self._target = 0.0
            self._anchor_gain = 0.0
            self._anchor_time = now
            return 0.0

        if not self.is_open:
            if rms > self.open_threshold:
                self.is_open = True
                self.hold_until = now + self.settings.hold_time
                self._ramp_to(1.0, self.settings.attack_time, now)
        elif rms >= self.close_threshold:
            self.hold_until = now + self.settings.hold_time
        elif now >= self.hold_until:
            self.is_open = False
            self._ramp_to(0.0, self.settings.release_time, now)
        return self._target

    def due(self, now: float) -> bool:
        """True if the sampling interval has elapsed since the last evaluation."""
        if self._last_sample is None:
            return True
        # Small slack for frame timestamps that land just short of the interval
        return now - self._last_sample >= self.settings.sample_interval * 0.999

    def process(
        self, samples: np.ndarray, sample_rate: int, start_time: float, blocked: bool = False
    ) -> np.ndarray:
        """Gate one block of float samples shaped ``(channels, n)``.

        The RMS is evaluated at most once per sampling interval; a block
        requested while blocked is always evaluated so muting is immediate.
        """
        if blocked or self.due(start_time):
            self.update(frame_rms(samples), start_time, blocked)

        n = samples.shape[-1]
        times = start_time + np.arange(n) / float(sample_rate)
        elapsed = np.maximum(0.0, times - self._anchor_time)
        if self._tau > 0:
            decay = np.exp(-elapsed / self._tau)
        else:
            decay = np.zeros_like(elapsed)
        gains = self._target + (self._anchor_gain - self._target) * decay
        return samples * gains
