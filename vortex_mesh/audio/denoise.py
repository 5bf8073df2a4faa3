"""Spectral denoising with a learned noise profile.

Each frame is transformed with a real FFT. A per-bin noise magnitude
profile is learned from the first quiet frames and then adapted slowly
during detected silence. The per-bin Wiener gain ``snr^2 / (snr^2 + 1)`` is
floored, scaled by the suppression intensity and smoothed across frames to
suppress musical noise. A short-window transient detector adds extra
attenuation for a few frames after percussive spikes such as keyboard
clicks.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

import numpy as np

from vortex_mesh.config import DenoiseSettings

logger = logging.getLogger(__name__)

# Intensity at and above which the gain floor is halved
HIGH_INTENSITY = 0.75
# Extra attenuation applied at full intensity while a transient is held
TRANSIENT_ATTENUATION = 0.8


@dataclass
class FrameFeatures:
    """Per-frame measurements used for noise learning."""

    rms: float
    zero_crossing_rate: float
    spectral_centroid: float


def zero_crossing_rate(samples: np.ndarray) -> float:
    if samples.size < 2:
        return 0.0
    signs = samples >= 0
    return float(np.count_nonzero(signs[1:] != signs[:-1])) / samples.size


def spectral_centroid(magnitudes: np.ndarray, sample_rate: int, n: int) -> float:
    total = float(magnitudes.sum())
    if total <= 0:
        return 0.0
    freqs = np.fft.rfftfreq(n, d=1.0 / sample_rate)
    return float((freqs * magnitudes).sum() / total)


class TransientDetector:
    """Flags frames whose RMS jumps far above the recent average.

    Args:
        settings: Ratio, history length and hold length.
        intensity: Suppression intensity in [0, 1]; scales the attenuation.
    """

    def __init__(self, settings: Optional[DenoiseSettings] = None, intensity: float = 0.5):
        self.settings = settings or DenoiseSettings()
        self.intensity = intensity
        self.history: deque = deque(maxlen=self.settings.transient_history)
        self.hold = 0

    def update(self, rms: float) -> float:
        """Feed one frame's RMS and return the gain multiplier for that frame."""
        if len(self.history) == self.history.maxlen:
            average = sum(self.history) / len(self.history)
            if average > 0 and rms > average * self.settings.transient_ratio:
                self.hold = self.settings.transient_hold
        self.history.append(rms)

        if self.hold > 0:
            self.hold -= 1
            return 1.0 - TRANSIENT_ATTENUATION * self.intensity
        return 1.0

    def reset(self):
        self.history.clear()
        self.hold = 0


class SpectralDenoiser:
    """Per-frame Wiener-style noise suppression.

    Args:
        intensity: Suppression intensity in [0, 1].
        settings: Learning, silence detection and smoothing constants.
    """

    def __init__(self, intensity: float = 0.5, settings: Optional[DenoiseSettings] = None):
        self.settings = settings or DenoiseSettings()
        self.intensity = 0.0
        self.transients = TransientDetector(self.settings)
        self.set_intensity(intensity)
        self.reset()

    def reset(self):
        """Forget the noise profile and start learning again."""
        self.noise_profile: Optional[np.ndarray] = None
        self.frames_learned = 0
        self.frames_since_update = 0
        self._previous_gain: Optional[np.ndarray] = None
        self.transients.reset()

    def set_intensity(self, intensity: float):
        self.intensity = float(np.clip(intensity, 0.0, 1.0))
        self.transients.intensity = self.intensity

    @property
    def is_learning(self) -> bool:
        return self.frames_learned < self.settings.learning_frames

    @property
    def min_gain(self) -> float:
        if self.intensity >= HIGH_INTENSITY:
            return self.settings.min_gain / 2
        return self.settings.min_gain

    def is_silence(self, features: FrameFeatures) -> bool:
        s = self.settings
        return (
            features.rms < s.voice_threshold * s.silence_rms_ratio
            and features.zero_crossing_rate < s.silence_zcr
            and features.spectral_centroid < s.silence_centroid
        )

    def _learn(self, magnitudes: np.ndarray, features: FrameFeatures):
        if self.noise_profile is not None and self.noise_profile.shape != magnitudes.shape:
            logger.debug("Frame size changed, relearning noise profile")
            self.reset()

        if self.is_learning:
            if features.rms >= self.settings.voice_threshold * 2:
                return
            if self.noise_profile is None:
                self.noise_profile = magnitudes.copy()
            else:
                count = self.frames_learned
                self.noise_profile = (self.noise_profile * count + magnitudes) / (count + 1)
            self.frames_learned += 1
            if not self.is_learning:
                logger.debug(f"Noise profile learned from {self.frames_learned} frames")
            return

        if (
            self.is_silence(features)
            and self.frames_since_update >= self.settings.min_update_interval
        ):
            rate = self.settings.adaptive_rate
            self.noise_profile = (1 - rate) * self.noise_profile + rate * magnitudes
            self.frames_since_update = 0
        else:
            self.frames_since_update += 1

    def wiener_gain(self, magnitudes: np.ndarray) -> np.ndarray:
        """Floored, intensity-scaled Wiener gain per bin (before smoothing)."""
        noise_power = np.square(self.noise_profile)
        signal_power = np.square(magnitudes)
        snr = np.divide(
            signal_power,
            noise_power,
            out=np.full_like(signal_power, 10.0),
            where=noise_power > 0,
        )
        snr_squared = np.square(snr)
        gain = np.maximum(self.min_gain, snr_squared / (snr_squared + 1.0))
        # Intensity 0 passes audio through, 0.5 and above applies the full gain
        weight = min(1.0, self.intensity * 2)
        return 1.0 - weight * (1.0 - gain)

    def process(self, samples: np.ndarray, sample_rate: int) -> np.ndarray:
        """Denoise one block of float samples shaped ``(channels, n)``."""
        n = samples.shape[-1]
        if n == 0:
            return samples
        mono = samples.mean(axis=0)
        magnitudes = np.abs(np.fft.rfft(mono))
        features = FrameFeatures(
            rms=float(np.sqrt(np.mean(np.square(mono)))),
            zero_crossing_rate=zero_crossing_rate(mono),
            spectral_centroid=spectral_centroid(magnitudes, sample_rate, n),
        )
        self._learn(magnitudes, features)
        transient_gain = self.transients.update(features.rms)

        if self.noise_profile is None:
            return samples * transient_gain

        gain = self.wiener_gain(magnitudes)
        if self._previous_gain is not None and self._previous_gain.shape == gain.shape:
            s = self.settings.smoothing
            gain = s * self._previous_gain + (1 - s) * gain
        self._previous_gain = gain

        spectrum = np.fft.rfft(samples, axis=-1)
        cleaned = np.fft.irfft(spectrum * gain * transient_gain, n=n, axis=-1)
        return cleaned.astype(samples.dtype, copy=False)
