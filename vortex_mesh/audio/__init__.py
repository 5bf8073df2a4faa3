"""Local audio shaping and voice activity detection."""

from vortex_mesh.audio.denoise import SpectralDenoiser, TransientDetector
from vortex_mesh.audio.gate import NoiseGate, frame_rms
from vortex_mesh.audio.pipeline import (
    LocalAudioPipeline,
    ProcessedAudioTrack,
    ProcessingContext,
    open_microphone,
)
from vortex_mesh.audio.vad import (
    RemoteVoiceActivity,
    RemoteVoiceMonitor,
    VoiceActivityDetector,
    VoiceLevel,
)

__all__ = [
    "SpectralDenoiser",
    "TransientDetector",
    "NoiseGate",
    "frame_rms",
    "LocalAudioPipeline",
    "ProcessedAudioTrack",
    "ProcessingContext",
    "open_microphone",
    "RemoteVoiceActivity",
    "RemoteVoiceMonitor",
    "VoiceActivityDetector",
    "VoiceLevel",
]
