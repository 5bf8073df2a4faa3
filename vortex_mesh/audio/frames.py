"""Conversion between ``av.AudioFrame`` and float sample blocks.

Processing stages work on float32 arrays shaped ``(channels, n)`` in
[-1, 1]. Packed formats come out of PyAV interleaved as ``(1, n * channels)``
and are reshaped on the way in and out.
"""

from typing import Tuple

import av
import numpy as np

_SCALES = {
    "s16": 32768.0,
    "s32": 2147483648.0,
}
_INT_TYPES = {
    "s16": np.int16,
    "s32": np.int32,
}
_FLOAT_TYPES = {
    "flt": np.float32,
    "dbl": np.float64,
}


def _base_format(frame: av.AudioFrame) -> str:
    # "s16p" -> "s16", "fltp" -> "flt"
    name = frame.format.name
    return name[:-1] if frame.format.is_planar else name


def frame_to_float(frame: av.AudioFrame) -> Tuple[np.ndarray, int]:
    """Return ``(samples, sample_rate)`` with samples shaped ``(channels, n)``."""
    base = _base_format(frame)
    channels = len(frame.layout.channels)
    data = frame.to_ndarray()
    if not frame.format.is_planar:
        data = data.reshape(-1, channels).T

    if base in _SCALES:
        samples = data.astype(np.float32) / _SCALES[base]
    elif base in _FLOAT_TYPES:
        samples = data.astype(np.float32, copy=False)
    else:
        raise ValueError(f"Unsupported audio sample format: {frame.format.name}")
    return samples, frame.sample_rate


def float_to_frame(samples: np.ndarray, template: av.AudioFrame) -> av.AudioFrame:
    """Build a frame in ``template``'s format, layout and timing from float samples."""
    base = _base_format(template)
    clipped = np.clip(samples, -1.0, 1.0)
    if base in _INT_TYPES:
        data = (clipped * (_SCALES[base] - 1)).astype(_INT_TYPES[base])
    elif base in _FLOAT_TYPES:
        data = clipped.astype(_FLOAT_TYPES[base])
    else:
        raise ValueError(f"Unsupported audio sample format: {template.format.name}")
    if not template.format.is_planar:
        data = data.T.reshape(1, -1)

    frame = av.AudioFrame.from_ndarray(
        np.ascontiguousarray(data),
        format=template.format.name,
        layout=template.layout.name,
    )
    frame.sample_rate = template.sample_rate
    frame.pts = template.pts
    frame.time_base = template.time_base
    return frame
