"""
Waveform reduction for Loop Overdub visualizers.
"""

import numpy as np


def waveform_peaks(channel: np.ndarray, resolution: int) -> list:
    """
    Peak absolute amplitude per bucket.

    The channel is split into `resolution` buckets of floor(len / resolution)
    samples; trailing samples that do not fill a bucket are ignored. With no
    data every bucket is 0.

    Args:
        channel: One channel of float samples
        resolution: Number of points wanted

    Returns:
        List of `resolution` floats
    """
    if resolution <= 0:
        return []
    if channel is None or len(channel) == 0:
        return [0.0] * resolution

    chunk_size = len(channel) // resolution
    if chunk_size == 0:
        # Fewer samples than points: one sample per point, pad the rest
        peaks = np.abs(np.asarray(channel, dtype=np.float32))
        return [float(p) for p in peaks] + [0.0] * (resolution - len(peaks))

    chunks = np.asarray(channel[:chunk_size * resolution], dtype=np.float32).reshape(-1, chunk_size)
    return [float(p) for p in np.max(np.abs(chunks), axis=1)]
