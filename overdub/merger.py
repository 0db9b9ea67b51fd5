"""
Segment merger for Loop Overdub.

Splices a decoded capture into the loop buffer:

1. Samples before the span are copied unchanged
2. Samples inside the span are overwritten by the capture, but only as many
   as the capture actually holds. A short capture leaves the tail of the
   span with the ORIGINAL audio, never silence.
3. Samples at and after the span end are copied unchanged

The span end is clamped to the end of the buffer. A recording that crosses
the loop seam is NOT wrapped into the start of the buffer.

The result is always a new LoopBuffer. The input buffer is only read, so a
playback tick still holding the old buffer keeps seeing consistent data.
"""

import logging

import numpy as np

from .errors import NoActiveBuffer, InvalidPosition, DecodeError
from .loop_buffer import LoopBuffer

logger = logging.getLogger("LoopOverdub.Merger")


def _as_channels(samples) -> np.ndarray:
    """Normalize decoded samples to a (channels, frames) float32 array."""
    data = np.asarray(samples, dtype=np.float32)
    if data.ndim == 1:
        data = data.reshape(1, -1)
    if data.ndim != 2 or data.shape[0] == 0:
        raise DecodeError(f"Decoded capture has unusable shape {data.shape}")
    return data


def sample_span(buffer: LoopBuffer, start: float, end: float):
    """
    Convert a [start, end) span in seconds into sample indices.

    Returns:
        Tuple of (start_sample, end_sample) with end_sample clamped to frame_count
    """
    start_sample = int(round(start * buffer.sample_rate))
    end_sample = min(int(round(end * buffer.sample_rate)), buffer.frame_count)
    return start_sample, end_sample


def merge_segment(buffer: LoopBuffer, samples, start: float, end: float) -> LoopBuffer:
    """
    Produce a copy of `buffer` with [start, end) replaced by `samples`.

    Args:
        buffer: Current loop buffer (not modified)
        samples: Decoded capture, (channels, frames) or mono (frames,)
        start: Span start in seconds, 0 <= start < duration
        end: Span end in seconds, end > start (clamped to duration)

    Returns:
        New LoopBuffer with the same shape

    Raises:
        NoActiveBuffer: buffer is None
        InvalidPosition: span outside the loop
    """
    if buffer is None:
        raise NoActiveBuffer("No loop buffer to merge into")
    if not 0 <= start < buffer.duration_seconds:
        raise InvalidPosition(
            f"Merge start {start:.3f}s outside loop [0, {buffer.duration_seconds:.3f})"
        )
    if end <= start:
        raise InvalidPosition(f"Merge end {end:.3f}s must be after start {start:.3f}s")

    capture = _as_channels(samples)
    start_sample, end_sample = sample_span(buffer, start, end)
    span = max(0, end_sample - start_sample)
    count = min(capture.shape[1], span)

    if end * buffer.sample_rate > buffer.frame_count:
        logger.info(f"[MERGE] Span end {end:.3f}s past loop end, clamped to {buffer.duration_seconds:.3f}s")

    logger.debug(
        f"[MERGE] Overwriting samples {start_sample}..{start_sample + count} "
        f"(span {start_sample}..{end_sample}, capture {capture.shape[1]} frames)"
    )

    merged = buffer.empty_like()
    target = merged.samples
    original = buffer.samples

    # Base layer: the whole original, then the capture on top of the span
    target[:] = original
    for channel in range(buffer.channel_count):
        source = capture[min(channel, capture.shape[0] - 1)]
        target[channel, start_sample:start_sample + count] = source[:count]

    return merged
