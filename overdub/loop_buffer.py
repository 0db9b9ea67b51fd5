"""
Loop buffer for Loop Overdub.

A fixed-length, fixed-sample-rate, multi-channel sample store. All channels
live in one (channels, frames) float32 array so every channel always has the
same length. The shape never changes after creation: a new loop means a new
LoopBuffer.
"""

import math
import logging

import numpy as np

from config import SAMPLE_RATE, CHANNELS, MAX_LOOP_DURATION
from .errors import InvalidDuration, AllocationError

logger = logging.getLogger("LoopOverdub.LoopBuffer")


class LoopBuffer:
    """
    One repeating audio cycle held in RAM.

    Attributes:
        sample_rate: Samples per second
        duration_seconds: Declared loop length
        frame_count: ceil(sample_rate * duration_seconds)
    """

    def __init__(self, samples: np.ndarray, sample_rate: int, duration_seconds: float):
        self._samples = samples
        self.sample_rate = int(sample_rate)
        self.duration_seconds = float(duration_seconds)

    @classmethod
    def create(cls, duration_seconds, sample_rate=SAMPLE_RATE,
               channel_count=CHANNELS, max_duration=MAX_LOOP_DURATION):
        """
        Allocate a silent buffer.

        Raises:
            InvalidDuration: duration <= 0 or above max_duration
            AllocationError: the sample store could not be reserved
        """
        try:
            duration = float(duration_seconds)
        except (TypeError, ValueError):
            raise InvalidDuration(f"Invalid loop duration: {duration_seconds!r}")

        if not math.isfinite(duration) or duration <= 0:
            raise InvalidDuration(f"Loop duration must be positive, got {duration}")
        if duration > max_duration:
            raise InvalidDuration(
                f"Loop duration {duration}s exceeds maximum of {max_duration}s"
            )
        if sample_rate <= 0 or channel_count <= 0:
            raise AllocationError(
                f"Cannot allocate {channel_count} channel(s) at {sample_rate}Hz"
            )

        frame_count = math.ceil(sample_rate * duration)
        try:
            samples = np.zeros((channel_count, frame_count), dtype=np.float32)
        except MemoryError as e:
            raise AllocationError(f"Could not allocate {frame_count} frames: {e}")

        logger.debug(f"Allocated {channel_count}x{frame_count} frames ({duration:.3f}s @ {sample_rate}Hz)")
        return cls(samples, sample_rate, duration)

    def empty_like(self) -> "LoopBuffer":
        """Allocate a silent buffer with exactly this buffer's shape."""
        try:
            samples = np.zeros_like(self._samples)
        except MemoryError as e:
            raise AllocationError(f"Could not allocate merge target: {e}")
        return LoopBuffer(samples, self.sample_rate, self.duration_seconds)

    @property
    def channel_count(self) -> int:
        return self._samples.shape[0]

    @property
    def frame_count(self) -> int:
        return self._samples.shape[1]

    @property
    def samples(self) -> np.ndarray:
        """The full (channels, frames) array. Writes go straight into the buffer."""
        return self._samples

    def channel_data(self, index: int) -> np.ndarray:
        """Mutable view of one channel."""
        return self._samples[index]

    def snapshot(self):
        """Copies of every channel, safe to hand to a visualizer."""
        return [channel.copy() for channel in self._samples]

    def __repr__(self):
        return (f"LoopBuffer(channels={self.channel_count}, frames={self.frame_count}, "
                f"sample_rate={self.sample_rate}, duration={self.duration_seconds})")
