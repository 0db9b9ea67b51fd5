"""
Loop clock for Loop Overdub.

Converts elapsed wall-clock time into a position inside the loop. Playback
and recording both use these functions so they agree on loop time.
"""

import math
import time


def position_at(now: float, start: float, duration: float) -> float:
    """
    Position inside the loop for an instant.

    Args:
        now: Current instant (seconds, same time base as start)
        start: Instant at which the loop position was 0
        duration: Loop length in seconds

    Returns:
        (now - start) mod duration, always in [0, duration)
    """
    pos = (now - start) % duration
    # Float modulo can land exactly on duration for tiny negative inputs
    if pos >= duration:
        pos = 0.0
    return pos


def did_wrap(previous_elapsed: float, new_elapsed: float, duration: float) -> bool:
    """True when the loop boundary was crossed between two elapsed readings."""
    return math.floor(new_elapsed / duration) > math.floor(previous_elapsed / duration)


class MonotonicTimeSource:
    """Wall-clock time source. Immune to system clock changes."""

    def now(self) -> float:
        return time.monotonic()
