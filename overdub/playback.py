"""
Playback controller for Loop Overdub.

Starts and stops looped playback of the loop buffer and emits the playhead on
a fixed tick. The playhead is derived from the time source, not from the
audio device:

    start_instant = now - from_position
    position      = (now - start_instant) mod duration

so starting "from 1.5s" simply pretends playback began 1.5s ago.
"""

import math
import logging
from enum import Enum, auto
from typing import Callable, Optional

from config import PLAYBACK_TICK_INTERVAL
from .clock import position_at
from .errors import AlreadyActive, NoActiveBuffer, InvalidPosition

logger = logging.getLogger("LoopOverdub.Playback")


class PlaybackState(Enum):
    """Playback state enumeration."""
    STOPPED = auto()
    PLAYING = auto()


class PlaybackController:
    """
    Owns loop playback and its position tick.

    Args:
        output: Sink with play(buffer, offset) / stop()
        time_source: Object with now() -> seconds
        scheduler: Object with call_every(interval, callback)
        tick_interval: Seconds between position updates
        on_position: Called with each new position
    """

    def __init__(self, output, time_source, scheduler,
                 tick_interval: float = PLAYBACK_TICK_INTERVAL,
                 on_position: Optional[Callable[[float], None]] = None):
        self.output = output
        self.time_source = time_source
        self.scheduler = scheduler
        self.tick_interval = tick_interval
        self.on_position = on_position

        self.state = PlaybackState.STOPPED
        self._buffer = None
        self._start_instant = 0.0
        self._resume_position = 0.0
        self._tick_handle = None

    @property
    def is_playing(self) -> bool:
        return self.state == PlaybackState.PLAYING

    @property
    def position(self) -> float:
        """Live playhead while playing, otherwise the resume point."""
        if self.is_playing:
            return self._current_position()
        return self._resume_position

    def _current_position(self) -> float:
        return position_at(self.time_source.now(), self._start_instant,
                           self._buffer.duration_seconds)

    def start(self, buffer, from_position: Optional[float] = None) -> None:
        """
        Begin looped playback.

        Args:
            buffer: LoopBuffer to play
            from_position: Start offset in seconds (resume point if None)

        Raises:
            AlreadyActive: already playing
            NoActiveBuffer: buffer is None
            InvalidPosition: from_position is not a finite number
        """
        if self.is_playing:
            raise AlreadyActive("Playback already active")
        if buffer is None:
            raise NoActiveBuffer("Cannot play: no loop buffer")

        if from_position is None:
            from_position = self._resume_position
        if not math.isfinite(from_position):
            raise InvalidPosition(f"Invalid playback position: {from_position}")
        from_position = from_position % buffer.duration_seconds

        logger.info(f"[PLAY] Loop playback from {from_position:.3f}s")
        self.output.play(buffer, from_position)

        self._buffer = buffer
        self._start_instant = self.time_source.now() - from_position
        self._resume_position = from_position
        self.state = PlaybackState.PLAYING
        self._tick_handle = self.scheduler.call_every(self.tick_interval, self.tick)

    def tick(self) -> None:
        """Compute the playhead and notify. No-op when stopped."""
        if not self.is_playing:
            return
        position = self._current_position()
        if self.on_position:
            self.on_position(position)

    def stop(self) -> bool:
        """
        Halt playback and keep the current position as the resume point.

        Returns:
            False if playback was not active
        """
        if not self.is_playing:
            return False

        # Cancel first: no tick may fire after stop() returns
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None

        self._resume_position = self._current_position()
        self.state = PlaybackState.STOPPED
        self.output.stop()
        logger.info(f"[STOP] Loop playback stopped at {self._resume_position:.3f}s")
        return True

    def seek(self, position: float, buffer=None) -> None:
        """
        Move the playhead. While playing this restarts cleanly at the new
        position (a short gap is acceptable); while stopped it only moves the
        resume point.
        """
        if not math.isfinite(position):
            raise InvalidPosition(f"Invalid seek position: {position}")

        if self.is_playing:
            target = buffer or self._buffer
            self.stop()
            self.start(target, position)
        else:
            duration = buffer.duration_seconds if buffer is not None else None
            self._resume_position = position % duration if duration else max(0.0, position)
            logger.debug(f"Resume point moved to {self._resume_position:.3f}s")

    def reset(self) -> None:
        """Forget the resume point (new loop)."""
        self.stop()
        self._buffer = None
        self._resume_position = 0.0
