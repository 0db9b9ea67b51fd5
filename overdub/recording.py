"""
Recording session for Loop Overdub.

Owns one overdub pass at a time:

    IDLE -> STARTING -> RECORDING -> MERGING -> IDLE
                         RECORDING -> MERGING -> FAILED -> IDLE

STARTING covers the wait for the capture device to acknowledge start. All
transitions are checked synchronously before the first await, so two rapid
start() calls cannot both get through.

While RECORDING, a tick re-computes the playhead. When the playhead crosses
the end of the loop, the open segment is closed at the loop end, a new one
opens at 0, and the elapsed-time reference is re-based to "now" so tracked
time never runs past the loop duration.
"""

import math
import asyncio
import logging
from enum import Enum, auto
from typing import Callable, List, Optional

from config import RECORD_TICK_INTERVAL
from .clock import position_at, did_wrap
from .errors import (
    LoopEngineError, AlreadyActive, NoActiveBuffer, InvalidPosition,
    CaptureUnavailable, DecodeError,
)
from .merger import merge_segment

logger = logging.getLogger("LoopOverdub.Recording")


class RecordingState(Enum):
    """Recording session state enumeration."""
    IDLE = auto()
    STARTING = auto()
    RECORDING = auto()
    MERGING = auto()
    FAILED = auto()


class RecordingSegment:
    """
    One interval of the loop timeline overwritten by a recording pass.

    Attributes:
        start: Start position in seconds
        end: End position in seconds, None while the segment is open
    """
    def __init__(self, start, end=None):
        self.start = start
        self.end = end

    @property
    def is_open(self):
        return self.end is None

    def to_dict(self):
        return {'start': self.start, 'end': self.end}

    def __eq__(self, other):
        if not isinstance(other, RecordingSegment):
            return NotImplemented
        return self.start == other.start and self.end == other.end

    def __repr__(self):
        return f"RecordingSegment(start={self.start!r}, end={self.end!r})"


class RecordingSession:
    """
    Record-start/stop protocol, segment bookkeeping and wraparound handling.

    The session only reads the loop buffer. stop() returns the merged buffer
    and the owner decides whether to swap it in.

    Args:
        capture: Object with async start_capture() / stop_capture() -> bytes
        decoder: Object with async decode(bytes, sample_rate) -> samples
        time_source: Object with now() -> seconds
        scheduler: Object with call_every() / call_later()
        tick_interval: Seconds between position updates
        on_position: Called with each new position
        on_segments: Called with the segment list whenever it changes
        on_state: Called with the new RecordingState on every transition
        auto_stop_handler: Called when the requested span has elapsed; the
            owner is expected to call stop(). Without one the session
            schedules its own stop() and discards the result.
    """

    def __init__(self, capture, decoder, time_source, scheduler,
                 tick_interval: float = RECORD_TICK_INTERVAL,
                 on_position: Optional[Callable[[float], None]] = None,
                 on_segments: Optional[Callable[[List[RecordingSegment]], None]] = None,
                 on_state: Optional[Callable[[RecordingState], None]] = None,
                 auto_stop_handler: Optional[Callable[[], None]] = None):
        self.capture = capture
        self.decoder = decoder
        self.time_source = time_source
        self.scheduler = scheduler
        self.tick_interval = tick_interval
        self.on_position = on_position
        self.on_segments = on_segments
        self.on_state = on_state
        self.auto_stop_handler = auto_stop_handler

        self.state = RecordingState.IDLE
        self.segments: List[RecordingSegment] = []

        self._buffer = None
        self._duration = 0.0
        self.record_start = 0.0
        self.planned_end = 0.0

        # Elapsed-time tracking (re-based on every wrap)
        self._ref_instant = 0.0
        self._base_position = 0.0
        self._last_elapsed = 0.0
        self._position = 0.0
        self._current_segment: Optional[RecordingSegment] = None

        self._tick_handle = None
        self._auto_stop_handle = None
        self._completion: Optional[asyncio.Future] = None
        # Incremented per pass so a stale start() can tell it was superseded
        self._pass_id = 0

    # =========================================================================
    # STATE
    # =========================================================================

    def _set_state(self, state: RecordingState) -> None:
        if state == self.state:
            return
        logger.debug(f"Recording state {self.state.name} -> {state.name}")
        self.state = state
        if self.on_state:
            self.on_state(state)

    def _segments_changed(self) -> None:
        if self.on_segments:
            self.on_segments(list(self.segments))

    def _finish(self, success: bool) -> None:
        if self._completion is not None and not self._completion.done():
            self._completion.set_result(success)

    @property
    def is_active(self) -> bool:
        """True from STARTING through MERGING."""
        return self.state in (RecordingState.STARTING, RecordingState.RECORDING,
                              RecordingState.MERGING)

    @property
    def position(self) -> float:
        return self._position

    def clear_segments(self) -> None:
        self.segments.clear()
        self._current_segment = None
        self._segments_changed()

    # =========================================================================
    # START
    # =========================================================================

    def check_start(self, buffer, at_position: float, requested_duration: float) -> None:
        """Raise if start() would reject these arguments right now."""
        if self.state != RecordingState.IDLE:
            raise AlreadyActive(f"Cannot start recording while {self.state.name.lower()}")
        if buffer is None:
            raise NoActiveBuffer("No loop buffer available")
        if not (math.isfinite(at_position) and 0 <= at_position < buffer.duration_seconds):
            raise InvalidPosition(f"Invalid start position: {at_position}")
        if not (math.isfinite(requested_duration) and requested_duration > 0):
            raise InvalidPosition(f"Invalid recording duration: {requested_duration}")

    async def start(self, buffer, at_position: float, requested_duration: float) -> None:
        """
        Begin a recording pass.

        Raises:
            AlreadyActive: a pass is already starting, running or merging
            NoActiveBuffer: no loop buffer
            InvalidPosition: at_position outside [0, duration) or span <= 0
            CaptureUnavailable: the capture device refused to start
        """
        self.check_start(buffer, at_position, requested_duration)
        duration = buffer.duration_seconds

        # Claim the session before the first await
        self._set_state(RecordingState.STARTING)
        self._pass_id += 1
        pass_id = self._pass_id
        self._buffer = buffer
        self._duration = duration
        self.record_start = at_position
        # Not clamped here; the merge clamps to the loop end
        self.planned_end = at_position + requested_duration
        self._completion = asyncio.get_running_loop().create_future()

        segment = RecordingSegment(at_position)
        self.segments.append(segment)
        self._current_segment = segment
        self._segments_changed()

        logger.info(f"[REC] Starting loop recording at {at_position:.3f}s for {requested_duration:.3f}s")

        try:
            await self.capture.start_capture()
        except Exception as e:
            logger.error(f"Capture device failed to start: {e}")
            if pass_id == self._pass_id:
                self._discard_segment(segment)
                self._set_state(RecordingState.IDLE)
                self._finish(False)
            raise CaptureUnavailable(f"Could not start capture: {e}") from e

        if self.state != RecordingState.STARTING or pass_id != self._pass_id:
            # abort() ran while we were waiting on the device
            logger.warning("Recording aborted during capture start")
            if pass_id == self._pass_id:
                await self._discard_capture()
            raise CaptureUnavailable("Recording aborted before capture started")

        self._ref_instant = self.time_source.now()
        self._base_position = at_position
        self._last_elapsed = at_position
        self._position = at_position
        self._set_state(RecordingState.RECORDING)

        self._tick_handle = self.scheduler.call_every(self.tick_interval, self.tick)
        self._auto_stop_handle = self.scheduler.call_later(requested_duration, self._auto_stop)

    def _discard_segment(self, segment: RecordingSegment) -> None:
        if segment in self.segments:
            self.segments.remove(segment)
        self._current_segment = None
        self._segments_changed()

    async def _discard_capture(self) -> None:
        try:
            await self.capture.stop_capture()
        except Exception as e:
            logger.debug(f"Ignoring capture stop error after abort: {e}")

    # =========================================================================
    # POSITION TRACKING
    # =========================================================================

    def _update_position(self, final: bool = False) -> None:
        now = self.time_source.now()
        new_elapsed = self._base_position + (now - self._ref_instant)

        if did_wrap(self._last_elapsed, new_elapsed, self._duration):
            logger.debug(f"[REC] Wrapped past loop end at elapsed={new_elapsed:.3f}s")
            if self._current_segment is not None:
                self._current_segment.end = self._duration

            overshoot = new_elapsed - math.floor(new_elapsed / self._duration) * self._duration
            if final and overshoot <= 0:
                # Stopped exactly on the seam: nothing recorded past it
                self._current_segment = None
            else:
                segment = RecordingSegment(0.0)
                self.segments.append(segment)
                self._current_segment = segment

            self._ref_instant = now
            self._base_position = 0.0
            self._last_elapsed = 0.0
            # On the final update the take ended past the seam, at the overshoot
            self._position = overshoot if final and overshoot > 0 else 0.0
            self._segments_changed()
        else:
            self._last_elapsed = new_elapsed
            self._position = position_at(now, self._ref_instant - self._base_position,
                                         self._duration)

    def tick(self) -> None:
        """Re-compute the recording playhead and notify. No-op unless RECORDING."""
        if self.state != RecordingState.RECORDING:
            return
        self._update_position()
        if self.on_position:
            self.on_position(self._position)

    def _auto_stop(self) -> None:
        self._auto_stop_handle = None
        if self.state != RecordingState.RECORDING:
            return
        logger.info("[REC] Auto-stopping loop recording after requested duration")
        if self.auto_stop_handler:
            self.auto_stop_handler()
        else:
            asyncio.get_running_loop().create_task(self._stop_and_discard())

    async def _stop_and_discard(self) -> None:
        try:
            await self.stop()
        except LoopEngineError as e:
            logger.error(f"Auto-stop failed: {e}")

    def _cancel_timers(self) -> None:
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None
        if self._auto_stop_handle is not None:
            self._auto_stop_handle.cancel()
            self._auto_stop_handle = None

    # =========================================================================
    # STOP / MERGE
    # =========================================================================

    async def stop(self, buffer=None):
        """
        Stop capturing, decode the capture and merge it.

        Args:
            buffer: Buffer to merge into (the one recording started on if None)

        Returns:
            The merged LoopBuffer

        Raises:
            AlreadyActive: not recording
            CaptureUnavailable / DecodeError / NoActiveBuffer: the pass is lost
        """
        if self.state != RecordingState.RECORDING:
            raise AlreadyActive("Not recording")

        self._cancel_timers()
        self._update_position(final=True)
        self._set_state(RecordingState.MERGING)

        if self._current_segment is not None and self._current_segment.is_open:
            self._current_segment.end = self._position
        self._current_segment = None
        self._segments_changed()

        target = buffer if buffer is not None else self._buffer
        logger.info(f"[REC] Stopping loop recording at {self._position:.3f}s")

        try:
            try:
                artifact = await self.capture.stop_capture()
            except Exception as e:
                raise CaptureUnavailable(f"Capture device failed to stop: {e}") from e

            if not artifact:
                raise DecodeError("Recording failed - no audio captured")

            try:
                samples = await self.decoder.decode(artifact, target.sample_rate if target else 0)
            except LoopEngineError:
                raise
            except Exception as e:
                raise DecodeError(f"Could not decode capture: {e}") from e

            merged = merge_segment(target, samples, self.record_start, self.planned_end)
        except Exception as e:
            logger.error(f"[MERGE] Recording lost: {e}")
            self._set_state(RecordingState.FAILED)
            self._buffer = None
            self._set_state(RecordingState.IDLE)
            self._finish(False)
            raise

        logger.info(f"[MERGE] Merged {self.record_start:.3f}s..{min(self.planned_end, self._duration):.3f}s into loop")
        self._buffer = None
        self._set_state(RecordingState.IDLE)
        self._finish(True)
        return merged

    def abort(self) -> None:
        """
        Drop the current pass without merging. Timers are cancelled at once;
        a session parked in MERGING is left alone.
        """
        if self.state not in (RecordingState.STARTING, RecordingState.RECORDING):
            return
        was_recording = self.state == RecordingState.RECORDING
        self._cancel_timers()
        segment = self._current_segment
        if was_recording:
            self._update_position(final=True)
            if self._current_segment is not None and self._current_segment.is_open:
                self._current_segment.end = self._position
            self._current_segment = None
            self._segments_changed()
        elif segment is not None:
            # Capture never started: nothing was recorded
            self._discard_segment(segment)
        self._buffer = None
        self._set_state(RecordingState.IDLE)
        self._finish(False)
        if was_recording:
            try:
                asyncio.get_running_loop().create_task(self._discard_capture())
            except RuntimeError:
                logger.debug("No running loop, capture left for its owner to close")
        logger.info("[REC] Recording aborted")

    async def wait_finished(self) -> bool:
        """Wait for the current (or last) pass. True if it merged."""
        if self._completion is None:
            return False
        return await asyncio.shield(self._completion)
