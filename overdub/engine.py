"""
Loop Engine for Loop Overdub.

The single coordination point between callers (UI, CLI) and the recording /
playback machinery. Owns the current LoopBuffer and the playhead, makes sure
recording and playback are never active at the same time, and emits events.

This follows an event-driven architecture:
- Callers register callbacks for events they care about
- LoopEngine emits events when state changes
- Callers update in response to events

Every public operation reports failure through its return value plus
`last_error`. No exception crosses this boundary.
"""

import math
import asyncio
import logging
from enum import Enum, auto
from typing import Callable, Dict, List, Optional

from config import (
    SAMPLE_RATE, CHANNELS, DEFAULT_LOOP_DURATION, MAX_LOOP_DURATION,
    DEFAULT_RECORD_DURATION, RECORD_TICK_INTERVAL, PLAYBACK_TICK_INTERVAL,
    RESUME_PLAYBACK_AFTER_MERGE, WAVEFORM_RESOLUTION,
)
from utils.waveform import waveform_peaks
from utils.formatting import format_segments
from .clock import MonotonicTimeSource
from .decoder import WavDecoder
from .errors import (
    LoopEngineError, AlreadyActive, NoActiveBuffer, CaptureUnavailable,
    InvalidPosition, EmptyBufferError,
)
from .exporter import ExportedLoop, export_loop
from .loop_buffer import LoopBuffer
from .output import NullOutput
from .playback import PlaybackController
from .recording import RecordingSession, RecordingState, RecordingSegment
from .scheduler import AsyncioScheduler

logger = logging.getLogger("LoopOverdub.Engine")


class EngineMode(Enum):
    """What the engine is doing right now."""
    IDLE = auto()
    RECORDING = auto()
    PLAYING = auto()


class LoopEngine:
    """
    Owns the loop buffer, the playhead, and the record/play exclusion rule.

    Available Events:
    - 'position_update': (position: float, mode: EngineMode)
    - 'mode_change': (mode: EngineMode)
    - 'segments_changed': (segments: list of RecordingSegment)
    - 'buffer_changed': (channels: list of numpy arrays)
    - 'recording_complete': (success: bool)
    - 'error': (message: str)

    Usage:
        engine = LoopEngine(capture=SoundDeviceCapture(), decoder=FfmpegDecoder())
        engine.initialize_loop_buffer(4.0)
        await engine.start_loop_recording_at(0.0, 4.0)
        await engine.wait_for_recording()      # auto-stops after 4s
        engine.play_loop_with_tracking()
        ...
        engine.cleanup()
    """

    def __init__(self, capture=None, decoder=None, output=None,
                 time_source=None, scheduler=None,
                 sample_rate: int = SAMPLE_RATE,
                 channels: int = CHANNELS,
                 max_duration: float = MAX_LOOP_DURATION,
                 record_tick_interval: float = RECORD_TICK_INTERVAL,
                 playback_tick_interval: float = PLAYBACK_TICK_INTERVAL,
                 resume_playback_after_merge: bool = RESUME_PLAYBACK_AFTER_MERGE):
        """
        Args:
            capture: Capture collaborator (start_capture / stop_capture)
            decoder: Decoder collaborator (WavDecoder if None)
            output: Playback sink (NullOutput if None)
            time_source: Object with now() (monotonic wall clock if None)
            scheduler: Timer scheduler (asyncio if None)
        """
        self.capture = capture
        self.decoder = decoder or WavDecoder()
        self.output = output or NullOutput()
        self.time_source = time_source or MonotonicTimeSource()
        self.scheduler = scheduler or AsyncioScheduler()

        self.sample_rate = sample_rate
        self.channels = channels
        self.max_duration = max_duration
        self.resume_playback_after_merge = resume_playback_after_merge

        self.playback = PlaybackController(
            self.output, self.time_source, self.scheduler,
            tick_interval=playback_tick_interval,
            on_position=self._on_playback_position,
        )
        self.recorder = RecordingSession(
            capture, self.decoder, self.time_source, self.scheduler,
            tick_interval=record_tick_interval,
            on_position=self._on_recording_position,
            on_segments=self._on_segments_changed,
            on_state=self._on_recording_state,
            auto_stop_handler=self._on_auto_stop,
        )

        # Loop state
        self._buffer: Optional[LoopBuffer] = None
        self._position: float = 0.0
        self._last_export: Optional[ExportedLoop] = None
        self._resume_after_merge: bool = False
        self.last_error: Optional[str] = None

        self._last_mode = EngineMode.IDLE
        self._last_pos_log = 0.0
        self._tasks = set()
        # Incremented whenever the loop is replaced or torn down; an in-flight
        # merge started under an older id is discarded
        self._generation_id = 0

        # Callbacks for caller updates (event-driven architecture)
        self._callbacks: Dict[str, List[Callable]] = {
            'position_update': [],      # (position, mode)
            'mode_change': [],          # (EngineMode)
            'segments_changed': [],     # (segments)
            'buffer_changed': [],       # (channel snapshot)
            'recording_complete': [],   # (success)
            'error': [],                # (message)
        }

        logger.info("LoopEngine initialized")

    # =========================================================================
    # EVENT SYSTEM
    # =========================================================================

    def on(self, event: str, callback: Callable) -> None:
        """
        Register a callback for an event.

        Args:
            event: Event name (see class docstring for available events)
            callback: Function to call when event occurs
        """
        if event in self._callbacks:
            self._callbacks[event].append(callback)
        else:
            logger.warning(f"Unknown event: {event}. Available: {list(self._callbacks.keys())}")

    def off(self, event: str, callback: Callable) -> None:
        """Unregister a callback for an event."""
        if event in self._callbacks and callback in self._callbacks[event]:
            self._callbacks[event].remove(callback)

    def _emit(self, event: str, *args) -> None:
        """Emit an event to all registered callbacks."""
        for callback in list(self._callbacks.get(event, [])):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in callback for {event}: {e}")

    def _fail(self, error) -> bool:
        """Record a failure for the caller and report it. Always returns False."""
        message = str(error)
        logger.error(message)
        self.last_error = message
        self._emit('error', message)
        return False

    def _sync_mode(self) -> None:
        mode = self.mode
        if mode != self._last_mode:
            logger.debug(f"Mode {self._last_mode.name} -> {mode.name}")
            self._last_mode = mode
            self._emit('mode_change', mode)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # =========================================================================
    # STATE QUERIES
    # =========================================================================

    @property
    def mode(self) -> EngineMode:
        if self.recorder.is_active:
            return EngineMode.RECORDING
        if self.playback.is_playing:
            return EngineMode.PLAYING
        return EngineMode.IDLE

    @property
    def recording_state(self) -> RecordingState:
        return self.recorder.state

    @property
    def position(self) -> float:
        """Current playhead in seconds."""
        if self.recorder.state == RecordingState.RECORDING:
            return self.recorder.position
        if self.playback.is_playing:
            return self.playback.position
        return self._position

    @property
    def segments(self):
        """Recording segments in the order they were opened."""
        return tuple(RecordingSegment(s.start, s.end) for s in self.recorder.segments)

    @property
    def has_buffer(self) -> bool:
        return self._buffer is not None

    @property
    def loop_duration(self) -> float:
        return self._buffer.duration_seconds if self._buffer is not None else 0.0

    @property
    def buffer(self) -> Optional[LoopBuffer]:
        return self._buffer

    def channel_snapshot(self):
        """Copies of each channel for visualization (empty list without a loop)."""
        return self._buffer.snapshot() if self._buffer is not None else []

    def get_waveform_data(self, resolution: int = WAVEFORM_RESOLUTION) -> list:
        """Peak amplitude per bucket of channel 0."""
        channel = self._buffer.channel_data(0) if self._buffer is not None else None
        return waveform_peaks(channel, resolution)

    def get_position_ratio(self) -> float:
        """Playhead as a fraction of the loop, 0-1."""
        if self._buffer is None:
            return 0.0
        return self.position / self._buffer.duration_seconds

    # =========================================================================
    # LOOP BUFFER
    # =========================================================================

    def initialize_loop_buffer(self, duration: float = DEFAULT_LOOP_DURATION) -> bool:
        """
        Create an empty (silent) loop, discarding any previous loop and its
        segment history. Only allowed while idle.
        """
        if self.mode != EngineMode.IDLE:
            return self._fail(AlreadyActive(
                f"Cannot create a new loop while {self.mode.name.lower()}"
            ))

        logger.info(f"Initializing empty loop buffer ({duration}s)")
        try:
            buffer = LoopBuffer.create(duration, self.sample_rate, self.channels,
                                       max_duration=self.max_duration)
        except LoopEngineError as e:
            return self._fail(f"Failed to create empty loop: {e}")

        self._generation_id += 1
        self._buffer = buffer
        self._position = 0.0
        self._last_export = None
        self.playback.reset()
        self.recorder.clear_segments()

        self._emit('buffer_changed', buffer.snapshot())
        self._emit('position_update', 0.0, self.mode)
        logger.info(f"Empty loop buffer created: {buffer}")
        return True

    def _replace_buffer(self, buffer: LoopBuffer) -> None:
        self._buffer = buffer
        self._last_export = None
        self._emit('buffer_changed', buffer.snapshot())

    # =========================================================================
    # RECORDING
    # =========================================================================

    async def start_loop_recording_at(self, start_position: float,
                                      duration: float = DEFAULT_RECORD_DURATION) -> bool:
        """
        Start overwriting the loop from `start_position` for `duration`
        seconds. Playback is stopped first. The pass stops by itself after
        `duration`; call stop_loop_recording_and_merge() to end it early.
        """
        if self.recorder.state != RecordingState.IDLE:
            return self._fail(AlreadyActive(
                f"Cannot start recording while {self.recorder.state.name.lower()}"
            ))
        if self.capture is None:
            return self._fail(CaptureUnavailable("No capture device configured"))

        try:
            self.recorder.check_start(self._buffer, start_position, duration)
        except LoopEngineError as e:
            return self._fail(f"Failed to start recording: {e}")

        was_playing = self.playback.is_playing
        if was_playing:
            logger.info("Stopping loop playback before recording")
            self.playback.stop()
            self._position = self.playback.position

        try:
            await self.recorder.start(self._buffer, start_position, duration)
        except Exception as e:
            self._sync_mode()
            return self._fail(f"Failed to start recording: {e}")

        self._resume_after_merge = was_playing and self.resume_playback_after_merge
        self._sync_mode()
        return True

    async def start_recording_at_current_position(self,
                                                  duration: float = DEFAULT_RECORD_DURATION) -> bool:
        """Start recording wherever the playhead is now."""
        return await self.start_loop_recording_at(self.position, duration)

    async def stop_loop_recording_and_merge(self) -> bool:
        """
        Stop the current pass, decode it and splice it into the loop.

        On failure the recording is discarded and the loop is unchanged.
        """
        if self.recorder.state != RecordingState.RECORDING:
            return self._fail(AlreadyActive("Not recording"))

        resume = self._resume_after_merge
        self._resume_after_merge = False
        gen_id = self._generation_id

        try:
            merged = await self.recorder.stop(self._buffer)
        except Exception as e:
            if gen_id == self._generation_id:
                self._position = self.recorder.position
            self._sync_mode()
            self._emit('recording_complete', False)
            return self._fail(f"Failed to merge recording: {e}")

        if gen_id != self._generation_id:
            logger.debug(f"Merge for generation {gen_id} superseded by {self._generation_id}, discarding")
            self._sync_mode()
            self._emit('recording_complete', False)
            return self._fail("Recording discarded: loop was replaced or released during merge")

        self._replace_buffer(merged)
        self._position = self.recorder.position
        logger.info(f"Successfully merged recording into loop. Segments: {format_segments(self.recorder.segments)}")
        self._sync_mode()
        self._emit('recording_complete', True)

        if resume:
            logger.info("Restarting playback after merge")
            self.play_loop_with_tracking(self._position)
        return True

    async def wait_for_recording(self) -> bool:
        """Wait until the current pass has been merged or lost."""
        result = await self.recorder.wait_finished()
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return result

    def _on_auto_stop(self) -> None:
        self._spawn(self.stop_loop_recording_and_merge())

    def _on_recording_state(self, state: RecordingState) -> None:
        self._sync_mode()

    def _on_segments_changed(self, segments) -> None:
        self._emit('segments_changed', segments)

    def _on_recording_position(self, position: float) -> None:
        self._log_position("REC", position)
        self._emit('position_update', position, EngineMode.RECORDING)

    # =========================================================================
    # PLAYBACK
    # =========================================================================

    def play_loop_with_tracking(self, from_position: Optional[float] = None) -> bool:
        """Start looped playback from `from_position` (last position if None)."""
        if self.recorder.is_active:
            return self._fail(AlreadyActive("Cannot play while recording"))
        if self.playback.is_playing:
            return self._fail(AlreadyActive("Playback already active"))
        if self._buffer is None:
            return self._fail(NoActiveBuffer("Cannot play: no loop buffer"))

        start = self._position if from_position is None else from_position
        try:
            self.playback.start(self._buffer, start)
        except Exception as e:
            return self._fail(f"Error playing loop: {e}")

        self._sync_mode()
        self._emit('position_update', self.playback.position, EngineMode.PLAYING)
        return True

    def stop_loop_playback(self) -> bool:
        """Stop playback, keeping the playhead as the resume point."""
        try:
            stopped = self.playback.stop()
        except Exception as e:
            return self._fail(f"Failed to stop loop: {e}")
        if not stopped:
            return self._fail("Loop playback not active")

        self._position = self.playback.position
        self._sync_mode()
        return True

    def seek(self, position: float) -> bool:
        """
        Scrub to `position`. Restarts playback there if playing, otherwise
        just moves the idle playhead.
        """
        if self.recorder.is_active:
            return self._fail(AlreadyActive("Cannot seek while recording"))
        if self._buffer is None:
            return self._fail(NoActiveBuffer("Cannot seek: no loop buffer"))
        if not isinstance(position, (int, float)) or not math.isfinite(position):
            return self._fail(InvalidPosition(f"Invalid seek position: {position}"))

        position = position % self._buffer.duration_seconds
        try:
            if self.playback.is_playing:
                self.playback.seek(position, self._buffer)
            else:
                self._position = position
        except Exception as e:
            return self._fail(f"Seek failed: {e}")

        self._emit('position_update', position, self.mode)
        return True

    def _on_playback_position(self, position: float) -> None:
        self._log_position("LOOP", position)
        self._emit('position_update', position, EngineMode.PLAYING)

    def _log_position(self, tag: str, position: float) -> None:
        now = self.time_source.now()
        if now - self._last_pos_log > 1.0:
            logger.debug(f"[{tag}] pos={position:.3f}s / {self.loop_duration:.3f}s")
            self._last_pos_log = now

    # =========================================================================
    # EXPORT
    # =========================================================================

    def export_loop_to_blob(self) -> Optional[ExportedLoop]:
        """WAV bytes of the current loop, or None without a loop."""
        if self._last_export is not None:
            return self._last_export
        try:
            self._last_export = export_loop(self._buffer)
        except EmptyBufferError as e:
            self._fail(e)
            return None
        except Exception as e:
            self._fail(f"Failed to export loop: {e}")
            return None
        return self._last_export

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def cleanup(self) -> None:
        """Stop everything and release the loop. The engine can be re-initialized."""
        logger.info("Cleaning up LoopEngine resources...")
        self.recorder.abort()
        self.playback.stop()
        for task in list(self._tasks):
            task.cancel()
        close = getattr(self.output, 'close', None)
        if close:
            try:
                close()
            except Exception as e:
                logger.warning(f"Error closing output: {e}")
        self._generation_id += 1
        self._buffer = None
        self._last_export = None
        self._position = 0.0
        self._sync_mode()
