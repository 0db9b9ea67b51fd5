"""
Core package for Loop Overdub.

Contains the loop buffer, segment merging, recording / playback control and
the LoopEngine facade. These modules are UI-agnostic and can be used
independently for testing.

The microphone adapter (overdub.capture) is not imported here because it
needs PortAudio at import time.
"""

from .engine import LoopEngine, EngineMode
from .loop_buffer import LoopBuffer
from .recording import RecordingSession, RecordingState, RecordingSegment
from .playback import PlaybackController, PlaybackState
from .exporter import ExportedLoop, export_loop, encode_wav
from .decoder import WavDecoder, FfmpegDecoder
from .errors import (
    LoopEngineError, InvalidDuration, AllocationError, NoActiveBuffer,
    CaptureUnavailable, DecodeError, InvalidPosition, AlreadyActive,
    EmptyBufferError,
)

__all__ = [
    'LoopEngine',
    'EngineMode',
    'LoopBuffer',
    'RecordingSession',
    'RecordingState',
    'RecordingSegment',
    'PlaybackController',
    'PlaybackState',
    'ExportedLoop',
    'export_loop',
    'encode_wav',
    'WavDecoder',
    'FfmpegDecoder',
    'LoopEngineError',
    'InvalidDuration',
    'AllocationError',
    'NoActiveBuffer',
    'CaptureUnavailable',
    'DecodeError',
    'InvalidPosition',
    'AlreadyActive',
    'EmptyBufferError',
]
