"""
Utility functions for Loop Overdub.
"""

from .formatting import format_time, parse_time, format_segments
from .waveform import waveform_peaks

__all__ = ['format_time', 'parse_time', 'format_segments', 'waveform_peaks']
