"""
Configuration constants for Loop Overdub.

All tunable parameters in one place for easy adjustment and debugging.
Modify these values to fine-tune buffer shape, timing, and export behavior.
"""

import sys
import os

# =============================================================================
# PATHS
# =============================================================================

# HELPER: Detect if we are running as a compiled exe or a script
def get_base_path():
    if getattr(sys, 'frozen', False):
        # We are running as an exe - use the folder the exe is sitting in
        return os.path.dirname(sys.executable)
    else:
        # We are running as a script - use the script's folder
        return os.path.dirname(os.path.abspath(__file__))

# ROOT DIR
BASE_DIR = get_base_path()

# Log files and exported loops land here (created on demand, not at import)
LOG_DIR = os.path.join(BASE_DIR, "logs")
EXPORT_DIR = os.path.join(BASE_DIR, "exports")

# =============================================================================
# LOOP BUFFER SETTINGS
# =============================================================================

# Sample rate for the loop buffer (Hz)
SAMPLE_RATE = 44100

# Number of audio channels (2 = stereo)
CHANNELS = 2

# Loop length used when the caller does not pass one (seconds)
DEFAULT_LOOP_DURATION = 4.0

# Upper bound for a loop (seconds). The buffer is held in RAM as float32,
# so 60s of stereo at 44.1kHz is ~21MB.
MAX_LOOP_DURATION = 60.0

# =============================================================================
# RECORDING SETTINGS
# =============================================================================

# Length of an overdub pass when the caller does not pass one (seconds)
DEFAULT_RECORD_DURATION = 1.0

# How often the recording playhead is re-computed (seconds)
RECORD_TICK_INTERVAL = 0.050

# Restart loop playback after a merge if it was running when recording began
RESUME_PLAYBACK_AFTER_MERGE = True

# Block size for the microphone input stream (0 = let PortAudio decide)
CAPTURE_BLOCK_SIZE = 0

# =============================================================================
# PLAYBACK SETTINGS
# =============================================================================

# How often playback position updates are emitted (seconds)
# 0.0167 = ~60 FPS
PLAYBACK_TICK_INTERVAL = 1.0 / 60.0

# Pygame mixer buffer size (lower = less latency, but more CPU)
# 512 is good for low latency, 1024 is safer for older machines
MIXER_BUFFER_SIZE = 1024

# Fade applied when the loop channel is stopped (milliseconds)
# TUNABLE: Increase if you hear a click on stop
STOP_FADE_MS = 30

# =============================================================================
# DECODE / EXPORT SETTINGS
# =============================================================================

# Seconds to wait for ffmpeg to decode one capture artifact
FFMPEG_DECODE_TIMEOUT = 30

# Bit depth of exported WAV data
EXPORT_BIT_DEPTH = 16

EXPORT_MIME_TYPE = "audio/wav"

# =============================================================================
# WAVEFORM SETTINGS
# =============================================================================

# Default number of peak buckets returned for visualization
WAVEFORM_RESOLUTION = 100
