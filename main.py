#!/usr/bin/env python3
"""
Loop Overdub - record overdub passes into a fixed-length audio loop.

Creates a silent loop, records one pass from the microphone (or from an audio
file) at a chosen offset, optionally plays the result back, and writes the
loop as a WAV file.

Usage:
    python main.py [--duration 4] [--start 0:03.5] [--length 1] [--input FILE]
                   [--output loop.wav] [--ffmpeg PATH] [--no-playback] [--debug]
"""

import os
import sys
import shutil
import asyncio
import logging
import argparse
from datetime import datetime

from config import (
    LOG_DIR, EXPORT_DIR, DEFAULT_LOOP_DURATION, DEFAULT_RECORD_DURATION,
)
from utils.formatting import format_time, parse_time, format_segments

# =============================================================================
# UTILS
# =============================================================================

def setup_logging(debug: bool = False) -> logging.Logger:
    os.makedirs(LOG_DIR, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(LOG_DIR, f"loop_overdub_{timestamp}.log")

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout), logging.FileHandler(log_file)]
    )
    return logging.getLogger("LoopOverdub")


def find_ffmpeg():
    """
    Find FFmpeg next to the script first, then on PATH.

    Returns:
        Path to ffmpeg, or None if it is not installed
    """
    binary_name = "ffmpeg.exe" if os.name == 'nt' else "ffmpeg"
    local_binary = os.path.join(os.path.dirname(os.path.abspath(__file__)), binary_name)
    if os.path.isfile(local_binary):
        return local_binary
    return shutil.which("ffmpeg")


class FileCapture:
    """Capture collaborator that replays the bytes of an audio file."""

    def __init__(self, path):
        self.path = path

    async def start_capture(self):
        if not os.path.isfile(self.path):
            raise FileNotFoundError(self.path)

    async def stop_capture(self):
        with open(self.path, 'rb') as f:
            return f.read()

    def close(self):
        pass


def _time_arg(text):
    value = parse_time(text)
    if value is None:
        raise argparse.ArgumentTypeError(f"not a time: {text!r}")
    return value


def build_parser():
    parser = argparse.ArgumentParser(description="Record an overdub pass into an audio loop")
    parser.add_argument("--duration", type=_time_arg, default=DEFAULT_LOOP_DURATION,
                        help="Loop length in seconds")
    parser.add_argument("--start", type=_time_arg, default=0.0,
                        help="Where in the loop recording starts (seconds or M:SS.ms)")
    parser.add_argument("--length", type=_time_arg, default=DEFAULT_RECORD_DURATION,
                        help="How long to record (seconds)")
    parser.add_argument("--input", default=None,
                        help="Use an audio file instead of the microphone")
    parser.add_argument("--device", type=int, default=None,
                        help="sounddevice input device index")
    parser.add_argument("--output", default=None,
                        help="Where to write the exported WAV")
    parser.add_argument("--ffmpeg", default=None,
                        help="Decode captures with this ffmpeg binary")
    parser.add_argument("--play", type=float, default=None,
                        help="Seconds of playback after recording (default: one loop)")
    parser.add_argument("--no-playback", action="store_true")
    parser.add_argument("--debug", action="store_true")
    return parser


# =============================================================================
# MAIN
# =============================================================================

async def run(args, logger) -> int:
    from overdub import LoopEngine, WavDecoder, FfmpegDecoder
    from overdub.output import PygameLoopOutput, NullOutput

    if args.input:
        capture = FileCapture(args.input)
    else:
        from overdub.capture import SoundDeviceCapture
        capture = SoundDeviceCapture(device=args.device)

    ffmpeg_path = args.ffmpeg or (find_ffmpeg() if args.input else None)
    if ffmpeg_path:
        logger.info(f"Using ffmpeg: {ffmpeg_path}")
        decoder = FfmpegDecoder(ffmpeg_path=ffmpeg_path)
    else:
        decoder = WavDecoder()

    output = NullOutput() if args.no_playback else PygameLoopOutput()
    engine = LoopEngine(capture=capture, decoder=decoder, output=output)
    engine.on('segments_changed', lambda segs: logger.info(f"Segments: {format_segments(segs)}"))
    engine.on('mode_change', lambda mode: logger.info(f"Mode: {mode.name}"))

    try:
        if not engine.initialize_loop_buffer(args.duration):
            return 1

        if not await engine.start_loop_recording_at(args.start, args.length):
            return 1
        logger.info(f"[REC] Recording {args.length:.2f}s at {format_time(args.start)}...")

        if not await engine.wait_for_recording():
            logger.error(f"Recording failed: {engine.last_error}")
            return 1

        if not args.no_playback:
            play_seconds = args.play if args.play is not None else engine.loop_duration
            engine.play_loop_with_tracking(0.0)
            await asyncio.sleep(play_seconds)
            engine.stop_loop_playback()

        exported = engine.export_loop_to_blob()
        if exported is None:
            return 1

        out_path = args.output
        if out_path is None:
            os.makedirs(EXPORT_DIR, exist_ok=True)
            out_path = os.path.join(EXPORT_DIR, f"loop_{datetime.now().strftime('%Y%m%d_%H%M%S')}.wav")
        with open(out_path, 'wb') as f:
            f.write(exported.data)
        logger.info(f"Wrote {len(exported.data)} bytes ({exported.mime_type}) to {out_path}")
        return 0
    finally:
        engine.cleanup()
        capture.close()


def main():
    args = build_parser().parse_args()
    logger = setup_logging(debug=args.debug)
    logger.info("Loop Overdub Starting")

    try:
        code = asyncio.run(run(args, logger))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        code = 130
    except Exception as e:
        logger.exception(f"Critical Error: {e}")
        code = 1

    logger.info("Loop Overdub Exiting")
    sys.exit(code)


if __name__ == "__main__":
    main()
