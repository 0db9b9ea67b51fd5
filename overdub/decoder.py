"""
Capture decoders for Loop Overdub.

A decoder turns one capture artifact (encoded bytes) into float PCM shaped
(channels, frames) at the loop's sample rate.

1. WavDecoder: PCM WAV via the stdlib wave module. Linear resampling when the
   artifact's rate differs from the loop's.
2. FfmpegDecoder: anything ffmpeg can read (webm/opus, ogg, mp3, ...). Bytes go
   in on stdin, raw float32 comes out on stdout.
"""

import io
import os
import wave
import asyncio
import logging
import subprocess

import numpy as np

from config import CHANNELS, FFMPEG_DECODE_TIMEOUT
from .errors import DecodeError

logger = logging.getLogger("LoopOverdub.Decoder")

# Suppress console window on Windows for subprocess calls
_SUBPROCESS_FLAGS = {}
if os.name == 'nt':
    _SUBPROCESS_FLAGS['creationflags'] = subprocess.CREATE_NO_WINDOW


def resample_linear(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Linear-interpolation resample of a (channels, frames) array."""
    if source_rate == target_rate or samples.shape[1] == 0:
        return samples
    source_frames = samples.shape[1]
    target_frames = max(1, int(round(source_frames * target_rate / source_rate)))
    source_t = np.arange(source_frames) / source_rate
    target_t = np.arange(target_frames) / target_rate
    return np.stack([
        np.interp(target_t, source_t, channel).astype(np.float32)
        for channel in samples
    ])


def _pcm_to_float(raw: bytes, sample_width: int) -> np.ndarray:
    if sample_width == 1:
        # 8-bit WAV is unsigned
        return (np.frombuffer(raw, dtype=np.uint8).astype(np.float32) - 128.0) / 128.0
    if sample_width == 2:
        return np.frombuffer(raw, dtype='<i2').astype(np.float32) / 32768.0
    if sample_width == 3:
        b = np.frombuffer(raw, dtype=np.uint8).reshape(-1, 3).astype(np.int32)
        ints = b[:, 0] | (b[:, 1] << 8) | (b[:, 2] << 16)
        ints = np.where(ints & 0x800000, ints - 0x1000000, ints)
        return ints.astype(np.float32) / 8388608.0
    if sample_width == 4:
        return np.frombuffer(raw, dtype='<i4').astype(np.float32) / 2147483648.0
    raise DecodeError(f"Unsupported WAV sample width: {sample_width} bytes")


class WavDecoder:
    """Decode PCM WAV artifacts."""

    def decode_sync(self, data: bytes, target_sample_rate: int) -> np.ndarray:
        if not data:
            raise DecodeError("Capture artifact is empty")
        try:
            with wave.open(io.BytesIO(data), 'rb') as wf:
                channels = wf.getnchannels()
                sample_width = wf.getsampwidth()
                rate = wf.getframerate()
                raw = wf.readframes(wf.getnframes())
        except (wave.Error, EOFError) as e:
            raise DecodeError(f"Malformed WAV data: {e}")

        if channels <= 0:
            raise DecodeError(f"WAV header declares {channels} channels")
        flat = _pcm_to_float(raw, sample_width)
        frames = len(flat) // channels
        if frames == 0:
            raise DecodeError("Decoded audio is empty")
        samples = flat[:frames * channels].reshape(frames, channels).T

        logger.debug(f"Decoded WAV: {frames} frames, {channels}ch @ {rate}Hz")
        return resample_linear(np.ascontiguousarray(samples), rate, target_sample_rate)

    async def decode(self, data: bytes, target_sample_rate: int) -> np.ndarray:
        return self.decode_sync(data, target_sample_rate)


class FfmpegDecoder:
    """
    Decode any container ffmpeg understands.

    Args:
        ffmpeg_path: Path to ffmpeg executable
        channels: Channel count requested from ffmpeg (it up/down-mixes)
        timeout: Seconds before a stuck ffmpeg is killed
    """

    def __init__(self, ffmpeg_path="ffmpeg", channels=CHANNELS, timeout=FFMPEG_DECODE_TIMEOUT):
        self.ffmpeg_path = ffmpeg_path
        self.channels = channels
        self.timeout = timeout

    async def decode(self, data: bytes, target_sample_rate: int) -> np.ndarray:
        if not data:
            raise DecodeError("Capture artifact is empty")

        cmd = [
            self.ffmpeg_path, '-i', 'pipe:0',
            '-f', 'f32le', '-ar', str(target_sample_rate), '-ac', str(self.channels),
            '-v', 'quiet', 'pipe:1'
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_SUBPROCESS_FLAGS
            )
        except FileNotFoundError:
            raise DecodeError(f"ffmpeg not found at '{self.ffmpeg_path}'")

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(input=data), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise DecodeError(f"ffmpeg timed out after {self.timeout}s")

        if proc.returncode != 0:
            raise DecodeError(f"FFmpeg failed to decode audio (exit {proc.returncode})")

        flat = np.frombuffer(stdout, dtype='<f4')
        frames = len(flat) // self.channels
        if frames == 0:
            raise DecodeError("Decoded audio is empty")

        logger.debug(f"ffmpeg decoded {frames} frames ({frames / target_sample_rate:.2f}s)")
        return np.ascontiguousarray(flat[:frames * self.channels].reshape(frames, self.channels).T)
