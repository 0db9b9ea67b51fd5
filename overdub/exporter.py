"""
WAV export for Loop Overdub.

Serializes the loop buffer as 16-bit PCM WAV at the buffer's own sample rate
and channel count. Same buffer in, same bytes out.
"""

import io
import wave
import logging
from typing import NamedTuple

import numpy as np

from config import EXPORT_MIME_TYPE, EXPORT_BIT_DEPTH
from .errors import EmptyBufferError

logger = logging.getLogger("LoopOverdub.Exporter")


class ExportedLoop(NamedTuple):
    data: bytes
    mime_type: str


def float_to_int16(samples: np.ndarray) -> np.ndarray:
    """
    Convert float samples in [-1, 1] to int16.

    Negative values scale by 32768 and positive by 32767 so both rails are
    reachable; the cast truncates toward zero.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype(np.int16)


def encode_wav(samples, sample_rate: int) -> bytes:
    """
    Encode (channels, frames) float samples as WAV bytes.

    Args:
        samples: Array of shape (channels, frames), or (frames,) for mono
        sample_rate: Sample rate written to the header
    """
    data = np.asarray(samples, dtype=np.float32)
    if data.ndim == 1:
        data = data.reshape(1, -1)
    channels = data.shape[0]

    # WAV stores frames interleaved: L R L R ...
    interleaved = float_to_int16(data.T.reshape(-1))

    wav_buffer = io.BytesIO()
    with wave.open(wav_buffer, 'wb') as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(EXPORT_BIT_DEPTH // 8)
        wf.setframerate(int(sample_rate))
        wf.writeframes(interleaved.astype('<i2').tobytes())
    return wav_buffer.getvalue()


def export_loop(buffer) -> ExportedLoop:
    """
    Export a loop buffer as a WAV blob.

    Raises:
        EmptyBufferError: No buffer to export
    """
    if buffer is None:
        raise EmptyBufferError("No loop buffer available to export")

    data = encode_wav(buffer.samples, buffer.sample_rate)
    logger.info(f"Loop exported as {len(data)} byte WAV ({buffer.channel_count}ch @ {buffer.sample_rate}Hz)")
    return ExportedLoop(data=data, mime_type=EXPORT_MIME_TYPE)
