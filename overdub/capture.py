"""Microphone capture built on sounddevice, producing WAV capture artifacts."""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

import numpy as np
import sounddevice as sd

from config import SAMPLE_RATE, CAPTURE_BLOCK_SIZE
from .errors import CaptureUnavailable
from .exporter import encode_wav

logger = logging.getLogger("LoopOverdub.Capture")


class SoundDeviceCapture:
    """
    Owns one sounddevice input stream.

    The stream can be opened ahead of time with open() so a recording pass
    starts on an already-live microphone; start_capture() only begins keeping
    blocks. stop_capture() hands back the pass as WAV bytes.
    """

    def __init__(self, device: Optional[int] = None, sample_rate: int = SAMPLE_RATE,
                 channels: int = 1, blocksize: int = CAPTURE_BLOCK_SIZE) -> None:
        self.device = device
        self.sample_rate = sample_rate
        self.channels = channels
        self.blocksize = blocksize
        self.stream: Optional[sd.InputStream] = None
        self._blocks: List[np.ndarray] = []
        self._lock = threading.Lock()
        self._capturing = False
        self._last_status: Optional[str] = None

    # ------------------------------------------------------------------
    # Stream lifecycle

    def open(self) -> None:
        if self.stream is not None:
            return

        def _callback(indata, frames, time_info, status):
            self._handle_callback(indata, status)

        try:
            stream = sd.InputStream(
                device=self.device,
                channels=self.channels,
                samplerate=self.sample_rate,
                dtype="float32",
                callback=_callback,
                blocksize=self.blocksize,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            raise CaptureUnavailable(f"Could not open microphone: {exc}")
        self.stream = stream
        logger.info(f"Input stream started ({self.sample_rate} Hz, {self.channels}ch)")

    def close(self) -> None:
        stream = self.stream
        if stream is None:
            return
        self.stream = None
        self._capturing = False
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:
            logger.debug(f"Stream close error: {exc}")
        logger.info("Input stream stopped")

    # ------------------------------------------------------------------
    # Capture collaborator interface

    async def start_capture(self) -> None:
        self.open()
        with self._lock:
            self._blocks = []
            self._capturing = True
        logger.debug("Capture started")

    async def stop_capture(self) -> bytes:
        with self._lock:
            self._capturing = False
            blocks = self._blocks
            self._blocks = []

        if not blocks:
            logger.warning("Capture stopped with no audio blocks")
            return b""

        mono_or_multi = np.concatenate(blocks, axis=0)
        logger.debug(f"Capture stopped: {len(mono_or_multi)} frames")
        return encode_wav(mono_or_multi.T, self.sample_rate)

    # ------------------------------------------------------------------
    # Audio callback (PortAudio thread)

    def _handle_callback(self, indata, status) -> None:
        if self._capturing:
            with self._lock:
                if self._capturing:
                    self._blocks.append(indata.copy())

        if status:
            status_str = str(status)
            if status_str != self._last_status:
                logger.warning(f"Audio callback status: {status_str}")
                self._last_status = status_str
