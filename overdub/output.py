"""
Playback output sinks for Loop Overdub.

PygameLoopOutput hands the whole loop to pygame.mixer.Sound and plays it with
loops=-1, so the looping itself happens at the C/SDL layer and Python stays
out of the timing-critical path. The playhead is tracked separately from the
wall clock (see PlaybackController).

This module has NO UI dependencies and can be tested independently.
"""

import os
import io
import logging

import numpy as np

# Must be done BEFORE importing pygame
os.environ.setdefault('PYGAME_HIDE_SUPPORT_PROMPT', "1")

import pygame

from config import MIXER_BUFFER_SIZE, STOP_FADE_MS
from .exporter import encode_wav

logger = logging.getLogger("LoopOverdub.Output")


class PygameLoopOutput:
    """
    Plays a LoopBuffer through pygame.mixer.

    The mixer is initialized lazily on first play with the buffer's sample
    rate and channel count.
    """

    def __init__(self, mixer_buffer=MIXER_BUFFER_SIZE, stop_fade_ms=STOP_FADE_MS):
        self.mixer_buffer = mixer_buffer
        self.stop_fade_ms = stop_fade_ms
        self.loop_sound = None
        self.loop_channel = None

    def _ensure_mixer(self, sample_rate, channels):
        current = pygame.mixer.get_init()
        wanted = (sample_rate, -16, channels)
        if current == wanted:
            return
        if current is not None:
            logger.debug(f"Re-initializing mixer {current} -> {wanted}")
            pygame.mixer.quit()
        pygame.mixer.init(
            frequency=sample_rate,
            size=-16,
            channels=channels,
            buffer=self.mixer_buffer
        )
        logger.info(f"pygame mixer initialized ({sample_rate}Hz, {channels}ch)")

    def play(self, buffer, offset_seconds=0.0):
        """
        Start looping `buffer` from `offset_seconds`.

        pygame always starts a Sound at its first frame, so the buffer is
        rotated to put the offset first. Looping the rotated buffer produces
        exactly the same sample sequence as looping the original from offset.
        """
        self.stop()
        self._ensure_mixer(buffer.sample_rate, buffer.channel_count)

        offset_frames = int(round(offset_seconds * buffer.sample_rate)) % buffer.frame_count
        samples = buffer.samples
        if offset_frames:
            samples = np.roll(samples, -offset_frames, axis=1)

        wav_buffer = io.BytesIO(encode_wav(samples, buffer.sample_rate))
        self.loop_sound = pygame.mixer.Sound(file=wav_buffer)
        self.loop_channel = self.loop_sound.play(loops=-1)
        logger.debug(f"Loop sound playing from frame {offset_frames}")

    def stop(self):
        if self.loop_channel is not None:
            logger.debug("Stopping loop channel")
            self.loop_channel.fadeout(int(self.stop_fade_ms))
            self.loop_channel = None
        self.loop_sound = None

    def close(self):
        self.stop()
        if pygame.mixer.get_init() is not None:
            pygame.mixer.quit()


class NullOutput:
    """Silent sink for headless runs. Position tracking still works."""

    def play(self, buffer, offset_seconds=0.0):
        pass

    def stop(self):
        pass

    def close(self):
        pass
