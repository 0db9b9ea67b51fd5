"""Tests for LoopBuffer allocation."""

import math

import numpy as np
import pytest

from overdub.loop_buffer import LoopBuffer
from overdub.errors import InvalidDuration, AllocationError


@pytest.mark.parametrize("duration", [1.0, 2.5, 4.0, 0.3333, 60.0])
def test_frame_count_is_ceiling(duration):
    buf = LoopBuffer.create(duration, sample_rate=44100, channel_count=2)
    assert buf.frame_count == math.ceil(44100 * duration)
    assert buf.channel_count == 2
    assert buf.duration_seconds == duration
    assert buf.sample_rate == 44100


def test_new_buffer_is_silent():
    buf = LoopBuffer.create(1.0, sample_rate=8000, channel_count=3)
    assert buf.samples.dtype == np.float32
    assert buf.samples.shape == (3, 8000)
    assert not buf.samples.any()


def test_channels_share_length():
    buf = LoopBuffer.create(0.5, sample_rate=22050, channel_count=2)
    lengths = {len(buf.channel_data(i)) for i in range(buf.channel_count)}
    assert lengths == {buf.frame_count}


@pytest.mark.parametrize("duration", [0, -1.0, 60.5, float('nan'), float('inf'), "abc", None])
def test_invalid_duration(duration):
    with pytest.raises(InvalidDuration):
        LoopBuffer.create(duration)


def test_max_duration_is_configurable():
    buf = LoopBuffer.create(90.0, sample_rate=100, channel_count=1, max_duration=120.0)
    assert buf.frame_count == 9000
    with pytest.raises(InvalidDuration):
        LoopBuffer.create(10.0, sample_rate=100, channel_count=1, max_duration=5.0)


def test_bad_sample_rate_is_allocation_error():
    with pytest.raises(AllocationError):
        LoopBuffer.create(1.0, sample_rate=0, channel_count=2)
    with pytest.raises(AllocationError):
        LoopBuffer.create(1.0, sample_rate=44100, channel_count=0)


def test_memory_error_is_allocation_error(monkeypatch):
    def _no_memory(*args, **kwargs):
        raise MemoryError("out of memory")

    monkeypatch.setattr("overdub.loop_buffer.np.zeros", _no_memory)
    with pytest.raises(AllocationError):
        LoopBuffer.create(1.0)


def test_snapshot_is_a_copy():
    buf = LoopBuffer.create(0.1, sample_rate=1000, channel_count=2)
    snap = buf.snapshot()
    snap[0][:] = 1.0
    assert not buf.samples.any()
    assert len(snap) == 2


def test_empty_like_matches_shape():
    buf = LoopBuffer.create(0.25, sample_rate=1000, channel_count=2)
    buf.samples[:] = 0.5
    other = buf.empty_like()
    assert other.samples.shape == buf.samples.shape
    assert other.sample_rate == buf.sample_rate
    assert other.duration_seconds == buf.duration_seconds
    assert not other.samples.any()
