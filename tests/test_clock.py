"""Tests for loop-time arithmetic."""

import pytest

from overdub.clock import position_at, did_wrap, MonotonicTimeSource


def test_position_at_offsets_from_start():
    assert position_at(105.5, 100.0, 4.0) == pytest.approx(1.5)
    assert position_at(100.0, 100.0, 4.0) == 0.0


def test_position_at_is_modulo_duration():
    assert position_at(109.0, 100.0, 4.0) == pytest.approx(1.0)
    assert position_at(100.0, 101.5, 4.0) == pytest.approx(2.5)


def test_position_stays_in_range():
    for i in range(1000):
        pos = position_at(i * 0.0173, 0.0, 0.7)
        assert 0.0 <= pos < 0.7


def test_position_monotonic_within_cycle():
    positions = [position_at(10.0 + i * 0.01, 10.0, 4.0) for i in range(399)]
    assert positions == sorted(positions)


def test_did_wrap():
    assert did_wrap(3.9, 4.1, 4.0)
    assert did_wrap(3.9, 4.0, 4.0)
    assert not did_wrap(1.0, 2.0, 4.0)
    assert not did_wrap(4.1, 7.9, 4.0)
    assert did_wrap(0.5, 8.5, 4.0)


def test_monotonic_time_source_never_goes_back():
    ts = MonotonicTimeSource()
    readings = [ts.now() for _ in range(100)]
    assert readings == sorted(readings)
