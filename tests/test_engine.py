"""End-to-end tests for the LoopEngine facade."""

import asyncio

import numpy as np
import pytest

from overdub.engine import LoopEngine, EngineMode
from overdub.decoder import WavDecoder
from overdub.recording import RecordingState, RecordingSegment
from fakes import FakeCapture, make_tone, wav_bytes


SR = 44100


def make_engine(capture, output, time_source, scheduler, **kwargs):
    return LoopEngine(
        capture=capture, decoder=WavDecoder(), output=output,
        time_source=time_source, scheduler=scheduler,
        sample_rate=SR, channels=2,
        record_tick_interval=0.05, playback_tick_interval=0.05,
        **kwargs
    )


@pytest.fixture
def events():
    return {'mode': [], 'positions': [], 'complete': [], 'errors': [], 'buffers': []}


def listen(engine, events):
    engine.on('mode_change', events['mode'].append)
    engine.on('position_update', lambda pos, mode: events['positions'].append((pos, mode)))
    engine.on('recording_complete', events['complete'].append)
    engine.on('error', events['errors'].append)
    engine.on('buffer_changed', events['buffers'].append)


# =============================================================================
# Recording scenarios
# =============================================================================

@pytest.mark.asyncio
async def test_full_loop_pass(output, time_source, scheduler, events):
    tone = make_tone(440.0, 4.0, SR, 2)
    engine = make_engine(FakeCapture(wav_bytes(tone)), output, time_source, scheduler)
    listen(engine, events)

    assert engine.initialize_loop_buffer(4.0)
    assert await engine.start_loop_recording_at(0.0, 4.0)
    assert engine.mode == EngineMode.RECORDING

    scheduler.advance(4.0)
    assert await engine.wait_for_recording() is True

    assert engine.mode == EngineMode.IDLE
    assert engine.recording_state == RecordingState.IDLE
    assert events['complete'] == [True]
    assert events['mode'] == [EngineMode.RECORDING, EngineMode.IDLE]

    merged = engine.buffer
    assert merged.frame_count == 4 * SR
    for k in range(10):
        idx = k * merged.frame_count // 10
        assert abs(merged.samples[0, idx] - tone[0, idx]) < 1e-3
        assert abs(merged.samples[1, idx] - tone[1, idx]) < 1e-3


@pytest.mark.asyncio
async def test_recording_across_loop_end(output, time_source, scheduler):
    tone = make_tone(440.0, 1.0, SR, 2)
    engine = make_engine(FakeCapture(wav_bytes(tone)), output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)

    assert await engine.start_loop_recording_at(3.5, 1.0)
    scheduler.advance(1.0)
    assert await engine.wait_for_recording() is True

    segments = engine.segments
    assert len(segments) == 2
    assert segments[0] == RecordingSegment(3.5, 4.0)
    assert segments[1].start == 0.0
    assert segments[1].end is not None
    assert 0.0 <= segments[1].end <= 0.55

    # The tail of the loop holds the first half second of the take,
    # the start of the loop is untouched
    merged = engine.buffer
    start = int(round(3.5 * SR))
    np.testing.assert_allclose(merged.samples[:, start:], tone[:, :merged.frame_count - start],
                               atol=2e-4)
    assert not merged.samples[:, :start].any()


@pytest.mark.asyncio
async def test_manual_stop_before_requested_end(output, time_source, scheduler, events):
    tone = make_tone(220.0, 2.0, SR, 2)
    engine = make_engine(FakeCapture(wav_bytes(tone)), output, time_source, scheduler)
    listen(engine, events)
    engine.initialize_loop_buffer(4.0)

    await engine.start_loop_recording_at(1.0, 2.0)
    scheduler.advance(0.5)
    assert await engine.stop_loop_recording_and_merge() is True

    assert engine.position == pytest.approx(1.5)
    assert engine.segments[0].end == pytest.approx(1.5)
    scheduler.advance(3.0)
    assert events['complete'] == [True]
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_record_at_current_position(output, time_source, scheduler):
    tone = make_tone(220.0, 0.5, SR, 2)
    engine = make_engine(FakeCapture(wav_bytes(tone)), output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)
    engine.seek(2.0)

    assert await engine.start_recording_at_current_position(0.5)
    assert engine.recorder.record_start == pytest.approx(2.0)
    assert engine.segments == (RecordingSegment(2.0),)


# =============================================================================
# Exclusion and idempotence
# =============================================================================

@pytest.mark.asyncio
async def test_reentrant_start_is_rejected(output, time_source, scheduler, events):
    gate = asyncio.Event()
    tone = make_tone(220.0, 1.0, SR, 2)
    capture = FakeCapture(wav_bytes(tone), start_gate=gate)
    engine = make_engine(capture, output, time_source, scheduler)
    listen(engine, events)
    engine.initialize_loop_buffer(4.0)

    first = asyncio.create_task(engine.start_loop_recording_at(0.0, 1.0))
    await asyncio.sleep(0)
    assert await engine.start_loop_recording_at(1.0, 1.0) is False
    assert "starting" in engine.last_error

    gate.set()
    assert await first is True
    assert capture.starts == 1
    assert len(engine.segments) == 1


@pytest.mark.asyncio
async def test_concurrent_stop_is_rejected(output, time_source, scheduler):
    gate = asyncio.Event()
    tone = make_tone(220.0, 1.0, SR, 2)
    engine = make_engine(FakeCapture(wav_bytes(tone), stop_gate=gate),
                         output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)
    await engine.start_loop_recording_at(0.0, 1.0)

    first = asyncio.create_task(engine.stop_loop_recording_and_merge())
    await asyncio.sleep(0)
    assert engine.recording_state == RecordingState.MERGING
    assert await engine.stop_loop_recording_and_merge() is False

    gate.set()
    assert await first is True


@pytest.mark.asyncio
async def test_play_refused_while_recording(output, time_source, scheduler):
    tone = make_tone(220.0, 1.0, SR, 2)
    engine = make_engine(FakeCapture(wav_bytes(tone)), output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)
    await engine.start_loop_recording_at(0.0, 1.0)

    assert engine.play_loop_with_tracking() is False
    assert engine.initialize_loop_buffer(2.0) is False
    assert engine.seek(1.0) is False
    assert output.plays == []
    assert engine.mode == EngineMode.RECORDING


@pytest.mark.asyncio
async def test_recording_stops_playback_and_resumes_after_merge(output, time_source, scheduler):
    tone = make_tone(220.0, 0.5, SR, 2)
    engine = make_engine(FakeCapture(wav_bytes(tone)), output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)

    assert engine.play_loop_with_tracking(0.0)
    scheduler.advance(0.2)
    assert await engine.start_loop_recording_at(1.0, 0.5)
    assert output.stops == 1
    assert engine.mode == EngineMode.RECORDING

    scheduler.advance(0.5)
    assert await engine.wait_for_recording() is True
    assert engine.mode == EngineMode.PLAYING
    assert output.plays[-1][0] is engine.buffer
    assert output.plays[-1][1] == pytest.approx(1.5)


@pytest.mark.asyncio
async def test_resume_after_merge_can_be_disabled(output, time_source, scheduler):
    tone = make_tone(220.0, 0.5, SR, 2)
    engine = make_engine(FakeCapture(wav_bytes(tone)), output, time_source, scheduler,
                         resume_playback_after_merge=False)
    engine.initialize_loop_buffer(4.0)
    engine.play_loop_with_tracking(0.0)
    await engine.start_loop_recording_at(1.0, 0.5)
    scheduler.advance(0.5)
    await engine.wait_for_recording()

    assert engine.mode == EngineMode.IDLE
    assert len(output.plays) == 1


def test_playback_start_stop(output, time_source, scheduler, events):
    engine = make_engine(None, output, time_source, scheduler)
    listen(engine, events)
    engine.initialize_loop_buffer(4.0)

    assert engine.play_loop_with_tracking(1.0)
    assert engine.play_loop_with_tracking(2.0) is False
    scheduler.advance(0.5)
    assert engine.position == pytest.approx(1.5)

    assert engine.stop_loop_playback() is True
    assert engine.stop_loop_playback() is False
    assert engine.last_error == "Loop playback not active"
    assert engine.mode == EngineMode.IDLE
    assert engine.position == pytest.approx(1.5)

    count = len(events['positions'])
    scheduler.advance(1.0)
    assert len(events['positions']) == count

    # Resumes where it stopped
    assert engine.play_loop_with_tracking()
    assert output.plays[-1][1] == pytest.approx(1.5)


def test_seek(output, time_source, scheduler):
    engine = make_engine(None, output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)

    assert engine.seek(5.0)
    assert engine.position == pytest.approx(1.0)
    assert engine.get_position_ratio() == pytest.approx(0.25)
    assert engine.seek(float('nan')) is False

    engine.play_loop_with_tracking()
    assert engine.seek(3.0)
    assert engine.mode == EngineMode.PLAYING
    assert output.plays[-1][1] == pytest.approx(3.0)


# =============================================================================
# Failures never escape
# =============================================================================

@pytest.mark.asyncio
async def test_operations_without_buffer(output, time_source, scheduler, events):
    engine = make_engine(FakeCapture(), output, time_source, scheduler)
    listen(engine, events)

    assert engine.play_loop_with_tracking() is False
    assert await engine.start_loop_recording_at(0.0, 1.0) is False
    assert await engine.stop_loop_recording_and_merge() is False
    assert engine.stop_loop_playback() is False
    assert engine.seek(1.0) is False
    assert engine.export_loop_to_blob() is None
    assert engine.get_waveform_data(8) == [0.0] * 8
    assert engine.get_position_ratio() == 0.0
    assert engine.channel_snapshot() == []
    assert len(events['errors']) == 6
    assert engine.last_error


@pytest.mark.parametrize("duration", [0, -2.0, 61.0, float('nan')])
def test_initialize_rejects_bad_duration(output, time_source, scheduler, duration):
    engine = make_engine(None, output, time_source, scheduler)
    assert engine.initialize_loop_buffer(duration) is False
    assert not engine.has_buffer
    assert "Failed to create empty loop" in engine.last_error


@pytest.mark.asyncio
async def test_no_capture_configured(output, time_source, scheduler):
    engine = make_engine(None, output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)
    assert await engine.start_loop_recording_at(0.0, 1.0) is False
    assert engine.mode == EngineMode.IDLE


@pytest.mark.asyncio
async def test_invalid_start_does_not_stop_playback(output, time_source, scheduler):
    engine = make_engine(FakeCapture(), output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)
    engine.play_loop_with_tracking(0.0)

    assert await engine.start_loop_recording_at(4.5, 1.0) is False
    assert engine.mode == EngineMode.PLAYING
    assert output.stops == 0


@pytest.mark.asyncio
async def test_capture_failure_leaves_engine_idle(output, time_source, scheduler, events):
    engine = make_engine(FakeCapture(fail_start=True), output, time_source, scheduler)
    listen(engine, events)
    engine.initialize_loop_buffer(4.0)
    before = engine.buffer

    assert await engine.start_loop_recording_at(1.0, 1.0) is False
    assert engine.mode == EngineMode.IDLE
    assert engine.recording_state == RecordingState.IDLE
    assert engine.segments == ()
    assert engine.buffer is before
    assert "microphone unavailable" in engine.last_error
    assert events['errors']


@pytest.mark.asyncio
async def test_decode_failure_keeps_loop(output, time_source, scheduler, events):
    capture = FakeCapture(b"not a wav file")
    engine = make_engine(capture, output, time_source, scheduler)
    listen(engine, events)
    engine.initialize_loop_buffer(4.0)
    before = engine.buffer

    await engine.start_loop_recording_at(0.0, 1.0)
    scheduler.advance(0.3)
    assert await engine.stop_loop_recording_and_merge() is False

    assert engine.buffer is before
    assert engine.mode == EngineMode.IDLE
    assert events['complete'] == [False]
    assert "Failed to merge recording" in engine.last_error

    # A later pass still works
    capture.artifact = wav_bytes(make_tone(220.0, 1.0, SR, 2))
    assert await engine.start_loop_recording_at(0.0, 1.0)
    assert await engine.stop_loop_recording_and_merge()
    assert engine.buffer is not before


@pytest.mark.asyncio
async def test_empty_capture_reports_no_audio(output, time_source, scheduler):
    engine = make_engine(FakeCapture(b""), output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)
    await engine.start_loop_recording_at(0.0, 1.0)
    scheduler.advance(1.0)

    assert await engine.wait_for_recording() is False
    assert "no audio captured" in engine.last_error


def test_callback_errors_are_contained(output, time_source, scheduler):
    engine = make_engine(None, output, time_source, scheduler)

    def broken(*args):
        raise RuntimeError("listener bug")

    engine.on('position_update', broken)
    engine.on('no_such_event', broken)
    assert engine.initialize_loop_buffer(4.0)
    assert engine.seek(1.0)

    engine.off('position_update', broken)
    assert engine.seek(2.0)


# =============================================================================
# Export, visualization and lifecycle
# =============================================================================

@pytest.mark.asyncio
async def test_export_is_cached_until_loop_changes(output, time_source, scheduler):
    tone = make_tone(440.0, 1.0, SR, 2)
    engine = make_engine(FakeCapture(wav_bytes(tone)), output, time_source, scheduler)
    engine.initialize_loop_buffer(2.0)

    first = engine.export_loop_to_blob()
    assert first.mime_type == "audio/wav"
    assert engine.export_loop_to_blob() is first

    await engine.start_loop_recording_at(0.0, 1.0)
    scheduler.advance(1.0)
    await engine.wait_for_recording()

    second = engine.export_loop_to_blob()
    assert second is not first
    assert second.data != first.data
    assert len(second.data) == len(first.data)


@pytest.mark.asyncio
async def test_waveform_data_reflects_recording(output, time_source, scheduler, events):
    tone = make_tone(440.0, 1.0, SR, 2, amplitude=0.5)
    engine = make_engine(FakeCapture(wav_bytes(tone)), output, time_source, scheduler)
    listen(engine, events)
    engine.initialize_loop_buffer(4.0)
    assert engine.get_waveform_data(4) == [0.0, 0.0, 0.0, 0.0]

    await engine.start_loop_recording_at(0.0, 1.0)
    scheduler.advance(1.0)
    await engine.wait_for_recording()

    peaks = engine.get_waveform_data(4)
    assert peaks[0] == pytest.approx(0.5, abs=1e-3)
    assert peaks[1:] == [0.0, 0.0, 0.0]
    # Initial silent loop plus the merged one
    assert len(events['buffers']) == 2
    assert len(events['buffers'][-1]) == 2


def test_initialize_discards_previous_loop(output, time_source, scheduler):
    engine = make_engine(None, output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)
    engine.seek(3.0)
    first = engine.buffer

    assert engine.initialize_loop_buffer(2.0)
    assert engine.buffer is not first
    assert engine.loop_duration == 2.0
    assert engine.position == 0.0
    assert engine.segments == ()


@pytest.mark.asyncio
async def test_cleanup_during_recording(output, time_source, scheduler):
    tone = make_tone(220.0, 1.0, SR, 2)
    capture = FakeCapture(wav_bytes(tone))
    engine = make_engine(capture, output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)
    await engine.start_loop_recording_at(0.0, 1.0)

    engine.cleanup()
    await asyncio.sleep(0)

    assert engine.mode == EngineMode.IDLE
    assert not engine.has_buffer
    assert output.closed
    assert scheduler.pending == 0
    assert capture.stops == 1

    assert engine.initialize_loop_buffer(4.0)


# =============================================================================
# Prior state survives failures and teardown
# =============================================================================

@pytest.mark.asyncio
async def test_failed_start_keeps_idle_playhead(output, time_source, scheduler):
    engine = make_engine(FakeCapture(fail_start=True), output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)
    engine.seek(2.0)

    assert await engine.start_loop_recording_at(1.0, 1.0) is False
    assert engine.position == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_failed_start_after_playback_keeps_stop_point(output, time_source, scheduler):
    engine = make_engine(FakeCapture(fail_start=True), output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)
    engine.play_loop_with_tracking(0.0)
    scheduler.advance(0.5)

    assert await engine.start_loop_recording_at(1.0, 1.0) is False
    assert engine.mode == EngineMode.IDLE
    assert engine.position == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_playhead_during_capture_start_is_stop_point(output, time_source, scheduler):
    gate = asyncio.Event()
    tone = make_tone(220.0, 1.0, SR, 2)
    engine = make_engine(FakeCapture(wav_bytes(tone), start_gate=gate),
                         output, time_source, scheduler)
    engine.initialize_loop_buffer(4.0)
    engine.play_loop_with_tracking(0.0)
    scheduler.advance(0.5)

    task = asyncio.create_task(engine.start_loop_recording_at(1.0, 1.0))
    await asyncio.sleep(0)
    assert engine.recording_state == RecordingState.STARTING
    assert engine.position == pytest.approx(0.5)

    gate.set()
    assert await task is True


@pytest.mark.asyncio
async def test_cleanup_during_merge_discards_result(output, time_source, scheduler, events):
    gate = asyncio.Event()
    tone = make_tone(220.0, 1.0, SR, 2)
    engine = make_engine(FakeCapture(wav_bytes(tone), stop_gate=gate),
                         output, time_source, scheduler)
    listen(engine, events)
    engine.initialize_loop_buffer(4.0)
    await engine.start_loop_recording_at(0.0, 1.0)
    scheduler.advance(0.5)

    stopping = asyncio.create_task(engine.stop_loop_recording_and_merge())
    await asyncio.sleep(0)
    assert engine.recording_state == RecordingState.MERGING

    engine.cleanup()
    gate.set()

    assert await stopping is False
    assert not engine.has_buffer
    assert engine.mode == EngineMode.IDLE
    assert len(events['buffers']) == 1
    assert events['complete'] == [False]
    assert "discarded" in engine.last_error
