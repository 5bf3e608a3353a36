import numpy as np
import pytest

from heartbeat_pipeline.heart_rate import (
    estimate_heart_rate,
    mask_heart_rate,
    sliding_heart_rate,
    to_unit,
)
from heartbeat_pipeline.windows import TimeWindow

from conftest import pulse_times

WINDOW = 0.6


def test_regular_train_gives_constant_rate():
    beats = pulse_times()
    trace = sliding_heart_rate(beats, WINDOW)

    assert len(trace) == len(beats) - 1
    assert np.allclose(trace.times, beats[1:])
    assert np.allclose(trace.rate, 5.0)
    assert np.allclose(trace.in_units("bpm"), 300.0)


def test_interval_longer_than_window_is_used():
    trace = sliding_heart_rate([0.0, 1.0, 2.0], window_sec=0.5)
    assert np.allclose(trace.rate, 1.0)


def test_rate_follows_trailing_window():
    beats = [0.0, 0.2, 0.4, 0.6, 0.7, 0.8, 0.9]
    trace = sliding_heart_rate(beats, window_sec=0.3)
    # Only the 0.1 s intervals fall inside the trailing window
    assert trace.rate[-1] == pytest.approx(10.0)


def test_too_few_beats_give_empty_trace():
    assert len(sliding_heart_rate([], WINDOW)) == 0
    assert len(sliding_heart_rate([1.0], WINDOW)) == 0


def test_masking_covers_window_and_lag():
    beats = pulse_times()
    trace = estimate_heart_rate(beats, WINDOW, artifacts=[TimeWindow(5.0, 5.5)])

    t = trace.times
    masked = np.isnan(trace.rate)
    assert masked[(t > 5.0) & (t < 6.0)].all()
    assert not masked[t < 4.95].any()
    assert not masked[t > 6.2].any()


def test_artifact_over_last_beat_leaves_nothing_inside():
    beats = pulse_times()
    trace = estimate_heart_rate(beats, WINDOW, exclusions=[TimeWindow(19.8, 20.0)])

    inside = (trace.times >= 19.8) & (trace.times < 20.0)
    assert inside.any()
    assert not np.isfinite(trace.rate[inside]).any()


def test_masking_does_not_modify_trace():
    trace = sliding_heart_rate(pulse_times(), WINDOW)
    before = trace.rate.copy()
    mask_heart_rate(trace, [TimeWindow(2.0, 3.0)], WINDOW)
    assert np.array_equal(trace.rate, before)


@pytest.mark.parametrize("unit, factor", [("bpm", 60.0), ("BPM", 60.0), ("Hz", 1.0), ("hz", 1.0)])
def test_unit_conversion(unit, factor):
    assert to_unit(np.array([2.0]), unit)[0] == pytest.approx(2.0 * factor)


def test_unknown_unit_rejected():
    with pytest.raises(ValueError):
        to_unit(np.array([1.0]), "mmHg")
