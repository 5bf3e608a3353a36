import numpy as np
import pytest

from heartbeat_pipeline.config import Config
from heartbeat_pipeline.exceptions import InvalidFilterBand
from heartbeat_pipeline.io_utils import RawSignal
from heartbeat_pipeline.preprocess import (
    check_polarity,
    condition_signal,
    filter_ecg,
    gaussian_smooth,
    notch_filter,
    processing_rate,
    validate_filter_band,
)


@pytest.mark.parametrize("raw_fs, target, expected", [
    (4000.0, 1000.0, (1000.0, 4)),
    (2500.0, 1000.0, (2500.0 / 3, 3)),
    (1000.0, 1000.0, (1000.0, 1)),
    (500.0, 1000.0, (500.0, 1)),
])
def test_processing_rate(raw_fs, target, expected):
    fs, factor = processing_rate(raw_fs, target)
    assert factor == expected[1]
    assert fs == pytest.approx(expected[0])


def test_decimation_aligns_on_last_sample():
    fs = 4000.0
    n = 8003
    times = np.arange(n) / fs
    raw = RawSignal.from_arrays(np.sin(2 * np.pi * 7 * times), times=times, fs=fs)
    config = Config(BANDPASS_ENABLE=False, ARTIFACT_REMOVAL_ENABLE=False)

    conditioned = condition_signal(raw, config)

    assert conditioned.decimation_factor == 4
    assert conditioned.fs == pytest.approx(1000.0)
    assert conditioned.times[-1] == pytest.approx(times[-1])
    assert np.allclose(np.diff(conditioned.times), 0.001)
    assert len(conditioned.values) == len(conditioned.times)


def test_conditioning_removes_mean_and_inverts():
    times = np.arange(2000) / 1000.0
    values = 5.0 + np.sin(2 * np.pi * 3 * times)
    raw = RawSignal.from_arrays(values, times=times, fs=1000.0)

    plain = condition_signal(raw, Config(BANDPASS_ENABLE=False))
    inverted = condition_signal(raw, Config(BANDPASS_ENABLE=False, INVERSE_ECG=True))

    assert np.nanmean(plain.values) == pytest.approx(0.0, abs=1e-9)
    assert np.allclose(inverted.values, -plain.values)


def test_conditioning_is_deterministic(regular_recording):
    config = Config()
    first = condition_signal(regular_recording, config)
    second = condition_signal(regular_recording, config)
    assert np.array_equal(first.values, second.values)


def test_dedrift_removes_slow_wander():
    times = np.arange(10000) / 1000.0
    drift = 2.0 * times / times[-1]
    raw = RawSignal.from_arrays(drift, times=times, fs=1000.0)
    config = Config(BANDPASS_ENABLE=False, DEDRIFT_ENABLE=True, DEDRIFT_KERNEL_SEC=1.0)

    conditioned = condition_signal(raw, config)

    # Away from the edges a linear trend is removed entirely
    assert np.max(np.abs(conditioned.values[1000:-1000])) < 1e-6


def test_bandpass_attenuates_out_of_band():
    fs = 1000.0
    t = np.arange(5000) / fs
    slow = np.sin(2 * np.pi * 2 * t)
    fast = np.sin(2 * np.pi * 100 * t)
    filtered = filter_ecg(slow + fast, fs, lowcut=60.0, highcut=180.0)
    core = slice(500, -500)
    assert np.std(filtered[core] - fast[core]) < 0.05


def test_notch_removes_mains():
    fs = 1000.0
    t = np.arange(5000) / fs
    mains = np.sin(2 * np.pi * 50 * t)
    filtered = notch_filter(mains, fs, freq=50.0, guard=5.0)
    assert np.std(filtered[500:-500]) < 0.05


def test_gaussian_smooth_keeps_gaps():
    x = np.ones(50)
    x[20:25] = np.nan
    smoothed = gaussian_smooth(x, 9)
    assert np.all(np.isnan(smoothed[20:25]))
    assert np.allclose(smoothed[~np.isnan(x)], 1.0)


@pytest.mark.parametrize("low, high", [(180.0, 60.0), (0.0, 100.0), (60.0, 500.0)])
def test_invalid_filter_band(low, high):
    with pytest.raises(InvalidFilterBand):
        validate_filter_band(low, high, 1000.0)


def test_polarity_flags_inverted_signal(regular_recording):
    upright = check_polarity(np.asarray(regular_recording.values))
    inverted = check_polarity(-np.asarray(regular_recording.values))
    assert not upright.is_inverted
    assert inverted.is_inverted
