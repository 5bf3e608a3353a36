"""Shared synthetic recordings."""

import numpy as np
import pytest

from heartbeat_pipeline.config import Config
from heartbeat_pipeline.io_utils import RawSignal

FS = 1000.0
PERIOD = 0.2        # 300 bpm
FIRST_BEAT = 0.3
DURATION = 20.0


def pulse_times(duration=DURATION, period=PERIOD, first=FIRST_BEAT):
    n = int(np.floor(round((duration - 0.1 - first) / period, 9))) + 1
    return np.round(first + period * np.arange(n), 6)


def make_recording(
    beats=None,
    duration=DURATION,
    fs=FS,
    width=0.003,
    amplitude=1.0,
    noise=0.02,
    extra=(),
    seed=0,
):
    """Gaussian pulses at `beats` plus optional (time, width, amplitude) bumps and noise."""
    if beats is None:
        beats = pulse_times(duration)
    times = np.arange(int(round(duration * fs))) / fs
    values = np.zeros_like(times)
    for t, w, a in [(b, width, amplitude) for b in beats] + list(extra):
        lo = np.searchsorted(times, t - 8 * w)
        hi = np.searchsorted(times, t + 8 * w)
        values[lo:hi] += a * np.exp(-0.5 * ((times[lo:hi] - t) / w) ** 2)
    if noise:
        values += noise * np.random.default_rng(seed).standard_normal(times.size)
    return RawSignal.from_arrays(values, times=times, fs=fs, source="synthetic")


@pytest.fixture
def test_config():
    """Mouse preset tuned for the clean 300 bpm synthetic train."""
    return Config.for_species(
        "Mouse",
        BANDPASS_ENABLE=False,
        ARTIFACT_REMOVAL_ENABLE=False,
        THRESHOLD=1e-3,
        SUSPICIOUS_FREQ_HIGH=8.0,
        SUSPICIOUS_FREQ_LOW=3.0,
    )


@pytest.fixture
def regular_recording():
    return make_recording()


@pytest.fixture
def true_beats():
    return pulse_times()
