"""
Heart-rate estimation from validated beat times.

The rate at each beat is the number of intervals ending in a trailing
window divided by the time they span, so transitions are smoothed over
the window rather than stepped. Samples whose window touches an artifact
or exclusion window are reported as missing.
"""

from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

from .windows import TimeWindow, in_any_window

_UNIT_FACTORS = {"bpm": 60.0, "hz": 1.0}


@dataclass
class HeartRateTrace:
    """Heart rate sampled at beat times."""
    times: np.ndarray   # Beat times in seconds
    rate: np.ndarray    # Beats per second (NaN where masked)

    def __len__(self) -> int:
        return len(self.times)

    def in_units(self, unit: str = "bpm") -> np.ndarray:
        """Rate in "bpm" or "Hz"; the stored values are never modified."""
        return to_unit(self.rate, unit)


def to_unit(rate: np.ndarray, unit: str) -> np.ndarray:
    """Convert a rate in beats per second to `unit` ("bpm" or "Hz")."""
    factor = _UNIT_FACTORS.get(unit.lower())
    if factor is None:
        raise ValueError(f"Unknown heart-rate unit '{unit}'. Use 'bpm' or 'Hz'.")
    return np.asarray(rate, dtype=float) * factor


def sliding_heart_rate(beats: Sequence[float], window_sec: float) -> HeartRateTrace:
    """
    Trailing-window heart rate at every beat but the first.

    Parameters
    ----------
    beats : Sequence[float]
        Sorted beat times in seconds.
    window_sec : float
        Trailing window length in seconds. At least the last interval is
        always used, even when it is longer than the window.

    Returns
    -------
    HeartRateTrace
        One sample per beat from the second beat on.
    """
    beats = np.asarray(beats, dtype=float)
    if beats.size < 2:
        return HeartRateTrace(times=np.array([]), rate=np.array([]))

    index = np.arange(1, beats.size)
    times = beats[1:]
    first = np.searchsorted(beats, times - window_sec, side="left")
    first = np.minimum(first, index - 1)
    rate = (index - first) / (times - beats[first])
    return HeartRateTrace(times=times.copy(), rate=rate)


def mask_heart_rate(
    trace: HeartRateTrace,
    windows: Iterable[TimeWindow],
    window_sec: float,
) -> HeartRateTrace:
    """Set to NaN every sample with ``start <= t <= end + window_sec`` for any window."""
    rate = trace.rate.astype(float).copy()
    rate[in_any_window(trace.times, windows, extend=window_sec)] = np.nan
    return HeartRateTrace(times=trace.times.copy(), rate=rate)


def estimate_heart_rate(
    beats: Sequence[float],
    window_sec: float,
    artifacts: Iterable[TimeWindow] = (),
    exclusions: Iterable[TimeWindow] = (),
) -> HeartRateTrace:
    """Sliding-window heart rate with artifact and exclusion windows masked out."""
    trace = sliding_heart_rate(beats, window_sec)
    return mask_heart_rate(trace, list(artifacts) + list(exclusions), window_sec)
