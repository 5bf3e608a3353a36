"""
Artifact detection.

Flags high-energy bursts (motion, electrode pops) in the conditioned
signal, masks them with NaN and reports them as time windows.
"""

import logging
from dataclasses import replace
from typing import List, Tuple

import numpy as np
from scipy import signal

from .config import Config, default_config
from .preprocess import ConditionedSignal, gaussian_smooth
from .windows import TimeWindow, contiguous_runs

logger = logging.getLogger(__name__)


def elevated_energy(values: np.ndarray, power: float, window: float) -> np.ndarray:
    """Power transform, Gaussian smoothing, then squaring."""
    return gaussian_smooth(np.abs(values) ** power, window) ** 2


def detect_artifacts(
    values: np.ndarray,
    fs: float,
    config: Config = default_config,
) -> List[Tuple[int, int]]:
    """
    Locate corrupted stretches of a conditioned signal.

    The elevated signal is ``smooth(|x| ** POWER) ** 2``. Its local maxima
    with a prominence of at least the median elevated value are collected,
    and ARTIFACT_SAFETY_FACTOR times the ARTIFACT_PERCENTILE-th percentile
    of their heights becomes the exclusion threshold. Runs of samples above
    it (when more than two samples exceed it) closer than
    ARTIFACT_MERGE_SEC are merged and padded by ARTIFACT_PAD_SEC.

    Parameters
    ----------
    values : np.ndarray
        Conditioned signal.
    fs : float
        Sampling rate in Hz.
    config : Config
        Pipeline configuration.

    Returns
    -------
    List[Tuple[int, int]]
        Inclusive sample index ranges, sorted and disjoint.
    """
    elevated = elevated_energy(values, config.POWER, config.ARTIFACT_SMOOTHING)
    finite = np.nan_to_num(elevated, nan=0.0)
    prominence = float(np.nanmedian(elevated)) if np.isfinite(elevated).any() else 0.0
    peaks, _ = signal.find_peaks(finite, prominence=prominence)
    if peaks.size == 0:
        return []

    threshold = config.ARTIFACT_SAFETY_FACTOR * np.percentile(finite[peaks], config.ARTIFACT_PERCENTILE)
    above = finite > threshold
    if np.count_nonzero(above) <= 2:
        return []

    merge_gap = config.ARTIFACT_MERGE_SEC * fs
    pad = int(round(config.ARTIFACT_PAD_SEC * fs))
    last = len(values) - 1

    ranges: List[Tuple[int, int]] = []
    for first, stop in contiguous_runs(above):
        if ranges and first - ranges[-1][1] < merge_gap:
            ranges[-1] = (ranges[-1][0], stop)
        else:
            ranges.append((first, stop))

    padded: List[Tuple[int, int]] = []
    for first, stop in ranges:
        first, stop = max(0, first - pad), min(last, stop + pad)
        if padded and first <= padded[-1][1]:
            padded[-1] = (padded[-1][0], stop)
        else:
            padded.append((first, stop))

    logger.info("Detected %d artifact range(s) above threshold %.4g", len(padded), threshold)
    return padded


def remove_artifacts(conditioned: ConditionedSignal, config: Config = default_config) -> ConditionedSignal:
    """
    Mask artifact ranges of a conditioned signal with NaN.

    Returns a new ConditionedSignal carrying the artifact windows; the
    input is left untouched. Does nothing when ARTIFACT_REMOVAL_ENABLE
    is off.
    """
    if not config.ARTIFACT_REMOVAL_ENABLE:
        return replace(conditioned, artifacts=[], artifact_ranges=[])

    ranges = detect_artifacts(conditioned.values, conditioned.fs, config)
    values = conditioned.values.copy()
    windows = []
    step = 1.0 / conditioned.fs
    for first, stop in ranges:
        values[first:stop + 1] = np.nan
        windows.append(TimeWindow(float(conditioned.times[first]), float(conditioned.times[stop]) + step))

    return replace(conditioned, values=values, artifacts=windows, artifact_ranges=ranges)
