"""
ECG signal conditioning module.

Provides decimation to the processing rate, mean removal, optional
inversion and drift removal, zero-phase Butterworth band-pass filtering
and mains rejection, plus the NaN-aware Gaussian smoothing used by the
artifact and beat detectors.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np
from scipy import ndimage, signal, stats

from .config import Config, default_config
from .exceptions import InvalidFilterBand
from .io_utils import RawSignal
from .windows import TimeWindow

logger = logging.getLogger(__name__)

# Times on the processing grid are rounded to this many decimals
TIME_DECIMALS = 6


@dataclass
class ConditionedSignal:
    """Signal on the processing grid, ready for detection."""
    values: np.ndarray       # Conditioned signal (NaN inside artifacts)
    times: np.ndarray        # Time in seconds
    fs: float                # Processing sampling rate
    decimation_factor: int   # Raw samples per processing sample
    artifacts: List[TimeWindow] = field(default_factory=list)
    artifact_ranges: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def n_samples(self) -> int:
        """Number of samples."""
        return len(self.values)

    @property
    def start(self) -> float:
        return float(self.times[0])

    @property
    def end(self) -> float:
        return float(self.times[-1])


@dataclass
class PolarityResult:
    """Result of polarity check."""
    skewness: float
    is_inverted: bool
    recommendation: str


def processing_rate(raw_fs: float, target_fs: float) -> Tuple[float, int]:
    """
    Processing rate reached by integer decimation.

    Parameters
    ----------
    raw_fs : float
        Sampling rate of the recording in Hz.
    target_fs : float
        Highest processing rate wanted.

    Returns
    -------
    Tuple[float, int]
        (processing rate, decimation factor). The factor is 1 when the
        recording is not faster than the target.
    """
    if raw_fs <= target_fs:
        return float(raw_fs), 1
    factor = int(math.ceil(raw_fs / target_fs))
    return raw_fs / factor, factor


def validate_filter_band(low: float, high: float, fs: float) -> None:
    """
    Check band-pass cutoffs against the sampling rate.

    Raises
    ------
    InvalidFilterBand
        If low <= 0, low >= high or high >= Nyquist.
    """
    nyquist = fs / 2.0
    if low <= 0 or low >= high or high >= nyquist:
        raise InvalidFilterBand(low, high, nyquist)


def gaussian_smooth(x: np.ndarray, window: float) -> np.ndarray:
    """
    Gaussian-weighted moving average that ignores missing samples.

    The kernel spans `window` samples (rounded up to an odd count) with a
    standard deviation of window / 5. Each output sample is the weighted
    mean of the finite samples under the kernel, so the window shrinks
    naturally at the signal edges and around NaN gaps. Samples that are
    NaN on input stay NaN.

    Parameters
    ----------
    x : np.ndarray
        Input signal, possibly containing NaN.
    window : float
        Kernel width in samples.

    Returns
    -------
    np.ndarray
        Smoothed signal.
    """
    x = np.asarray(x, dtype=float)
    n = max(1, int(round(window)))
    if n % 2 == 0:
        n += 1
    if n == 1 or x.size == 0:
        return x.copy()

    sigma = max(window, 1.0) / 5.0
    t = np.arange(n) - n // 2
    kernel = np.exp(-0.5 * (t / sigma) ** 2)

    finite = np.isfinite(x)
    numerator = ndimage.convolve1d(np.where(finite, x, 0.0), kernel, mode="constant", cval=0.0)
    weights = ndimage.convolve1d(finite.astype(float), kernel, mode="constant", cval=0.0)

    smoothed = np.full(x.shape, np.nan)
    valid = finite & (weights > 0)
    smoothed[valid] = numerator[valid] / weights[valid]
    return smoothed


def filter_ecg(
    ecg: np.ndarray,
    fs: float,
    lowcut: float = None,
    highcut: float = None,
    order: int = None,
    config: Config = default_config,
) -> np.ndarray:
    """
    Apply zero-phase Butterworth bandpass filter to ECG signal.

    Uses scipy.signal.filtfilt for zero-phase filtering,
    which prevents phase distortion that could affect R-peak timing.

    Parameters
    ----------
    ecg : np.ndarray
        ECG signal without missing samples.
    fs : float
        Sampling frequency in Hz.
    lowcut : float, optional
        Low cutoff frequency in Hz. Defaults to config.BANDPASS_LOW.
    highcut : float, optional
        High cutoff frequency in Hz. Defaults to config.BANDPASS_HIGH.
    order : int, optional
        Filter order. Defaults to config.FILTER_ORDER.
    config : Config
        Pipeline configuration.

    Returns
    -------
    np.ndarray
        Filtered ECG signal.
    """
    if lowcut is None:
        lowcut = config.BANDPASS_LOW
    if highcut is None:
        highcut = config.BANDPASS_HIGH
    if order is None:
        order = config.FILTER_ORDER

    nyquist = fs / 2.0
    low = lowcut / nyquist
    high = highcut / nyquist

    # Cutoffs are validated at the parameter boundary; clamp here only
    if low <= 0:
        low = 0.001
    if high >= 1:
        high = 0.999

    b, a = signal.butter(order, [low, high], btype='band')
    return _filtfilt(b, a, ecg)


def notch_filter(
    ecg: np.ndarray,
    fs: float,
    freq: float = None,
    guard: float = None,
    order: int = None,
    config: Config = default_config,
) -> np.ndarray:
    """
    Remove mains interference with a zero-phase band-stop filter.

    Parameters
    ----------
    ecg : np.ndarray
        ECG signal.
    fs : float
        Sampling frequency in Hz.
    freq : float, optional
        Mains frequency in Hz. Defaults to config.POWER_GRID.
    guard : float, optional
        Half width of the stop band in Hz. Defaults to config.NOTCH_GUARD_HZ.
    order : int, optional
        Filter order. Defaults to config.FILTER_ORDER.
    config : Config
        Pipeline configuration.

    Returns
    -------
    np.ndarray
        Filtered signal (unchanged if the stop band exceeds Nyquist).
    """
    if freq is None:
        freq = config.POWER_GRID
    if guard is None:
        guard = config.NOTCH_GUARD_HZ
    if order is None:
        order = config.FILTER_ORDER

    nyquist = fs / 2.0
    if freq + guard >= nyquist or freq - guard <= 0:
        logger.warning(
            "Notch %.1f +/- %.1f Hz does not fit below Nyquist (%.1f Hz); skipped",
            freq, guard, nyquist,
        )
        return np.asarray(ecg, dtype=float)

    b, a = signal.butter(order, [(freq - guard) / nyquist, (freq + guard) / nyquist], btype='bandstop')
    return _filtfilt(b, a, ecg)


def _filtfilt(b: np.ndarray, a: np.ndarray, x: np.ndarray) -> np.ndarray:
    padlen = min(3 * max(len(a), len(b)), len(x) - 1)
    try:
        return signal.filtfilt(b, a, x, padlen=padlen)
    except ValueError as e:
        # Fallback for very short signals
        logger.warning("Filter warning: %s. Using minimum padding.", e)
        return signal.filtfilt(b, a, x, padlen=min(10, len(x) - 1))


def decimate_signal(raw: RawSignal, factor: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Low-pass filter and keep every `factor`-th raw sample.

    The first kept sample is chosen so that the last one is the final raw
    sample, i.e. the stride is aligned on the end of the recording.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (values, times) on the processing grid.
    """
    if factor <= 1:
        return np.asarray(raw.values, dtype=float).copy(), np.round(raw.times, TIME_DECIMALS)

    first = (raw.n_samples - 1) % factor
    values = signal.decimate(np.asarray(raw.values[first:], dtype=float), factor, ftype='iir', zero_phase=True)
    times = np.round(raw.times[first::factor], TIME_DECIMALS)
    return values[: len(times)], times


def condition_signal(raw: RawSignal, config: Config = default_config) -> ConditionedSignal:
    """
    Bring a raw recording to the processing grid and condition it.

    Steps, in order: decimation (when the recording is faster than
    config.PROCESSING_SAMPLING_RATE), mean removal, optional inversion,
    optional drift removal, optional band-pass and optional mains notch.

    Parameters
    ----------
    raw : RawSignal
        Loaded recording.
    config : Config
        Pipeline configuration.

    Returns
    -------
    ConditionedSignal
        Conditioned signal without artifact masking.
    """
    fs, factor = processing_rate(raw.fs, config.PROCESSING_SAMPLING_RATE)
    values, times = decimate_signal(raw, factor)
    if factor > 1:
        logger.info("Decimated %.1f Hz -> %.1f Hz (factor %d)", raw.fs, fs, factor)

    values = values - np.nanmean(values)

    if config.INVERSE_ECG:
        values = -values

    if config.DEDRIFT_ENABLE:
        values = values - gaussian_smooth(values, config.DEDRIFT_KERNEL_SEC * fs)

    if config.BANDPASS_ENABLE:
        values = filter_ecg(values, fs, config=config)

    if config.NOTCH_ENABLE:
        values = notch_filter(values, fs, config=config)

    return ConditionedSignal(values=values, times=times, fs=fs, decimation_factor=factor)


def check_polarity(
    ecg: np.ndarray,
    config: Config = default_config,
) -> PolarityResult:
    """
    Check signal polarity using skewness analysis.

    ECG signals typically have positive skewness due to the sharp R-peak.
    Negative skewness suggests the signal is inverted. The result is
    advisory: inversion is only applied through config.INVERSE_ECG.

    Parameters
    ----------
    ecg : np.ndarray
        ECG signal (should be filtered for best results).
    config : Config
        Pipeline configuration with SKEWNESS_THRESHOLD.

    Returns
    -------
    PolarityResult
        Polarity analysis result with recommendation.
    """
    skewness = float(stats.skew(ecg, nan_policy='omit'))
    is_inverted = skewness < config.SKEWNESS_THRESHOLD

    if is_inverted:
        recommendation = (
            f"Signal appears INVERTED (skewness={skewness:.3f} < {config.SKEWNESS_THRESHOLD}). "
            "Consider setting INVERSE_ECG."
        )
    else:
        recommendation = (
            f"Signal polarity OK (skewness={skewness:.3f}). "
            "No inversion needed."
        )

    return PolarityResult(
        skewness=skewness,
        is_inverted=is_inverted,
        recommendation=recommendation,
    )
