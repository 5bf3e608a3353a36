"""
Per-candidate waveform extraction and template scoring.

Cuts a fixed window around every candidate, locates its precise peak
near the template's reference offset, and scores its shape against the
template with a normalized cross-correlation.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional, Tuple

import numpy as np
from scipy import signal

from .config import Config, default_config
from .io_utils import RawSignal
from .preprocess import condition_signal
from .rpeak import CandidateSet
from .template import WaveformTemplate, cut_windows, zscore_rows

logger = logging.getLogger(__name__)


@dataclass
class BeatWaveforms:
    """Waveforms and scores of the usable candidates (index-aligned)."""
    indices: np.ndarray       # Candidate sample indices
    times: np.ndarray         # Candidate times in seconds
    shapes: np.ndarray        # One waveform per row
    scores: np.ndarray        # Shape score in [0, 1]
    peak_indices: np.ndarray  # Precise peak sample per candidate
    peak_times: np.ndarray
    peak_values: np.ndarray
    max_corr: float           # Highest raw cross-correlation (normalizer)

    @property
    def n_beats(self) -> int:
        return len(self.indices)


def locate_peak(values: np.ndarray, reference: int) -> Optional[int]:
    """
    Position of the maximum of `values`.

    Ties are resolved by the smallest distance to `reference`, then by the
    earlier position. Returns None if every value is missing.
    """
    values = np.asarray(values, dtype=float)
    finite = np.isfinite(values)
    if not finite.any():
        return None
    top = np.nanmax(values)
    tied = np.flatnonzero(finite & (values == top))
    distance = np.abs(tied - reference)
    return int(tied[np.argmin(distance)])


def correlation_peaks(shapes: np.ndarray, template: np.ndarray) -> np.ndarray:
    """Maximum full cross-correlation of each standardized shape with the template."""
    standardized = np.nan_to_num(zscore_rows(shapes), nan=0.0)
    reference = np.nan_to_num(template, nan=0.0)
    return np.array([np.max(signal.correlate(row, reference, mode='full')) for row in standardized])


def extract_waveforms(
    values: np.ndarray,
    times: np.ndarray,
    candidates: CandidateSet,
    template: WaveformTemplate,
    config: Config = default_config,
) -> BeatWaveforms:
    """
    Extract waveforms, precise peaks and shape scores for all candidates.

    Candidates whose peak search window is entirely missing (inside an
    artifact gap) are dropped from every returned array.

    Parameters
    ----------
    values : np.ndarray
        Conditioned signal.
    times : np.ndarray
        Time array in seconds.
    candidates : CandidateSet
        Detected candidates.
    template : WaveformTemplate
        Beat template.
    config : Config
        Pipeline configuration.

    Returns
    -------
    BeatWaveforms
        Index-aligned waveforms, peaks and scores.
    """
    low = config.WAVEFORM_WINDOW_LOW
    shapes = cut_windows(values, candidates.indices, low, config.WAVEFORM_WINDOW_HIGH)

    first = template.reference_offset - template.peak_range
    last = template.reference_offset + template.peak_range
    keep = np.zeros(candidates.n_candidates, dtype=bool)
    peak_indices = np.zeros(candidates.n_candidates, dtype=int)
    for i, shape in enumerate(shapes):
        position = locate_peak(shape[first:last + 1], template.peak_range)
        if position is None:
            continue
        keep[i] = True
        peak_indices[i] = candidates.indices[i] + low + first + position

    dropped = int(np.count_nonzero(~keep))
    if dropped:
        logger.warning("Dropped %d candidate(s) whose peak window lies in an artifact gap", dropped)

    shapes = shapes[keep]
    peak_indices = peak_indices[keep]
    correlations = correlation_peaks(shapes, template.values) if len(shapes) else np.array([])
    max_corr = float(np.max(correlations)) if correlations.size else 0.0
    if max_corr > 0:
        scores = np.clip(correlations / max_corr, 0.0, 1.0)
    else:
        scores = np.zeros(len(correlations))

    times = np.asarray(times)
    return BeatWaveforms(
        indices=candidates.indices[keep],
        times=candidates.times[keep],
        shapes=shapes,
        scores=scores,
        peak_indices=peak_indices,
        peak_times=times[peak_indices],
        peak_values=np.asarray(values)[peak_indices],
        max_corr=max_corr,
    )


def nearest_index(reference_times: np.ndarray, times) -> np.ndarray:
    """Index of the nearest reference time for every entry of `times`."""
    reference_times = np.asarray(reference_times, dtype=float)
    times = np.asarray(times, dtype=float)
    if len(reference_times) == 1:
        return np.zeros(times.shape, dtype=int)
    right = np.clip(np.searchsorted(reference_times, times), 1, len(reference_times) - 1)
    left = right - 1
    choose_left = np.abs(times - reference_times[left]) <= np.abs(reference_times[right] - times)
    return np.where(choose_left, left, right)


def shape_scores_for(beats, waveforms: BeatWaveforms) -> np.ndarray:
    """Shape score of each beat, taken from its nearest candidate."""
    if waveforms.n_beats == 0:
        return np.zeros(len(beats))
    return waveforms.scores[nearest_index(waveforms.times, beats)]


def refine_peaks(
    ecg: np.ndarray,
    peak_indices: np.ndarray,
    half_width: int,
) -> np.ndarray:
    """
    Refine peak positions to the local maximum within ``+/- half_width`` samples.

    Ties go to the sample nearest the initial position. Positions whose
    search window is entirely missing are left unchanged.
    """
    refined = np.asarray(peak_indices, dtype=int).copy()
    for i, idx in enumerate(refined):
        start = max(0, idx - half_width)
        end = min(len(ecg), idx + half_width + 1)
        position = locate_peak(ecg[start:end], idx - start)
        if position is not None:
            refined[i] = start + position
    return refined


def rederive_full_rate_peaks(
    raw: RawSignal,
    peak_times: np.ndarray,
    processing_fs: float,
    config: Config = default_config,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Re-locate beat peaks on the full-rate recording.

    The recording is conditioned again without decimation (optionally
    Savitzky-Golay smoothed when BEAT_PEAKS_FILTER is set) and each peak
    is searched within ``ceil(1 + raw.fs / processing_fs)`` samples of its
    processing-rate position.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        (peak times, peak values) at the raw sampling rate.
    """
    peak_times = np.asarray(peak_times, dtype=float)
    if peak_times.size == 0:
        return peak_times.copy(), np.array([])

    full = condition_signal(raw, replace(config, PROCESSING_SAMPLING_RATE=raw.fs))
    values = full.values
    factor = int(round(raw.fs / processing_fs))
    if config.BEAT_PEAKS_FILTER and factor > 1:
        window = 2 * factor + 1
        if window <= len(values):
            values = signal.savgol_filter(values, window_length=window, polyorder=2)

    half_width = int(np.ceil(1 + raw.fs / processing_fs))
    indices = refine_peaks(values, nearest_index(full.times, peak_times), half_width)
    return full.times[indices], full.values[indices]
