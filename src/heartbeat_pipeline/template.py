"""
Beat template construction.

The template is the per-sample median of the standardized waveforms of
mid-height candidates; its maximum is the reference peak offset used to
align every candidate.
"""

import logging
from dataclasses import dataclass

import numpy as np

from .config import Config, default_config
from .rpeak import CandidateSet

logger = logging.getLogger(__name__)


@dataclass
class WaveformTemplate:
    """Representative standardized beat waveform."""
    values: np.ndarray       # Template samples (window length)
    reference_offset: int    # Index of the template maximum inside the window
    peak_range: int          # Search radius around the reference offset
    n_waveforms: int         # Waveforms the median was taken over


def cut_windows(values: np.ndarray, indices: np.ndarray, low: int, high: int) -> np.ndarray:
    """Stack the samples ``[idx + low, idx + high]`` of each index as rows."""
    offsets = np.arange(low, high + 1)
    return np.asarray(values, dtype=float)[np.asarray(indices)[:, None] + offsets[None, :]]


def zscore_rows(windows: np.ndarray) -> np.ndarray:
    """Standardize each row to zero mean and unit variance, ignoring NaN."""
    windows = np.atleast_2d(np.asarray(windows, dtype=float))
    with np.errstate(invalid="ignore", divide="ignore"):
        mean = np.nanmean(windows, axis=1, keepdims=True)
        std = np.nanstd(windows, axis=1, keepdims=True)
        scaled = (windows - mean) / std
    scaled[~np.isfinite(scaled)] = np.nan
    return scaled


def build_template(
    values: np.ndarray,
    candidates: CandidateSet,
    config: Config = default_config,
) -> WaveformTemplate:
    """
    Build the beat template from mid-height candidates.

    Parameters
    ----------
    values : np.ndarray
        Conditioned signal (NaN inside artifact gaps).
    candidates : CandidateSet
        Detected candidates.
    config : Config
        Pipeline configuration (TEMPLATE_PERCENTILES, WAVEFORM_WINDOW_LOW,
        WAVEFORM_WINDOW_HIGH, PEAK_RANGE).

    Returns
    -------
    WaveformTemplate
        Template with its reference peak offset and search radius.
    """
    low_pct, high_pct = np.percentile(candidates.heights, config.TEMPLATE_PERCENTILES)
    selected = (candidates.heights > low_pct) & (candidates.heights < high_pct)
    if not selected.any():
        logger.warning(
            "No candidate height strictly between percentiles %s; using all %d candidates",
            config.TEMPLATE_PERCENTILES, candidates.n_candidates,
        )
        selected = np.ones(candidates.n_candidates, dtype=bool)

    windows = cut_windows(values, candidates.indices[selected], config.WAVEFORM_WINDOW_LOW, config.WAVEFORM_WINDOW_HIGH)
    standardized = zscore_rows(windows)
    usable = ~np.all(np.isnan(standardized), axis=1)
    if not usable.any():
        raise ValueError("Every template waveform lies inside an artifact gap")
    template = np.nanmedian(standardized[usable], axis=0)

    reference_offset = int(np.nanargmax(template))
    last = len(template) - 1
    peak_range = int(config.PEAK_RANGE)
    while peak_range > 0 and (reference_offset - peak_range < 0 or reference_offset + peak_range > last):
        peak_range -= 1
    if peak_range != config.PEAK_RANGE:
        logger.info("Peak search radius shrunk from %d to %d samples", config.PEAK_RANGE, peak_range)

    return WaveformTemplate(
        values=template,
        reference_offset=reference_offset,
        peak_range=peak_range,
        n_waveforms=int(usable.sum()),
    )
