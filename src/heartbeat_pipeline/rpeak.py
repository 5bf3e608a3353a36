"""Beat-candidate detection.
Thresholds the local maxima of a power-transformed, smoothed signal.
"""

import logging
from dataclasses import dataclass, replace

import numpy as np
from scipy import signal

from .artifacts import elevated_energy
from .config import Config, default_config
from .exceptions import NoCandidatesDetected

logger = logging.getLogger(__name__)


@dataclass
class CandidateSet:
    """Result of beat-candidate detection."""
    indices: np.ndarray     # Sample indices of candidates
    times: np.ndarray       # Times in seconds
    heights: np.ndarray     # Elevated-signal height at each candidate
    elevated: np.ndarray    # Detection signal
    threshold: float        # Threshold actually applied
    relaxed: bool           # True if the configured threshold was relaxed

    @property
    def n_candidates(self) -> int:
        """Number of candidates."""
        return len(self.indices)

    def subset(self, keep: np.ndarray) -> "CandidateSet":
        """Candidates selected by a boolean mask; detection metadata is kept."""
        return replace(
            self,
            indices=self.indices[keep],
            times=self.times[keep],
            heights=self.heights[keep],
        )


def detect_candidates(
    values: np.ndarray,
    times: np.ndarray,
    config: Config = default_config,
) -> CandidateSet:
    """Detect beat candidates in a conditioned signal.

    Candidates are local maxima of ``smooth(|x| ** POWER) ** 2`` (Gaussian
    window of 4 * SMOOTH_DETECTION samples) higher than THRESHOLD, minus
    those too close to either end to fit a full waveform window. If none
    survive, the threshold is relaxed once to the
    RELAXED_THRESHOLD_PERCENTILE-th percentile of the maxima heights.

    Parameters
    ----------
    values : np.ndarray
        Conditioned signal, NaN inside artifact gaps.
    times : np.ndarray
        Time array in seconds.
    config : Config
        Pipeline configuration.

    Returns
    -------
    CandidateSet
        Detected candidates.

    Raises
    ------
    NoCandidatesDetected
        If no candidate survives the relaxed threshold either.
    """
    elevated = elevated_energy(values, config.POWER, 4 * config.SMOOTH_DETECTION)
    maxima, _ = signal.find_peaks(np.nan_to_num(elevated, nan=0.0))

    # Waveform windows must fit inside the signal
    n = len(values)
    inside = (maxima + config.WAVEFORM_WINDOW_LOW >= 0) & (maxima + config.WAVEFORM_WINDOW_HIGH <= n - 1)
    maxima = maxima[inside]
    heights = elevated[maxima]

    if maxima.size == 0:
        raise NoCandidatesDetected(config.THRESHOLD, 0.0)

    threshold = float(config.THRESHOLD)
    relaxed = False
    keep = heights > threshold
    if not keep.any():
        relaxed_threshold = float(np.percentile(heights, config.RELAXED_THRESHOLD_PERCENTILE))
        logger.warning(
            "No candidates above threshold %.4g; relaxing to %.4g (percentile %.1f of %d maxima)",
            threshold, relaxed_threshold, config.RELAXED_THRESHOLD_PERCENTILE, maxima.size,
        )
        keep = heights > relaxed_threshold
        if not keep.any():
            raise NoCandidatesDetected(threshold, float(np.max(heights)))
        threshold = relaxed_threshold
        relaxed = True

    indices = maxima[keep]
    logger.info("Detected %d beat candidates (threshold %.4g)", indices.size, threshold)
    return CandidateSet(
        indices=indices,
        times=np.asarray(times)[indices],
        heights=heights[keep],
        elevated=elevated,
        threshold=threshold,
        relaxed=relaxed,
    )
