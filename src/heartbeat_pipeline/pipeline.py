"""
Processing session for one recording.

`HeartbeatPipeline` runs conditioning -> artifact masking -> detection ->
template -> waveforms -> refinement -> heart rate, caching every stage
under a hash of the parameters it depends on. Changing a parameter only
recomputes the stages downstream of it.
"""

import hashlib
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .artifacts import remove_artifacts
from .config import ALGORITHM_VERSION, Config, default_config
from .heart_rate import HeartRateTrace, estimate_heart_rate
from .io_utils import HeartbeatResult, RawSignal
from .preprocess import ConditionedSignal, condition_signal, processing_rate, validate_filter_band
from .projection import RefinementResult, refine_beats
from .rpeak import CandidateSet, detect_candidates
from .template import WaveformTemplate, build_template
from .waveforms import BeatWaveforms, extract_waveforms, nearest_index, rederive_full_rate_peaks
from .windows import TimeWindow, apply_exclusion, make_window
from .windows import remove_exclusion as _remove_window

logger = logging.getLogger(__name__)


@dataclass
class BeatDetection:
    """Detection-stage outputs."""
    candidates: CandidateSet
    template: WaveformTemplate
    waveforms: BeatWaveforms


def toggle_beat(beats: Sequence[float], candidate_times: Sequence[float], time: float) -> np.ndarray:
    """
    Add or remove the candidate nearest to `time`.

    Parameters
    ----------
    beats : Sequence[float]
        Current beat times.
    candidate_times : Sequence[float]
        Sorted candidate times the beat is snapped to.
    time : float
        Requested time in seconds.

    Returns
    -------
    np.ndarray
        New sorted beat array; the input is not modified.
    """
    candidate_times = np.asarray(candidate_times, dtype=float)
    if candidate_times.size == 0:
        raise ValueError("No candidates to toggle")
    snapped = float(candidate_times[nearest_index(candidate_times, [time])[0]])

    beats = np.asarray(beats, dtype=float)
    present = np.isclose(beats, snapped, rtol=0.0, atol=1e-9)
    if present.any():
        return beats[~present].copy()
    return np.sort(np.append(beats, snapped))


def _digest(*arrays) -> str:
    digest = hashlib.sha1()
    for array in arrays:
        digest.update(np.ascontiguousarray(array, dtype=float).tobytes())
    return digest.hexdigest()


class HeartbeatPipeline:
    """
    Heartbeat extraction session for a single recording.

    Parameters
    ----------
    raw : RawSignal
        Loaded recording.
    config : Config
        Initial configuration.
    """

    def __init__(self, raw: RawSignal, config: Config = default_config):
        self.raw = raw
        self.config = config
        self.exclusions: List[TimeWindow] = []
        self.beats: Optional[np.ndarray] = None
        self.last_refinement: Optional[RefinementResult] = None
        self._source = raw.fingerprint()
        self._cache: Dict[str, Tuple[str, Any]] = {}

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cached(self, stage: str, key: str, compute: Callable[[], Any]) -> Any:
        hit = self._cache.get(stage)
        if hit is not None and hit[0] == key:
            return hit[1]
        logger.debug("Computing stage '%s'", stage)
        value = compute()
        self._cache[stage] = (key, value)
        return value

    def update_parameters(self, **changes: Any) -> Optional[str]:
        """
        Apply parameter changes.

        Returns
        -------
        Optional[str]
            The most upstream stage the changes invalidate
            ("conditioning", "detection", "refinement", "heart_rate"),
            or None for display-only changes.

        Raises
        ------
        KeyError
            For unknown parameter names.
        InvalidFilterBand
            If the band-pass would be invalid; the previous configuration
            is kept.
        """
        updated = self.config.updated(**changes)
        if updated.BANDPASS_ENABLE:
            fs, _ = processing_rate(self.raw.fs, updated.PROCESSING_SAMPLING_RATE)
            validate_filter_band(updated.BANDPASS_LOW, updated.BANDPASS_HIGH, fs)
        self.config = updated
        return Config.invalidated_stage(changes)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def condition(self) -> ConditionedSignal:
        """Conditioned signal with artifacts masked."""
        key = self.config.stage_key("conditioning", self._source)
        return self._cached(
            "conditioning", key,
            lambda: remove_artifacts(condition_signal(self.raw, self.config), self.config),
        )

    def detect(self) -> BeatDetection:
        """Candidates, template and waveforms. Recomputing resets the beats."""
        key = self.config.stage_key("detection", self._source)
        hit = self._cache.get("detection")
        if hit is not None and hit[0] == key:
            return hit[1]

        conditioned = self.condition()
        candidates = detect_candidates(conditioned.values, conditioned.times, self.config)
        template = build_template(conditioned.values, candidates, self.config)
        waveforms = extract_waveforms(conditioned.values, conditioned.times, candidates, template, self.config)
        # Keep candidates index-aligned with the waveforms that survived
        candidates = candidates.subset(np.isin(candidates.indices, waveforms.indices))
        detection = BeatDetection(candidates=candidates, template=template, waveforms=waveforms)

        self._cache["detection"] = (key, detection)
        self.beats = waveforms.times.copy()
        self.last_refinement = None
        return detection

    @property
    def artifacts(self) -> List[TimeWindow]:
        return list(self.condition().artifacts)

    def current_beats(self) -> np.ndarray:
        """Beats after the latest detection, refinement and manual edits."""
        self.detect()
        return self.beats.copy()

    def refine(self) -> RefinementResult:
        """Run the sequence refiner on the current beats."""
        detection = self.detect()
        conditioned = self.condition()
        key = "|".join((
            self.config.stage_key("refinement", self._source),
            _digest(self.beats, np.asarray(self.exclusions, dtype=float).ravel()),
        ))

        def compute() -> RefinementResult:
            return refine_beats(
                self.beats,
                detection.waveforms,
                conditioned.fs,
                conditioned.start,
                conditioned.end,
                blocked=conditioned.artifacts + self.exclusions,
                config=self.config,
            )

        result = self._cached("refinement", key, compute)
        self.beats = result.beats.copy()
        self.last_refinement = result
        return result

    def heart_rate(self) -> HeartRateTrace:
        """Masked sliding-window heart rate of the current beats."""
        beats = self.current_beats()
        key = "|".join((
            self.config.stage_key("heart_rate", self._source),
            _digest(beats, np.asarray(self.exclusions, dtype=float).ravel()),
        ))
        return self._cached(
            "heart_rate", key,
            lambda: estimate_heart_rate(
                beats, self.config.SLIDING_WINDOW_SEC, self.artifacts, self.exclusions,
            ),
        )

    def run(self, refine: bool = True) -> HeartbeatResult:
        """Run every stage and return the result."""
        self.detect()
        if refine:
            self.refine()
        self.heart_rate()
        return self.result()

    # ------------------------------------------------------------------
    # Manual edits
    # ------------------------------------------------------------------

    def toggle_beat(self, time: float) -> np.ndarray:
        """Add or remove the candidate nearest to `time`."""
        detection = self.detect()
        self.beats = toggle_beat(self.beats, detection.waveforms.times, time)
        return self.beats.copy()

    def add_exclusion(self, start: float, end: float) -> List[TimeWindow]:
        """Exclude ``[start, end)``, merged with existing exclusions and trimmed by artifacts."""
        self.exclusions = apply_exclusion(self.exclusions, make_window(start, end), self.artifacts)
        return list(self.exclusions)

    def remove_exclusion(self, index: int) -> List[TimeWindow]:
        """Delete the exclusion window at `index`."""
        self.exclusions = _remove_window(self.exclusions, index)
        return list(self.exclusions)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def beat_peaks(self) -> Tuple[np.ndarray, np.ndarray]:
        """Precise peak (time, value) of every current beat, at the raw rate."""
        detection = self.detect()
        conditioned = self.condition()
        waveforms = detection.waveforms
        beats = self.beats
        if beats.size == 0 or waveforms.n_beats == 0:
            return np.array([]), np.array([])

        nearest = nearest_index(waveforms.times, beats)
        peak_times = waveforms.peak_times[nearest]
        peak_values = waveforms.peak_values[nearest]
        if conditioned.decimation_factor > 1:
            peak_times, peak_values = rederive_full_rate_peaks(
                self.raw, peak_times, conditioned.fs, self.config,
            )
        return peak_times, peak_values

    def result(self) -> HeartbeatResult:
        """Snapshot of beats, windows and metadata for persistence."""
        conditioned = self.condition()
        beats = self.current_beats()
        peak_times, peak_values = self.beat_peaks()
        unresolved = self.last_refinement.unresolved if self.last_refinement else []
        return HeartbeatResult(
            source=self.raw.source,
            species=self.config.SPECIES,
            fs=float(conditioned.fs),
            heart_beats=beats.tolist(),
            beat_peak_times=np.asarray(peak_times, dtype=float).tolist(),
            beat_peak_values=np.asarray(peak_values, dtype=float).tolist(),
            artifacts=[[w.start, w.end] for w in conditioned.artifacts],
            exclusions=[[w.start, w.end] for w in self.exclusions],
            version=ALGORITHM_VERSION,
            parameters={k: (list(v) if isinstance(v, tuple) else v) for k, v in asdict(self.config).items()},
            unresolved=[[w.start, w.end] for w in unresolved],
            processed_at=datetime.now().isoformat(timespec="seconds"),
        )
