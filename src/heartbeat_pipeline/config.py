"""heartbeat_pipeline configuration.

Centralizes the processing parameters for signal conditioning, artifact
detection, beat-candidate detection, sequence refinement and heart-rate
estimation, together with the species presets they are derived from.
"""

import hashlib
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional, Tuple


# Revision tag written next to every saved result.
ALGORITHM_VERSION = "1.0.0"

# Pipeline stages in dependency order (upstream first).
STAGES: Tuple[str, ...] = ("conditioning", "detection", "refinement", "heart_rate")

_STAGE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "conditioning": (
        "PROCESSING_SAMPLING_RATE",
        "INVERSE_ECG",
        "DEDRIFT_ENABLE",
        "DEDRIFT_KERNEL_SEC",
        "BANDPASS_ENABLE",
        "BANDPASS_LOW",
        "BANDPASS_HIGH",
        "FILTER_ORDER",
        "NOTCH_ENABLE",
        "POWER_GRID",
        "NOTCH_GUARD_HZ",
        "ARTIFACT_REMOVAL_ENABLE",
        "ARTIFACT_SMOOTHING",
        "ARTIFACT_PERCENTILE",
        "ARTIFACT_SAFETY_FACTOR",
        "ARTIFACT_MERGE_SEC",
        "ARTIFACT_PAD_SEC",
        "POWER",
    ),
    "detection": (
        "SMOOTH_DETECTION",
        "THRESHOLD",
        "RELAXED_THRESHOLD_PERCENTILE",
        "WAVEFORM_WINDOW_LOW",
        "WAVEFORM_WINDOW_HIGH",
        "PEAK_RANGE",
        "TEMPLATE_PERCENTILES",
    ),
    "refinement": (
        "SUSPICIOUS_FREQ_HIGH",
        "SUSPICIOUS_FREQ_LOW",
        "OUTLIER_MS",
        "STABLE_INDEX_MS",
        "DISCONTINUE_SEC",
        "PASS_NUMBER",
    ),
    "heart_rate": (
        "SLIDING_WINDOW_SEC",
    ),
}


@dataclass(frozen=True)
class Config:
    """Pipeline configuration parameters (defaults: Mouse preset)."""

    SPECIES: str = "Mouse"

    # ==========================================================================
    # Signal Acquisition Parameters
    # ==========================================================================
    # Recordings sampled faster than this are decimated by an integer factor
    PROCESSING_SAMPLING_RATE: float = 1000.0  # Hz

    # Longest stretch of missing input samples interpolated silently
    MAX_NAN_RANGE_SEC: float = 0.005

    # ==========================================================================
    # Signal Conditioning
    # ==========================================================================
    INVERSE_ECG: bool = False

    # Drift removal: signal minus its Gaussian-smoothed copy
    DEDRIFT_ENABLE: bool = False
    DEDRIFT_KERNEL_SEC: float = 1.0

    # Bandpass Filter Parameters (Zero-phase Butterworth)
    BANDPASS_ENABLE: bool = True
    BANDPASS_LOW: float = 60.0    # Hz
    BANDPASS_HIGH: float = 180.0  # Hz
    FILTER_ORDER: int = 4

    # Mains rejection: band-stop at POWER_GRID +/- NOTCH_GUARD_HZ
    NOTCH_ENABLE: bool = False
    POWER_GRID: float = 50.0  # Hz
    NOTCH_GUARD_HZ: float = 5.0

    # ==========================================================================
    # Artifact Detection
    # ==========================================================================
    ARTIFACT_REMOVAL_ENABLE: bool = True
    ARTIFACT_SMOOTHING: int = 16        # samples (Gaussian window)
    ARTIFACT_PERCENTILE: float = 92.0   # percentile of maxima heights
    ARTIFACT_SAFETY_FACTOR: float = 100.0
    ARTIFACT_MERGE_SEC: float = 0.2     # runs closer than this are merged
    ARTIFACT_PAD_SEC: float = 0.05      # padding on each side

    # ==========================================================================
    # Beat-Candidate Detection
    # ==========================================================================
    # Exponent of the power transform shared by artifact and beat detection
    POWER: int = 4
    SMOOTH_DETECTION: int = 3  # samples; the Gaussian window is 4x this
    THRESHOLD: float = 1e5

    # Fallback threshold (percentile of maxima heights) when nothing passes
    RELAXED_THRESHOLD_PERCENTILE: float = 0.2

    # ==========================================================================
    # Waveform / Template Parameters
    # ==========================================================================
    WAVEFORM_WINDOW_LOW: int = -15  # samples relative to the candidate
    WAVEFORM_WINDOW_HIGH: int = 15
    PEAK_RANGE: int = 4             # search radius around the reference peak

    # Candidate heights strictly inside this band build the template
    TEMPLATE_PERCENTILES: Tuple[float, float] = (70.0, 90.0)

    # ==========================================================================
    # Sequence Refinement
    # ==========================================================================
    # Intervals shorter than 1/HIGH or longer than 1/LOW are suspicious
    SUSPICIOUS_FREQ_HIGH: float = 15.0  # Hz
    SUSPICIOUS_FREQ_LOW: float = 8.0    # Hz

    OUTLIER_MS: float = 30.0       # interval disagreement tolerance
    STABLE_INDEX_MS: float = 5.0   # second-difference tolerance
    DISCONTINUE_SEC: float = 1.0   # gaps longer than this split segments
    PASS_NUMBER: int = 2

    # Worker threads for per-segment refinement (results do not depend on it)
    N_WORKERS: int = 4

    # ==========================================================================
    # Heart Rate
    # ==========================================================================
    SLIDING_WINDOW_SEC: float = 0.6
    UNIT: str = "bpm"

    # ==========================================================================
    # Output
    # ==========================================================================
    # Savitzky-Golay smoothing before re-locating beat peaks at full rate
    BEAT_PEAKS_FILTER: bool = True

    # ==========================================================================
    # Signal Polarity Diagnostics
    # ==========================================================================
    # If skewness < SKEWNESS_THRESHOLD, the signal is considered inverted
    SKEWNESS_THRESHOLD: float = -0.8

    @property
    def BANDPASS(self) -> Tuple[float, float]:
        """Return bandpass frequency range as tuple."""
        return (self.BANDPASS_LOW, self.BANDPASS_HIGH)

    @property
    def WAVEFORM_LENGTH(self) -> int:
        """Number of samples in one beat waveform."""
        return self.WAVEFORM_WINDOW_HIGH - self.WAVEFORM_WINDOW_LOW + 1

    @classmethod
    def for_species(cls, species: str, **overrides: Any) -> "Config":
        """
        Build the preset configuration for a species.

        Parameters
        ----------
        species : str
            One of "Mouse", "Rat" or "Human" (case-insensitive).
        **overrides
            Parameter values replacing the preset ones.

        Returns
        -------
        Config
            Preset configuration.

        Raises
        ------
        ValueError
            If the species has no preset.
        """
        key = species.strip().capitalize()
        if key not in SPECIES_PRESETS:
            raise ValueError(
                f"Unknown species '{species}'. Available: {sorted(SPECIES_PRESETS)}"
            )
        config = replace(cls(), SPECIES=key, **SPECIES_PRESETS[key])
        if overrides:
            config = config.updated(**overrides)
        return config

    def updated(self, **changes: Any) -> "Config":
        """Return a copy with `changes` applied; unknown names raise KeyError."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise KeyError(f"Unknown parameter(s): {unknown}")
        return replace(self, **changes)

    def stage_key(self, stage: str, source: str = "") -> str:
        """
        Hash of every parameter the given stage depends on.

        The key covers the stage's own parameters and those of all
        upstream stages, plus the identifier of the source recording,
        so a stage must be recomputed whenever its key changes.
        """
        if stage not in STAGES:
            raise ValueError(f"Unknown stage '{stage}'. Available: {STAGES}")
        names = []
        for name in STAGES[: STAGES.index(stage) + 1]:
            names.extend(_STAGE_FIELDS[name])
        payload = repr([(name, getattr(self, name)) for name in names] + [source])
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()

    @staticmethod
    def invalidated_stage(changes) -> Optional[str]:
        """Most upstream stage affected by the given parameter names."""
        for stage in STAGES:
            if any(name in _STAGE_FIELDS[stage] for name in changes):
                return stage
        return None


# Species presets (values that differ from the Mouse defaults above are
# spelled out for every species so each preset reads on its own)
SPECIES_PRESETS: Dict[str, Dict[str, Any]] = {
    "Mouse": dict(
        ARTIFACT_SMOOTHING=16,
        BANDPASS_LOW=60.0,
        BANDPASS_HIGH=180.0,
        DEDRIFT_KERNEL_SEC=1.0,
        DISCONTINUE_SEC=1.0,
        NOTCH_ENABLE=False,
        OUTLIER_MS=30.0,
        PEAK_RANGE=4,
        SLIDING_WINDOW_SEC=0.6,
        SMOOTH_DETECTION=3,
        STABLE_INDEX_MS=5.0,
        SUSPICIOUS_FREQ_HIGH=15.0,
        SUSPICIOUS_FREQ_LOW=8.0,
        THRESHOLD=1e5,
        WAVEFORM_WINDOW_LOW=-15,
        WAVEFORM_WINDOW_HIGH=15,
    ),
    "Rat": dict(
        ARTIFACT_SMOOTHING=26,
        BANDPASS_LOW=60.0,
        BANDPASS_HIGH=400.0,
        DEDRIFT_KERNEL_SEC=1.0,
        DISCONTINUE_SEC=1.0,
        NOTCH_ENABLE=False,
        OUTLIER_MS=50.0,
        PEAK_RANGE=8,
        SLIDING_WINDOW_SEC=1.0,
        SMOOTH_DETECTION=5,
        STABLE_INDEX_MS=8.0,
        SUSPICIOUS_FREQ_HIGH=12.0,
        SUSPICIOUS_FREQ_LOW=6.0,
        THRESHOLD=1e5,
        WAVEFORM_WINDOW_LOW=-20,
        WAVEFORM_WINDOW_HIGH=20,
    ),
    "Human": dict(
        ARTIFACT_SMOOTHING=180,
        BANDPASS_LOW=1.0,
        BANDPASS_HIGH=180.0,
        DEDRIFT_KERNEL_SEC=10.0,
        DISCONTINUE_SEC=4.0,
        NOTCH_ENABLE=True,
        OUTLIER_MS=240.0,
        PEAK_RANGE=40,
        SLIDING_WINDOW_SEC=5.0,
        SMOOTH_DETECTION=35,
        STABLE_INDEX_MS=50.0,
        SUSPICIOUS_FREQ_HIGH=2.0,
        SUSPICIOUS_FREQ_LOW=1.0,
        THRESHOLD=1e36,
        WAVEFORM_WINDOW_LOW=-75,
        WAVEFORM_WINDOW_HIGH=75,
    ),
}


# Default configuration instance
default_config = Config()
