"""
I/O utilities for the heartbeat extraction pipeline.

Handles:
- The immutable raw recording container
- CSV loading with column detection and short-gap interpolation
- Heartbeat result JSON save/load
- CSV export of beats and heart rate
"""

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .config import Config, default_config
from .exceptions import AmbiguousSamplingRate
from .heart_rate import HeartRateTrace
from .windows import TimeWindow, contiguous_runs, merge_windows

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawSignal:
    """Loaded recording; immutable once created."""
    values: np.ndarray   # Amplitude per sample
    times: np.ndarray    # Time in seconds, strictly increasing
    fs: float            # Sampling rate in Hz
    source: str = ""     # Recording identifier (usually the file path)

    def __post_init__(self):
        values = np.array(self.values, dtype=np.float64)
        times = np.array(self.times, dtype=np.float64)
        if values.ndim != 1 or values.shape != times.shape:
            raise ValueError(
                f"values and times must be 1-D arrays of equal length "
                f"(got {values.shape} and {times.shape})"
            )
        if values.size < 2:
            raise ValueError("A recording needs at least two samples")
        if not self.fs > 0:
            raise ValueError(f"Sampling rate must be positive (got {self.fs})")
        if not np.all(np.diff(times) > 0):
            raise ValueError("Sample times must be strictly increasing")
        values.setflags(write=False)
        times.setflags(write=False)
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "times", times)
        object.__setattr__(self, "fs", float(self.fs))

    @classmethod
    def from_arrays(
        cls,
        values,
        times=None,
        fs: Optional[float] = None,
        source: str = "",
    ) -> "RawSignal":
        """
        Build a recording from samples plus times and/or a sampling rate.

        When only times are given, the rate is estimated from the median
        sample spacing; when only the rate is given, times start at zero.
        """
        if times is None and fs is None:
            raise ValueError("Provide sample times, a sampling rate, or both")
        if times is None:
            times = np.arange(len(values), dtype=np.float64) / fs
        elif fs is None:
            fs = estimate_fs(times)
        return cls(values=values, times=times, fs=fs, source=source)

    @property
    def n_samples(self) -> int:
        """Number of samples."""
        return len(self.values)

    @property
    def duration_seconds(self) -> float:
        """Total duration in seconds."""
        return float(self.times[-1] - self.times[0])

    def fingerprint(self) -> str:
        """Content hash identifying this recording for cache keys."""
        digest = hashlib.sha1()
        digest.update(self.source.encode("utf-8"))
        digest.update(repr(self.fs).encode("utf-8"))
        digest.update(self.values.tobytes())
        digest.update(self.times.tobytes())
        return digest.hexdigest()


def estimate_fs(times) -> float:
    """Sampling rate from the median spacing of sample times."""
    times = np.asarray(times, dtype=np.float64)
    if times.size < 2:
        raise ValueError("Need at least two sample times to estimate the sampling rate")
    return float(1.0 / np.median(np.diff(times)))


@dataclass
class HeartbeatResult:
    """Container for the outputs of one processed recording."""
    source: str
    species: str
    fs: float                         # Processing sampling rate
    heart_beats: List[float]          # Validated beat times in seconds
    beat_peak_times: List[float]      # Precise R-peak time per beat
    beat_peak_values: List[float]     # Signal value at each precise peak
    artifacts: List[List[float]]      # [start, end) pairs in seconds
    exclusions: List[List[float]]     # [start, end) pairs in seconds
    version: str                      # Algorithm revision
    parameters: Dict[str, Any] = field(default_factory=dict)
    unresolved: List[List[float]] = field(default_factory=list)
    processed_at: str = ""            # ISO timestamp

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HeartbeatResult":
        """Create HeartbeatResult from dictionary.

        Missing optional keys fall back to dataclass defaults and unknown
        keys are ignored.
        """
        allowed = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in allowed}
        return cls(**filtered)

    def artifact_windows(self) -> List[TimeWindow]:
        return [TimeWindow(float(s), float(e)) for s, e in self.artifacts]

    def exclusion_windows(self) -> List[TimeWindow]:
        return [TimeWindow(float(s), float(e)) for s, e in self.exclusions]


_RATE_COLUMN_NAMES = {"fs", "sampling_rate", "sampling rate", "samplingrate", "sample_rate", "samplerate"}


def _find_column(columns, keywords, exclude=()) -> Optional[str]:
    for col in columns:
        name = str(col).lower()
        if any(k in name for k in keywords) and not any(x in name for x in exclude):
            return col
    return None


def load_recording_csv(
    csv_path: Path,
    value_column: Optional[str] = None,
    time_column: Optional[str] = None,
    fs: Optional[float] = None,
    config: Config = default_config,
) -> RawSignal:
    """
    Load an ECG recording from CSV.

    Parameters
    ----------
    csv_path : Path
        Path to the CSV file.
    value_column : str, optional
        ECG column. Defaults to the first column whose name contains
        "ecg" or "exg", then to the first numeric non-time column.
    time_column : str, optional
        Time column in seconds. Defaults to the first column whose name
        contains "time" (but not "stamp").
    fs : float, optional
        Sampling rate in Hz. Defaults to a sampling-rate column when the
        file has one, otherwise it is estimated from the time column.
    config : Config
        Pipeline configuration (MAX_NAN_RANGE_SEC).

    Returns
    -------
    RawSignal
        Loaded recording.

    Raises
    ------
    FileNotFoundError
        If the CSV file does not exist.
    ValueError
        If no ECG column is found, or neither times nor a rate are known.
    AmbiguousSamplingRate
        If a sampling-rate column holds more than one distinct value.
    """
    csv_path = Path(csv_path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Recording file not found: {csv_path}")

    df = pd.read_csv(csv_path)

    rate_column = None
    for col in df.columns:
        if str(col).strip().lower() in _RATE_COLUMN_NAMES:
            rate_column = col
            break
    if rate_column is not None:
        rates = sorted(pd.to_numeric(df[rate_column], errors="coerce").dropna().unique().tolist())
        if len(rates) > 1:
            raise AmbiguousSamplingRate(rates, source=str(csv_path))
        if fs is None and rates:
            fs = float(rates[0])

    if time_column is None:
        time_column = _find_column(df.columns, ("time",), exclude=("stamp",))
    if value_column is None:
        value_column = _find_column(df.columns, ("ecg", "exg"))
    if value_column is None:
        numeric = [
            col for col in df.select_dtypes(include=[np.number]).columns
            if col not in (time_column, rate_column)
        ]
        value_column = numeric[0] if numeric else None
    if value_column is None:
        raise ValueError(f"No ECG column found in {csv_path}. Columns: {list(df.columns)}")

    values = df[value_column].to_numpy(dtype=np.float64, copy=True)
    times = None
    if time_column is not None:
        times = df[time_column].to_numpy(dtype=np.float64, copy=True)
        if fs is None:
            fs = estimate_fs(times)
    if fs is None:
        raise ValueError(f"No time column or sampling rate available for {csv_path}")

    values = _interpolate_missing(values, fs, config)
    return RawSignal.from_arrays(values, times=times, fs=fs, source=str(csv_path))


def _interpolate_missing(values: np.ndarray, fs: float, config: Config) -> np.ndarray:
    missing = np.isnan(values)
    if not missing.any():
        return values
    longest = max(b - a + 1 for a, b in contiguous_runs(missing))
    if longest > config.MAX_NAN_RANGE_SEC * fs:
        logger.warning(
            "%d missing samples (longest gap %.3f s > %.3f s) are interpolated",
            int(missing.sum()), longest / fs, config.MAX_NAN_RANGE_SEC,
        )
    return (
        pd.Series(values)
        .interpolate(method="linear")
        .bfill()
        .ffill()
        .to_numpy(dtype=np.float64)
    )


def save_result_json(
    result: HeartbeatResult,
    output_path: Path,
) -> None:
    """
    Save a heartbeat result to JSON file.

    Parameters
    ----------
    result : HeartbeatResult
        Beats, windows and metadata.
    output_path : Path
        Path for output JSON file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(result.to_dict(), f, indent=2, ensure_ascii=False)


def load_result_json(json_path: Path) -> HeartbeatResult:
    """
    Load a heartbeat result from JSON file.

    Raises
    ------
    FileNotFoundError
        If JSON file does not exist.
    """
    json_path = Path(json_path)
    if not json_path.exists():
        raise FileNotFoundError(f"Result file not found: {json_path}")

    with open(json_path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    return HeartbeatResult.from_dict(data)


def export_heartbeats_csv(result: HeartbeatResult, output_path: Path) -> pd.DataFrame:
    """
    Write beat peaks to CSV.

    Every artifact or exclusion window that holds no beat gets a
    placeholder row at its midpoint, and rows falling inside a window have
    their value set to NaN, so downstream tools see the discontinuity.

    Returns
    -------
    pd.DataFrame
        The exported table (columns: time, value).
    """
    windows = merge_windows(result.artifact_windows() + result.exclusion_windows())
    times = np.asarray(result.beat_peak_times, dtype=float)
    values = np.asarray(result.beat_peak_values, dtype=float)

    placeholders = [
        0.5 * (w.start + w.end) for w in windows
        if not np.any((times >= w.start) & (times < w.end))
    ]
    times = np.concatenate([times, placeholders])
    values = np.concatenate([values, np.full(len(placeholders), np.nan)])

    for window in windows:
        values[(times >= window.start) & (times < window.end)] = np.nan

    order = np.argsort(times, kind="stable")
    table = pd.DataFrame({"time": times[order], "value": values[order]})

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(output_path, index=False)
    return table


def export_heart_rate_csv(trace: HeartRateTrace, output_path: Path, unit: str = "bpm") -> pd.DataFrame:
    """Write a heart-rate trace to CSV in the requested unit."""
    table = pd.DataFrame({"time": trace.times, f"heart_rate_{unit}": trace.in_units(unit)})
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(output_path, index=False)
    return table
