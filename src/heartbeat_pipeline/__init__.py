# ECG Heartbeat Extraction Pipeline
# conditioning -> artifacts -> candidates -> template -> refinement -> heart rate

from .config import ALGORITHM_VERSION, Config, default_config
from .exceptions import AmbiguousSamplingRate, InvalidFilterBand, NoCandidatesDetected, PipelineError
from .io_utils import (
    HeartbeatResult,
    RawSignal,
    export_heart_rate_csv,
    export_heartbeats_csv,
    load_recording_csv,
    load_result_json,
    save_result_json,
)
from .preprocess import check_polarity, condition_signal, filter_ecg
from .artifacts import detect_artifacts, remove_artifacts
from .rpeak import detect_candidates
from .template import build_template
from .waveforms import extract_waveforms
from .projection import refine_beats, refine_segment, score_candidate
from .heart_rate import HeartRateTrace, estimate_heart_rate
from .windows import TimeWindow, apply_exclusion, merge_windows
from .pipeline import HeartbeatPipeline, toggle_beat

__version__ = ALGORITHM_VERSION

__all__ = [
    "Config",
    "default_config",
    "PipelineError",
    "NoCandidatesDetected",
    "AmbiguousSamplingRate",
    "InvalidFilterBand",
    "RawSignal",
    "HeartbeatResult",
    "load_recording_csv",
    "save_result_json",
    "load_result_json",
    "export_heartbeats_csv",
    "export_heart_rate_csv",
    "check_polarity",
    "condition_signal",
    "filter_ecg",
    "detect_artifacts",
    "remove_artifacts",
    "detect_candidates",
    "build_template",
    "extract_waveforms",
    "refine_beats",
    "refine_segment",
    "score_candidate",
    "HeartRateTrace",
    "estimate_heart_rate",
    "TimeWindow",
    "apply_exclusion",
    "merge_windows",
    "HeartbeatPipeline",
    "toggle_beat",
]
