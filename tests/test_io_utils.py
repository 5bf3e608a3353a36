import json

import numpy as np
import pandas as pd
import pytest

from heartbeat_pipeline.exceptions import AmbiguousSamplingRate
from heartbeat_pipeline.heart_rate import estimate_heart_rate
from heartbeat_pipeline.io_utils import (
    HeartbeatResult,
    RawSignal,
    estimate_fs,
    export_heart_rate_csv,
    export_heartbeats_csv,
    load_recording_csv,
    load_result_json,
    save_result_json,
)

from conftest import pulse_times


def sample_result(**overrides):
    beats = pulse_times()
    data = dict(
        source="recording.csv",
        species="Mouse",
        fs=1000.0,
        heart_beats=beats.tolist(),
        beat_peak_times=beats.tolist(),
        beat_peak_values=np.ones(len(beats)).tolist(),
        artifacts=[[5.0, 5.5]],
        exclusions=[[12.0, 13.0]],
        version="1.0.0",
        parameters={"THRESHOLD": 1e5, "TEMPLATE_PERCENTILES": [70.0, 90.0]},
    )
    data.update(overrides)
    return HeartbeatResult(**data)


def test_raw_signal_validation():
    with pytest.raises(ValueError):
        RawSignal.from_arrays([1.0, 2.0, 3.0], times=[0.0, 0.001], fs=1000.0)
    with pytest.raises(ValueError):
        RawSignal.from_arrays([1.0, 2.0, 3.0], times=[0.0, 0.002, 0.001])
    with pytest.raises(ValueError):
        RawSignal.from_arrays([1.0])
    with pytest.raises(ValueError):
        RawSignal([1.0, 2.0], [0.0, 0.001], fs=0.0)


def test_raw_signal_is_read_only():
    raw = RawSignal.from_arrays([1.0, 2.0, 3.0], fs=100.0)
    assert raw.times.tolist() == pytest.approx([0.0, 0.01, 0.02])
    with pytest.raises(ValueError):
        raw.values[0] = 5.0


def test_fingerprint_tracks_content():
    a = RawSignal.from_arrays([1.0, 2.0, 3.0], fs=100.0)
    b = RawSignal.from_arrays([1.0, 2.0, 3.0], fs=100.0)
    c = RawSignal.from_arrays([1.0, 2.0, 4.0], fs=100.0)
    assert a.fingerprint() == b.fingerprint()
    assert a.fingerprint() != c.fingerprint()


def test_estimate_fs():
    assert estimate_fs(np.arange(100) / 250.0) == pytest.approx(250.0)


def test_load_recording_csv(tmp_path):
    times = np.arange(500) / 1000.0
    path = tmp_path / "rec.csv"
    pd.DataFrame({"Time (s)": times, "ECG (mV)": np.sin(times)}).to_csv(path, index=False)

    raw = load_recording_csv(path)

    assert raw.fs == pytest.approx(1000.0)
    assert raw.n_samples == 500
    assert raw.source == str(path)
    assert np.allclose(raw.values, np.sin(times))


def test_load_uses_rate_column(tmp_path):
    path = tmp_path / "rec.csv"
    pd.DataFrame({"ecg": np.zeros(10), "fs": 500.0}).to_csv(path, index=False)

    raw = load_recording_csv(path)
    assert raw.fs == 500.0
    assert raw.times[1] == pytest.approx(0.002)


def test_multiple_sampling_rates_rejected(tmp_path):
    path = tmp_path / "rec.csv"
    pd.DataFrame({"ecg": np.zeros(4), "fs": [500.0, 500.0, 1000.0, 1000.0]}).to_csv(path, index=False)

    with pytest.raises(AmbiguousSamplingRate) as excinfo:
        load_recording_csv(path)
    assert excinfo.value.rates == [500.0, 1000.0]


def test_missing_values_are_interpolated(tmp_path):
    path = tmp_path / "rec.csv"
    values = np.arange(20, dtype=float)
    values[5] = np.nan
    pd.DataFrame({"time": np.arange(20) / 1000.0, "ecg": values}).to_csv(path, index=False)

    raw = load_recording_csv(path)
    assert raw.values[5] == pytest.approx(5.0)
    assert not np.isnan(raw.values).any()


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        load_recording_csv("does_not_exist.csv")


def test_result_json_roundtrip(tmp_path):
    result = sample_result()
    path = tmp_path / "out" / "rec_heartbeats.json"
    save_result_json(result, path)

    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    assert data["heart_beats"][:2] == [0.3, 0.5]

    loaded = load_result_json(path)
    assert loaded == result
    assert loaded.exclusion_windows()[0].start == 12.0


def test_saved_result_reproduces_masked_heart_rate(tmp_path):
    result = sample_result()
    path = tmp_path / "rec_heartbeats.json"
    save_result_json(result, path)
    loaded = load_result_json(path)

    computed = estimate_heart_rate(result.heart_beats, 0.6, result.artifact_windows(), result.exclusion_windows())
    restored = estimate_heart_rate(loaded.heart_beats, 0.6, loaded.artifact_windows(), loaded.exclusion_windows())
    assert np.array_equal(computed.rate, restored.rate, equal_nan=True)
    assert np.isnan(restored.rate).any()


def test_from_dict_ignores_unknown_keys():
    data = sample_result().to_dict()
    data["legacy_field"] = 1
    del data["unresolved"]
    assert HeartbeatResult.from_dict(data).unresolved == []


def test_export_heartbeats_csv(tmp_path):
    result = sample_result(
        heart_beats=[1.0, 2.0, 3.0, 4.0],
        beat_peak_times=[1.0, 2.0, 3.0, 4.0],
        beat_peak_values=[1.0, 1.0, 1.0, 1.0],
        artifacts=[[2.5, 2.6]],
        exclusions=[[3.9, 4.1]],
    )
    path = tmp_path / "beats.csv"
    table = export_heartbeats_csv(result, path)

    assert table["time"].tolist() == pytest.approx([1.0, 2.0, 2.55, 3.0, 4.0])
    assert table["value"].isna().tolist() == [False, False, True, False, True]
    assert pd.read_csv(path).shape == (5, 2)


def test_export_heart_rate_csv(tmp_path):
    trace = estimate_heart_rate(pulse_times(), 0.6)
    table = export_heart_rate_csv(trace, tmp_path / "hr.csv", unit="bpm")
    assert list(table.columns) == ["time", "heart_rate_bpm"]
    assert np.allclose(table["heart_rate_bpm"], 300.0)
