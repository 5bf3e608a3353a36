import math

import numpy as np
import pytest

from heartbeat_pipeline import projection
from heartbeat_pipeline.projection import (
    RefinementContext,
    expected_interval,
    refine_beats,
    refine_segment,
    score_candidate,
    seed_mask,
    split_segments,
    suspicious_stretches,
)
from heartbeat_pipeline.waveforms import BeatWaveforms
from heartbeat_pipeline.windows import TimeWindow

from conftest import pulse_times

END = 10.3


def regular_beats(n=50):
    return list(np.round(0.3 + 0.2 * np.arange(n), 6))


def waveforms_for(times, scores):
    """Candidate set carrying only what refinement reads."""
    times = np.asarray(times, dtype=float)
    n = len(times)
    return BeatWaveforms(
        indices=np.round(times * 1000).astype(int),
        times=times,
        shapes=np.zeros((n, 31)),
        scores=np.asarray(scores, dtype=float),
        peak_indices=np.round(times * 1000).astype(int),
        peak_times=times,
        peak_values=np.ones(n),
        max_corr=1.0,
    )


def with_extra(beats, extra, extra_score):
    times = sorted(beats + list(extra))
    scores = [extra_score if t in extra else 1.0 for t in times]
    return times, scores


@pytest.fixture
def ctx(test_config):
    return RefinementContext.from_config(1000.0, test_config)


def test_regular_sequence_is_unchanged(test_config):
    beats = regular_beats()
    result = refine_beats(beats, waveforms_for(beats, np.ones(len(beats))), 1000.0, 0.0, END, config=test_config)

    assert np.allclose(result.beats, beats)
    assert result.n_removed == 0
    assert result.unresolved == []
    assert result.segments == [TimeWindow(0.0, END)]


def test_spurious_beat_is_removed(test_config):
    times, scores = with_extra(regular_beats(), [5.4], 0.3)
    result = refine_beats(times, waveforms_for(times, scores), 1000.0, 0.0, END, config=test_config)

    assert np.allclose(result.beats, regular_beats())
    assert result.n_removed == 1


def test_doublet_keeps_better_placed_candidate(test_config):
    beats = [b for b in regular_beats() if b != 5.3]
    times, scores = with_extra(beats, [5.29, 5.31], 0.5)
    result = refine_beats(times, waveforms_for(times, scores), 1000.0, 0.0, END, config=test_config)

    assert np.any(np.isclose(result.beats, 5.29))
    assert not np.any(np.isclose(result.beats, 5.31))
    assert result.n_removed == 1


def test_missed_beat_is_left_alone(test_config):
    beats = [b for b in regular_beats() if b != 8.3]
    result = refine_beats(beats, waveforms_for(beats, np.ones(len(beats))), 1000.0, 0.0, END, config=test_config)
    assert np.allclose(result.beats, beats)


def test_stretch_at_start_resolved_backwards(test_config):
    times, scores = with_extra(regular_beats(), [0.4], 0.3)
    result = refine_beats(times, waveforms_for(times, scores), 1000.0, 0.0, END, config=test_config)

    assert np.allclose(result.beats, regular_beats())
    assert result.unresolved == []


def test_stretch_without_seed_is_unresolved(ctx):
    times, scores = with_extra(regular_beats(), [0.4], 0.3)
    outcome = refine_segment(times, scores, END, ctx)

    assert outcome.beats == times
    assert outcome.unresolved == [TimeWindow(0.3, 0.5)]


def test_refine_segment_does_not_modify_input(ctx):
    times, scores = with_extra(regular_beats(), [5.4], 0.3)
    before = list(times)
    outcome = refine_segment(times, scores, END, ctx)

    assert times == before
    assert 5.4 not in outcome.beats
    assert len(outcome.beats) == len(outcome.scores)


def test_worker_count_does_not_change_result(test_config):
    beats = list(pulse_times())
    times, scores = with_extra(beats, [5.4, 15.4], 0.3)
    waveforms = waveforms_for(times, scores)
    blocked = [TimeWindow(9.0, 11.0)]

    serial = refine_beats(times, waveforms, 1000.0, 0.0, 20.0, blocked, test_config.updated(N_WORKERS=1))
    parallel = refine_beats(times, waveforms, 1000.0, 0.0, 20.0, blocked, test_config.updated(N_WORKERS=4))

    assert np.array_equal(serial.beats, parallel.beats)
    assert serial.segments == parallel.segments
    assert len(serial.segments) == 2
    assert not np.any(np.isclose(serial.beats, 5.4) | np.isclose(serial.beats, 15.4))
    assert not np.any((serial.beats > 9.0) & (serial.beats < 11.0))


def test_refinement_is_idempotent(test_config):
    times, scores = with_extra(regular_beats(), [5.4], 0.3)
    waveforms = waveforms_for(times, scores)
    once = refine_beats(times, waveforms, 1000.0, 0.0, END, config=test_config)
    twice = refine_beats(once.beats, waveforms, 1000.0, 0.0, END, config=test_config)

    assert np.array_equal(once.beats, twice.beats)
    assert twice.n_removed == 0


def test_score_candidate_depth_limit_and_context(ctx):
    beats = [0.3, 0.5, 0.7, 0.9, 1.1, 1.3]
    scores = [1.0] * 6

    assert math.isnan(score_candidate(beats, scores, ctx, depth=4))
    assert math.isnan(score_candidate(beats[:4], scores[:4], ctx))
    assert score_candidate(beats, scores, ctx) == pytest.approx(1.0)


def test_score_candidate_is_pure(ctx):
    beats = [0.3, 0.5, 0.7, 0.9, 1.1, 1.15, 1.3, 1.5]
    scores = [1.0, 1.0, 1.0, 1.0, 1.0, 0.4, 1.0, 1.0]
    beats_before, scores_before = list(beats), list(scores)

    first = score_candidate(beats, scores, ctx)
    second = score_candidate(beats, scores, ctx)

    assert first == second
    assert beats == beats_before and scores == scores_before


def test_expected_interval_ignores_outlier(ctx):
    assert expected_interval([0.0, 0.2, 0.4, 0.75], 3, ctx) == pytest.approx(200.0)
    # Nothing agrees even with the widened tolerance
    assert expected_interval([0.0, 0.1, 0.35, 0.85], 3, ctx) == pytest.approx(250.0)


def test_suspicious_stretches(ctx):
    beats = [0.3, 0.5, 0.7, 0.75, 0.9, 1.1, 1.6, 1.8]
    assert suspicious_stretches(beats, ctx) == [(0.7, 0.75), (1.1, 1.6)]


def test_seed_mask_requires_correlated_run(ctx):
    beats = regular_beats(10)
    scores = [1.0, 1.0, 1.0, 0.2, 1.0, 1.0, 1.0, 1.0, 1.0, 1.0]
    mask = seed_mask(beats, scores, ctx)
    assert not mask[:4].any()
    assert mask[4:].all()


def test_split_segments_joins_close_windows():
    beats = list(np.round(np.arange(0.3, 4.95, 0.2), 6)) + list(np.round(np.arange(7.1, 9.95, 0.2), 6))
    segments = split_segments(beats, [TimeWindow(8.0, 8.5)], 0.0, 10.0, 1.0)
    assert segments == [TimeWindow(0.0, beats[23]), TimeWindow(8.5, 10.0)]


def test_empty_window_near_end_truncates(ctx):
    beats = [b for b in regular_beats() if b != 9.7]
    scores = [1.0] * len(beats)

    near_end = refine_segment(beats, scores, END, ctx)
    assert near_end.beats[-4:] == [8.9, 9.1, 9.3, 9.5]
    assert near_end.unresolved == []

    far_from_end = refine_segment(beats, scores, 30.0, ctx)
    assert far_from_end.beats[-4:] == [9.3, 9.5, 9.9, 10.1]
    assert far_from_end.unresolved == []


def doublet_beats(missing, pair):
    beats = [b for b in regular_beats() if b != missing]
    times = sorted(beats + list(pair))
    scores = [0.2 if t in pair else 1.0 for t in times]
    return times, scores


def test_unconfident_doublet_far_from_end_is_unresolved(ctx):
    times, scores = doublet_beats(5.3, [5.27, 5.33])
    outcome = refine_segment(times, scores, END, ctx)

    assert outcome.beats == times
    assert outcome.scores == scores
    assert outcome.unresolved == [TimeWindow(5.1, 5.33)]


def test_unconfident_doublet_near_end_truncates(ctx):
    times, scores = doublet_beats(9.7, [9.67, 9.73])
    outcome = refine_segment(times, scores, END, ctx)

    assert outcome.beats[-1] == 9.5
    assert outcome.beats == [t for t in times if t <= 9.5]
    assert outcome.unresolved == []


def test_seed_search_stops_at_unresolved_stretch(monkeypatch, ctx):
    times, scores = with_extra(regular_beats(), [3.4, 6.4], 0.3)
    early = np.array([3 <= i and t < 3.0 for i, t in enumerate(times)])
    masks = iter([np.zeros(len(times), dtype=bool), early])
    monkeypatch.setattr(projection, "seed_mask", lambda *args: next(masks))

    outcome = refine_segment(times, scores, END, ctx)

    assert outcome.beats == times
    assert outcome.unresolved == [TimeWindow(3.3, 3.5), TimeWindow(6.3, 6.5)]
