"""
Beat-sequence refinement ("projection").

Walks the beat sequence through every stretch of implausible intervals
and decides which candidates to keep, combining a position score (how
well an interval matches the locally expected one) with the shape score
of the candidate waveform. Each independent segment of the recording is
refined forward, then time-reversed, for a configurable number of passes.

Two variants share the same window logic:

- `refine_segment` edits a segment's beat list (walk mode);
- `score_candidate` is the pure, depth-limited lookahead used when the
  walk cannot decide between several candidates (assessment mode).
"""

import bisect
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .config import Config, default_config
from .preprocess import TIME_DECIMALS
from .waveforms import BeatWaveforms, shape_scores_for
from .windows import TimeWindow, contiguous_runs, merge_windows

logger = logging.getLogger(__name__)

# Seed selection
SEED_CORRELATION = 0.7
RELAXED_SEED_CORRELATION = 0.5
MIN_CORRELATED_RUN = 4
MIN_STABLE_RUN = 3
CONTEXT_BEATS = 4  # seed plus the three beats giving the expected interval

# Candidate windows, as multiples of the expected interval
WINDOW_FACTOR = 1.4
EXTENDED_WINDOW_FACTOR = 1.8

# Decisions
ACCEPT_SCORE = 0.6
LOOKAHEAD_SCORE = 0.7
MAX_DEPTH = 3
LOOKAHEAD_INTERVALS = 5  # lookahead span, in longest plausible intervals
OUT_OF_RANGE_SCORE = 0.1

# Returned by a walk step that could not resolve its window
_FAILED = -1


@dataclass(frozen=True)
class RefinementContext:
    """Read-only refinement parameters, in the units the walk uses."""
    fs: float                 # Processing sampling rate
    shortest_interval: float  # Seconds (1 / SUSPICIOUS_FREQ_HIGH)
    longest_interval: float   # Seconds (1 / SUSPICIOUS_FREQ_LOW)
    outlier: float            # Samples
    stable: float             # Samples
    discontinue: float        # Seconds

    @classmethod
    def from_config(cls, fs: float, config: Config = default_config) -> "RefinementContext":
        return cls(
            fs=float(fs),
            shortest_interval=1.0 / config.SUSPICIOUS_FREQ_HIGH,
            longest_interval=1.0 / config.SUSPICIOUS_FREQ_LOW,
            outlier=config.OUTLIER_MS * fs / 1000.0,
            stable=config.STABLE_INDEX_MS * fs / 1000.0,
            discontinue=config.DISCONTINUE_SEC,
        )


@dataclass
class SegmentOutcome:
    """Beats of one segment after refinement."""
    beats: List[float]
    scores: List[float]
    unresolved: List[TimeWindow] = field(default_factory=list)


@dataclass
class RefinementResult:
    """Result of refining a whole recording."""
    beats: np.ndarray               # Refined beat times
    segments: List[TimeWindow]      # Segments of the last pass
    n_removed: int                  # Beats removed over all passes
    unresolved: List[TimeWindow]    # Stretches neither direction could resolve


# ---------------------------------------------------------------------------
# Scores and windows
# ---------------------------------------------------------------------------

def position_score(offset: float, expected: float, width: float, spread: float) -> float:
    """
    Gaussian plausibility of an observed interval.

    Parameters
    ----------
    offset : float
        Observed interval in samples.
    expected : float
        Expected interval in samples.
    width : float
        Half width of the kernel; deviations beyond it score
        OUT_OF_RANGE_SCORE.
    spread : float
        Standard deviation of the kernel.
    """
    deviation = offset - expected
    if abs(deviation) > width:
        return OUT_OF_RANGE_SCORE
    return math.exp(-0.5 * (deviation / spread) ** 2)


def _walk_position(offset: float, expected: float) -> float:
    return position_score(offset, expected, expected / 2.0, expected / 5.0)


def _assess_position(offset: float, expected: float) -> float:
    return position_score(offset, expected, expected, expected / 3.0)


def expected_interval(beats: Sequence[float], seed: int, ctx: RefinementContext) -> float:
    """
    Expected next interval (samples) from the three intervals ending at `seed`.

    An interval that differs from every other one by more than the outlier
    tolerance is ignored; if that leaves nothing, the tolerance is
    widened four-fold. The estimate is the median of what remains.
    """
    intervals = np.diff(np.asarray(beats[seed - CONTEXT_BEATS + 1:seed + 1], dtype=float)) * ctx.fs
    if intervals.size < 2:
        return float(np.median(intervals))
    differences = np.abs(intervals[:, None] - intervals[None, :])
    np.fill_diagonal(differences, np.inf)
    for tolerance in (ctx.outlier, 4 * ctx.outlier):
        agrees = (differences <= tolerance).any(axis=1)
        if agrees.any():
            return float(np.median(intervals[agrees]))
    return float(np.median(intervals))


def _window(beats: Sequence[float], seed: int, expected: float, ctx: RefinementContext) -> List[int]:
    origin = beats[seed]
    for factor in (WINDOW_FACTOR, EXTENDED_WINDOW_FACTOR):
        stop = bisect.bisect_right(beats, origin + factor * expected / ctx.fs, lo=seed + 1)
        if stop > seed + 1:
            return list(range(seed + 1, stop))
    return []


def _lookahead_options(beats: Sequence[float], seed: int, expected: float, ctx: RefinementContext) -> List[int]:
    # Extended window plus the first beat beyond it
    stop = bisect.bisect_right(beats, beats[seed] + EXTENDED_WINDOW_FACTOR * expected / ctx.fs, lo=seed + 1)
    return list(range(seed + 1, min(stop + 1, len(beats))))


# ---------------------------------------------------------------------------
# Suspicious stretches and seeds
# ---------------------------------------------------------------------------

def suspicious_stretches(beats: Sequence[float], ctx: RefinementContext) -> List[Tuple[float, float]]:
    """(first, last) beat times of every run of beats touching an implausible interval."""
    beats = np.asarray(beats, dtype=float)
    if beats.size < 2:
        return []
    intervals = np.diff(beats)
    bad = (intervals < ctx.shortest_interval) | (intervals > ctx.longest_interval)
    marked = np.zeros(beats.size, dtype=bool)
    marked[:-1] |= bad
    marked[1:] |= bad
    return [(float(beats[a]), float(beats[b])) for a, b in contiguous_runs(marked)]


def _long_runs(mask: np.ndarray, min_length: int) -> np.ndarray:
    selected = np.zeros(mask.shape, dtype=bool)
    for first, last in contiguous_runs(mask):
        if last - first + 1 >= min_length:
            selected[first:last + 1] = True
    return selected


def seed_mask(beats: Sequence[float], scores: Sequence[float], ctx: RefinementContext) -> np.ndarray:
    """
    Beats trustworthy enough to start a walk from.

    A beat qualifies when it belongs to a run of at least four
    well-correlated beats (>= 0.7, or >= 0.5 when no such run exists),
    touches a plausible interval, and lies in a run of at least three
    stable second differences of the intervals.
    """
    beats = np.asarray(beats, dtype=float)
    scores = np.asarray(scores, dtype=float)
    n = beats.size
    if n < 2:
        return np.zeros(n, dtype=bool)

    correlated = _long_runs(scores >= SEED_CORRELATION, MIN_CORRELATED_RUN)
    if not correlated.any():
        correlated = _long_runs(scores >= RELAXED_SEED_CORRELATION, MIN_CORRELATED_RUN)

    intervals = np.diff(beats)
    plausible_interval = (intervals >= ctx.shortest_interval) & (intervals <= ctx.longest_interval)
    plausible = np.zeros(n, dtype=bool)
    plausible[:-1] |= plausible_interval
    plausible[1:] |= plausible_interval

    steady = np.abs(np.diff(np.round(intervals * ctx.fs))) <= ctx.stable
    stable = np.zeros(n, dtype=bool)
    for first, last in contiguous_runs(steady):
        if last - first + 1 >= MIN_STABLE_RUN:
            stable[first:last + 3] = True

    return correlated & plausible & stable


def _find_seed(mask: np.ndarray, first: int, beats: Sequence[float], last_failed: float) -> Optional[int]:
    context = CONTEXT_BEATS - 1
    if first >= context and mask[first - context:first + 1].all():
        return first
    for j in range(min(first, len(mask)) - 1, context - 1, -1):
        if beats[j] <= last_failed:
            break
        if mask[j]:
            return j
    return None


# ---------------------------------------------------------------------------
# Assessment mode
# ---------------------------------------------------------------------------

def score_candidate(
    beats: Sequence[float],
    scores: Sequence[float],
    ctx: RefinementContext,
    depth: int = 1,
) -> float:
    """
    Lookahead score of a hypothesized next beat.

    Parameters
    ----------
    beats : Sequence[float]
        Four context beats, the candidate, then the beats following it.
    scores : Sequence[float]
        Shape scores aligned with `beats`.
    ctx : RefinementContext
        Refinement parameters.
    depth : int
        Recursion depth of this call (1 for the outermost lookahead).

    Returns
    -------
    float
        Mean of ``position * shape`` over the candidate and the beat that
        follows it (0 for a follower that could not be resolved), or NaN
        beyond MAX_DEPTH or without enough context. The inputs are never
        modified.
    """
    if depth > MAX_DEPTH:
        return math.nan
    beats = [float(b) for b in beats]
    scores = [float(s) for s in scores]
    candidate = CONTEXT_BEATS
    if len(beats) <= candidate:
        return math.nan

    expected = expected_interval(beats, candidate - 1, ctx)
    terms = [_assess_position((beats[candidate] - beats[candidate - 1]) * ctx.fs, expected) * scores[candidate]]

    window = _window(beats, candidate, expected, ctx)
    successor = None
    if len(window) == 1:
        successor = window[0]
    elif window:
        origin = beats[candidate]
        totals = [_assess_position((beats[i] - origin) * ctx.fs, expected) * scores[i] for i in window]
        best = int(np.argmax(totals))
        if totals[best] >= ACCEPT_SCORE:
            successor = window[best]
        else:
            for option in _lookahead_options(beats, candidate, expected, ctx):
                nested = score_candidate(
                    beats[1:candidate + 1] + beats[option:],
                    scores[1:candidate + 1] + scores[option:],
                    ctx,
                    depth + 1,
                )
                if nested > LOOKAHEAD_SCORE:
                    successor = option
                    break

    if successor is not None:
        offset = (beats[successor] - beats[candidate]) * ctx.fs
        terms.append(_assess_position(offset, expected) * scores[successor])
    elif window:
        terms.append(0.0)
    return float(np.mean(terms))


# ---------------------------------------------------------------------------
# Walk mode
# ---------------------------------------------------------------------------

def _truncate_near_end(beats: List[float], scores: List[float], seed: int, end_boundary: float,
                       ctx: RefinementContext) -> bool:
    if end_boundary - beats[seed] < ctx.discontinue:
        del beats[seed + 1:]
        del scores[seed + 1:]
        return True
    return False


def _lookahead(beats: List[float], scores: List[float], seed: int, expected: float,
               ctx: RefinementContext) -> Optional[int]:
    context = slice(seed - CONTEXT_BEATS + 1, seed + 1)
    horizon = bisect.bisect_right(beats, beats[seed] + LOOKAHEAD_INTERVALS * ctx.longest_interval, lo=seed + 1)
    for option in _lookahead_options(beats, seed, expected, ctx):
        tail = slice(option, max(horizon, option + 1))
        score = score_candidate(beats[context] + beats[tail], scores[context] + scores[tail], ctx, depth=1)
        if score > LOOKAHEAD_SCORE:
            return option
    return None


def _walk_step(beats: List[float], scores: List[float], seed: int, end_boundary: float,
               ctx: RefinementContext) -> Optional[int]:
    """Advance one beat from `seed`; None stops the walk, _FAILED marks it unresolved."""
    expected = expected_interval(beats, seed, ctx)
    window = _window(beats, seed, expected, ctx)
    if not window:
        _truncate_near_end(beats, scores, seed, end_boundary, ctx)
        return None
    if len(window) == 1:
        return window[0]

    origin = beats[seed]
    totals = [_walk_position((beats[i] - origin) * ctx.fs, expected) * scores[i] for i in window]
    best = int(np.argmax(totals))
    if totals[best] >= ACCEPT_SCORE:
        chosen = window[best]
    else:
        chosen = _lookahead(beats, scores, seed, expected, ctx)
        if chosen is None:
            if _truncate_near_end(beats, scores, seed, end_boundary, ctx):
                return None
            return _FAILED

    # Everything between the seed and the chosen beat is a spurious detection
    del beats[seed + 1:chosen]
    del scores[seed + 1:chosen]
    return seed + 1


def refine_segment(
    beats: Sequence[float],
    scores: Sequence[float],
    end_boundary: float,
    ctx: RefinementContext,
) -> SegmentOutcome:
    """
    Resolve the suspicious stretches of one segment, walking forward in time.

    Parameters
    ----------
    beats : Sequence[float]
        Sorted beat times of the segment.
    scores : Sequence[float]
        Shape score of each beat.
    end_boundary : float
        Time at which the segment ends.
    ctx : RefinementContext
        Refinement parameters.

    Returns
    -------
    SegmentOutcome
        Remaining beats and scores, plus the stretches that could not be
        resolved (no seed, or no confident candidate far from the end).
    """
    beats = [float(b) for b in beats]
    scores = [float(s) for s in scores]
    outcome = SegmentOutcome(beats=beats, scores=scores)
    if len(beats) <= CONTEXT_BEATS:
        return outcome

    last_failed = -math.inf
    walked_until = -math.inf
    for stretch_start, stretch_end in suspicious_stretches(beats, ctx):
        if stretch_end <= walked_until:
            continue
        first = bisect.bisect_left(beats, stretch_start)
        if first >= len(beats) or beats[first] > stretch_end:
            continue

        seed = _find_seed(seed_mask(beats, scores, ctx), first, beats, last_failed)
        if seed is None:
            last_failed = stretch_start
            outcome.unresolved.append(TimeWindow(stretch_start, stretch_end))
            continue

        while seed + 1 < len(beats) and beats[seed] < stretch_end:
            step = _walk_step(beats, scores, seed, end_boundary, ctx)
            if step is None:
                break
            if step == _FAILED:
                last_failed = beats[seed]
                outcome.unresolved.append(TimeWindow(beats[seed], stretch_end))
                break
            seed = step
        walked_until = beats[min(seed, len(beats) - 1)]

    return outcome


# ---------------------------------------------------------------------------
# Segments and passes
# ---------------------------------------------------------------------------

def split_segments(
    beats: Sequence[float],
    blocked: Iterable[TimeWindow],
    start: float,
    end: float,
    discontinue: float,
) -> List[TimeWindow]:
    """
    Independent segments of a recording.

    Gaps between consecutive beats longer than `discontinue`, together
    with the blocked (artifact and exclusion) windows, are merged
    (joining windows closer than `discontinue`); the segments are what
    remains of ``[start, end]``.
    """
    beats = np.asarray(beats, dtype=float)
    gaps = [
        TimeWindow(float(beats[i]), float(beats[i + 1]))
        for i in np.flatnonzero(np.diff(beats) > discontinue)
    ]
    segments: List[TimeWindow] = []
    cursor = start
    for window in merge_windows(list(blocked) + gaps, join_gap=discontinue):
        if window.start > cursor:
            segments.append(TimeWindow(cursor, min(window.start, end)))
        cursor = max(cursor, window.end)
    if cursor < end:
        segments.append(TimeWindow(cursor, end))
    return [segment for segment in segments if segment.end > segment.start]


def _overlapping(windows: List[TimeWindow], others: List[TimeWindow]) -> List[TimeWindow]:
    return [w for w in windows if any(w.start <= o.end and o.start <= w.end for o in others)]


def _refine_both_ways(
    segment: TimeWindow,
    beats: np.ndarray,
    waveforms: BeatWaveforms,
    ctx: RefinementContext,
) -> SegmentOutcome:
    scores = shape_scores_for(beats, waveforms)
    forward = refine_segment(beats, scores, segment.end, ctx)

    # Mirror about the segment centre so the walk runs backwards in time
    pivot = segment.start + segment.end
    mirrored = pivot - np.asarray(forward.beats[::-1], dtype=float)
    backward = refine_segment(mirrored, forward.scores[::-1], segment.end, ctx)

    failed_backward = [TimeWindow(pivot - w.end, pivot - w.start) for w in backward.unresolved]
    return SegmentOutcome(
        beats=list(pivot - np.asarray(backward.beats[::-1], dtype=float)),
        scores=backward.scores[::-1],
        unresolved=_overlapping(forward.unresolved, failed_backward),
    )


def refine_beats(
    beats: Sequence[float],
    waveforms: BeatWaveforms,
    fs: float,
    start: float,
    end: float,
    blocked: Iterable[TimeWindow] = (),
    config: Config = default_config,
) -> RefinementResult:
    """
    Refine a beat sequence over a whole recording.

    Each pass splits the recording into segments, refines every segment
    forward then backward (in parallel across segments), and rounds the
    concatenated beats to TIME_DECIMALS decimals. Beats outside every
    segment are dropped.

    Parameters
    ----------
    beats : Sequence[float]
        Initial beat times (usually all candidate times).
    waveforms : BeatWaveforms
        Candidate waveforms providing the shape scores.
    fs : float
        Processing sampling rate in Hz.
    start, end : float
        Time span of the recording.
    blocked : Iterable[TimeWindow]
        Artifact and exclusion windows.
    config : Config
        Pipeline configuration (refinement parameters, PASS_NUMBER,
        N_WORKERS).

    Returns
    -------
    RefinementResult
        Refined beats; identical for any N_WORKERS.
    """
    ctx = RefinementContext.from_config(fs, config)
    blocked = list(blocked)
    current = np.unique(np.round(np.asarray(beats, dtype=float), TIME_DECIMALS))
    initial = current.size
    segments: List[TimeWindow] = []
    unresolved: List[TimeWindow] = []

    for pass_index in range(config.PASS_NUMBER):
        segments = split_segments(current, blocked, start, end, config.DISCONTINUE_SEC)
        chunks = [current[(current >= s.start) & (current <= s.end)] for s in segments]
        work = partial(_refine_both_ways, waveforms=waveforms, ctx=ctx)

        if config.N_WORKERS > 1 and len(segments) > 1:
            with ThreadPoolExecutor(max_workers=config.N_WORKERS) as executor:
                outcomes = list(executor.map(work, segments, chunks))
        else:
            outcomes = list(map(work, segments, chunks))

        refined = [np.asarray(o.beats, dtype=float) for o in outcomes]
        current = np.unique(np.round(np.concatenate(refined), TIME_DECIMALS)) if refined else np.array([])
        unresolved = [w for o in outcomes for w in o.unresolved]
        logger.debug("Pass %d: %d segment(s), %d beats", pass_index + 1, len(segments), current.size)

    if unresolved:
        logger.warning("%d stretch(es) could not be resolved in either direction", len(unresolved))

    return RefinementResult(
        beats=current,
        segments=segments,
        n_removed=int(initial - current.size),
        unresolved=unresolved,
    )
