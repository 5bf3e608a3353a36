"""
Time windows shared by artifact masking, exclusions and segmentation.

All windows are half-open ``[start, end)`` intervals in seconds. Window
lists returned by this module are sorted by start time and disjoint.
"""

from typing import Iterable, List, NamedTuple, Sequence, Tuple

import numpy as np


class TimeWindow(NamedTuple):
    """Half-open time interval ``[start, end)`` in seconds."""
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start

    def contains(self, t: float) -> bool:
        return self.start <= t < self.end

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start < other.end and other.start < self.end


def make_window(start: float, end: float) -> TimeWindow:
    """Build a window from two endpoints given in any order."""
    start, end = sorted((float(start), float(end)))
    return TimeWindow(start, end)


def contiguous_runs(mask: np.ndarray) -> List[Tuple[int, int]]:
    """
    Locate runs of True values in a boolean mask.

    Returns
    -------
    List[Tuple[int, int]]
        Inclusive ``(first, last)`` index pairs, in order.
    """
    mask = np.asarray(mask, dtype=bool)
    if mask.size == 0:
        return []
    padded = np.concatenate(([0], mask.astype(np.int8), [0]))
    edges = np.diff(padded)
    starts = np.flatnonzero(edges == 1)
    stops = np.flatnonzero(edges == -1) - 1
    return [(int(a), int(b)) for a, b in zip(starts, stops)]


def merge_windows(windows: Iterable[TimeWindow], join_gap: float = 0.0) -> List[TimeWindow]:
    """
    Sort windows and merge the overlapping ones.

    Parameters
    ----------
    windows : Iterable[TimeWindow]
        Windows in any order.
    join_gap : float
        Windows separated by less than this many seconds are merged as
        well. With the default, only overlapping or touching windows merge.

    Returns
    -------
    List[TimeWindow]
        Sorted, disjoint windows.
    """
    ordered = sorted(TimeWindow(float(w[0]), float(w[1])) for w in windows)
    merged: List[TimeWindow] = []
    for window in ordered:
        if merged and (
            window.start <= merged[-1].end or window.start - merged[-1].end < join_gap
        ):
            last = merged[-1]
            merged[-1] = TimeWindow(last.start, max(last.end, window.end))
        else:
            merged.append(window)
    return merged


def trim_window(window: TimeWindow, blocker: TimeWindow) -> List[TimeWindow]:
    """Remove the part of `window` covered by `blocker` (may split it in two)."""
    if not window.overlaps(blocker):
        return [window]
    pieces = [
        TimeWindow(window.start, min(window.end, blocker.start)),
        TimeWindow(max(window.start, blocker.end), window.end),
    ]
    return [piece for piece in pieces if piece.duration > 0]


def apply_exclusion(
    windows: Sequence[TimeWindow],
    new_window: TimeWindow,
    artifacts: Sequence[TimeWindow] = (),
) -> List[TimeWindow]:
    """
    Insert an exclusion window into a disjoint window set.

    The new window is merged with every overlapping exclusion, then the
    whole set is trimmed against the artifact windows so that no exclusion
    covers an artifact. Exclusions lying entirely inside an artifact vanish.

    Parameters
    ----------
    windows : Sequence[TimeWindow]
        Current exclusion windows.
    new_window : TimeWindow
        Window to add; its endpoints may be given in any order.
    artifacts : Sequence[TimeWindow]
        Artifact windows, which always take precedence.

    Returns
    -------
    List[TimeWindow]
        New sorted, disjoint exclusion windows. The input is not modified.
    """
    merged = merge_windows(list(windows) + [make_window(*new_window)])
    for artifact in artifacts:
        artifact = TimeWindow(float(artifact[0]), float(artifact[1]))
        trimmed: List[TimeWindow] = []
        for window in merged:
            trimmed.extend(trim_window(window, artifact))
        merged = trimmed
    return sorted(merged)


def remove_exclusion(windows: Sequence[TimeWindow], index: int) -> List[TimeWindow]:
    """Return the window set without the window at `index`."""
    if not -len(windows) <= index < len(windows):
        raise IndexError(f"No exclusion window at index {index} (have {len(windows)})")
    remaining = list(windows)
    del remaining[index]
    return remaining


def in_any_window(times: np.ndarray, windows: Iterable[TimeWindow], extend: float = 0.0) -> np.ndarray:
    """Boolean mask of `times` falling inside ``[start, end + extend]`` of any window."""
    times = np.asarray(times, dtype=float)
    mask = np.zeros(times.shape, dtype=bool)
    for start, end in windows:
        mask |= (times >= start) & (times <= end + extend)
    return mask
