# intervals.py
import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence


class IntervalError(ValueError):
    """Malformed interval input. Always a bug in the caller, never user input."""


@dataclass(frozen=True)
class Interval:
    start: float
    end: float

    def __post_init__(self):
        if not (math.isfinite(self.start) and math.isfinite(self.end)):
            raise IntervalError(f"non-finite interval [{self.start}, {self.end})")
        if self.start < 0:
            raise IntervalError(f"interval starts before 0: [{self.start}, {self.end})")
        if self.end <= self.start:
            raise IntervalError(f"empty or inverted interval [{self.start}, {self.end})")

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self):
        return {"start": self.start, "end": self.end, "duration": self.duration}


def _check_ordered(intervals: Sequence[Interval]) -> None:
    for prev, nxt in zip(intervals, intervals[1:]):
        if nxt.start < prev.start:
            raise IntervalError(f"intervals not ordered by start: {prev} then {nxt}")


def covered_duration(intervals: Iterable[Interval]) -> float:
    return sum(i.duration for i in intervals)


def merge(silences: Sequence[Interval], min_gap: float) -> List[Interval]:
    """
    Coalesce consecutive silences separated by less than `min_gap` seconds.
    Input must be ordered by start. The output covers every input moment and
    is a fixed point: merging it again with the same gap changes nothing.
    """
    if min_gap < 0:
        raise IntervalError(f"min_gap must be >= 0, got {min_gap}")
    if not silences:
        return []
    _check_ordered(silences)

    merged: List[Interval] = []
    current = silences[0]
    for nxt in silences[1:]:
        if nxt.start - current.end < min_gap:
            current = Interval(current.start, max(current.end, nxt.end))
        else:
            merged.append(current)
            current = nxt
    merged.append(current)
    return merged


def cap(silences: Sequence[Interval], limit: int) -> List[Interval]:
    """
    Keep at most `limit` silences: the longest ones (earliest start wins a
    tie), returned in start order. Every kept silence becomes two trim nodes
    in the ffmpeg filter graph, so this bounds the cost of one encode.
    """
    if limit < 0:
        raise IntervalError(f"limit must be >= 0, got {limit}")
    if len(silences) <= limit:
        return list(silences)
    longest = sorted(silences, key=lambda s: (-s.duration, s.start))[:limit]
    return sorted(longest, key=lambda s: s.start)


def derive_keep_segments(silences: Sequence[Interval], total_duration: float) -> List[Interval]:
    """
    Complement of `silences` inside [0, total_duration).

    An empty result means the whole media is silent; callers treat that as
    "keep the original" rather than producing an empty file.
    """
    if not math.isfinite(total_duration) or total_duration < 0:
        raise IntervalError(f"total duration must be a finite value >= 0, got {total_duration}")
    _check_ordered(silences)

    segments: List[Interval] = []
    cursor = 0.0
    for silence in silences:
        gap_end = min(silence.start, total_duration)
        if gap_end > cursor:
            segments.append(Interval(cursor, gap_end))
        cursor = max(cursor, silence.end)

    if cursor < total_duration:
        segments.append(Interval(cursor, total_duration))
    return segments


def reduce_silences(silences: Sequence[Interval], min_gap: float = 2.0, limit: int = 10) -> List[Interval]:
    # merge first: capping before merging would drop pieces of a long silence
    return cap(merge(silences, min_gap), limit)
