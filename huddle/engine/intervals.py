"""Half-open time intervals and the set operations used on free time."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any


def to_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, str):
        return to_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    raise TypeError(f"Unsupported timestamp value: {value!r}")


def format_timestamp(value: datetime) -> str:
    return to_utc(value).isoformat()


@dataclass(frozen=True, order=True)
class TimeInterval:
    """A span of time ``[start, end)``; ``start`` is included, ``end`` is not."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))
        if self.start >= self.end:
            raise ValueError(f"Interval start {self.start} must be before end {self.end}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: TimeInterval) -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: TimeInterval) -> bool:
        return self.start <= other.start and other.end <= self.end

    def clip(self, start: datetime, end: datetime) -> TimeInterval | None:
        lo = max(self.start, to_utc(start))
        hi = min(self.end, to_utc(end))
        if lo >= hi:
            return None
        return TimeInterval(lo, hi)

    def to_dict(self) -> dict[str, str]:
        return {"start": format_timestamp(self.start), "end": format_timestamp(self.end)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TimeInterval:
        return cls(parse_timestamp(payload["start"]), parse_timestamp(payload["end"]))


def normalize_intervals(intervals: Iterable[TimeInterval]) -> list[TimeInterval]:
    """Sort intervals and merge any that overlap or touch."""
    ordered = sorted(intervals)
    merged: list[TimeInterval] = []
    for interval in ordered:
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = TimeInterval(last.start, interval.end)
            continue
        merged.append(interval)
    return merged


def clip_intervals(
    intervals: Iterable[TimeInterval], start: datetime, end: datetime
) -> list[TimeInterval]:
    out: list[TimeInterval] = []
    for interval in intervals:
        clipped = interval.clip(start, end)
        if clipped is not None:
            out.append(clipped)
    return out


def subtract_intervals(
    intervals: Iterable[TimeInterval], removed: Iterable[TimeInterval]
) -> list[TimeInterval]:
    """Return ``intervals`` minus every span in ``removed``, normalized."""
    remaining = normalize_intervals(intervals)
    for cut in normalize_intervals(removed):
        next_remaining: list[TimeInterval] = []
        for interval in remaining:
            if not interval.overlaps(cut):
                next_remaining.append(interval)
                continue
            if interval.start < cut.start:
                next_remaining.append(TimeInterval(interval.start, cut.start))
            if cut.end < interval.end:
                next_remaining.append(TimeInterval(cut.end, interval.end))
        remaining = next_remaining
    return remaining


def covers(intervals: Iterable[TimeInterval], target: TimeInterval) -> bool:
    """True when the union of ``intervals`` contains all of ``target``."""
    return any(interval.contains(target) for interval in normalize_intervals(intervals))
