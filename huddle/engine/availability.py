from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import groupby
from typing import Protocol

from huddle.engine.errors import DataUnavailable, EmptyGroup, InvalidWindow
from huddle.engine.intervals import TimeInterval, clip_intervals, normalize_intervals, to_utc

logger = logging.getLogger(__name__)

DEFAULT_HORIZON = timedelta(days=90)

# Ends sort before starts at the same instant, so back-to-back intervals never overlap.
_END = 0
_START = 1


class ScheduleStore(Protocol):
    def get_free_intervals(
        self, user_id: str, start: datetime, end: datetime
    ) -> Sequence[TimeInterval] | None: ...


class MembershipDirectory(Protocol):
    def get_members(self, group_id: str) -> set[str]: ...


@dataclass(frozen=True)
class CandidateSlot:
    interval: TimeInterval
    available_member_ids: frozenset[str]
    total_members: int

    @property
    def available_count(self) -> int:
        return len(self.available_member_ids)

    @property
    def coverage_ratio(self) -> float:
        return self.available_count / self.total_members

    @property
    def duration(self) -> timedelta:
        return self.interval.duration

    def to_dict(self) -> dict[str, object]:
        return {
            **self.interval.to_dict(),
            "available_member_ids": sorted(self.available_member_ids),
            "available_count": self.available_count,
            "total_members": self.total_members,
            "coverage_ratio": self.coverage_ratio,
        }


@dataclass(frozen=True)
class SlotQueryResult:
    slots: tuple[CandidateSlot, ...]
    total_members: int
    no_data_member_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def members_with_no_data(self) -> int:
        return len(self.no_data_member_ids)

    @property
    def has_common_time(self) -> bool:
        needed = 1 if self.total_members == 1 else 2
        return any(slot.available_count >= needed for slot in self.slots)

    @property
    def all_members_missing_data(self) -> bool:
        return self.total_members > 0 and self.members_with_no_data == self.total_members


def _validate_window(
    window_start: datetime,
    window_end: datetime,
    min_duration: timedelta,
    horizon: timedelta,
    now: datetime | None,
) -> None:
    if window_start >= window_end:
        raise InvalidWindow("window_start must be before window_end")
    if window_end - window_start > horizon:
        raise InvalidWindow(f"Window exceeds the {horizon.days}-day horizon")
    if now is not None and window_end > to_utc(now) + horizon:
        raise InvalidWindow(f"Window ends more than {horizon.days} days from now")
    if min_duration <= timedelta(0):
        raise InvalidWindow("min_duration must be positive")


def _slot_sort_key(slot: CandidateSlot) -> tuple[float, datetime, timedelta, tuple[str, ...]]:
    return (
        -slot.coverage_ratio,
        slot.interval.start,
        -slot.duration,
        tuple(sorted(slot.available_member_ids)),
    )


def _boundary_events(
    availability: Mapping[str, Sequence[TimeInterval]],
    window_start: datetime,
    window_end: datetime,
) -> list[tuple[datetime, int, str]]:
    events: list[tuple[datetime, int, str]] = []
    for member_id, intervals in availability.items():
        for interval in clip_intervals(normalize_intervals(intervals), window_start, window_end):
            events.append((interval.start, _START, member_id))
            events.append((interval.end, _END, member_id))
    events.sort()
    return events


def compute_candidate_slots(
    availability: Mapping[str, Sequence[TimeInterval] | None],
    window_start: datetime,
    window_end: datetime,
    min_duration: timedelta,
    horizon: timedelta = DEFAULT_HORIZON,
    now: datetime | None = None,
    min_available: int = 1,
) -> SlotQueryResult:
    """Rank the spans inside the window where members are free together.

    ``availability`` maps each member id to their free intervals, or to ``None``
    when the member has no schedule data. Members without data still count
    towards ``total_members``.
    """
    if not availability:
        raise EmptyGroup("At least one member is required.")
    window_start = to_utc(window_start)
    window_end = to_utc(window_end)
    _validate_window(window_start, window_end, min_duration, horizon, now)

    total_members = len(availability)
    no_data = frozenset(member_id for member_id, rows in availability.items() if rows is None)
    with_data = {
        member_id: rows for member_id, rows in availability.items() if rows is not None
    }

    slots: list[CandidateSlot] = []
    active: set[str] = set()
    segment_start: datetime | None = None
    segment_members: frozenset[str] = frozenset()
    for timestamp, batch in groupby(
        _boundary_events(with_data, window_start, window_end), key=lambda event: event[0]
    ):
        for _, kind, member_id in batch:
            if kind == _END:
                active.discard(member_id)
            else:
                active.add(member_id)
        current = frozenset(active)
        if current == segment_members:
            continue
        if segment_start is not None and segment_members:
            if (
                timestamp - segment_start >= min_duration
                and len(segment_members) >= min_available
            ):
                slots.append(
                    CandidateSlot(
                        interval=TimeInterval(segment_start, timestamp),
                        available_member_ids=segment_members,
                        total_members=total_members,
                    )
                )
        segment_start = timestamp
        segment_members = current

    slots.sort(key=_slot_sort_key)
    logger.debug(
        "[ENGINE] members=%s no_data=%s slots=%s window=%s/%s",
        total_members,
        len(no_data),
        len(slots),
        window_start.isoformat(),
        window_end.isoformat(),
    )
    return SlotQueryResult(
        slots=tuple(slots),
        total_members=total_members,
        no_data_member_ids=no_data,
    )


def collect_availability(
    member_ids: Iterable[str],
    store: ScheduleStore,
    window_start: datetime,
    window_end: datetime,
) -> dict[str, list[TimeInterval] | None]:
    """Fetch every member's free time; a member whose fetch fails counts as having no data."""
    out: dict[str, list[TimeInterval] | None] = {}
    for member_id in sorted(set(member_ids)):
        try:
            rows = store.get_free_intervals(member_id, window_start, window_end)
        except DataUnavailable as exc:
            logger.warning("[ENGINE] member=%s status=unavailable error=%s", member_id, exc)
            out[member_id] = None
            continue
        out[member_id] = None if rows is None else list(rows)
    return out


def compute_group_candidate_slots(
    member_ids: Iterable[str],
    store: ScheduleStore,
    window_start: datetime,
    window_end: datetime,
    min_duration: timedelta,
    horizon: timedelta = DEFAULT_HORIZON,
    now: datetime | None = None,
    min_available: int = 1,
) -> SlotQueryResult:
    members = set(member_ids)
    if not members:
        raise EmptyGroup("At least one member is required.")
    window_start = to_utc(window_start)
    window_end = to_utc(window_end)
    _validate_window(window_start, window_end, min_duration, horizon, now)
    availability = collect_availability(members, store, window_start, window_end)
    return compute_candidate_slots(
        availability,
        window_start,
        window_end,
        min_duration,
        horizon=horizon,
        now=now,
        min_available=min_available,
    )


def members_free_throughout(
    member_ids: Iterable[str],
    store: ScheduleStore,
    interval: TimeInterval,
) -> set[str]:
    """Return the subset of ``member_ids`` whose free time spans all of ``interval``."""
    free: set[str] = set()
    for member_id in member_ids:
        try:
            rows = store.get_free_intervals(member_id, interval.start, interval.end)
        except DataUnavailable as exc:
            logger.warning("[ENGINE] member=%s status=unavailable error=%s", member_id, exc)
            continue
        if rows and any(row.contains(interval) for row in normalize_intervals(rows)):
            free.add(member_id)
    return free
