from __future__ import annotations

from collections import Counter
from collections.abc import Mapping, Sequence
from typing import Any

from huddle.db.sqlite_client import (
    get_group,
    get_group_member_ids,
    get_slot_vote_rows,
    upsert_slot_vote,
)
from huddle.engine.availability import CandidateSlot
from huddle.engine.errors import GroupNotFound, InvalidTransition
from huddle.engine.intervals import TimeInterval, format_timestamp, parse_timestamp


def _current_cycle(conn: Any, group_id: str) -> tuple[dict[str, Any], int]:
    group = get_group(conn, group_id)
    if not group:
        raise GroupNotFound("Group not found.")
    return group, int(group["poll_cycle"])


def _row_interval(row: dict[str, Any]) -> TimeInterval:
    return TimeInterval(parse_timestamp(row["start_utc"]), parse_timestamp(row["end_utc"]))


def cast_slot_vote(
    conn: Any,
    group_id: str,
    member_id: str,
    interval: TimeInterval,
    preferred: bool = True,
) -> None:
    group, cycle = _current_cycle(conn, group_id)
    if group["state"] != "polling":
        raise InvalidTransition("Voting is only open while the group is polling.")
    if member_id not in get_group_member_ids(conn, group_id):
        raise ValueError("Only group members can vote.")
    upsert_slot_vote(
        conn,
        group_id,
        cycle,
        member_id,
        format_timestamp(interval.start),
        format_timestamp(interval.end),
        preferred,
    )


def get_slot_vote_tallies(conn: Any, group_id: str) -> dict[TimeInterval, int]:
    """Return interval -> preferred-vote count for the current polling cycle."""
    _, cycle = _current_cycle(conn, group_id)
    tallies: Counter[TimeInterval] = Counter()
    for row in get_slot_vote_rows(conn, group_id, cycle):
        if int(row["preferred"]):
            tallies[_row_interval(row)] += 1
    return dict(tallies)


def get_member_slot_votes(conn: Any, group_id: str, member_id: str) -> list[dict[str, Any]]:
    _, cycle = _current_cycle(conn, group_id)
    return [
        {"interval": _row_interval(row), "preferred": bool(int(row["preferred"]))}
        for row in get_slot_vote_rows(conn, group_id, cycle, member_id=member_id)
    ]


def rank_slots_with_votes(
    slots: Sequence[CandidateSlot], tallies: Mapping[TimeInterval, int]
) -> list[CandidateSlot]:
    """Most-voted slots first; equal votes keep the engine's order."""
    return sorted(slots, key=lambda slot: -tallies.get(slot.interval, 0))
