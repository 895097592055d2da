"""Meeting-time coordination for a group.

A group moves through four states::

    forming --poll--> polling --confirm--> confirmed --schedule edit--> stale
                         ^                     |                          |
                         +------ reschedule ---+--------------------------+

Polling is read-only over member schedules. Confirmation and every state
change go through a conditional UPDATE on the group row, so two members
confirming at once cannot both win.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from huddle.db.sqlite_client import (
    get_active_commitments_for_member,
    get_committed_slot_row,
    get_group,
    get_group_member_ids,
    get_latest_committed_slot,
    insert_committed_slot,
    set_poll_window,
    transition_group_state,
    update_committed_slot_status,
)
from huddle.engine.availability import (
    DEFAULT_HORIZON,
    CandidateSlot,
    ScheduleStore,
    SlotQueryResult,
    compute_group_candidate_slots,
    members_free_throughout,
)
from huddle.engine.errors import (
    AlreadyConfirmed,
    GroupNotFound,
    InvalidTransition,
    StaleSlot,
)
from huddle.engine.intervals import (
    TimeInterval,
    format_timestamp,
    parse_timestamp,
)
from huddle.schedules.store import SqliteScheduleStore

logger = logging.getLogger(__name__)

# Every coordination write runs its check-and-set, follow-up writes and
# commit/rollback under this lock. A rollback on a shared connection would
# otherwise discard another group's half-finished transaction.
_write_lock = threading.RLock()


class GroupState(StrEnum):
    FORMING = "forming"
    POLLING = "polling"
    CONFIRMED = "confirmed"
    STALE = "stale"


@dataclass(frozen=True)
class CommittedSlot:
    group_id: str
    interval: TimeInterval
    member_ids: frozenset[str]
    poll_cycle: int
    status: str
    confirmed_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            **self.interval.to_dict(),
            "member_ids": sorted(self.member_ids),
            "poll_cycle": self.poll_cycle,
            "status": self.status,
            "confirmed_at": self.confirmed_at,
        }


def _safe_rollback(conn: Any) -> None:
    with suppress(Exception):
        conn.rollback()


def _require_group(conn: Any, group_id: str) -> dict[str, Any]:
    group = get_group(conn, group_id)
    if not group:
        raise GroupNotFound(f"Group {group_id} not found.")
    return group


def _committed_from_row(row: dict[str, Any]) -> CommittedSlot:
    return CommittedSlot(
        group_id=str(row["group_id"]),
        interval=TimeInterval(parse_timestamp(row["start_utc"]), parse_timestamp(row["end_utc"])),
        member_ids=frozenset(json.loads(row.get("member_ids_json") or "[]")),
        poll_cycle=int(row["poll_cycle"]),
        status=str(row["status"]),
        confirmed_at=str(row.get("confirmed_at") or ""),
    )


def get_group_state(conn: Any, group_id: str) -> GroupState:
    return GroupState(_require_group(conn, group_id)["state"])


def get_committed_slot(conn: Any, group_id: str) -> CommittedSlot | None:
    _require_group(conn, group_id)
    row = get_latest_committed_slot(conn, group_id)
    return _committed_from_row(row) if row else None


def poll_group(
    conn: Any,
    group_id: str,
    window_start: datetime,
    window_end: datetime,
    min_duration: timedelta,
    store: ScheduleStore | None = None,
    horizon: timedelta = DEFAULT_HORIZON,
    now: datetime | None = None,
) -> SlotQueryResult:
    """Compute candidate slots for the group's members and open polling.

    A group whose only member is its creator has nothing to intersect: the
    result is empty and the group stays forming.
    """
    group = _require_group(conn, group_id)
    member_ids = get_group_member_ids(conn, group_id)
    if not member_ids - {str(group["created_by"])}:
        logger.info("[COORDINATION] group=%s status=waiting_for_members", group_id)
        return SlotQueryResult(slots=(), total_members=len(member_ids))

    result = compute_group_candidate_slots(
        member_ids,
        store or SqliteScheduleStore(conn),
        window_start,
        window_end,
        min_duration,
        horizon=horizon,
        now=now,
    )
    state = GroupState(group["state"])
    with _write_lock:
        if state in (GroupState.FORMING, GroupState.POLLING):
            set_poll_window(
                conn,
                group_id,
                format_timestamp(window_start),
                format_timestamp(window_end),
                int(min_duration.total_seconds() // 60),
            )
        moved = state is GroupState.FORMING and transition_group_state(
            conn, group_id, (GroupState.FORMING,), GroupState.POLLING
        )
    if moved:
        logger.info("[COORDINATION] group=%s transition=forming->polling", group_id)
    return result


def _invalid_members(
    conn: Any,
    group_id: str,
    member_ids: frozenset[str],
    interval: TimeInterval,
    store: ScheduleStore,
) -> tuple[frozenset[str], frozenset[str]]:
    """Return (departed, no_longer_free) among ``member_ids`` for ``interval``."""
    departed = member_ids - get_group_member_ids(conn, group_id)
    still_free = members_free_throughout(member_ids - departed, store, interval)
    return frozenset(departed), frozenset(member_ids - departed - still_free)


def _check_slot_still_valid(
    conn: Any,
    group: dict[str, Any],
    slot: CandidateSlot,
    store: ScheduleStore,
) -> None:
    group_id = str(group["id"])
    if group.get("poll_window_start") and group.get("poll_window_end"):
        polled = TimeInterval(
            parse_timestamp(group["poll_window_start"]), parse_timestamp(group["poll_window_end"])
        )
        if not polled.contains(slot.interval):
            raise StaleSlot("Slot lies outside the window the group polled.")
    departed, missing = _invalid_members(
        conn, group_id, slot.available_member_ids, slot.interval, store
    )
    if departed:
        raise StaleSlot(f"{len(departed)} member(s) in this slot have left the group.")
    if missing:
        raise StaleSlot(f"{len(missing)} member(s) are no longer free for this slot.")


def _discard_confirmation(conn: Any, group: dict[str, Any]) -> int:
    """Supersede the current confirmation and open a new polling cycle."""
    group_id = str(group["id"])
    cycle = int(group["poll_cycle"])
    with _write_lock:
        try:
            moved = transition_group_state(
                conn,
                group_id,
                (GroupState.CONFIRMED, GroupState.STALE),
                GroupState.POLLING,
                poll_cycle=cycle,
                bump_cycle=True,
                commit=False,
            )
            if moved:
                update_committed_slot_status(conn, group_id, cycle, "superseded", commit=False)
                conn.commit()
        except Exception:
            _safe_rollback(conn)
            raise
        if not moved:
            _safe_rollback(conn)
            raise AlreadyConfirmed("Group was rescheduled or confirmed concurrently.")
    logger.info("[COORDINATION] group=%s transition=%s->polling", group_id, group["state"])
    return cycle + 1


def request_reschedule(conn: Any, group_id: str) -> int:
    """Drop a confirmed or stale meeting time and start a new polling cycle.

    Returns the new poll cycle.
    """
    group = _require_group(conn, group_id)
    if group["state"] not in (GroupState.CONFIRMED, GroupState.STALE):
        raise InvalidTransition(f"Cannot reschedule a group that is {group['state']}.")
    return _discard_confirmation(conn, group)


def confirm_slot(
    conn: Any,
    group_id: str,
    slot: CandidateSlot,
    allow_reschedule: bool = False,
    store: ScheduleStore | None = None,
) -> CommittedSlot:
    """Commit ``slot`` as the group's meeting time.

    Raises ``AlreadyConfirmed`` when another confirmation holds the current
    cycle and ``StaleSlot`` when the recorded members are no longer all free
    for the slot. A schedule edit that lands while the confirmation commits
    leaves the group stale and also raises ``StaleSlot``.
    """
    store = store or SqliteScheduleStore(conn)
    group = _require_group(conn, group_id)
    state = GroupState(group["state"])
    if state in (GroupState.CONFIRMED, GroupState.STALE):
        if not allow_reschedule:
            raise AlreadyConfirmed("Group already has a confirmed meeting time.")
        _discard_confirmation(conn, group)
        group = _require_group(conn, group_id)
        state = GroupState(group["state"])
    if state is GroupState.FORMING:
        raise InvalidTransition("Generate candidate slots before confirming one.")
    if not slot.available_member_ids:
        raise StaleSlot("Slot has no available members.")

    cycle = int(group["poll_cycle"])
    with _write_lock:
        _check_slot_still_valid(conn, group, slot, store)
        try:
            won = transition_group_state(
                conn,
                group_id,
                (GroupState.POLLING,),
                GroupState.CONFIRMED,
                poll_cycle=cycle,
                commit=False,
            )
            if won:
                insert_committed_slot(
                    conn,
                    group_id,
                    cycle,
                    format_timestamp(slot.interval.start),
                    format_timestamp(slot.interval.end),
                    sorted(slot.available_member_ids),
                    commit=False,
                )
                conn.commit()
        except Exception:
            _safe_rollback(conn)
            raise
        if not won:
            _safe_rollback(conn)
            raise AlreadyConfirmed("Group already has a confirmed meeting time.")
    logger.info(
        "[COORDINATION] group=%s transition=polling->confirmed cycle=%s start=%s",
        group_id,
        cycle,
        format_timestamp(slot.interval.start),
    )
    committed = _committed_from_row(get_committed_slot_row(conn, group_id, cycle))

    # Schedule edits from other connections are not covered by the lock; their
    # hook may have run before this commit was visible.
    departed, missing = _invalid_members(
        conn, group_id, committed.member_ids, committed.interval, store
    )
    if departed or missing:
        _mark_stale(conn, committed, reason="changed_during_confirm")
        raise StaleSlot(
            f"{len(departed) + len(missing)} member(s) changed while confirming; "
            "the group needs to reschedule."
        )
    return committed


def _mark_stale(conn: Any, committed: CommittedSlot, reason: str) -> bool:
    with _write_lock:
        try:
            moved = transition_group_state(
                conn,
                committed.group_id,
                (GroupState.CONFIRMED,),
                GroupState.STALE,
                poll_cycle=committed.poll_cycle,
                commit=False,
            )
            if moved:
                update_committed_slot_status(
                    conn, committed.group_id, committed.poll_cycle, "stale", commit=False
                )
                conn.commit()
        except Exception:
            _safe_rollback(conn)
            raise
        if not moved:
            _safe_rollback(conn)
            return False
    logger.info(
        "[COORDINATION] group=%s transition=confirmed->stale reason=%s",
        committed.group_id,
        reason,
    )
    return True


def handle_schedule_change(
    conn: Any, user_id: str, store: ScheduleStore | None = None
) -> list[str]:
    """Mark confirmations stale where ``user_id`` is no longer free for the committed time.

    Returns the ids of groups that moved to stale.
    """
    store = store or SqliteScheduleStore(conn)
    stale_groups: list[str] = []
    # Held for the whole scan so a confirmation in flight commits before it is read.
    with _write_lock:
        for row in get_active_commitments_for_member(conn, user_id):
            committed = _committed_from_row(row)
            if user_id not in committed.member_ids:
                continue
            if members_free_throughout([user_id], store, committed.interval):
                continue
            if _mark_stale(conn, committed, reason=f"schedule_change:{user_id}"):
                stale_groups.append(committed.group_id)
    return stale_groups


def handle_member_departure(conn: Any, group_id: str, member_id: str) -> bool:
    """Stale the group's confirmation if the departing member was counted in it."""
    with _write_lock:
        group = get_group(conn, group_id)
        if not group or group["state"] != GroupState.CONFIRMED:
            return False
        committed = get_committed_slot(conn, group_id)
        if committed is None or member_id not in committed.member_ids:
            return False
        return _mark_stale(conn, committed, reason=f"member_left:{member_id}")
