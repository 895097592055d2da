from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from huddle.db.sqlite_client import get_group
from huddle.engine.availability import CandidateSlot
from huddle.engine.errors import AlreadyConfirmed, GroupNotFound, InvalidTransition, StaleSlot
from huddle.groups import coordination
from huddle.groups.coordination import (
    CommittedSlot,
    GroupState,
    confirm_slot,
    get_committed_slot,
    get_group_state,
    poll_group,
    request_reschedule,
)
from huddle.groups.manager import create_group, join_group, leave_group
from huddle.schedules.manager import remove_free_time, set_free_intervals
from huddle.schedules.store import SqliteScheduleStore

HALF_HOUR = timedelta(minutes=30)


def _group_with_schedules(conn, span):
    group_id = create_group(conn, "Capstone", "ema")
    join_group(conn, group_id, "alex")
    set_free_intervals(conn, "ema", [span(9, 11)])
    set_free_intervals(conn, "alex", [span(10, 12)])
    return group_id


def test_new_group_is_forming(sqlite_db):
    group_id = create_group(sqlite_db, "Capstone", "ema")
    assert get_group_state(sqlite_db, group_id) is GroupState.FORMING
    assert get_committed_slot(sqlite_db, group_id) is None


def test_poll_without_other_members_stays_forming(sqlite_db, at, span):
    group_id = create_group(sqlite_db, "Capstone", "ema")
    set_free_intervals(sqlite_db, "ema", [span(9, 11)])
    result = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR)
    assert result.slots == ()
    assert get_group_state(sqlite_db, group_id) is GroupState.FORMING


def test_poll_moves_group_to_polling_and_records_window(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    result = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR)
    assert result.slots[0].interval == span(10, 11)
    assert result.slots[0].coverage_ratio == 1.0
    assert get_group_state(sqlite_db, group_id) is GroupState.POLLING
    group = get_group(sqlite_db, group_id)
    assert group["poll_window_start"] == "2026-03-10T08:00:00+00:00"
    assert group["min_duration_minutes"] == 30


def test_poll_reports_members_without_schedules(sqlite_db, at, span):
    group_id = create_group(sqlite_db, "Capstone", "ema")
    join_group(sqlite_db, group_id, "alex")
    set_free_intervals(sqlite_db, "ema", [span(9, 11)])
    result = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR)
    assert result.no_data_member_ids == frozenset({"alex"})
    assert not result.has_common_time


def test_poll_unknown_group(sqlite_db, at):
    with pytest.raises(GroupNotFound):
        poll_group(sqlite_db, "missing", at(8), at(18), HALF_HOUR)


def test_confirm_slot_commits_meeting(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    slot = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR).slots[0]
    committed = confirm_slot(sqlite_db, group_id, slot)
    assert committed.interval == span(10, 11)
    assert committed.member_ids == frozenset({"ema", "alex"})
    assert committed.status == "active"
    assert committed.poll_cycle == 0
    assert get_group_state(sqlite_db, group_id) is GroupState.CONFIRMED
    assert get_committed_slot(sqlite_db, group_id) == committed


def test_confirm_twice_raises_already_confirmed(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    slot = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR).slots[0]
    confirm_slot(sqlite_db, group_id, slot)
    with pytest.raises(AlreadyConfirmed):
        confirm_slot(sqlite_db, group_id, slot)


def test_confirm_before_polling_is_invalid(sqlite_db, span):
    group_id = _group_with_schedules(sqlite_db, span)
    slot = CandidateSlot(span(10, 11), frozenset({"ema", "alex"}), 2)
    with pytest.raises(InvalidTransition):
        confirm_slot(sqlite_db, group_id, slot)


def test_confirm_fails_closed_when_schedule_changed(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    slot = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR).slots[0]
    remove_free_time(sqlite_db, "alex", span((10, 30), 11))
    with pytest.raises(StaleSlot):
        confirm_slot(sqlite_db, group_id, slot)
    assert get_group_state(sqlite_db, group_id) is GroupState.POLLING


def test_confirm_rejects_slot_outside_polled_window(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    poll_group(sqlite_db, group_id, at(8), at(10), HALF_HOUR)
    slot = CandidateSlot(span(10, 11), frozenset({"ema", "alex"}), 2)
    with pytest.raises(StaleSlot):
        confirm_slot(sqlite_db, group_id, slot)


def test_confirm_rejects_slot_with_departed_member(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    slot = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR).slots[0]
    leave_group(sqlite_db, group_id, "alex")
    with pytest.raises(StaleSlot):
        confirm_slot(sqlite_db, group_id, slot)


def test_schedule_edit_marks_confirmation_stale(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    slot = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR).slots[0]
    confirm_slot(sqlite_db, group_id, slot)
    stale = remove_free_time(sqlite_db, "alex", span(10, 11))
    assert stale == [group_id]
    assert get_group_state(sqlite_db, group_id) is GroupState.STALE
    assert get_committed_slot(sqlite_db, group_id).status == "stale"


def test_unrelated_schedule_edit_keeps_confirmation(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    slot = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR).slots[0]
    confirm_slot(sqlite_db, group_id, slot)
    assert remove_free_time(sqlite_db, "alex", span(11, 12)) == []
    assert get_group_state(sqlite_db, group_id) is GroupState.CONFIRMED


def test_reschedule_opens_new_cycle(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    slot = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR).slots[0]
    confirm_slot(sqlite_db, group_id, slot)
    remove_free_time(sqlite_db, "alex", span(10, 11))
    assert request_reschedule(sqlite_db, group_id) == 1
    assert get_group_state(sqlite_db, group_id) is GroupState.POLLING
    assert get_committed_slot(sqlite_db, group_id) is None

    set_free_intervals(sqlite_db, "alex", [span(9, 10)])
    new_slot = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR).slots[0]
    committed = confirm_slot(sqlite_db, group_id, new_slot)
    assert committed.interval == span(9, 10)
    assert committed.poll_cycle == 1


def test_reschedule_requires_confirmation(sqlite_db, span):
    group_id = _group_with_schedules(sqlite_db, span)
    with pytest.raises(InvalidTransition):
        request_reschedule(sqlite_db, group_id)


def test_confirm_with_reschedule_flag_replaces_meeting(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    result = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR)
    confirm_slot(sqlite_db, group_id, result.slots[0])
    replacement = confirm_slot(sqlite_db, group_id, result.slots[1], allow_reschedule=True)
    assert replacement.poll_cycle == 1
    assert replacement.interval == result.slots[1].interval
    assert get_group_state(sqlite_db, group_id) is GroupState.CONFIRMED


def test_member_leaving_marks_confirmation_stale(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    slot = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR).slots[0]
    confirm_slot(sqlite_db, group_id, slot)
    assert leave_group(sqlite_db, group_id, "alex") is True
    assert get_group_state(sqlite_db, group_id) is GroupState.STALE


class _EditingStore:
    """Clears a member's free time right after handing out their current rows."""

    def __init__(self, conn, member_id):
        self.conn = conn
        self.member_id = member_id
        self.inner = SqliteScheduleStore(conn)
        self.edited = False

    def get_free_intervals(self, user_id, start, end):
        rows = self.inner.get_free_intervals(user_id, start, end)
        if user_id == self.member_id and not self.edited:
            self.edited = True
            set_free_intervals(self.conn, user_id, [])
        return rows


def test_schedule_edit_during_confirmation_leaves_group_stale(sqlite_db, at, span):
    group_id = _group_with_schedules(sqlite_db, span)
    slot = poll_group(sqlite_db, group_id, at(8), at(18), HALF_HOUR).slots[0]
    store = _EditingStore(sqlite_db, "alex")
    with pytest.raises(StaleSlot, match="changed while confirming"):
        confirm_slot(sqlite_db, group_id, slot, store=store)
    assert store.edited
    assert get_group_state(sqlite_db, group_id) is GroupState.STALE
    assert get_committed_slot(sqlite_db, group_id).status == "stale"
    assert request_reschedule(sqlite_db, group_id) == 1


def test_failed_write_on_other_group_keeps_open_confirmation(sqlite_db, at, span, mocker):
    group_a = _group_with_schedules(sqlite_db, span)
    group_b = create_group(sqlite_db, "Other Crew", "ema")
    slot = poll_group(sqlite_db, group_a, at(8), at(18), HALF_HOUR).slots[0]
    outdated = CommittedSlot(group_b, span(9, 10), frozenset({"ema"}), 7, "active")
    results: list[bool] = []
    workers: list[threading.Thread] = []
    real_insert = coordination.insert_committed_slot

    def insert_while_other_group_writes(*args, **kwargs):
        worker = threading.Thread(
            target=lambda: results.append(coordination._mark_stale(sqlite_db, outdated, "test"))
        )
        workers.append(worker)
        worker.start()
        worker.join(timeout=0.3)
        assert results == []
        real_insert(*args, **kwargs)

    mocker.patch.object(
        coordination, "insert_committed_slot", side_effect=insert_while_other_group_writes
    )
    committed = confirm_slot(sqlite_db, group_a, slot)
    workers[0].join(timeout=5)

    assert results == [False]
    assert get_group_state(sqlite_db, group_a) is GroupState.CONFIRMED
    assert get_committed_slot(sqlite_db, group_a) == committed
    assert get_group_state(sqlite_db, group_b) is GroupState.FORMING
