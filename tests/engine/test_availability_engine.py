from __future__ import annotations

import logging
from datetime import timedelta

import pytest

from huddle.engine.availability import (
    CandidateSlot,
    collect_availability,
    compute_candidate_slots,
    compute_group_candidate_slots,
    members_free_throughout,
)
from huddle.engine.errors import DataUnavailable, EmptyGroup, InvalidWindow
from huddle.engine.intervals import TimeInterval

HALF_HOUR = timedelta(minutes=30)


class _DictStore:
    def __init__(self, data, broken=()):
        self.data = data
        self.broken = set(broken)
        self.calls: list[str] = []

    def get_free_intervals(self, user_id, start, end):
        self.calls.append(user_id)
        if user_id in self.broken:
            raise DataUnavailable(user_id, "timeout")
        return self.data.get(user_id)


def _assert_well_formed(slots, min_duration):
    for slot in slots:
        assert slot.duration >= min_duration
        assert 0 < slot.coverage_ratio <= 1
    ordered = sorted(slots, key=lambda s: s.interval.start)
    for left, right in zip(ordered, ordered[1:]):
        assert left.interval.end <= right.interval.start
    keys = [(-s.coverage_ratio, s.interval.start, -s.duration) for s in slots]
    assert keys == sorted(keys)


def test_two_member_overlap_ranks_full_coverage_first(span, at):
    result = compute_candidate_slots(
        {"u1": [span(9, 11)], "u2": [span(10, 12)]}, at(9), at(12), HALF_HOUR
    )
    assert result.slots[0].interval == span(10, 11)
    assert result.slots[0].coverage_ratio == 1.0
    assert result.slots[0].available_member_ids == frozenset({"u1", "u2"})
    partial = result.slots[1:]
    assert [slot.interval for slot in partial] == [span(9, 10), span(11, 12)]
    assert all(slot.coverage_ratio == 0.5 for slot in partial)
    assert result.has_common_time
    _assert_well_formed(result.slots, HALF_HOUR)


def test_identical_intervals_give_single_full_slot(span, at):
    availability = {member: [span(9, 17)] for member in ("a", "b", "c")}
    result = compute_candidate_slots(availability, at(9), at(17), HALF_HOUR)
    assert len(result.slots) == 1
    assert result.slots[0].interval == span(9, 17)
    assert result.slots[0].coverage_ratio == 1.0


def test_disjoint_members_have_no_common_time(span, at):
    availability = {"a": [span(9, 10)], "b": [span(13, 14)]}
    result = compute_candidate_slots(availability, at(8), at(18), HALF_HOUR)
    assert not result.has_common_time
    assert all(slot.available_count == 1 for slot in result.slots)
    strict = compute_candidate_slots(availability, at(8), at(18), HALF_HOUR, min_available=2)
    assert strict.slots == ()


def test_back_to_back_intervals_do_not_overlap_at_boundary(span, at):
    result = compute_candidate_slots(
        {"a": [span(9, 10)], "b": [span(10, 11)]}, at(9), at(11), HALF_HOUR, min_available=2
    )
    assert result.slots == ()


def test_segments_shorter_than_min_duration_are_dropped(span, at):
    result = compute_candidate_slots(
        {"a": [span(9, 12)], "b": [span((10, 45), 12)]},
        at(9),
        at(12),
        timedelta(hours=1),
    )
    assert [slot.interval for slot in result.slots] == [span((10, 45), 12), span(9, (10, 45))]


def test_intervals_are_clipped_to_window(span, at):
    result = compute_candidate_slots({"a": [span(6, 20)]}, at(9), at(10), HALF_HOUR)
    assert [slot.interval for slot in result.slots] == [span(9, 10)]


def test_overlapping_input_is_merged(span, at):
    result = compute_candidate_slots(
        {"a": [span(9, 11), span(10, 12)], "b": [span(9, 12)]}, at(9), at(12), HALF_HOUR
    )
    assert [slot.interval for slot in result.slots] == [span(9, 12)]


def test_same_input_gives_same_output(span, at):
    availability = {
        "a": [span(9, 11), span(14, 16)],
        "b": [span(10, 15)],
        "c": [span(8, 9), span(15, 18)],
    }
    first = compute_candidate_slots(availability, at(8), at(18), HALF_HOUR)
    second = compute_candidate_slots(availability, at(8), at(18), HALF_HOUR)
    assert first == second
    _assert_well_formed(first.slots, HALF_HOUR)


def test_members_without_data_count_towards_total(span, at):
    result = compute_candidate_slots({"a": [span(9, 10)], "b": None}, at(9), at(12), HALF_HOUR)
    assert result.total_members == 2
    assert result.members_with_no_data == 1
    assert result.no_data_member_ids == frozenset({"b"})
    assert result.slots[0].coverage_ratio == 0.5
    assert not result.all_members_missing_data


def test_no_data_is_distinguishable_from_no_common_time(at):
    no_data = compute_candidate_slots({"a": None, "b": None}, at(9), at(12), HALF_HOUR)
    no_free = compute_candidate_slots({"a": [], "b": []}, at(9), at(12), HALF_HOUR)
    assert no_data.slots == no_free.slots == ()
    assert no_data.all_members_missing_data
    assert not no_free.all_members_missing_data
    assert no_free.members_with_no_data == 0


def test_single_member_group_has_common_time_when_free(span, at):
    result = compute_candidate_slots({"solo": [span(9, 10)]}, at(9), at(12), HALF_HOUR)
    assert result.has_common_time


@pytest.mark.parametrize(
    ("start_hour", "end_hour", "min_duration"),
    [(12, 9, HALF_HOUR), (9, 9, HALF_HOUR), (9, 12, timedelta(0))],
)
def test_invalid_window_is_rejected(at, start_hour, end_hour, min_duration):
    with pytest.raises(InvalidWindow):
        compute_candidate_slots({"a": []}, at(start_hour), at(end_hour), min_duration)


def test_window_longer_than_horizon_is_rejected(at):
    with pytest.raises(InvalidWindow):
        compute_candidate_slots(
            {"a": []}, at(9), at(9) + timedelta(days=2), HALF_HOUR, horizon=timedelta(days=1)
        )


def test_window_ending_past_horizon_from_now_is_rejected(at):
    with pytest.raises(InvalidWindow):
        compute_candidate_slots(
            {"a": []},
            at(9) + timedelta(days=89),
            at(9) + timedelta(days=91),
            HALF_HOUR,
            now=at(9),
        )


def test_empty_group_is_rejected(at):
    with pytest.raises(EmptyGroup):
        compute_candidate_slots({}, at(9), at(12), HALF_HOUR)
    with pytest.raises(EmptyGroup):
        compute_group_candidate_slots([], _DictStore({}), at(9), at(12), HALF_HOUR)


def test_unavailable_member_is_treated_as_no_data(span, at, caplog):
    store = _DictStore({"a": [span(9, 11)], "b": [span(10, 12)]}, broken={"b"})
    with caplog.at_level(logging.WARNING, logger="huddle.engine.availability"):
        result = compute_group_candidate_slots(["a", "b"], store, at(9), at(12), HALF_HOUR)
    assert result.no_data_member_ids == frozenset({"b"})
    assert [slot.interval for slot in result.slots] == [span(9, 11)]
    assert "status=unavailable" in caplog.text


def test_collect_availability_deduplicates_members(span, at):
    store = _DictStore({"a": [span(9, 10)]})
    availability = collect_availability(["a", "a", "b"], store, at(9), at(12))
    assert availability == {"a": [span(9, 10)], "b": None}
    assert store.calls == ["a", "b"]


def test_members_free_throughout_requires_full_cover(span):
    store = _DictStore(
        {"a": [span(9, 12)], "b": [span(9, 10), span(10, 12)], "c": [span(9, 11)]},
        broken={"d"},
    )
    assert members_free_throughout(["a", "b", "c", "d", "e"], store, span(10, 12)) == {"a", "b"}


def test_candidate_slot_dict_form(span):
    slot = CandidateSlot(span(9, 10), frozenset({"b", "a"}), 4)
    payload = slot.to_dict()
    assert payload["available_member_ids"] == ["a", "b"]
    assert payload["coverage_ratio"] == 0.5
    assert payload["start"] == "2026-03-10T09:00:00+00:00"
