from __future__ import annotations

from datetime import timedelta

import pytest

from huddle.engine.availability import CandidateSlot
from huddle.engine.errors import GroupNotFound, InvalidTransition
from huddle.engine.voting import (
    cast_slot_vote,
    get_member_slot_votes,
    get_slot_vote_tallies,
    rank_slots_with_votes,
)
from huddle.groups.coordination import poll_group
from huddle.groups.manager import create_group, join_group


def _polling_group(conn, at):
    group_id = create_group(conn, "Study Crew", "ema")
    join_group(conn, group_id, "alex")
    join_group(conn, group_id, "beth")
    poll_group(conn, group_id, at(8), at(20), timedelta(minutes=30))
    return group_id


def test_votes_are_tallied_per_interval(sqlite_db, at, span):
    group_id = _polling_group(sqlite_db, at)
    cast_slot_vote(sqlite_db, group_id, "alex", span(10, 11))
    cast_slot_vote(sqlite_db, group_id, "beth", span(10, 11))
    cast_slot_vote(sqlite_db, group_id, "ema", span(14, 15))
    tallies = get_slot_vote_tallies(sqlite_db, group_id)
    assert tallies == {span(10, 11): 2, span(14, 15): 1}


def test_changing_vote_to_not_preferred_removes_it_from_tally(sqlite_db, at, span):
    group_id = _polling_group(sqlite_db, at)
    cast_slot_vote(sqlite_db, group_id, "alex", span(10, 11))
    cast_slot_vote(sqlite_db, group_id, "alex", span(10, 11), preferred=False)
    assert get_slot_vote_tallies(sqlite_db, group_id) == {}
    votes = get_member_slot_votes(sqlite_db, group_id, "alex")
    assert votes == [{"interval": span(10, 11), "preferred": False}]


def test_only_members_can_vote(sqlite_db, at, span):
    group_id = _polling_group(sqlite_db, at)
    with pytest.raises(ValueError, match="Only group members"):
        cast_slot_vote(sqlite_db, group_id, "stranger", span(10, 11))


def test_voting_requires_polling_state(sqlite_db, span):
    group_id = create_group(sqlite_db, "Study Crew", "ema")
    with pytest.raises(InvalidTransition):
        cast_slot_vote(sqlite_db, group_id, "ema", span(10, 11))


def test_voting_on_missing_group(sqlite_db, span):
    with pytest.raises(GroupNotFound):
        cast_slot_vote(sqlite_db, "missing", "ema", span(10, 11))


def test_rank_slots_with_votes_is_stable(span):
    slots = [
        CandidateSlot(span(9, 10), frozenset({"a", "b"}), 2),
        CandidateSlot(span(11, 12), frozenset({"a", "b"}), 2),
        CandidateSlot(span(13, 14), frozenset({"a"}), 2),
    ]
    ranked = rank_slots_with_votes(slots, {span(13, 14): 2, span(11, 12): 2})
    assert [slot.interval for slot in ranked] == [span(11, 12), span(13, 14), span(9, 10)]
