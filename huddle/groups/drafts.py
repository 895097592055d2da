"""Resumable group-creation drafts.

An interrupted "create group" flow is kept as one explicit draft row per
owner. Each save carries the version it was based on; a stale version means
another tab or device saved in between and the caller must reload.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from huddle.db.sqlite_client import (
    delete_draft_row,
    get_draft_row,
    insert_draft_row,
    update_draft_row,
)
from huddle.engine.errors import DraftConflict
from huddle.groups.manager import create_group, join_group

DRAFT_STEPS = ("details", "members", "review")


@dataclass(frozen=True)
class GroupDraft:
    owner_id: str
    group_name: str = ""
    selected_member_ids: tuple[str, ...] = field(default_factory=tuple)
    step: str = "details"
    version: int = 0


def _draft_from_row(row: dict[str, Any]) -> GroupDraft:
    return GroupDraft(
        owner_id=str(row["owner_id"]),
        group_name=str(row["group_name"]),
        selected_member_ids=tuple(json.loads(row["selected_member_ids_json"] or "[]")),
        step=str(row["step"]),
        version=int(row["version"]),
    )


def load_draft(conn: Any, owner_id: str) -> GroupDraft | None:
    row = get_draft_row(conn, owner_id)
    return _draft_from_row(row) if row else None


def save_draft(conn: Any, draft: GroupDraft, expected_version: int | None = None) -> GroupDraft:
    """Persist ``draft``; ``expected_version`` defaults to ``draft.version`` (0 for new drafts)."""
    if draft.step not in DRAFT_STEPS:
        raise ValueError(f"Unknown draft step {draft.step!r}.")
    expected = draft.version if expected_version is None else expected_version
    members = list(dict.fromkeys(m for m in draft.selected_member_ids if m != draft.owner_id))
    if expected == 0:
        saved = insert_draft_row(conn, draft.owner_id, draft.group_name, members, draft.step)
    else:
        saved = update_draft_row(
            conn, draft.owner_id, draft.group_name, members, draft.step, expected
        )
    if not saved:
        raise DraftConflict("Draft was changed elsewhere; reload it before saving.")
    stored = load_draft(conn, draft.owner_id)
    if stored is None:
        raise DraftConflict("Draft was cleared while saving.")
    return stored


def clear_draft(conn: Any, owner_id: str) -> bool:
    return delete_draft_row(conn, owner_id)


def finalize_draft(conn: Any, owner_id: str) -> str:
    """Create the group described by the owner's draft and discard the draft."""
    draft = load_draft(conn, owner_id)
    if draft is None:
        raise ValueError("No group draft to finish.")
    group_id = create_group(conn, draft.group_name, owner_id)
    for member_id in draft.selected_member_ids:
        join_group(conn, group_id, member_id)
    clear_draft(conn, owner_id)
    return group_id
