from __future__ import annotations

import logging
import re
from typing import Any

from huddle.db.sqlite_client import (
    add_group_member,
    create_group as insert_group,
    delete_group as remove_group,
    get_group,
    get_group_member_ids,
    get_group_members,
    get_groups_for_member,
    remove_group_member,
)
from huddle.engine.errors import GroupNotFound
from huddle.groups.coordination import handle_member_departure

logger = logging.getLogger(__name__)

GROUP_NAME_MAX_LENGTH = 60
GROUP_NAME_PATTERN = re.compile(r"^[\w '&.,!?\-]+$")


class SqliteMembershipDirectory:
    def __init__(self, conn: Any) -> None:
        self.conn = conn

    def get_members(self, group_id: str) -> set[str]:
        return get_group_member_ids(self.conn, group_id)


def validate_group_name(name: str) -> str | None:
    cleaned = " ".join(name.strip().split())
    if not cleaned:
        return "Group name is required."
    if len(cleaned) > GROUP_NAME_MAX_LENGTH:
        return f"Group name must be at most {GROUP_NAME_MAX_LENGTH} characters."
    if not GROUP_NAME_PATTERN.match(cleaned):
        return "Use letters, numbers, spaces, and basic punctuation only."
    return None


def create_group(conn: Any, name: str, creator_id: str) -> str:
    error = validate_group_name(name)
    if error:
        raise ValueError(error)
    if not creator_id.strip():
        raise ValueError("Creator is required.")
    group_id = insert_group(conn, " ".join(name.strip().split()), creator_id.strip())
    logger.info("[GROUPS] group=%s status=created creator=%s", group_id, creator_id)
    return group_id


def join_group(conn: Any, group_id: str, member_id: str) -> None:
    if not get_group(conn, group_id):
        raise GroupNotFound("Group not found.")
    if not add_group_member(conn, group_id, member_id):
        raise ValueError("Already a member of this group")
    logger.info("[GROUPS] group=%s member=%s status=joined", group_id, member_id)


def leave_group(conn: Any, group_id: str, member_id: str) -> bool:
    group = get_group(conn, group_id)
    if not group:
        raise GroupNotFound("Group not found.")
    if group["created_by"] == member_id:
        raise ValueError("The group creator cannot leave; delete the group instead.")
    if not remove_group_member(conn, group_id, member_id):
        return False
    handle_member_departure(conn, group_id, member_id)
    logger.info("[GROUPS] group=%s member=%s status=left", group_id, member_id)
    return True


def get_members(conn: Any, group_id: str) -> list[dict[str, Any]]:
    if not get_group(conn, group_id):
        raise GroupNotFound("Group not found.")
    return get_group_members(conn, group_id)


def list_groups_for_member(conn: Any, member_id: str) -> list[dict[str, Any]]:
    return get_groups_for_member(conn, member_id)


def delete_group(conn: Any, group_id: str, actor_id: str) -> bool:
    group = get_group(conn, group_id)
    if not group:
        return False
    if group["created_by"] != actor_id:
        return False
    return remove_group(conn, group_id)
