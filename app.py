from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from typing import Any

import streamlit as st

from huddle.config.settings import (
    configure_logging,
    ensure_runtime_dirs,
    load_settings,
    validate_settings,
)
from huddle.db.sqlite_client import get_connection, init_schema
from huddle.engine.errors import CoordinationError
from huddle.engine.intervals import TimeInterval
from huddle.engine.voting import cast_slot_vote, get_slot_vote_tallies, rank_slots_with_votes
from huddle.groups.coordination import (
    GroupState,
    confirm_slot,
    get_committed_slot,
    get_group_state,
    poll_group,
    request_reschedule,
)
from huddle.groups.drafts import GroupDraft, finalize_draft, load_draft, save_draft
from huddle.groups.manager import get_members, join_group, list_groups_for_member
from huddle.schedules.manager import (
    add_free_interval,
    clear_availability,
    get_all_free_intervals,
    import_schedule_text,
)
from huddle.utils.health import readiness
from huddle.utils.search_window import (
    get_availability_horizon,
    get_default_search_window,
    get_week_start,
)
from huddle.utils.slot_text import (
    describe_coverage,
    format_interval_label,
    generate_confirmation_text,
    generate_group_link,
)


@st.cache_resource
def get_runtime() -> dict[str, Any]:
    settings = load_settings()
    configure_logging(settings)
    ensure_runtime_dirs(settings)
    errors = validate_settings(settings)
    try:
        conn = get_connection(settings.sqlite_db_path)
        try:
            init_schema(conn)
        finally:
            conn.close()
    except Exception as exc:
        errors.append(f"Database initialization failed: {exc}")
    return {"settings": settings, "errors": errors}


def get_session_connection(runtime: dict[str, Any]) -> Any | None:
    # One connection per browser session; a shared one would let one session's
    # commit or rollback land on another session's open transaction.
    if st.session_state.get("db_conn") is None:
        try:
            st.session_state.db_conn = get_connection(runtime["settings"].sqlite_db_path)
        except Exception as exc:
            st.error(f"Database connection failed: {exc}")
            return None
    return st.session_state.db_conn


def init_state() -> None:
    defaults = {
        "current_view": "schedule",
        "user_id": "",
        "group_id": None,
        "candidate_slots": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _show_stale_notice(stale_groups: list[str]) -> None:
    if stale_groups:
        st.warning(
            f"Your change conflicts with {len(stale_groups)} confirmed meeting(s). "
            "Those groups need to reschedule."
        )


def render_schedule(conn: Any, user_id: str) -> None:
    st.subheader("My Free Time")
    horizon_start, horizon_end = get_availability_horizon(datetime.now(UTC))
    intervals = [
        interval
        for interval in get_all_free_intervals(conn, user_id)
        if interval.overlaps(TimeInterval(horizon_start, horizon_end))
    ]
    if intervals:
        for interval in intervals:
            st.write(f"- {format_interval_label(interval)}")
    else:
        st.info("No free time entered for this week or next.")

    with st.form("add_free_time"):
        day = st.date_input(
            "Day",
            value=date.today(),
            min_value=horizon_start.date(),
            max_value=(horizon_end - timedelta(days=1)).date(),
        )
        start_time = st.time_input("From", value=time(10, 0))
        end_time = st.time_input("Until", value=time(12, 0))
        if st.form_submit_button("Add free time"):
            try:
                interval = TimeInterval(
                    datetime.combine(day, start_time, tzinfo=UTC),
                    datetime.combine(day, end_time, tzinfo=UTC),
                )
                _show_stale_notice(add_free_interval(conn, user_id, interval))
                st.rerun()
            except ValueError as exc:
                st.error(str(exc))

    with st.expander("Import a class schedule"):
        text = st.text_area("Paste your timetable", height=160)
        if st.button("Import schedule"):
            try:
                stale = import_schedule_text(
                    conn, user_id, text, get_week_start(datetime.now(UTC)), tz=UTC
                )
                _show_stale_notice(stale)
                st.success("Schedule imported successfully!")
            except ValueError as exc:
                st.error(str(exc))

    if st.button("Clear my availability"):
        _show_stale_notice(clear_availability(conn, user_id))
        st.rerun()


def render_groups(conn: Any, user_id: str) -> None:
    st.subheader("My Groups")
    for group in list_groups_for_member(conn, user_id):
        if st.button(f"{group['name']} ({group['state']})", key=f"open_{group['id']}"):
            st.session_state.group_id = group["id"]
            st.session_state.candidate_slots = []
            st.session_state.current_view = "coordinate"
            st.rerun()

    st.markdown("### Create a group")
    draft = load_draft(conn, user_id) or GroupDraft(owner_id=user_id)
    name = st.text_input("Group name", value=draft.group_name)
    invitees = st.text_input(
        "Member ids (comma separated)", value=", ".join(draft.selected_member_ids)
    )
    col_save, col_create = st.columns(2)
    updated = GroupDraft(
        owner_id=user_id,
        group_name=name,
        selected_member_ids=tuple(m.strip() for m in invitees.split(",") if m.strip()),
        step="review" if name.strip() and invitees.strip() else "details",
        version=draft.version,
    )
    with col_save:
        if st.button("Save draft"):
            try:
                save_draft(conn, updated)
                st.success("Draft saved.")
            except ValueError as exc:
                st.error(str(exc))
    with col_create:
        if st.button("Create group"):
            try:
                save_draft(conn, updated)
                st.session_state.group_id = finalize_draft(conn, user_id)
                st.session_state.current_view = "coordinate"
                st.rerun()
            except ValueError as exc:
                st.error(str(exc))

    st.markdown("### Join a group")
    group_input = st.text_input("Group link or id")
    if st.button("Join"):
        group_id = group_input.split("group=")[-1].strip()
        try:
            join_group(conn, group_id, user_id)
            st.session_state.group_id = group_id
            st.session_state.current_view = "coordinate"
            st.rerun()
        except ValueError as exc:
            st.error(str(exc))


def _render_committed(conn: Any, runtime: dict[str, Any], group_id: str, state: GroupState) -> None:
    committed = get_committed_slot(conn, group_id)
    if committed is None:
        return
    if state is GroupState.STALE:
        st.error(
            f"The confirmed time {format_interval_label(committed.interval)} no longer works "
            "for everyone. Reschedule to pick a new time."
        )
    else:
        st.success(f"Confirmed: {format_interval_label(committed.interval)}")
        url = generate_group_link(runtime["settings"].base_url, group_id)
        st.text_area(
            "Share",
            value=generate_confirmation_text("Your group", committed.interval, url),
            height=100,
        )
    if st.button("Reschedule"):
        try:
            request_reschedule(conn, group_id)
            st.session_state.candidate_slots = []
            st.rerun()
        except CoordinationError as exc:
            st.error(str(exc))


def render_coordinate(conn: Any, runtime: dict[str, Any], user_id: str) -> None:
    group_id = st.session_state.group_id
    if not group_id:
        st.session_state.current_view = "groups"
        st.rerun()
    settings = runtime["settings"]
    try:
        state = get_group_state(conn, group_id)
        members = get_members(conn, group_id)
    except CoordinationError as exc:
        st.error(str(exc))
        return
    st.subheader("Vote for Preferred Times")
    st.caption(f"{len(members)} member(s) | status: {state}")
    _render_committed(conn, runtime, group_id, state)

    window = get_default_search_window(
        datetime.now(UTC), settings.default_window_days, settings.horizon_days
    )
    min_minutes = st.number_input(
        "Minimum meeting length (minutes)",
        min_value=15,
        value=settings.default_min_duration_minutes,
        step=15,
    )
    if st.button(f"Find times ({window.label})"):
        try:
            result = poll_group(
                conn,
                group_id,
                window.start,
                window.end,
                timedelta(minutes=int(min_minutes)),
                horizon=timedelta(days=settings.horizon_days),
            )
        except CoordinationError as exc:
            st.error(str(exc))
            return
        if result.all_members_missing_data:
            st.info("Nobody has shared their free time yet.")
        elif not result.has_common_time:
            st.info("No common free time found in this window.")
        if result.members_with_no_data:
            st.caption(f"{result.members_with_no_data} member(s) haven't shared free time.")
        st.session_state.candidate_slots = list(result.slots)
        if len(members) < 2:
            st.info("Invite at least one more member to find common times.")

    slots = st.session_state.candidate_slots
    if not slots:
        return
    tallies = get_slot_vote_tallies(conn, group_id)
    st.markdown(f"Found {len(slots)} possible time slots")
    for index, slot in enumerate(rank_slots_with_votes(slots, tallies)[:10]):
        with st.container(border=True):
            st.markdown(f"**{format_interval_label(slot.interval)}**")
            st.caption(
                f"{describe_coverage(slot)} | {tallies.get(slot.interval, 0)} vote(s)"
            )
            col_vote, col_confirm = st.columns(2)
            with col_vote:
                if st.button("Vote", key=f"vote_{index}", disabled=state is not GroupState.POLLING):
                    try:
                        cast_slot_vote(conn, group_id, user_id, slot.interval)
                        st.rerun()
                    except ValueError as exc:
                        st.error(str(exc))
            with col_confirm:
                if st.button("Confirm", key=f"confirm_{index}"):
                    try:
                        confirm_slot(conn, group_id, slot)
                        st.session_state.candidate_slots = []
                        st.rerun()
                    except CoordinationError as exc:
                        st.error(str(exc))


def main() -> None:
    st.set_page_config(page_title="Huddle", page_icon=":calendar:", layout="wide")
    init_state()
    runtime = get_runtime()
    if runtime["errors"]:
        st.error("Startup validation failed.")
        for error in runtime["errors"]:
            st.write(f"- {error}")
        return
    conn = get_session_connection(runtime)
    status = readiness(conn)
    if not status["ok"]:
        st.error("Readiness check failed.")
        st.json(status)
        return

    st.title("Huddle")
    user_id = st.text_input("Your user id", value=st.session_state.user_id).strip()
    st.session_state.user_id = user_id
    if not user_id:
        st.info("Enter your user id to continue.")
        return
    if st.query_params.get("group") and st.session_state.group_id is None:
        st.session_state.group_id = st.query_params["group"]
        st.session_state.current_view = "coordinate"

    views = {"schedule": "My Free Time", "groups": "Groups", "coordinate": "Find a Time"}
    cols = st.columns(len(views))
    for col, (view, label) in zip(cols, views.items()):
        with col:
            if st.button(label, key=f"nav_{view}"):
                st.session_state.current_view = view
                st.rerun()

    if st.session_state.current_view == "schedule":
        render_schedule(conn, user_id)
    elif st.session_state.current_view == "groups":
        render_groups(conn, user_id)
    else:
        render_coordinate(conn, runtime, user_id)


if __name__ == "__main__":
    main()
