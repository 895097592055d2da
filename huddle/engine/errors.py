"""Errors raised by availability matching and group coordination.

Every error is recoverable by the caller: adjust the inputs, re-poll, or
request a reschedule. They subclass ``ValueError`` so callers that already
guard user-facing flows with ``except ValueError`` keep working.
"""

from __future__ import annotations


class CoordinationError(ValueError):
    """Base class for availability and coordination errors."""


class InvalidWindow(CoordinationError):
    """Search window is empty, inverted, beyond the horizon, or the minimum duration is not positive."""


class EmptyGroup(CoordinationError):
    """No member ids were supplied."""


class AlreadyConfirmed(CoordinationError):
    """The group already has a committed slot for this polling cycle."""


class StaleSlot(CoordinationError):
    """The slot no longer matches current availability."""


class DataUnavailable(CoordinationError):
    """A member's availability could not be fetched."""

    def __init__(self, user_id: str, reason: str = "") -> None:
        self.user_id = user_id
        self.reason = reason
        message = f"Availability for {user_id} is unavailable"
        super().__init__(f"{message}: {reason}" if reason else message)


class InvalidTransition(CoordinationError):
    """The requested operation is not allowed in the group's current state."""


class GroupNotFound(CoordinationError):
    """The group id does not resolve to a group."""


class DraftConflict(CoordinationError):
    """A group draft was saved concurrently with a different version."""
