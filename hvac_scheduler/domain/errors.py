"""Error taxonomy shared by the scheduling components."""

from __future__ import annotations


class ClimateSchedulerError(Exception):
    """Base exception for scheduling failures."""


class NotFoundError(ClimateSchedulerError):
    """Raised when a room, unit or active request does not exist."""


class InvalidStateError(ClimateSchedulerError):
    """Raised when a transition is illegal for the current state."""


class OutOfRangeError(ClimateSchedulerError):
    """Raised when a target temperature lies outside the mode bounds.

    Recovered by clamping inside the domain layer; never surfaced to callers.
    """
