"""Exceptions raised by the routine progress engine."""

from __future__ import annotations


class RoutineTrackerError(Exception):
    """Base class for every error the engine reports."""


class InvalidRoutine(RoutineTrackerError):
    """The routine cannot be scheduled (no activities or a non-positive duration)."""


class SessionAlreadyActive(RoutineTrackerError):
    def __init__(self, routine_id: str, session_id: str) -> None:
        super().__init__(
            f"Routine {routine_id} already has a running session ({session_id})"
        )
        self.routine_id = routine_id
        self.session_id = session_id


class SessionNotActive(RoutineTrackerError):
    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(f"Session {session_id} is {status}; no further events accepted")
        self.session_id = session_id
        self.status = status


class InconsistentState(RoutineTrackerError):
    """A session violated an engine invariant and must be investigated."""


class RoutineNotFound(RoutineTrackerError, LookupError):
    pass


class SessionNotFound(RoutineTrackerError, LookupError):
    pass
