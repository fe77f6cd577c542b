"""Domain models for routines, sessions and progress snapshots."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SessionEvent(str, Enum):
    """Events accepted by a running session."""

    TICK = "tick"
    MARK_DONE = "mark_done"
    SKIP = "skip"
    CANCEL = "cancel"


@dataclass(frozen=True, slots=True)
class Activity:
    """A single named, timed step of a routine."""

    id: str
    name: str
    duration_minutes: int
    sort_index: int

    @property
    def duration_seconds(self) -> int:
        return self.duration_minutes * 60


@dataclass(frozen=True, slots=True)
class Routine:
    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    activities: tuple[Activity, ...] = ()

    @classmethod
    def create(
        cls, name: str, steps: Iterable[tuple[str, int]], now: datetime
    ) -> "Routine":
        """Build a new routine from (label, minutes) pairs in order."""
        activities = tuple(
            Activity(
                id=uuid.uuid4().hex,
                name=label,
                duration_minutes=minutes,
                sort_index=index,
            )
            for index, (label, minutes) in enumerate(steps)
        )
        return cls(
            id=uuid.uuid4().hex,
            name=name,
            created_at=now,
            updated_at=now,
            activities=activities,
        )

    def ordered_activities(self) -> list[Activity]:
        return sorted(self.activities, key=lambda activity: activity.sort_index)


@dataclass(frozen=True, slots=True)
class ScheduledActivity:
    """An activity with its planned offsets relative to the session start."""

    activity: Activity
    start_offset_seconds: int
    end_offset_seconds: int

    @property
    def planned_duration_seconds(self) -> int:
        return self.end_offset_seconds - self.start_offset_seconds


@dataclass(slots=True)
class RoutineSession:
    """Mutable runtime state for one run of a routine."""

    id: str
    routine_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    current_activity_index: int = 0
    completed_at: dict[int, datetime] = field(default_factory=dict)
    skipped_indices: set[int] = field(default_factory=set)
    status: SessionStatus = SessionStatus.RUNNING
    flagged: bool = False
    # Bumped on every stored change; a checkpoint never replaces a newer one.
    revision: int = 0

    @property
    def is_running(self) -> bool:
        return self.status is SessionStatus.RUNNING


@dataclass(frozen=True, slots=True)
class UpcomingActivity:
    index: int
    name: str
    estimated_start: datetime


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Point-in-time summary of a session, safe to hand to a display."""

    session_id: str
    status: SessionStatus
    generated_at: datetime
    current_activity_index: int
    current_activity_name: Optional[str]
    time_remaining_seconds: float
    drift_seconds: float
    next_activity_name: Optional[str]
    next_activity_estimated_start: Optional[datetime]
    completed_count: int
    total_count: int
    upcoming: tuple[UpcomingActivity, ...] = ()

    @property
    def is_overrun(self) -> bool:
        return self.time_remaining_seconds < 0
