"""Derive progress snapshots from a session and the current time."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

from .config import DriftPolicy
from .errors import InconsistentState
from .models import (
    ProgressSnapshot,
    Routine,
    RoutineSession,
    ScheduledActivity,
    UpcomingActivity,
)


def build_snapshot(
    routine: Routine,
    schedule: Sequence[ScheduledActivity],
    session: RoutineSession,
    now: datetime,
    policy: DriftPolicy = DriftPolicy.CUMULATIVE,
) -> ProgressSnapshot:
    """Project ``session`` at ``now`` into a :class:`ProgressSnapshot`.

    The planned schedule is never rewritten. The current activity's clock
    starts when the previous activity actually finished (its baseline), and
    drift is the planned absolute start minus that baseline: negative means
    behind, positive means ahead. Remaining time is reported unclamped, so an
    overrun shows up as a negative value.
    """
    total = len(schedule)
    index = session.current_activity_index

    if not session.is_running:
        return _terminal_snapshot(schedule, session, now)

    if index < 0 or index >= total:
        raise InconsistentState(
            f"Session {session.id} of routine {routine.id} is running at activity "
            f"index {index} but the routine has {total} activities"
        )

    current = schedule[index]
    planned_start = session.start_time + timedelta(seconds=current.start_offset_seconds)
    effective_start = _baseline(session, index, planned_start)
    planned_duration = current.planned_duration_seconds

    elapsed = (now - effective_start).total_seconds()
    remaining = planned_duration - elapsed
    drift = (planned_start - effective_start).total_seconds()

    next_activity_name = None
    next_start = None
    if index + 1 < total:
        next_activity_name = schedule[index + 1].activity.name
        next_start = effective_start + timedelta(seconds=planned_duration)

    return ProgressSnapshot(
        session_id=session.id,
        status=session.status,
        generated_at=now,
        current_activity_index=index,
        current_activity_name=current.activity.name,
        time_remaining_seconds=remaining,
        drift_seconds=drift,
        next_activity_name=next_activity_name,
        next_activity_estimated_start=next_start,
        completed_count=index,
        total_count=total,
        upcoming=_upcoming(schedule, session, index, next_start, policy),
    )


def _baseline(session: RoutineSession, index: int, planned_start: datetime) -> datetime:
    if index == 0:
        return session.start_time
    finished = session.completed_at.get(index - 1)
    if finished is not None:
        return finished
    # Checkpoint lost the completion instant; fall back to the plan.
    return planned_start


def _upcoming(
    schedule: Sequence[ScheduledActivity],
    session: RoutineSession,
    index: int,
    next_start: datetime | None,
    policy: DriftPolicy,
) -> tuple[UpcomingActivity, ...]:
    if next_start is None:
        return ()
    upcoming: list[UpcomingActivity] = []
    cursor = next_start
    for position in range(index + 1, len(schedule)):
        scheduled = schedule[position]
        if policy is DriftPolicy.NEXT_ONLY and position > index + 1:
            estimated = session.start_time + timedelta(
                seconds=scheduled.start_offset_seconds
            )
        else:
            estimated = cursor
        upcoming.append(
            UpcomingActivity(
                index=position,
                name=scheduled.activity.name,
                estimated_start=estimated,
            )
        )
        cursor = cursor + timedelta(seconds=scheduled.planned_duration_seconds)
    return tuple(upcoming)


def _terminal_snapshot(
    schedule: Sequence[ScheduledActivity],
    session: RoutineSession,
    now: datetime,
) -> ProgressSnapshot:
    total = len(schedule)
    index = session.current_activity_index
    name = schedule[index].activity.name if 0 <= index < total else None
    return ProgressSnapshot(
        session_id=session.id,
        status=session.status,
        generated_at=now,
        current_activity_index=index,
        current_activity_name=name,
        time_remaining_seconds=0.0,
        drift_seconds=0.0,
        next_activity_name=None,
        next_activity_estimated_start=None,
        completed_count=min(index, total),
        total_count=total,
    )
