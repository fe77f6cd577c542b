"""Planned schedule for a routine, as offsets from the session start."""

from __future__ import annotations

from typing import Sequence

from .errors import InvalidRoutine
from .models import Routine, ScheduledActivity


def compute_schedule(routine: Routine) -> list[ScheduledActivity]:
    """Return each activity with its planned start and end offset in seconds.

    Offsets are a running sum of durations in sort-index order, so the
    schedule is contiguous: ``end_offset[i] == start_offset[i + 1]``.
    """
    activities = routine.ordered_activities()
    if not activities:
        raise InvalidRoutine(f"Routine {routine.id} has no activities")

    scheduled: list[ScheduledActivity] = []
    offset = 0
    for position, activity in enumerate(activities):
        if not activity.name.strip():
            raise InvalidRoutine(f"Activity {activity.id} has an empty name")
        if activity.duration_minutes <= 0:
            raise InvalidRoutine(
                f"Activity {activity.name!r} has non-positive duration "
                f"{activity.duration_minutes}"
            )
        if activity.sort_index != position:
            raise InvalidRoutine(
                f"Routine {routine.id} sort indices must be contiguous from 0; "
                f"found {activity.sort_index} at position {position}"
            )
        end = offset + activity.duration_seconds
        scheduled.append(
            ScheduledActivity(
                activity=activity,
                start_offset_seconds=offset,
                end_offset_seconds=end,
            )
        )
        offset = end
    return scheduled


def total_planned_seconds(schedule: Sequence[ScheduledActivity]) -> int:
    if not schedule:
        return 0
    return schedule[-1].end_offset_seconds - schedule[0].start_offset_seconds
