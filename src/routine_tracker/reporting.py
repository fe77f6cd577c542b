"""Console rendering of routines and progress snapshots."""

from __future__ import annotations

from typing import Iterable

from .models import ProgressSnapshot, Routine, SessionStatus
from .schedule import compute_schedule, total_planned_seconds


def render_snapshot(snapshot: ProgressSnapshot) -> str:
    lines = [
        f"Session {snapshot.session_id} ({snapshot.status.value})",
        "-" * 40,
        f"Progress:   {snapshot.completed_count}/{snapshot.total_count} activities",
    ]
    if snapshot.status is not SessionStatus.RUNNING:
        return "\n".join(lines)

    lines.append(f"Current:    {snapshot.current_activity_name}")
    label = "Overrun:  " if snapshot.is_overrun else "Remaining:"
    lines.append(f"{label}  {format_duration(abs(snapshot.time_remaining_seconds))}")
    drift = snapshot.drift_seconds
    lines.append(f"Drift:      {format_signed_duration(drift)} ({drift_label(drift)})")
    if snapshot.next_activity_name and snapshot.next_activity_estimated_start:
        lines.append(
            f"Next:       {snapshot.next_activity_name} at "
            f"{snapshot.next_activity_estimated_start.strftime('%H:%M:%S')}"
        )
    if len(snapshot.upcoming) > 1:
        lines.append("")
        lines.append("Upcoming:")
        for item in snapshot.upcoming:
            lines.append(f"  {item.estimated_start.strftime('%H:%M:%S')}  {item.name}")
    return "\n".join(lines)


def render_routines(routines: Iterable[Routine]) -> str:
    lines: list[str] = []
    for routine in routines:
        activities = routine.ordered_activities()
        total = total_planned_seconds(compute_schedule(routine))
        lines.append(
            f"{routine.id}  {routine.name:<30} {len(activities):>2} activities "
            f"{format_duration(total)}"
        )
        for activity in activities:
            lines.append(
                f"    {activity.sort_index:>2}. {activity.name:<28} "
                f"{activity.duration_minutes:>4} min"
            )
    return "\n".join(lines)


def drift_label(drift_seconds: float) -> str:
    if drift_seconds > 0:
        return "ahead"
    if drift_seconds < 0:
        return "behind"
    return "on track"


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_signed_duration(seconds: float) -> str:
    sign = "-" if seconds < 0 else "+"
    return f"{sign}{format_duration(abs(seconds))}"
