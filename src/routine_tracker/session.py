"""State transitions for a single routine session."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from .errors import SessionNotActive
from .models import RoutineSession, SessionEvent, SessionStatus

logger = logging.getLogger(__name__)


def open_session(
    routine_id: str, now: datetime, session_id: Optional[str] = None
) -> RoutineSession:
    """Create a running session positioned on the first activity."""
    return RoutineSession(
        id=session_id or uuid.uuid4().hex,
        routine_id=routine_id,
        start_time=now,
    )


def apply_event(
    session: RoutineSession,
    event: SessionEvent,
    now: datetime,
    total_count: int,
) -> RoutineSession:
    """Apply ``event`` to ``session`` in place and return it.

    Raises :class:`SessionNotActive` without touching the session once it has
    left the running state.
    """
    event = SessionEvent(event)
    _require_running(session)
    if event is SessionEvent.TICK:
        tick(session, now)
    elif event is SessionEvent.MARK_DONE:
        mark_current_done(session, now, total_count)
    elif event is SessionEvent.SKIP:
        skip_current(session, now, total_count)
    elif event is SessionEvent.CANCEL:
        cancel(session, now)
    return session


def tick(session: RoutineSession, now: datetime) -> None:
    # Ticks only trigger downstream recomputation.
    _require_running(session)


def mark_current_done(session: RoutineSession, now: datetime, total_count: int) -> None:
    _require_running(session)
    _advance(session, now, total_count)


def skip_current(session: RoutineSession, now: datetime, total_count: int) -> None:
    _require_running(session)
    session.skipped_indices.add(session.current_activity_index)
    _advance(session, now, total_count)


def cancel(session: RoutineSession, now: datetime) -> None:
    _require_running(session)
    session.status = SessionStatus.CANCELLED
    session.end_time = now
    session.revision += 1
    logger.info(
        "Session %s cancelled at activity %d",
        session.id,
        session.current_activity_index,
    )


def _advance(session: RoutineSession, now: datetime, total_count: int) -> None:
    index = session.current_activity_index
    session.completed_at[index] = now
    session.current_activity_index = index + 1
    session.revision += 1
    if session.current_activity_index >= total_count:
        session.status = SessionStatus.COMPLETED
        session.end_time = now
        logger.info("Session %s completed", session.id)
    else:
        logger.debug(
            "Session %s advanced to activity %d",
            session.id,
            session.current_activity_index,
        )


def _require_running(session: RoutineSession) -> None:
    if not session.is_running:
        raise SessionNotActive(session.id, session.status.value)
