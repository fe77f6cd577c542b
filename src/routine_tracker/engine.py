"""Coordinator that owns the session table and drives snapshots to a notifier."""

from __future__ import annotations

import copy
import dataclasses
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from . import session as transitions
from .config import EngineSettings
from .errors import (
    InconsistentState,
    InvalidRoutine,
    RoutineNotFound,
    SessionAlreadyActive,
    SessionNotActive,
    SessionNotFound,
)
from .models import (
    ProgressSnapshot,
    Routine,
    RoutineSession,
    ScheduledActivity,
    SessionEvent,
    SessionStatus,
)
from .notifier import LoggingNotifier, Notifier
from .progress import build_snapshot
from .schedule import compute_schedule
from .store import RoutineStore, SessionStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _TrackedSession:
    session: RoutineSession
    routine: Routine
    schedule: list[ScheduledActivity]


class RoutineEngine:
    """Authoritative owner of every live session in this process.

    Transitions run under one lock. Store I/O never does: changed sessions are
    queued as copies and written once the lock is released. When a session
    store is attached it is the arbiter between processes. Sessions are
    re-read from it before every event and snapshot, a routine's running
    session is claimed atomically, and a checkpoint the store rejects means
    another process moved the session on, so its stored state is adopted.
    Checkpoint and delivery failures are logged and never undo a transition.
    """

    def __init__(
        self,
        routine_store: RoutineStore,
        session_store: Optional[SessionStore] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self._routine_store = routine_store
        self._session_store = session_store
        self._notifier: Notifier = notifier or LoggingNotifier()
        self.settings = settings or EngineSettings()
        self._sessions: dict[str, _TrackedSession] = {}
        self._pending: dict[str, RoutineSession] = {}
        self._lock = threading.RLock()

    def start_session(self, routine_id: str, now: datetime) -> RoutineSession:
        routine = self._routine_store.get_routine(routine_id)
        if routine is None:
            raise RoutineNotFound(f"No routine found for id={routine_id}")
        schedule = compute_schedule(routine)
        self._refresh_running(routine_id)

        with self._lock:
            active = self._running_locked(routine_id)
            if active is not None:
                raise SessionAlreadyActive(routine_id, active.session.id)
            session = transitions.open_session(routine_id, now)
            tracked = _TrackedSession(session=session, routine=routine, schedule=schedule)
            self._sessions[session.id] = tracked
            claim = copy.deepcopy(session)

        try:
            self._claim(claim)
        except SessionAlreadyActive as exc:
            with self._lock:
                self._sessions.pop(session.id, None)
            logger.warning("Routine %s was started elsewhere as %s", routine_id, exc.session_id)
            self._refresh(exc.session_id)
            raise

        logger.info(
            "Started session %s for routine %r (%d activities)",
            session.id,
            routine.name,
            len(schedule),
        )
        try:
            with self._lock:
                snapshot = self._snapshot_locked(tracked, now)
        finally:
            self._flush()
        self._deliver(snapshot)
        return session

    def apply_event(
        self, session_id: str, event: SessionEvent | str, now: datetime
    ) -> ProgressSnapshot:
        """Apply ``event`` and return the snapshot reflecting the new state."""
        event = SessionEvent(event)
        self._refresh(session_id)
        try:
            with self._lock:
                tracked = self._tracked_locked(session_id)
                try:
                    transitions.apply_event(
                        tracked.session, event, now, total_count=len(tracked.schedule)
                    )
                except SessionNotActive:
                    log = logger.debug if event is SessionEvent.TICK else logger.warning
                    log("Ignored %s for session %s: not running", event.value, session_id)
                    raise
                snapshot = self._snapshot_locked(tracked, now)
                if event is not SessionEvent.TICK:
                    self._queue_locked(tracked.session)
        finally:
            replaced = self._flush()

        if session_id in replaced:
            with self._lock:
                session = tracked.session
                if not session.is_running:
                    raise SessionNotActive(session.id, session.status.value)
                snapshot = self._snapshot_locked(tracked, now)
        self._deliver(snapshot)
        return snapshot

    def current_snapshot(self, session_id: str, now: datetime) -> ProgressSnapshot:
        self._refresh(session_id)
        try:
            with self._lock:
                return self._snapshot_locked(self._tracked_locked(session_id), now)
        finally:
            self._flush()

    def get_session(self, session_id: str) -> RoutineSession:
        self._refresh(session_id)
        with self._lock:
            return self._tracked_locked(session_id).session

    def running_session(self, routine_id: str) -> Optional[RoutineSession]:
        self._refresh_running(routine_id)
        with self._lock:
            tracked = self._running_locked(routine_id)
            return tracked.session if tracked else None

    def sessions(self) -> list[RoutineSession]:
        with self._lock:
            return [tracked.session for tracked in self._sessions.values()]

    def rehydrate(self, now: Optional[datetime] = None) -> int:
        """Load checkpointed sessions from the session store.

        Running sessions that cannot be reconciled with their routine are
        force-cancelled and flagged. Returns the number of sessions loaded.
        """
        if self._session_store is None:
            return 0
        candidates = self._track_all(self._session_store.load_sessions())
        loaded = 0
        try:
            with self._lock:
                for tracked in candidates:
                    session = tracked.session
                    if session.is_running:
                        problem = self._rehydration_problem(tracked)
                        if problem:
                            self._force_cancel(tracked, now or session.start_time, problem)
                    self._sessions[session.id] = tracked
                    loaded += 1
        finally:
            self._flush()
        logger.debug("Rehydrated %d sessions", loaded)
        return loaded

    def _track_all(self, sessions: Iterable[RoutineSession]) -> list[_TrackedSession]:
        tracked: list[_TrackedSession] = []
        for session in sessions:
            routine = self._routine_store.get_routine(session.routine_id)
            if routine is None:
                logger.warning(
                    "Skipping session %s: routine %s no longer exists",
                    session.id,
                    session.routine_id,
                )
                continue
            try:
                schedule = compute_schedule(routine)
            except InvalidRoutine:
                logger.exception("Skipping session %s: routine is not schedulable", session.id)
                continue
            tracked.append(_TrackedSession(session=session, routine=routine, schedule=schedule))
        return tracked

    def _rehydration_problem(self, tracked: _TrackedSession) -> Optional[str]:
        session = tracked.session
        if not 0 <= session.current_activity_index < len(tracked.schedule):
            return (
                f"activity index {session.current_activity_index} outside "
                f"{len(tracked.schedule)} activities"
            )
        other = self._running_locked(session.routine_id)
        if other is not None and other.session.id != session.id:
            return f"routine already has running session {other.session.id}"
        return None

    def _refresh(self, session_id: str) -> None:
        """Bring the local copy of ``session_id`` up to date with the store."""
        if self._session_store is None:
            return
        try:
            stored = self._session_store.get_session(session_id)
        except Exception:
            logger.exception("Failed to read session %s; using local state", session_id)
            return
        if stored is None:
            return
        with self._lock:
            tracked = self._sessions.get(session_id)
            if tracked is not None:
                if self._is_newer(stored, tracked.session):
                    self._adopt_locked(tracked, stored)
                return
        # Started by another process; track it like a rehydrated session.
        for found in self._track_all([stored]):
            with self._lock:
                self._sessions.setdefault(found.session.id, found)

    def _refresh_running(self, routine_id: str) -> None:
        with self._lock:
            running = [
                tracked.session.id
                for tracked in self._sessions.values()
                if tracked.session.routine_id == routine_id and tracked.session.is_running
            ]
        for session_id in running:
            self._refresh(session_id)

    @staticmethod
    def _is_newer(stored: RoutineSession, local: RoutineSession) -> bool:
        if stored == local:
            return False
        if local.is_running and not stored.is_running:
            return True
        return stored.revision > local.revision

    def _adopt_locked(self, tracked: _TrackedSession, stored: RoutineSession) -> None:
        session = tracked.session
        logger.info(
            "Session %s changed elsewhere: now %s at activity %d",
            session.id,
            stored.status.value,
            stored.current_activity_index,
        )
        for field in dataclasses.fields(RoutineSession):
            setattr(session, field.name, getattr(stored, field.name))
        self._pending.pop(session.id, None)

    def _snapshot_locked(self, tracked: _TrackedSession, now: datetime) -> ProgressSnapshot:
        try:
            return build_snapshot(
                tracked.routine,
                tracked.schedule,
                tracked.session,
                now,
                policy=self.settings.drift_policy,
            )
        except InconsistentState as exc:
            self._force_cancel(tracked, now, str(exc))
            raise

    def _force_cancel(self, tracked: _TrackedSession, now: datetime, reason: str) -> None:
        session = tracked.session
        session.status = SessionStatus.CANCELLED
        session.end_time = now
        session.flagged = True
        session.revision += 1
        logger.error("Session %s force-cancelled and flagged: %s", session.id, reason)
        self._queue_locked(session)

    def _tracked_locked(self, session_id: str) -> _TrackedSession:
        tracked = self._sessions.get(session_id)
        if tracked is None:
            raise SessionNotFound(f"No session found for id={session_id}")
        return tracked

    def _running_locked(self, routine_id: str) -> Optional[_TrackedSession]:
        for tracked in self._sessions.values():
            if tracked.session.routine_id == routine_id and tracked.session.is_running:
                return tracked
        return None

    def _queue_locked(self, session: RoutineSession) -> None:
        if self._session_store is not None:
            self._pending[session.id] = copy.deepcopy(session)

    def _claim(self, session: RoutineSession) -> None:
        if self._session_store is None:
            return
        try:
            self._session_store.create_session(session)
        except SessionAlreadyActive:
            raise
        except Exception:
            logger.exception("Failed to checkpoint session %s", session.id)

    def _flush(self) -> set[str]:
        """Write queued checkpoints; return ids whose local state was replaced."""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        replaced: set[str] = set()
        for session in pending:
            if self._checkpoint(session) is False and self._resolve_rejected(session):
                replaced.add(session.id)
        return replaced

    def _checkpoint(self, session: RoutineSession) -> Optional[bool]:
        try:
            return self._session_store.save_session(session)
        except Exception:
            logger.exception("Failed to checkpoint session %s", session.id)
            return None

    def _resolve_rejected(self, written: RoutineSession) -> bool:
        try:
            stored = self._session_store.get_session(written.id)
        except Exception:
            logger.exception("Failed to read session %s after a rejected checkpoint", written.id)
            return False
        if stored is None:
            return False
        with self._lock:
            tracked = self._sessions.get(written.id)
            if tracked is None or stored == tracked.session:
                return False
            if stored.is_running and tracked.session.revision > written.revision:
                # A newer local change is still queued behind this one.
                return False
            logger.warning("Checkpoint of session %s rejected by the store", written.id)
            self._adopt_locked(tracked, stored)
            return True

    def _deliver(self, snapshot: ProgressSnapshot) -> None:
        try:
            self._notifier.deliver(snapshot)
        except Exception:
            logger.exception("Notifier failed for session %s", snapshot.session_id)
