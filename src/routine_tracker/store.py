"""Routine and session storage collaborators used by the engine."""

from __future__ import annotations

import copy
import threading
from pathlib import Path
from typing import Optional, Protocol

from .db import (
    database_connection,
    fetch_routine,
    fetch_routines,
    fetch_session,
    fetch_sessions,
    insert_routine,
    insert_session,
    upsert_session,
)
from .errors import SessionAlreadyActive
from .models import Routine, RoutineSession, SessionStatus


class RoutineStore(Protocol):
    def get_routine(self, routine_id: str) -> Optional[Routine]: ...


class SessionStore(Protocol):
    def create_session(self, session: RoutineSession) -> None:
        """Store a new session; raise SessionAlreadyActive if its routine is taken."""

    def save_session(self, session: RoutineSession) -> bool:
        """Checkpoint a session; ``False`` when the stored copy is final or newer."""

    def get_session(self, session_id: str) -> Optional[RoutineSession]: ...

    def load_sessions(self) -> list[RoutineSession]: ...


class SQLiteStore:
    """Routine and session storage backed by the local SQLite database.

    The database, not any single process, decides which session of a routine
    is running, so a CLI and a web server may share one file.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    def add_routine(self, routine: Routine) -> None:
        with database_connection(self.db_path) as conn:
            insert_routine(conn, routine)

    def get_routine(self, routine_id: str) -> Optional[Routine]:
        with database_connection(self.db_path) as conn:
            return fetch_routine(conn, routine_id)

    def list_routines(self) -> list[Routine]:
        with database_connection(self.db_path) as conn:
            return fetch_routines(conn)

    def create_session(self, session: RoutineSession) -> None:
        with database_connection(self.db_path) as conn:
            insert_session(conn, session)

    def save_session(self, session: RoutineSession) -> bool:
        with database_connection(self.db_path) as conn:
            return upsert_session(conn, session)

    def get_session(self, session_id: str) -> Optional[RoutineSession]:
        with database_connection(self.db_path) as conn:
            return fetch_session(conn, session_id)

    def load_sessions(self, status: Optional[SessionStatus] = None) -> list[RoutineSession]:
        with database_connection(self.db_path) as conn:
            return fetch_sessions(conn, status=status)


class MemoryStore:
    """Process-local storage; sessions are stored as copies like a real checkpoint."""

    def __init__(self) -> None:
        self._routines: dict[str, Routine] = {}
        self._sessions: dict[str, RoutineSession] = {}
        self._lock = threading.Lock()

    def add_routine(self, routine: Routine) -> None:
        with self._lock:
            self._routines[routine.id] = routine

    def get_routine(self, routine_id: str) -> Optional[Routine]:
        with self._lock:
            return self._routines.get(routine_id)

    def list_routines(self) -> list[Routine]:
        with self._lock:
            return sorted(self._routines.values(), key=lambda routine: routine.created_at)

    def create_session(self, session: RoutineSession) -> None:
        with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"Session {session.id} already exists")
            if session.is_running:
                for stored in self._sessions.values():
                    if stored.routine_id == session.routine_id and stored.is_running:
                        raise SessionAlreadyActive(session.routine_id, stored.id)
            self._sessions[session.id] = copy.deepcopy(session)

    def save_session(self, session: RoutineSession) -> bool:
        with self._lock:
            stored = self._sessions.get(session.id)
            if stored is not None and (
                not stored.is_running or stored.revision >= session.revision
            ):
                return False
            self._sessions[session.id] = copy.deepcopy(session)
            return True

    def get_session(self, session_id: str) -> Optional[RoutineSession]:
        with self._lock:
            stored = self._sessions.get(session_id)
            return copy.deepcopy(stored) if stored is not None else None

    def load_sessions(self, status: Optional[SessionStatus] = None) -> list[RoutineSession]:
        with self._lock:
            sessions = [copy.deepcopy(session) for session in self._sessions.values()]
        if status is not None:
            sessions = [session for session in sessions if session.status is status]
        return sorted(sessions, key=lambda session: session.start_time)
