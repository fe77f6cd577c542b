"""SQLite database layer for routines and session checkpoints."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .errors import SessionAlreadyActive
from .models import Activity, Routine, RoutineSession, SessionStatus


DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    enable_foreign_keys(conn)
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: Path, *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS routines (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS activities (
            id TEXT PRIMARY KEY,
            routine_id TEXT NOT NULL REFERENCES routines(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            duration_minutes INTEGER NOT NULL,
            sort_index INTEGER NOT NULL,
            UNIQUE (routine_id, sort_index)
        );

        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            routine_id TEXT NOT NULL REFERENCES routines(id) ON DELETE CASCADE,
            start_time TEXT NOT NULL,
            end_time TEXT,
            current_activity_index INTEGER NOT NULL DEFAULT 0,
            completed_at TEXT NOT NULL DEFAULT '{}',
            skipped_indices TEXT NOT NULL DEFAULT '[]',
            status TEXT NOT NULL,
            flagged INTEGER NOT NULL DEFAULT 0,
            revision INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_routine_status
            ON sessions(routine_id, status);

        CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_running
            ON sessions(routine_id) WHERE status = 'running';
        """
    )
    _ensure_column(conn, "sessions", "revision", "INTEGER NOT NULL DEFAULT 0")


def _ensure_column(
    conn: sqlite3.Connection, table: str, column: str, definition: str
) -> None:
    existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
    if column not in existing:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def insert_routine(conn: sqlite3.Connection, routine: Routine) -> None:
    with conn:
        conn.execute("BEGIN")
        conn.execute(
            """
            INSERT INTO routines (id, name, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            """,
            (
                routine.id,
                routine.name,
                routine.created_at.strftime(DATETIME_FMT),
                routine.updated_at.strftime(DATETIME_FMT),
            ),
        )
        conn.executemany(
            """
            INSERT INTO activities (id, routine_id, name, duration_minutes, sort_index)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (
                    activity.id,
                    routine.id,
                    activity.name,
                    activity.duration_minutes,
                    activity.sort_index,
                )
                for activity in routine.activities
            ],
        )


def fetch_routine(conn: sqlite3.Connection, routine_id: str) -> Optional[Routine]:
    row = conn.execute(
        "SELECT id, name, created_at, updated_at FROM routines WHERE id = ?",
        (routine_id,),
    ).fetchone()
    if row is None:
        return None
    return _row_to_routine(conn, row)


def fetch_routines(conn: sqlite3.Connection) -> list[Routine]:
    rows = conn.execute(
        "SELECT id, name, created_at, updated_at FROM routines ORDER BY created_at"
    ).fetchall()
    return [_row_to_routine(conn, row) for row in rows]


_SESSION_COLUMNS = """
    id,
    routine_id,
    start_time,
    end_time,
    current_activity_index,
    completed_at,
    skipped_indices,
    status,
    flagged,
    revision
"""


def insert_session(conn: sqlite3.Connection, session: RoutineSession) -> None:
    """Insert a new session row.

    Raises :class:`SessionAlreadyActive` when the routine already has a
    running session in this database.
    """
    try:
        conn.execute(
            f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            _session_params(session),
        )
    except sqlite3.IntegrityError as exc:
        running_id = fetch_running_session_id(conn, session.routine_id)
        if running_id is None or running_id == session.id:
            raise
        raise SessionAlreadyActive(session.routine_id, running_id) from exc


def upsert_session(conn: sqlite3.Connection, session: RoutineSession) -> bool:
    """Write a session checkpoint; return ``False`` if the stored row won.

    A stored row is only replaced while it is still running and only by a
    higher revision, so a finished session is never reopened and an older
    checkpoint never overwrites a newer one.
    """
    cur = conn.execute(
        f"""
        INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            end_time = excluded.end_time,
            current_activity_index = excluded.current_activity_index,
            completed_at = excluded.completed_at,
            skipped_indices = excluded.skipped_indices,
            status = excluded.status,
            flagged = excluded.flagged,
            revision = excluded.revision
        WHERE sessions.status = 'running' AND excluded.revision > sessions.revision
        """,
        _session_params(session),
    )
    return cur.rowcount > 0


def fetch_session(conn: sqlite3.Connection, session_id: str) -> Optional[RoutineSession]:
    row = conn.execute(
        f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
        (session_id,),
    ).fetchone()
    return _row_to_session(row) if row is not None else None


def fetch_running_session_id(conn: sqlite3.Connection, routine_id: str) -> Optional[str]:
    row = conn.execute(
        "SELECT id FROM sessions WHERE routine_id = ? AND status = ?",
        (routine_id, SessionStatus.RUNNING.value),
    ).fetchone()
    return row["id"] if row is not None else None


def fetch_sessions(
    conn: sqlite3.Connection, *, status: Optional[SessionStatus] = None
) -> list[RoutineSession]:
    query = f"SELECT {_SESSION_COLUMNS} FROM sessions"
    params: tuple[object, ...] = ()
    if status is not None:
        query += " WHERE status = ?"
        params = (status.value,)
    query += " ORDER BY start_time"
    return [_row_to_session(row) for row in conn.execute(query, params)]


def _session_params(session: RoutineSession) -> tuple[object, ...]:
    return (
        session.id,
        session.routine_id,
        session.start_time.strftime(DATETIME_FMT),
        session.end_time.strftime(DATETIME_FMT) if session.end_time else None,
        session.current_activity_index,
        json.dumps(
            {
                str(index): instant.strftime(DATETIME_FMT)
                for index, instant in sorted(session.completed_at.items())
            }
        ),
        json.dumps(sorted(session.skipped_indices)),
        session.status.value,
        1 if session.flagged else 0,
        session.revision,
    )


def _row_to_routine(conn: sqlite3.Connection, row: sqlite3.Row) -> Routine:
    activity_rows = conn.execute(
        """
        SELECT id, name, duration_minutes, sort_index
        FROM activities
        WHERE routine_id = ?
        ORDER BY sort_index
        """,
        (row["id"],),
    ).fetchall()
    return Routine(
        id=row["id"],
        name=row["name"],
        created_at=datetime.strptime(row["created_at"], DATETIME_FMT),
        updated_at=datetime.strptime(row["updated_at"], DATETIME_FMT),
        activities=tuple(
            Activity(
                id=activity["id"],
                name=activity["name"],
                duration_minutes=activity["duration_minutes"],
                sort_index=activity["sort_index"],
            )
            for activity in activity_rows
        ),
    )


def _row_to_session(row: sqlite3.Row) -> RoutineSession:
    completed = json.loads(row["completed_at"] or "{}")
    return RoutineSession(
        id=row["id"],
        routine_id=row["routine_id"],
        start_time=datetime.strptime(row["start_time"], DATETIME_FMT),
        end_time=(
            datetime.strptime(row["end_time"], DATETIME_FMT) if row["end_time"] else None
        ),
        current_activity_index=row["current_activity_index"],
        completed_at={
            int(index): datetime.strptime(value, DATETIME_FMT)
            for index, value in completed.items()
        },
        skipped_indices=set(json.loads(row["skipped_indices"] or "[]")),
        status=SessionStatus(row["status"]),
        flagged=bool(row["flagged"]),
        revision=row["revision"],
    )
