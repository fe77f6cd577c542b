import sqlite3

import pytest

from conftest import T0, minutes
from routine_tracker import session as transitions
from routine_tracker.errors import SessionAlreadyActive
from routine_tracker.models import Routine, SessionStatus
from routine_tracker.store import MemoryStore, SQLiteStore


@pytest.fixture
def sqlite_store(tmp_path, routine):
    store = SQLiteStore(tmp_path / "routines.sqlite3")
    store.add_routine(routine)
    return store


def test_routine_round_trips_through_sqlite(sqlite_store, routine):
    loaded = sqlite_store.get_routine(routine.id)
    assert loaded == routine


def test_missing_routine_is_none(sqlite_store):
    assert sqlite_store.get_routine("missing") is None


def test_list_routines_orders_by_creation(sqlite_store):
    later = Routine.create("Evening", [("Read", 20), ("Sleep prep", 10)], now=T0)
    sqlite_store.add_routine(later)
    names = [routine.name for routine in sqlite_store.list_routines()]
    assert names == ["Morning", "Evening"]
    assert [a.name for a in sqlite_store.list_routines()[1].ordered_activities()] == [
        "Read",
        "Sleep prep",
    ]


def test_session_checkpoint_is_upserted(sqlite_store, routine):
    session = transitions.open_session(routine.id, T0, session_id="s1")
    sqlite_store.save_session(session)
    transitions.skip_current(session, T0 + minutes(2), total_count=3)
    transitions.mark_current_done(session, T0 + minutes(6), total_count=3)
    transitions.cancel(session, T0 + minutes(7))
    session.flagged = True
    sqlite_store.save_session(session)

    [loaded] = sqlite_store.load_sessions()
    assert loaded == session
    assert loaded.completed_at == {0: T0 + minutes(2), 1: T0 + minutes(6)}
    assert loaded.skipped_indices == {0}


def test_load_sessions_filters_by_status(sqlite_store, routine):
    done = transitions.open_session(routine.id, T0, session_id="done")
    transitions.cancel(done, T0 + minutes(1))
    running = transitions.open_session(routine.id, T0 + minutes(2), session_id="live")
    sqlite_store.save_session(done)
    sqlite_store.save_session(running)

    assert [s.id for s in sqlite_store.load_sessions(SessionStatus.RUNNING)] == ["live"]
    assert [s.id for s in sqlite_store.load_sessions()] == ["done", "live"]


@pytest.fixture(params=["sqlite", "memory"])
def session_store(request, tmp_path, routine):
    if request.param == "sqlite":
        backing = SQLiteStore(tmp_path / "sessions.sqlite3")
    else:
        backing = MemoryStore()
    backing.add_routine(routine)
    return backing


def test_second_running_session_for_routine_is_refused(session_store, routine):
    first = transitions.open_session(routine.id, T0, session_id="first")
    session_store.create_session(first)

    with pytest.raises(SessionAlreadyActive) as excinfo:
        session_store.create_session(
            transitions.open_session(routine.id, T0 + minutes(1), session_id="second")
        )

    assert excinfo.value.session_id == "first"
    assert [s.id for s in session_store.load_sessions()] == ["first"]


def test_new_session_allowed_once_previous_one_ended(session_store, routine):
    first = transitions.open_session(routine.id, T0, session_id="first")
    session_store.create_session(first)
    transitions.cancel(first, T0 + minutes(1))
    assert session_store.save_session(first)

    session_store.create_session(
        transitions.open_session(routine.id, T0 + minutes(2), session_id="second")
    )
    running = session_store.load_sessions(SessionStatus.RUNNING)
    assert [s.id for s in running] == ["second"]


def test_checkpoint_never_reopens_a_finished_session(session_store, routine):
    session = transitions.open_session(routine.id, T0, session_id="s1")
    session_store.create_session(session)
    stale = session_store.get_session("s1")

    transitions.cancel(session, T0 + minutes(2))
    assert session_store.save_session(session)
    transitions.mark_current_done(stale, T0 + minutes(3), total_count=3)

    assert not session_store.save_session(stale)
    stored = session_store.get_session("s1")
    assert stored.status is SessionStatus.CANCELLED
    assert stored.end_time == T0 + minutes(2)
    assert stored.completed_at == {}


def test_older_checkpoint_does_not_replace_newer(session_store, routine):
    session = transitions.open_session(routine.id, T0, session_id="s1")
    session_store.create_session(session)
    older = session_store.get_session("s1")
    transitions.mark_current_done(older, T0 + minutes(9), total_count=3)
    transitions.mark_current_done(session, T0 + minutes(9), total_count=3)
    transitions.mark_current_done(session, T0 + minutes(14), total_count=3)

    assert session_store.save_session(session)
    assert not session_store.save_session(older)
    assert session_store.get_session("s1").current_activity_index == 2


def test_unknown_session_is_none(session_store):
    assert session_store.get_session("missing") is None


def test_database_without_revision_column_is_upgraded(tmp_path, routine):
    path = tmp_path / "old.sqlite3"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE sessions (
            id TEXT PRIMARY KEY,
            routine_id TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT,
            current_activity_index INTEGER NOT NULL DEFAULT 0,
            completed_at TEXT NOT NULL DEFAULT '{}',
            skipped_indices TEXT NOT NULL DEFAULT '[]',
            status TEXT NOT NULL,
            flagged INTEGER NOT NULL DEFAULT 0
        );
        INSERT INTO sessions (id, routine_id, start_time, status)
        VALUES ('old', 'morning', '2025-01-06 07:00:00.000000', 'running');
        """
    )
    conn.close()

    upgraded = SQLiteStore(path)
    upgraded.add_routine(routine)
    stored = upgraded.get_session("old")
    assert stored.revision == 0
    assert stored.is_running
