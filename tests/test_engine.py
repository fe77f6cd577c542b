import threading

import pytest

from conftest import T0, make_routine, minutes
from routine_tracker.config import DriftPolicy, EngineSettings
from routine_tracker.engine import RoutineEngine
from routine_tracker.errors import (
    InconsistentState,
    InvalidRoutine,
    RoutineNotFound,
    SessionAlreadyActive,
    SessionNotActive,
    SessionNotFound,
)
from routine_tracker.models import SessionEvent, SessionStatus
from routine_tracker.store import MemoryStore, SQLiteStore


@pytest.fixture
def engine(store, notifier):
    return RoutineEngine(store, store, notifier=notifier)


def test_start_session_checkpoints_and_delivers(engine, store, notifier):
    session = engine.start_session("morning", T0)
    assert session.status is SessionStatus.RUNNING
    assert session.start_time == T0
    assert [saved.id for saved in store.load_sessions()] == [session.id]
    assert len(notifier.snapshots) == 1
    assert notifier.snapshots[0].current_activity_name == "A"


def test_second_start_fails_and_leaves_first_untouched(engine):
    first = engine.start_session("morning", T0)
    engine.apply_event(first.id, SessionEvent.MARK_DONE, T0 + minutes(8))

    with pytest.raises(SessionAlreadyActive) as excinfo:
        engine.start_session("morning", T0 + minutes(9))

    assert excinfo.value.session_id == first.id
    assert engine.get_session(first.id).current_activity_index == 1
    assert engine.get_session(first.id).completed_at == {0: T0 + minutes(8)}
    assert len(engine.sessions()) == 1


def test_restart_allowed_after_previous_session_ends(engine):
    first = engine.start_session("morning", T0)
    engine.apply_event(first.id, SessionEvent.CANCEL, T0 + minutes(1))
    second = engine.start_session("morning", T0 + minutes(2))
    assert engine.running_session("morning").id == second.id


def test_sessions_of_different_routines_are_independent(store, engine):
    store.add_routine(make_routine(("Read", 20), routine_id="evening"))
    morning = engine.start_session("morning", T0)
    evening = engine.start_session("evening", T0)
    engine.apply_event(morning.id, SessionEvent.CANCEL, T0 + minutes(1))
    snapshot = engine.current_snapshot(evening.id, T0 + minutes(5))
    assert snapshot.status is SessionStatus.RUNNING
    assert snapshot.time_remaining_seconds == 900


def test_unknown_routine(engine):
    with pytest.raises(RoutineNotFound):
        engine.start_session("missing", T0)


def test_invalid_routine_cannot_start(store, engine):
    store.add_routine(make_routine(routine_id="empty"))
    with pytest.raises(InvalidRoutine):
        engine.start_session("empty", T0)
    assert engine.sessions() == []


def test_unknown_session(engine):
    with pytest.raises(SessionNotFound):
        engine.apply_event("nope", SessionEvent.TICK, T0)


def test_apply_event_returns_updated_snapshot(engine, notifier):
    session = engine.start_session("morning", T0)
    snapshot = engine.apply_event(session.id, SessionEvent.MARK_DONE, T0 + minutes(8))
    assert snapshot.current_activity_name == "B"
    assert snapshot.drift_seconds == 120
    assert notifier.snapshots[-1] == snapshot


def test_mark_done_through_last_activity_completes(engine, store):
    session = engine.start_session("morning", T0)
    for offset in (10, 15, 30):
        snapshot = engine.apply_event(session.id, SessionEvent.MARK_DONE, T0 + minutes(offset))
    assert snapshot.status is SessionStatus.COMPLETED
    assert snapshot.completed_count == 3
    stored = store.load_sessions()[0]
    assert stored.status is SessionStatus.COMPLETED
    assert stored.end_time == T0 + minutes(30)
    with pytest.raises(SessionNotActive):
        engine.apply_event(session.id, SessionEvent.SKIP, T0 + minutes(31))


@pytest.mark.parametrize("event", list(SessionEvent))
def test_events_after_cancel_report_not_active(engine, event):
    session = engine.start_session("morning", T0)
    engine.apply_event(session.id, SessionEvent.CANCEL, T0 + minutes(3))
    with pytest.raises(SessionNotActive):
        engine.apply_event(session.id, event, T0 + minutes(4))
    current = engine.get_session(session.id)
    assert current.status is SessionStatus.CANCELLED
    assert current.end_time == T0 + minutes(3)


def test_notifier_failure_does_not_roll_back(store):
    class BrokenNotifier:
        def deliver(self, snapshot):
            raise RuntimeError("display unavailable")

    engine = RoutineEngine(store, store, notifier=BrokenNotifier())
    session = engine.start_session("morning", T0)
    snapshot = engine.apply_event(session.id, SessionEvent.MARK_DONE, T0 + minutes(5))
    assert snapshot.current_activity_index == 1
    assert engine.get_session(session.id).current_activity_index == 1


def test_checkpoint_failure_does_not_roll_back(store, notifier):
    class BrokenSessionStore:
        def create_session(self, session):
            raise OSError("disk full")

        def save_session(self, session):
            raise OSError("disk full")

        def get_session(self, session_id):
            return None

        def load_sessions(self):
            return []

    engine = RoutineEngine(store, BrokenSessionStore(), notifier=notifier)
    session = engine.start_session("morning", T0)
    engine.apply_event(session.id, SessionEvent.SKIP, T0 + minutes(1))
    assert engine.get_session(session.id).skipped_indices == {0}


def test_inconsistent_state_force_cancels_and_flags(engine, store):
    session = engine.start_session("morning", T0)
    engine.get_session(session.id).current_activity_index = 7
    with pytest.raises(InconsistentState):
        engine.current_snapshot(session.id, T0 + minutes(1))
    current = engine.get_session(session.id)
    assert current.status is SessionStatus.CANCELLED
    assert current.flagged
    assert store.load_sessions()[0].flagged


def test_drift_policy_comes_from_settings(store):
    store.add_routine(make_routine(("A", 10), ("B", 5), ("C", 15), ("D", 5), routine_id="long"))
    engine = RoutineEngine(store, store, settings=EngineSettings(drift_policy=DriftPolicy.NEXT_ONLY))
    session = engine.start_session("long", T0)
    snapshot = engine.apply_event(session.id, SessionEvent.MARK_DONE, T0 + minutes(14))
    assert snapshot.upcoming[-1].estimated_start == T0 + minutes(30)


def test_rehydrate_restores_state_and_index(store, notifier):
    first = RoutineEngine(store, store, notifier=notifier)
    session = first.start_session("morning", T0)
    first.apply_event(session.id, SessionEvent.MARK_DONE, T0 + minutes(8))

    restored = RoutineEngine(store, store, notifier=notifier)
    assert restored.rehydrate(T0 + minutes(9)) == 1
    snapshot = restored.current_snapshot(session.id, T0 + minutes(10))
    assert snapshot.current_activity_index == 1
    assert snapshot.drift_seconds == 120
    with pytest.raises(SessionAlreadyActive):
        restored.start_session("morning", T0 + minutes(10))


def test_rehydrate_flags_out_of_range_session(store):
    first = RoutineEngine(store, store)
    session = first.start_session("morning", T0)
    broken = first.get_session(session.id)
    broken.current_activity_index = 9
    broken.revision += 1
    assert store.save_session(broken)

    restored = RoutineEngine(store, store)
    restored.rehydrate(T0 + minutes(1))
    current = restored.get_session(session.id)
    assert current.status is SessionStatus.CANCELLED
    assert current.flagged
    assert current.end_time == T0 + minutes(1)


def test_rehydrate_skips_sessions_of_deleted_routines(store):
    engine = RoutineEngine(store, store)
    engine.start_session("morning", T0)
    other_routines = MemoryStore()
    restored = RoutineEngine(other_routines, store)
    assert restored.rehydrate() == 0


def test_engines_sharing_a_database_allow_one_running_session(tmp_path, routine):
    db_store = SQLiteStore(tmp_path / "shared.sqlite3")
    db_store.add_routine(routine)
    cli_engine = RoutineEngine(db_store, db_store)
    web_engine = RoutineEngine(db_store, db_store)

    first = cli_engine.start_session("morning", T0)
    with pytest.raises(SessionAlreadyActive) as excinfo:
        web_engine.start_session("morning", T0 + minutes(1))

    assert excinfo.value.session_id == first.id
    running = db_store.load_sessions(SessionStatus.RUNNING)
    assert [session.id for session in running] == [first.id]
    assert web_engine.running_session("morning").id == first.id


def test_cancel_from_another_engine_is_seen_before_next_event(tmp_path, routine):
    db_store = SQLiteStore(tmp_path / "shared.sqlite3")
    db_store.add_routine(routine)
    web_engine = RoutineEngine(db_store, db_store)
    cli_engine = RoutineEngine(db_store, db_store)

    session = web_engine.start_session("morning", T0)
    cli_engine.apply_event(session.id, SessionEvent.CANCEL, T0 + minutes(2))

    with pytest.raises(SessionNotActive):
        web_engine.apply_event(session.id, SessionEvent.MARK_DONE, T0 + minutes(3))
    [stored] = db_store.load_sessions()
    assert stored.status is SessionStatus.CANCELLED
    assert stored.end_time == T0 + minutes(2)
    assert web_engine.get_session(session.id).status is SessionStatus.CANCELLED


class InterleavingStore(MemoryStore):
    """Runs ``before_save`` once, just before the next checkpoint is written."""

    def __init__(self):
        super().__init__()
        self.before_save = None

    def save_session(self, session):
        hook, self.before_save = self.before_save, None
        if hook is not None:
            hook()
        return super().save_session(session)


def test_rejected_checkpoint_adopts_stored_cancel(routine):
    shared = InterleavingStore()
    shared.add_routine(routine)
    engine = RoutineEngine(shared, shared)
    other = RoutineEngine(shared, shared)
    session = engine.start_session("morning", T0)

    shared.before_save = lambda: other.apply_event(
        session.id, SessionEvent.CANCEL, T0 + minutes(2)
    )
    with pytest.raises(SessionNotActive):
        engine.apply_event(session.id, SessionEvent.MARK_DONE, T0 + minutes(3))

    current = engine.get_session(session.id)
    assert current.status is SessionStatus.CANCELLED
    assert current.end_time == T0 + minutes(2)
    assert current.completed_at == {}
    [stored] = shared.load_sessions()
    assert stored.status is SessionStatus.CANCELLED


def test_slow_checkpoint_does_not_block_other_sessions(store, routine):
    class SlowSessionStore(MemoryStore):
        def __init__(self):
            super().__init__()
            self.slow = False
            self.entered = threading.Event()
            self.release = threading.Event()

        def save_session(self, session):
            if self.slow:
                self.entered.set()
                self.release.wait(10)
            return super().save_session(session)

    sessions = SlowSessionStore()
    store.add_routine(make_routine(("Read", 20), routine_id="evening"))
    engine = RoutineEngine(store, sessions)
    morning = engine.start_session("morning", T0)
    evening = engine.start_session("evening", T0)

    sessions.slow = True
    writer = threading.Thread(
        target=engine.apply_event,
        args=(morning.id, SessionEvent.MARK_DONE, T0 + minutes(5)),
    )
    writer.start()
    assert sessions.entered.wait(5)

    snapshots = []
    reader = threading.Thread(
        target=lambda: snapshots.append(engine.current_snapshot(evening.id, T0 + minutes(5)))
    )
    reader.start()
    reader.join(timeout=2)
    finished_while_writing = not reader.is_alive()
    sessions.release.set()
    writer.join(timeout=5)
    reader.join(timeout=5)

    assert finished_while_writing
    assert snapshots[0].time_remaining_seconds == 900
    assert engine.get_session(morning.id).current_activity_index == 1
