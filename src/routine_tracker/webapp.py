"""FastAPI application that exposes the routine progress engine over HTTP."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .config import EngineSettings
from .engine import RoutineEngine
from .errors import (
    InconsistentState,
    InvalidRoutine,
    RoutineNotFound,
    RoutineTrackerError,
    SessionAlreadyActive,
    SessionNotActive,
    SessionNotFound,
)
from .models import ProgressSnapshot, Routine, RoutineSession, SessionEvent
from .paths import get_db_path
from .schedule import compute_schedule
from .store import SQLiteStore
from .ticker import TickRunner

logger = logging.getLogger(__name__)


class TickerPool:
    """Track one background tick runner per running session."""

    def __init__(self, engine: RoutineEngine, clock: Callable[[], datetime]) -> None:
        self._engine = engine
        self._clock = clock
        self._lock = threading.Lock()
        self._runners: dict[str, TickRunner] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._runners)

    def start(self, session_id: str) -> None:
        with self._lock:
            runner = self._runners.get(session_id)
            if runner is None:
                runner = TickRunner(
                    self._engine,
                    session_id,
                    clock=self._clock,
                    on_finished=self._discard,
                )
                self._runners[session_id] = runner
        runner.start()

    def stop_all(self) -> None:
        with self._lock:
            runners = list(self._runners.values())
            self._runners.clear()
        for runner in runners:
            runner.stop()

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for runner in self._runners.values() if runner.is_running())

    def _discard(self, session_id: str) -> None:
        with self._lock:
            self._runners.pop(session_id, None)


class ActivityPayload(BaseModel):
    name: str
    duration_minutes: int = Field(gt=0)

    model_config = ConfigDict(extra="forbid")


class RoutinePayload(BaseModel):
    name: str
    activities: List[ActivityPayload]

    model_config = ConfigDict(extra="forbid")


class SessionStartPayload(BaseModel):
    routine_id: str

    model_config = ConfigDict(extra="forbid")


class SessionEventPayload(BaseModel):
    event: SessionEvent

    model_config = ConfigDict(extra="forbid")


def create_app(
    *,
    db_path: Optional[Path] = None,
    settings: Optional[EngineSettings] = None,
    clock: Callable[[], datetime] = datetime.now,
    run_tickers: bool = True,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    resolved_db_path = Path(db_path or get_db_path())
    resolved_settings = settings or EngineSettings()
    store = SQLiteStore(resolved_db_path)
    engine = RoutineEngine(store, store, settings=resolved_settings)
    engine.rehydrate(clock())
    tickers = TickerPool(engine, clock)

    app = FastAPI(title="Routine Tracker", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db_path = resolved_db_path
    app.state.store = store
    app.state.engine = engine
    app.state.tickers = tickers

    @app.on_event("startup")
    async def _startup() -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        if run_tickers:
            for session in engine.sessions():
                if session.is_running:
                    tickers.start(session.id)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        tickers.stop_all()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        sessions = request.app.state.engine.sessions()
        return {
            "database_path": str(request.app.state.db_path),
            "running_sessions": sum(1 for session in sessions if session.is_running),
            "active_tickers": request.app.state.tickers.active_count(),
            "tick_seconds": resolved_settings.tick_interval.total_seconds(),
            "drift_policy": resolved_settings.drift_policy.value,
        }

    @app.get("/api/routines")
    def list_routines(request: Request) -> Dict[str, Any]:
        routines = request.app.state.store.list_routines()
        return {"routines": [_routine_payload(routine) for routine in routines]}

    @app.post("/api/routines", status_code=201)
    def create_routine(payload: RoutinePayload, request: Request) -> Dict[str, Any]:
        name = payload.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="name is required")
        routine = Routine.create(
            name,
            [(item.name.strip(), item.duration_minutes) for item in payload.activities],
            now=clock(),
        )
        try:
            compute_schedule(routine)
        except InvalidRoutine as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        request.app.state.store.add_routine(routine)
        return {"routine": _routine_payload(routine)}

    @app.post("/api/sessions", status_code=201)
    def start_session(payload: SessionStartPayload, request: Request) -> Dict[str, Any]:
        now = clock()
        try:
            session = request.app.state.engine.start_session(payload.routine_id, now)
            snapshot = request.app.state.engine.current_snapshot(session.id, now)
        except RoutineTrackerError as exc:
            raise _http_error(exc) from exc
        if run_tickers:
            request.app.state.tickers.start(session.id)
        return {
            "session": _session_payload(session),
            "snapshot": _snapshot_payload(snapshot),
        }

    @app.post("/api/sessions/{session_id}/events")
    def apply_event(
        session_id: str, payload: SessionEventPayload, request: Request
    ) -> Dict[str, Any]:
        try:
            snapshot = request.app.state.engine.apply_event(
                session_id, payload.event, clock()
            )
        except SessionNotActive as exc:
            if payload.event is not SessionEvent.TICK:
                raise _http_error(exc) from exc
            # A tick after the end reads back the final state.
            snapshot = _current_snapshot(request, session_id, clock())
        except RoutineTrackerError as exc:
            raise _http_error(exc) from exc
        return {"snapshot": _snapshot_payload(snapshot)}

    @app.get("/api/sessions/{session_id}")
    def get_session(session_id: str, request: Request) -> Dict[str, Any]:
        try:
            session = request.app.state.engine.get_session(session_id)
        except RoutineTrackerError as exc:
            raise _http_error(exc) from exc
        return {"session": _session_payload(session)}

    @app.get("/api/sessions/{session_id}/snapshot")
    def snapshot(session_id: str, request: Request) -> Dict[str, Any]:
        current = _current_snapshot(request, session_id, clock())
        return {"snapshot": _snapshot_payload(current)}

    return app


def _current_snapshot(request: Request, session_id: str, now: datetime) -> ProgressSnapshot:
    try:
        return request.app.state.engine.current_snapshot(session_id, now)
    except RoutineTrackerError as exc:
        raise _http_error(exc) from exc


def _http_error(exc: RoutineTrackerError) -> HTTPException:
    if isinstance(exc, (RoutineNotFound, SessionNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidRoutine):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (SessionAlreadyActive, SessionNotActive)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InconsistentState):
        logger.error("Inconsistent session state: %s", exc)
    return HTTPException(status_code=500, detail=str(exc))


def _routine_payload(routine: Routine) -> Dict[str, Any]:
    return {
        "id": routine.id,
        "name": routine.name,
        "created_at": routine.created_at.isoformat(),
        "updated_at": routine.updated_at.isoformat(),
        "activities": [
            {
                "id": activity.id,
                "name": activity.name,
                "duration_minutes": activity.duration_minutes,
                "sort_index": activity.sort_index,
            }
            for activity in routine.ordered_activities()
        ],
    }


def _session_payload(session: RoutineSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "routine_id": session.routine_id,
        "status": session.status.value,
        "start_time": session.start_time.isoformat(),
        "end_time": session.end_time.isoformat() if session.end_time else None,
        "current_activity_index": session.current_activity_index,
        "skipped_indices": sorted(session.skipped_indices),
        "flagged": session.flagged,
    }


def _snapshot_payload(snapshot: ProgressSnapshot) -> Dict[str, Any]:
    next_start = snapshot.next_activity_estimated_start
    return {
        "session_id": snapshot.session_id,
        "status": snapshot.status.value,
        "generated_at": snapshot.generated_at.isoformat(),
        "current_activity_index": snapshot.current_activity_index,
        "current_activity_name": snapshot.current_activity_name,
        "time_remaining_seconds": snapshot.time_remaining_seconds,
        "drift_seconds": snapshot.drift_seconds,
        "next_activity_name": snapshot.next_activity_name,
        "next_activity_estimated_start": next_start.isoformat() if next_start else None,
        "completed_count": snapshot.completed_count,
        "total_count": snapshot.total_count,
        "upcoming": [
            {
                "index": item.index,
                "name": item.name,
                "estimated_start": item.estimated_start.isoformat(),
            }
            for item in snapshot.upcoming
        ],
    }
