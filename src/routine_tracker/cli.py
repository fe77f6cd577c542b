"""Command-line interface for the routine tracker."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import List, NoReturn, Optional

import typer

from .config import DriftPolicy, EngineSettings
from .engine import RoutineEngine
from .errors import InvalidRoutine, RoutineTrackerError
from .models import Routine, SessionEvent
from .notifier import ConsoleNotifier, Notifier
from .paths import get_db_path
from .reporting import render_routines, render_snapshot
from .schedule import compute_schedule
from .store import SQLiteStore

app = typer.Typer(help="Track live progress through timed routines.")

DB_OPTION = typer.Option(
    None,
    "--db",
    path_type=Path,
    help="Location of the routines SQLite database.",
)
POLICY_OPTION = typer.Option(
    DriftPolicy.CUMULATIVE,
    "--drift-policy",
    case_sensitive=False,
    help="Shift every later activity by the drift, or only the next one.",
)

_WATCH_COMMANDS = {
    "d": SessionEvent.MARK_DONE,
    "done": SessionEvent.MARK_DONE,
    "s": SessionEvent.SKIP,
    "skip": SessionEvent.SKIP,
    "c": SessionEvent.CANCEL,
    "cancel": SessionEvent.CANCEL,
    "": SessionEvent.TICK,
}


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.command("add-routine")
def add_routine(
    name: str = typer.Argument(..., help="Routine name."),
    activities: List[str] = typer.Argument(
        ..., help="Activities in order, each as LABEL=MINUTES."
    ),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Create a routine from an ordered list of timed activities."""
    steps = [_parse_step(value) for value in activities]
    routine = Routine.create(name.strip(), steps, now=datetime.now())
    try:
        compute_schedule(routine)
    except InvalidRoutine as exc:
        _fail(exc)
    SQLiteStore(db_path or get_db_path()).add_routine(routine)
    typer.echo(render_routines([routine]))


@app.command()
def routines(db_path: Optional[Path] = DB_OPTION) -> None:
    """List stored routines."""
    stored = SQLiteStore(db_path or get_db_path()).list_routines()
    if not stored:
        typer.echo("No routines defined yet.")
        return
    typer.echo(render_routines(stored))


@app.command()
def start(
    routine_id: str = typer.Argument(..., help="Routine to start."),
    db_path: Optional[Path] = DB_OPTION,
    drift_policy: DriftPolicy = POLICY_OPTION,
) -> None:
    """Start a new session of a routine."""
    now = datetime.now()
    engine = _open_engine(db_path, drift_policy)
    try:
        session = engine.start_session(routine_id, now)
        snapshot = engine.current_snapshot(session.id, now)
    except RoutineTrackerError as exc:
        _fail(exc)
    typer.echo(render_snapshot(snapshot))


@app.command()
def done(
    session_id: str = typer.Argument(..., help="Running session."),
    db_path: Optional[Path] = DB_OPTION,
    drift_policy: DriftPolicy = POLICY_OPTION,
) -> None:
    """Mark the current activity as finished."""
    _apply(session_id, SessionEvent.MARK_DONE, db_path, drift_policy)


@app.command()
def skip(
    session_id: str = typer.Argument(..., help="Running session."),
    db_path: Optional[Path] = DB_OPTION,
    drift_policy: DriftPolicy = POLICY_OPTION,
) -> None:
    """Skip the current activity."""
    _apply(session_id, SessionEvent.SKIP, db_path, drift_policy)


@app.command()
def cancel(
    session_id: str = typer.Argument(..., help="Running session."),
    db_path: Optional[Path] = DB_OPTION,
) -> None:
    """Cancel a running session."""
    _apply(session_id, SessionEvent.CANCEL, db_path, DriftPolicy.CUMULATIVE)


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Session to inspect."),
    db_path: Optional[Path] = DB_OPTION,
    drift_policy: DriftPolicy = POLICY_OPTION,
) -> None:
    """Print the current progress snapshot of a session."""
    engine = _open_engine(db_path, drift_policy)
    try:
        snapshot = engine.current_snapshot(session_id, datetime.now())
    except RoutineTrackerError as exc:
        _fail(exc)
    typer.echo(render_snapshot(snapshot))


@app.command()
def watch(
    session_id: str = typer.Argument(..., help="Running session."),
    db_path: Optional[Path] = DB_OPTION,
    drift_policy: DriftPolicy = POLICY_OPTION,
    tick_seconds: float = typer.Option(
        60.0, "--tick", min=1.0, help="Maximum seconds between progress updates."
    ),
) -> None:
    """Follow a session live; enter d(one), s(kip), c(ancel) or q(uit)."""
    from .ticker import TickRunner

    settings = EngineSettings.from_options(tick_seconds, drift_policy)
    engine = _open_engine(
        db_path, drift_policy, settings=settings, notifier=ConsoleNotifier(typer.echo)
    )
    try:
        session = engine.get_session(session_id)
    except RoutineTrackerError as exc:
        _fail(exc)
    if not session.is_running:
        typer.echo(render_snapshot(engine.current_snapshot(session_id, datetime.now())))
        return

    runner = TickRunner(engine, session_id, settings=settings)
    runner.start()
    try:
        while session.is_running:
            try:
                command = input().strip().lower()
            except EOFError:
                break
            if command in ("q", "quit"):
                break
            event = _WATCH_COMMANDS.get(command)
            if event is None:
                typer.echo("Commands: d(one), s(kip), c(ancel), q(uit)", err=True)
                continue
            try:
                engine.apply_event(session_id, event, datetime.now())
            except RoutineTrackerError as exc:
                typer.echo(f"Error: {exc}", err=True)
    except KeyboardInterrupt:
        typer.echo("Stopped watching; session keeps running.")
    finally:
        runner.stop()


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the API."
    ),
    db_path: Optional[Path] = DB_OPTION,
    drift_policy: DriftPolicy = POLICY_OPTION,
    tick_seconds: float = typer.Option(
        60.0, "--tick", min=1.0, help="Maximum seconds between background ticks."
    ),
) -> None:
    """Serve the HTTP API with background ticks for running sessions."""
    from .server_runner import run_server

    run_server(
        host=host,
        port=port,
        db_path=db_path or get_db_path(),
        settings=EngineSettings.from_options(tick_seconds, drift_policy),
    )


def _open_engine(
    db_path: Optional[Path],
    drift_policy: DriftPolicy,
    *,
    settings: Optional[EngineSettings] = None,
    notifier: Optional[Notifier] = None,
) -> RoutineEngine:
    store = SQLiteStore(db_path or get_db_path())
    engine = RoutineEngine(
        store,
        store,
        notifier=notifier,
        settings=settings or EngineSettings(drift_policy=drift_policy),
    )
    engine.rehydrate(datetime.now())
    return engine


def _apply(
    session_id: str,
    event: SessionEvent,
    db_path: Optional[Path],
    drift_policy: DriftPolicy,
) -> None:
    engine = _open_engine(db_path, drift_policy)
    try:
        snapshot = engine.apply_event(session_id, event, datetime.now())
    except RoutineTrackerError as exc:
        _fail(exc)
    typer.echo(render_snapshot(snapshot))


def _parse_step(value: str) -> tuple[str, int]:
    label, sep, minutes = value.rpartition("=")
    if not sep or not label.strip():
        raise typer.BadParameter(f"Expected LABEL=MINUTES, got {value!r}")
    try:
        return label.strip(), int(minutes)
    except ValueError as exc:
        raise typer.BadParameter(f"Minutes must be a whole number in {value!r}") from exc


def _fail(exc: Exception) -> NoReturn:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)
