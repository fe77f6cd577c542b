"""Background timer that drives periodic ticks for a running session."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from .config import EngineSettings
from .engine import RoutineEngine
from .errors import RoutineTrackerError, SessionNotActive
from .models import ProgressSnapshot, SessionEvent

logger = logging.getLogger(__name__)


def next_tick_delay(snapshot: ProgressSnapshot, settings: EngineSettings) -> float:
    """Seconds until the next tick, stopping early at the activity boundary."""
    interval = settings.tick_interval.total_seconds()
    minimum = settings.min_tick_interval.total_seconds()
    remaining = snapshot.time_remaining_seconds
    if remaining > 0:
        interval = min(interval, remaining)
    return max(interval, minimum)


class TickRunner:
    """Apply ``tick`` to one session on a daemon thread until it stops running."""

    def __init__(
        self,
        engine: RoutineEngine,
        session_id: str,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
        on_finished: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._engine = engine
        self._session_id = session_id
        self._settings = settings or engine.settings
        self._clock = clock
        self._on_finished = on_finished
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    @property
    def session_id(self) -> str:
        return self._session_id

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self.run_until_stopped,
                args=(stop_event,),
                name=f"tick-{self._session_id[:8]}",
                daemon=True,
            )
            self._thread = thread
            self._stop_event = stop_event
            thread.start()
            logger.debug("Tick thread started for session %s.", self._session_id)

    def stop(self) -> None:
        thread: Optional[threading.Thread] = None
        with self._lock:
            if not self._thread or not self._stop_event:
                return
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=10)
            logger.debug("Tick thread stopped for session %s.", self._session_id)

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def join(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            thread = self._thread
        if thread:
            thread.join(timeout)

    def tick_once(self) -> Optional[ProgressSnapshot]:
        """Apply a single tick; ``None`` once the session has ended."""
        try:
            return self._engine.apply_event(
                self._session_id, SessionEvent.TICK, self._clock()
            )
        except SessionNotActive:
            # A tick racing a cancel or completion is expected.
            return None

    def run_until_stopped(self, stop_event: threading.Event) -> None:
        try:
            self._tick_until_stopped(stop_event)
        finally:
            if self._on_finished is not None:
                self._on_finished(self._session_id)

    def _tick_until_stopped(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                snapshot = self.tick_once()
            except RoutineTrackerError:
                logger.exception("Tick failed for session %s", self._session_id)
                return
            if snapshot is None:
                logger.info("Session %s is no longer running; ticks stopped.", self._session_id)
                return
            stop_event.wait(next_tick_delay(snapshot, self._settings))
