"""Display adapters that receive progress snapshots."""

from __future__ import annotations

import logging
from typing import Callable, Protocol

from .models import ProgressSnapshot
from .reporting import render_snapshot

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def deliver(self, snapshot: ProgressSnapshot) -> None: ...


class LoggingNotifier:
    """Writes each snapshot to the log."""

    def deliver(self, snapshot: ProgressSnapshot) -> None:
        logger.info(
            "Session %s [%s] %d/%d %s remaining=%.0fs drift=%+.0fs",
            snapshot.session_id,
            snapshot.status.value,
            snapshot.completed_count,
            snapshot.total_count,
            snapshot.current_activity_name or "-",
            snapshot.time_remaining_seconds,
            snapshot.drift_seconds,
        )


class ConsoleNotifier:
    """Prints a rendered snapshot through the provided writer."""

    def __init__(self, write: Callable[[str], None] = print) -> None:
        self._write = write

    def deliver(self, snapshot: ProgressSnapshot) -> None:
        self._write(render_snapshot(snapshot))
