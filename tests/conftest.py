from datetime import datetime, timedelta

import pytest

from routine_tracker.models import Activity, Routine
from routine_tracker.schedule import compute_schedule
from routine_tracker.store import MemoryStore

T0 = datetime(2025, 1, 6, 7, 0, 0)


def minutes(value: float) -> timedelta:
    return timedelta(minutes=value)


def make_routine(*steps, routine_id="morning", name="Morning"):
    activities = tuple(
        Activity(id=f"{routine_id}-{index}", name=label, duration_minutes=length, sort_index=index)
        for index, (label, length) in enumerate(steps)
    )
    return Routine(
        id=routine_id,
        name=name,
        created_at=T0 - timedelta(days=1),
        updated_at=T0 - timedelta(days=1),
        activities=activities,
    )


@pytest.fixture
def routine():
    return make_routine(("A", 10), ("B", 5), ("C", 15))


@pytest.fixture
def schedule(routine):
    return compute_schedule(routine)


@pytest.fixture
def store(routine):
    memory = MemoryStore()
    memory.add_routine(routine)
    return memory


class RecordingNotifier:
    def __init__(self):
        self.snapshots = []

    def deliver(self, snapshot):
        self.snapshots.append(snapshot)


@pytest.fixture
def notifier():
    return RecordingNotifier()
