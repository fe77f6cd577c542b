"""Configuration models and helpers for the routine engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum


class DriftPolicy(str, Enum):
    """How a late or early finish moves the estimated starts of later activities."""

    CUMULATIVE = "cumulative"
    NEXT_ONLY = "next_only"


@dataclass(slots=True)
class EngineSettings:
    """Runtime configuration for the engine and its tick driver."""

    tick_interval: timedelta = timedelta(seconds=60)
    min_tick_interval: timedelta = timedelta(seconds=1)
    drift_policy: DriftPolicy = DriftPolicy.CUMULATIVE

    @classmethod
    def from_options(
        cls,
        tick_seconds: float,
        drift_policy: DriftPolicy | str = DriftPolicy.CUMULATIVE,
        min_tick_seconds: float | None = None,
    ) -> "EngineSettings":
        minimum = min_tick_seconds if min_tick_seconds is not None else min(tick_seconds, 1.0)
        return cls(
            tick_interval=timedelta(seconds=tick_seconds),
            min_tick_interval=timedelta(seconds=minimum),
            drift_policy=DriftPolicy(drift_policy),
        )
