from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ScheduleWindow:
    """Deadlines derived from the last successful connection (epoch seconds)."""

    full_interval_deadline: float
    early_start_deadline: float
