"""Pure deadline arithmetic for the reconnection cadence.

Timestamps are epoch seconds. ``last`` is the persisted time of the last
successful connection, or ``None`` when the device has never connected (or
the timestamp could not be read), which means "connect now".
"""
from __future__ import annotations

import math
from typing import Optional

from retooth.config import DEFAULT_POLICY, ReconnectPolicy
from retooth.models import ScheduleWindow


def _checked(name: str, value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{name} must be a number, got {type(value).__name__}")
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be a finite, non-negative timestamp, got {value!r}")
    return float(value)


def next_full_deadline(last: Optional[float], now: float, policy: ReconnectPolicy = DEFAULT_POLICY) -> float:
    last = _checked("last", last)
    now = _checked("now", now)
    if last is None:
        return now + policy.connection_interval
    return last + policy.connection_interval


def early_start_deadline(last: Optional[float], now: float, policy: ReconnectPolicy = DEFAULT_POLICY) -> float:
    last = _checked("last", last)
    now = _checked("now", now)
    if last is None:
        return now
    return last + policy.early_start_delay


def time_until_early_start(last: Optional[float], now: float, policy: ReconnectPolicy = DEFAULT_POLICY) -> float:
    return max(0.0, early_start_deadline(last, now, policy) - now)


def schedule_window(last: Optional[float], now: float, policy: ReconnectPolicy = DEFAULT_POLICY) -> ScheduleWindow:
    return ScheduleWindow(
        full_interval_deadline=next_full_deadline(last, now, policy),
        early_start_deadline=early_start_deadline(last, now, policy),
    )


def should_connect_now(last: Optional[float], now: float, policy: ReconnectPolicy = DEFAULT_POLICY) -> bool:
    last = _checked("last", last)
    now = _checked("now", now)
    if last is None:
        return True
    return (now - last) >= policy.early_start_delay


def next_cycle_start(last: Optional[float], after: float, policy: ReconnectPolicy = DEFAULT_POLICY) -> float:
    """Earliest early-start deadline on the cadence anchored at ``last`` that is later than ``after``.

    Slots sit at ``last + k * interval - offset`` for ``k >= 1``. Without a
    timestamp the cadence is anchored at ``after`` itself, so a device that
    never connected still waits one interval between failed bursts.
    """
    after = _checked("after", after)
    anchor = _checked("last", last)
    if anchor is None:
        anchor = after
    first = anchor + policy.early_start_delay
    if first > after:
        return first
    skipped = math.floor((after - first) / policy.connection_interval) + 1
    candidate = first + skipped * policy.connection_interval
    # guard float rounding landing exactly on ``after``
    if candidate <= after:
        candidate += policy.connection_interval
    return candidate


__all__ = [
    "next_full_deadline",
    "early_start_deadline",
    "time_until_early_start",
    "schedule_window",
    "should_connect_now",
    "next_cycle_start",
]
