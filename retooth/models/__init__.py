"""Value types for the reconnection core.

These are plain dataclasses and enums; behaviour lives in the engine,
scheduler and monitor modules that operate on them.
"""
from .device import Device, normalize_address
from .retry_session import RetrySession
from .schedule_window import ScheduleWindow
from .state import ConnectionState, RetryOutcome

__all__ = [
    "Device",
    "normalize_address",
    "RetrySession",
    "ScheduleWindow",
    "ConnectionState",
    "RetryOutcome",
]
