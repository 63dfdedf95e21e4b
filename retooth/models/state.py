from __future__ import annotations

from enum import Enum


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SCHEDULED = "scheduled"
    RETRYING = "retrying"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"


class RetryOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    # burst cut short by a user disconnect or a detected link loss
    CANCELLED = "cancelled"
