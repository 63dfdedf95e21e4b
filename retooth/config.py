"""Reconnection policy and runtime settings.

Defaults mirror the peripheral's wake cycle: it is reachable roughly every six
minutes, so bursts start ten seconds early and hammer the link every 200 ms for
at most twenty seconds. Every value can be overridden from the environment.
"""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

CONNECTION_INTERVAL = 6 * 60.0
EARLY_START_OFFSET = 10.0
RETRY_WINDOW = 20.0
RETRY_INTERVAL = 0.2
MAX_ATTEMPTS = 100
POLL_INTERVAL = 3.0

ENV_PREFIX = "RETOOTH_"

DEFAULT_STATE_DB = Path(os.getenv("RETOOTH_STATE_DB", "retooth-state.sqlite3"))
DEFAULT_METRICS_LOG = Path(os.getenv("RETOOTH_METRICS_LOG", "retooth-metrics.csv"))
DEFAULT_API_HOST = os.getenv("RETOOTH_API_HOST", "127.0.0.1")
DEFAULT_API_PORT = int(os.getenv("RETOOTH_API_PORT", "8000"))


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    """Timing constants driving the schedule, the retry burst and the poll.

    All durations are seconds.
    """

    connection_interval: float = CONNECTION_INTERVAL
    early_start_offset: float = EARLY_START_OFFSET
    retry_window: float = RETRY_WINDOW
    retry_interval: float = RETRY_INTERVAL
    max_attempts: int = MAX_ATTEMPTS
    poll_interval: float = POLL_INTERVAL

    def __post_init__(self) -> None:
        for name in ("connection_interval", "early_start_offset", "retry_window", "retry_interval", "poll_interval"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TypeError(f"{name} must be a number, got {value!r}")
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be positive and finite, got {value!r}")
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int) or self.max_attempts <= 0:
            raise ValueError(f"max_attempts must be a positive integer, got {self.max_attempts!r}")
        if self.early_start_offset >= self.connection_interval:
            raise ValueError("early_start_offset must be shorter than connection_interval")

    @property
    def early_start_delay(self) -> float:
        """Seconds after a successful connection at which the next burst begins."""
        return self.connection_interval - self.early_start_offset

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        prefix: str = ENV_PREFIX,
    ) -> "ReconnectPolicy":
        env = os.environ if environ is None else environ
        overrides = {}
        for item in fields(cls):
            raw = env.get(f"{prefix}{item.name.upper()}")
            if raw is None or raw == "":
                continue
            try:
                overrides[item.name] = int(raw) if item.name == "max_attempts" else float(raw)
            except ValueError as exc:
                raise ValueError(f"{prefix}{item.name.upper()} is not a number: {raw!r}") from exc
        return cls(**overrides)


@dataclass(slots=True)
class Settings:
    """Where state lives and how the outer surfaces are exposed."""

    state_db: Path = DEFAULT_STATE_DB
    metrics_log: Path = DEFAULT_METRICS_LOG
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            state_db=Path(env.get("RETOOTH_STATE_DB", str(DEFAULT_STATE_DB))),
            metrics_log=Path(env.get("RETOOTH_METRICS_LOG", str(DEFAULT_METRICS_LOG))),
            api_host=env.get("RETOOTH_API_HOST", DEFAULT_API_HOST),
            api_port=int(env.get("RETOOTH_API_PORT", str(DEFAULT_API_PORT))),
        )


DEFAULT_POLICY = ReconnectPolicy()

__all__ = [
    "ReconnectPolicy",
    "Settings",
    "DEFAULT_POLICY",
    "CONNECTION_INTERVAL",
    "EARLY_START_OFFSET",
    "RETRY_WINDOW",
    "RETRY_INTERVAL",
    "MAX_ATTEMPTS",
    "POLL_INTERVAL",
]
