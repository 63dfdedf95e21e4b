from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class RetrySession:
    """Bookkeeping for one in-flight retry burst."""

    started_at: float
    deadline: float
    max_attempts: int
    interval: float
    attempt_count: int = 0

    def remaining(self, now: float) -> float:
        return max(0.0, self.deadline - now)

    def can_retry(self, now: float) -> bool:
        return now < self.deadline and self.attempt_count < self.max_attempts

    @property
    def status_message(self) -> str:
        return f"Reconnecting... ({self.attempt_count})"
