"""CSV trail of what the reconnection manager did and when.

Every state change, retry attempt, burst outcome and schedule arm becomes one
row. The file is appended to and flushed row by row so ``tail_lines`` (and
the API's ``/events`` websocket built on it) sees rows as soon as they land.
"""
from __future__ import annotations

import asyncio
import contextlib
import contextvars
import csv
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple


DEFAULT_FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "state",
    "status",
    "value",
    "message",
    "extra",
)


@dataclass(slots=True)
class MetricRecord:
    """One row of the trail before it is rendered for the CSV writer."""

    at: datetime
    event: str
    state: Optional[str] = None
    status: Optional[str] = None
    value: Optional[float] = None
    message: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def timestamp(self) -> str:
        at = self.at if self.at.tzinfo else self.at.replace(tzinfo=timezone.utc)
        return at.astimezone(timezone.utc).isoformat(timespec="milliseconds")

    def encoded_extra(self) -> str:
        if not self.extra:
            return ""
        try:
            return json.dumps(self.extra, separators=(",", ":"), sort_keys=True, default=str)
        except (TypeError, ValueError):
            return repr(self.extra)

    def to_row(self, fields: Sequence[str]) -> Dict[str, Any]:
        cells = {
            "timestamp": self.timestamp,
            "event": self.event,
            "state": self.state,
            "status": self.status,
            "value": self.value,
            "message": self.message,
            "extra": self.encoded_extra(),
        }
        return {name: "" if cells.get(name) is None else cells[name] for name in fields}


class MetricsLogger:
    """Append :class:`MetricRecord` rows to ``path``.

    ``static_extra`` is merged into every row, then any payloads pushed with
    :meth:`scope`, then the per-call ``extra``. Scopes follow the current
    context, so rows written through :meth:`log_async` still carry them.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        fields: Sequence[str] | None = None,
        static_extra: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.fields: Tuple[str, ...] = tuple(fields or DEFAULT_FIELDS)
        self.static_extra: Dict[str, Any] = dict(static_extra or {})
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self._scopes: contextvars.ContextVar[Tuple[Mapping[str, Any], ...]] = contextvars.ContextVar(
            f"metrics_scopes_{id(self)}", default=()
        )
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def log(
        self,
        event: str,
        *,
        state: Optional[str] = None,
        status: Optional[str] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        merged: Dict[str, Any] = dict(self.static_extra)
        for layer in self._scopes.get():
            merged.update(layer)
        merged.update(extra or {})
        self._append(
            MetricRecord(
                at=self._now(),
                event=event,
                state=state,
                status=status,
                value=value,
                message=message,
                extra=merged,
            )
        )

    async def log_async(self, event: str, **kwargs: Any) -> None:
        await asyncio.to_thread(self.log, event, **kwargs)

    @contextlib.contextmanager
    def scope(self, extra: Mapping[str, Any] | None = None, **extra_kwargs: Any) -> Iterator[None]:
        token = self._scopes.set(self._scopes.get() + ({**(extra or {}), **extra_kwargs},))
        try:
            yield
        finally:
            self._scopes.reset(token)

    def _append(self, record: MetricRecord) -> None:
        with self._lock, self.path.open("a", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore")
            if handle.tell() == 0:
                writer.writeheader()
            writer.writerow(record.to_row(self.fields))
            handle.flush()


def tail_lines(path: str | Path, position: int = 0) -> Tuple[List[str], int]:
    """Return the complete lines written after byte ``position`` and the new position."""
    target = Path(path)
    if not target.exists():
        return [], position
    lines: List[str] = []
    with target.open("r", encoding="utf-8", newline="") as handle:
        handle.seek(position)
        while True:
            line = handle.readline()
            if not line or not line.endswith("\n"):
                break
            lines.append(line.rstrip("\r\n"))
            position = handle.tell()
    return lines, position


__all__ = [
    "MetricsLogger",
    "MetricRecord",
    "DEFAULT_FIELDS",
    "tail_lines",
]
