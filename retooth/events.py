"""Typed events published by the reconnection manager."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, DefaultDict, List, Optional, Type, TypeVar, Union

from retooth.models import ConnectionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StateChanged:
    address: str
    previous: ConnectionState
    current: ConnectionState


@dataclass(frozen=True, slots=True)
class RetryProgress:
    address: str
    attempt: int
    message: str


@dataclass(frozen=True, slots=True)
class NextConnectionChanged:
    address: str
    next_connection_time: Optional[datetime]
    early_start_time: Optional[datetime]


@dataclass(frozen=True, slots=True)
class DeviceDataReceived:
    address: str
    value: Any


@dataclass(frozen=True, slots=True)
class PeripheralDisconnected:
    """The transport reported that the link dropped."""

    address: str


Event = Union[StateChanged, RetryProgress, NextConnectionChanged, DeviceDataReceived, PeripheralDisconnected]
E = TypeVar("E")
Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """In-process dispatch keyed by event class."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[type, List[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Task[None]] = set()

    def subscribe(self, event_type: Type[E], handler: Callable[[E], Union[None, Awaitable[None]]]) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                outcome = handler(event)
                if asyncio.iscoroutine(outcome):
                    task = asyncio.get_running_loop().create_task(outcome)
                    self._pending.add(task)
                    task.add_done_callback(self._pending.discard)
            except Exception:
                logger.exception("Event handler raised for %s", type(event).__name__)


__all__ = [
    "Event",
    "EventBus",
    "StateChanged",
    "RetryProgress",
    "NextConnectionChanged",
    "DeviceDataReceived",
    "PeripheralDisconnected",
]
