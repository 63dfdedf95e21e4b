"""Recovering the schedule after the host was suspended.

Timers armed before a suspension cannot be trusted afterwards: the event
loop's clock is monotonic and stops while the machine sleeps, so a timer
due "in 5 minutes" may fire long after the peripheral's wake window has
closed. :class:`LifecycleReconciler` recomputes the decision from the
persisted timestamp instead. :class:`SuspendWatcher` notices suspensions by
comparing how far the monotonic and wall clocks advanced between polls.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from retooth.config import DEFAULT_POLICY, ReconnectPolicy
from retooth.models import Device
from retooth.retry import Clock, Sleep
from retooth.schedule import early_start_deadline, next_full_deadline, should_connect_now
from retooth.scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconcileDecision:
    connect_now: bool
    early_start_deadline: float
    next_connection_time: float


class LifecycleReconciler:
    """Decide from persisted truth whether a burst is due right now."""

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        policy: ReconnectPolicy = DEFAULT_POLICY,
        clock: Clock = time.time,
        on_refresh: Optional[Callable[[ReconcileDecision], None]] = None,
    ) -> None:
        self.scheduler = scheduler
        self.policy = policy
        self._clock = clock
        self.on_refresh = on_refresh

    async def reconcile(self, device: Device) -> Optional[ReconcileDecision]:
        last = await self.scheduler.read_last_connection_time()
        if last is None:
            logger.debug("No completed connection for %s; nothing to reconcile", device.address)
            return None

        now = self._clock()
        decision = ReconcileDecision(
            connect_now=should_connect_now(last, now, self.policy),
            early_start_deadline=early_start_deadline(last, now, self.policy),
            next_connection_time=next_full_deadline(last, now, self.policy),
        )
        if decision.connect_now:
            logger.info("Connection window for %s is open (%.1fs since last); starting burst", device.address, now - last)
            await self.scheduler.fire_now(device)
        else:
            # the armed timer stays authoritative
            logger.info(
                "Connection window for %s opens in %.1fs",
                device.address,
                decision.early_start_deadline - now,
            )
            self.scheduler.next_connection_time = decision.next_connection_time
            if self.on_refresh is not None:
                self.on_refresh(decision)
        return decision


class SuspendWatcher:
    """Invoke ``callback(jump_seconds)`` after the host resumes from a suspension.

    Both clocks advance together while the process runs. A wall-clock jump
    larger than ``threshold`` between two polls means the process was not
    running, or the system clock was changed.
    """

    def __init__(
        self,
        callback: Callable[[float], Awaitable[None]],
        *,
        threshold: float = 30.0,
        poll_interval: float = 5.0,
        monotonic: Clock = time.monotonic,
        wall_clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.callback = callback
        self.threshold = threshold
        self.poll_interval = poll_interval
        self._monotonic = monotonic
        self._wall_clock = wall_clock
        self._sleep = sleep

    async def watch(self) -> None:
        """Run until cancelled."""
        last_mono = self._monotonic()
        last_wall = self._wall_clock()
        while True:
            await self._sleep(self.poll_interval)
            mono = self._monotonic()
            wall = self._wall_clock()
            jump = (wall - last_wall) - (mono - last_mono)
            last_mono, last_wall = mono, wall
            if abs(jump) <= self.threshold:
                continue
            logger.info("Host resumed (wall clock jumped %.1fs)", jump)
            try:
                await self.callback(jump)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Resume callback failed")


__all__ = ["LifecycleReconciler", "ReconcileDecision", "SuspendWatcher"]
