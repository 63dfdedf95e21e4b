"""Single self-re-arming timer that kicks off retry bursts on the cadence."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Union

from retooth.config import DEFAULT_POLICY, ReconnectPolicy
from retooth.errors import PersistenceError
from retooth.models import Device, RetryOutcome
from retooth.retry import Clock, RetryEngine, Sleep
from retooth.schedule import early_start_deadline, next_cycle_start, next_full_deadline
from retooth.store import TimestampStore

logger = logging.getLogger(__name__)

Hook = Callable[..., Union[None, Awaitable[None]]]


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class Scheduler:
    """Owns the one outstanding schedule timer for a device.

    ``schedule_next`` always cancels the previous timer before arming a new
    one. When the timer fires it runs a burst through the :class:`RetryEngine`
    and then re-arms itself, whatever the outcome, unless the burst was
    cancelled. The cadence therefore keeps going for as long as the event loop
    does.

    Hooks:
        on_armed(device, early_start, next_connection): after every arm.
        on_fire(device): just before the burst starts.
        on_outcome(device, outcome): after the burst, before re-arming.
    """

    def __init__(
        self,
        engine: RetryEngine,
        store: TimestampStore,
        *,
        policy: ReconnectPolicy = DEFAULT_POLICY,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
        on_armed: Optional[Hook] = None,
        on_fire: Optional[Hook] = None,
        on_outcome: Optional[Hook] = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.policy = policy
        self._clock = clock
        self._sleep = sleep
        self.on_armed = on_armed
        self.on_fire = on_fire
        self.on_outcome = on_outcome
        self.early_start_time: Optional[float] = None
        self.next_connection_time: Optional[float] = None
        self.armed_count = 0
        self._generation = 0
        self._timer: Optional[asyncio.Task[None]] = None

    @property
    def armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def read_last_connection_time(self) -> Optional[float]:
        """Persisted timestamp, or ``None`` when absent or unreadable."""
        try:
            return await self.store.get_last_connection_time()
        except PersistenceError as exc:
            logger.warning("Last connection time unavailable, connecting immediately: %s", exc)
            return None

    async def schedule_next(self, device: Device, *, not_before: Optional[float] = None) -> Optional[float]:
        """Arm the timer for the next burst and return the delay in seconds.

        ``not_before`` is the moment the previous burst ended; the next
        slot on the cadence strictly after it is used, so a passed deadline or an
        unreadable timestamp cannot fire again straight away. Returns
        ``None`` when a cancel or another arm happened while the timestamp
        was being read.
        """
        self.cancel()
        generation = self._generation
        last = await self.read_last_connection_time()
        if generation != self._generation:
            logger.debug("Schedule for %s superseded while reading state", device.address)
            return None
        now = self._clock()

        if not_before is not None:
            start = next_cycle_start(last, not_before, self.policy)
            next_connection = start + self.policy.early_start_offset
        else:
            start = early_start_deadline(last, now, self.policy)
            next_connection = next_full_deadline(last, now, self.policy)
        delay = max(0.0, start - now)

        self.early_start_time = start
        self.next_connection_time = next_connection
        self._arm(device, delay)
        logger.info(
            "Next burst for %s in %.1fs (next connection at %.3f)",
            device.address,
            delay,
            next_connection,
        )
        await self._call(self.on_armed, device, start, next_connection)
        return delay

    async def fire_now(self, device: Device) -> None:
        """Replace any outstanding timer with one that fires immediately."""
        self.cancel()
        self.early_start_time = self._clock()
        self._arm(device, 0.0)

    def cancel(self) -> None:
        self._generation += 1
        timer, self._timer = self._timer, None
        if timer is None or timer.done():
            return
        if timer is _current_task():
            # re-arming from inside the fire handler; the task ends on its own
            return
        timer.cancel()
        logger.debug("Cancelled outstanding schedule timer")

    def _arm(self, device: Device, delay: float) -> None:
        self._timer = asyncio.get_running_loop().create_task(self._wait_and_fire(device, delay))
        self.armed_count += 1

    async def _wait_and_fire(self, device: Device, delay: float) -> None:
        if delay > 0:
            await self._sleep(delay)
        logger.info("Schedule timer fired for %s", device.address)
        await self._call(self.on_fire, device)
        try:
            outcome = await self.engine.run_burst(device)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Retry burst for %s failed unexpectedly", device.address)
            outcome = RetryOutcome.EXHAUSTED

        if outcome is RetryOutcome.CANCELLED:
            logger.info("Retry burst for %s was cancelled; not re-arming", device.address)
            return

        await self._call(self.on_outcome, device, outcome)
        try:
            await self.schedule_next(device, not_before=self._clock())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Re-arming the schedule for %s failed", device.address)

    async def _call(self, hook: Optional[Hook], *args) -> None:
        if hook is None:
            return
        try:
            result = hook(*args)
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduler hook %s raised", getattr(hook, "__name__", hook))


__all__ = ["Scheduler"]
