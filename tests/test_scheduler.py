"""The single self-re-arming schedule timer."""
from __future__ import annotations

import asyncio
import unittest

from fakes import T0, FakeClock, FakeTransport, eventually, settle
from retooth.errors import PersistenceError
from retooth.models import Device, RetryOutcome
from retooth.retry import RetryEngine
from retooth.scheduler import Scheduler
from retooth.store import MemoryTimestampStore

DEVICE = Device("AA:BB:CC:DD:EE:FF")


class _UnreadableStore(MemoryTimestampStore):
    async def get_last_connection_time(self):
        raise PersistenceError("corrupt")


class _GatedStore(MemoryTimestampStore):
    def __init__(self, initial=None) -> None:
        super().__init__(initial)
        self.gate = asyncio.Event()

    async def get_last_connection_time(self):
        await self.gate.wait()
        return await super().get_last_connection_time()


class SchedulerTest(unittest.IsolatedAsyncioTestCase):
    def _build(self, *, last=None, store=None, clock=None, **transport_kwargs):
        self.clock = clock or FakeClock()
        self.transport = FakeTransport(clock=self.clock, **transport_kwargs)
        self.store = store or MemoryTimestampStore(last)
        self.engine = RetryEngine(self.transport, self.store, clock=self.clock, sleep=self.clock.sleep)
        self.outcomes = []
        self.armed = []
        self.scheduler = Scheduler(
            self.engine,
            self.store,
            clock=self.clock,
            sleep=self.clock.sleep,
            on_armed=lambda device, start, nxt: self.armed.append((start, nxt)),
            on_outcome=lambda device, outcome: self.outcomes.append(outcome),
        )
        return self.scheduler

    async def asyncTearDown(self) -> None:
        self.scheduler.cancel()
        self.engine.cancel()
        await settle()

    async def test_fresh_connection_arms_for_the_early_start(self) -> None:
        scheduler = self._build(last=T0)

        delay = await scheduler.schedule_next(DEVICE)
        await settle()

        self.assertAlmostEqual(delay, 350)
        self.assertEqual(self.clock.blocked, [350])
        self.assertEqual(scheduler.early_start_time, T0 + 350)
        self.assertEqual(scheduler.next_connection_time, T0 + 360)
        self.assertEqual(self.transport.connect_calls, [])

    async def test_only_one_timer_is_ever_outstanding(self) -> None:
        scheduler = self._build(last=T0)

        for _ in range(5):
            await scheduler.schedule_next(DEVICE)
            await settle()

        await eventually(lambda: self.clock.sleepers == 1)
        self.assertTrue(scheduler.armed)

    async def test_missing_timestamp_starts_a_burst_immediately_then_rearms(self) -> None:
        scheduler = self._build()

        delay = await scheduler.schedule_next(DEVICE)
        await eventually(lambda: self.outcomes)
        await eventually(lambda: self.clock.sleepers == 1)

        self.assertEqual(delay, 0)
        self.assertEqual(self.outcomes, [RetryOutcome.SUCCEEDED])
        self.assertEqual(self.clock.blocked, [350])
        self.assertEqual(scheduler.early_start_time, T0 + 350)

    async def test_unreadable_store_connects_now_but_rearms_on_the_cadence(self) -> None:
        scheduler = self._build(store=_UnreadableStore())

        with self.assertLogs("retooth.scheduler", level="WARNING"):
            delay = await scheduler.schedule_next(DEVICE)

        self.assertEqual(delay, 0)
        await eventually(lambda: self.outcomes)
        await eventually(lambda: self.clock.sleepers == 1)
        self.assertEqual(self.clock.blocked, [350])

    async def test_successful_burst_moves_the_cadence_to_the_new_success(self) -> None:
        scheduler = self._build(last=T0 - 350, failures=2)

        await scheduler.schedule_next(DEVICE)
        await eventually(lambda: len(self.armed) == 2)

        self.assertEqual(self.outcomes, [RetryOutcome.SUCCEEDED])
        self.assertAlmostEqual(await self.store.get_last_connection_time(), T0 + 0.4)
        self.assertAlmostEqual(scheduler.early_start_time, T0 + 350.4)
        self.assertAlmostEqual(scheduler.next_connection_time, T0 + 360.4)

    async def test_exhausted_burst_rearms_on_the_next_slot(self) -> None:
        scheduler = self._build(last=T0 - 350, always_fail=True)

        await scheduler.schedule_next(DEVICE)
        await eventually(lambda: len(self.armed) == 2)

        self.assertEqual(self.outcomes, [RetryOutcome.EXHAUSTED])
        self.assertEqual(len(self.transport.connect_calls), 100)
        self.assertEqual(scheduler.early_start_time, T0 + 360)
        self.assertEqual(scheduler.next_connection_time, T0 + 370)
        self.assertEqual(await self.store.get_last_connection_time(), T0 - 350)
        await eventually(lambda: self.clock.sleepers == 1)

    async def test_timer_firing_early_does_not_repeat_an_exhausted_burst(self) -> None:
        clock = FakeClock(early_wakes=1, early_by=0.005)
        scheduler = self._build(last=T0, clock=clock, always_fail=True)

        await scheduler.schedule_next(DEVICE)
        await eventually(lambda: len(self.armed) == 2)
        await eventually(lambda: self.clock.sleepers == 1)

        self.assertEqual(self.outcomes, [RetryOutcome.EXHAUSTED])
        self.assertEqual(len(self.transport.connect_calls), 100)
        self.assertEqual(scheduler.early_start_time, T0 + 710)
        self.assertEqual(scheduler.next_connection_time, T0 + 720)
        self.assertGreater(self.clock.blocked[-1], 300)

    async def test_fire_now_replaces_the_pending_timer(self) -> None:
        scheduler = self._build(last=T0)
        await scheduler.schedule_next(DEVICE)
        await settle()
        self.assertEqual(self.clock.sleepers, 1)

        await scheduler.fire_now(DEVICE)
        await eventually(lambda: self.outcomes)
        await eventually(lambda: len(self.armed) == 2)

        self.assertEqual(self.outcomes, [RetryOutcome.SUCCEEDED])
        await eventually(lambda: self.clock.sleepers == 1)
        self.assertEqual(len(self.transport.connect_calls), 1)

    async def test_cancelled_burst_does_not_rearm(self) -> None:
        scheduler = self._build(block=True)
        await scheduler.schedule_next(DEVICE)
        await eventually(lambda: self.engine.active)

        scheduler.cancel()
        self.engine.cancel()
        await settle()

        self.assertFalse(scheduler.armed)
        self.assertEqual(self.outcomes, [])
        self.assertEqual(len(self.armed), 1)
        self.assertEqual(self.clock.sleepers, 0)

    async def test_cancel_while_reading_the_store_wins(self) -> None:
        store = _GatedStore(T0)
        scheduler = self._build(store=store)

        pending = asyncio.create_task(scheduler.schedule_next(DEVICE))
        await settle()
        scheduler.cancel()
        store.gate.set()

        self.assertIsNone(await pending)
        await settle()
        self.assertFalse(scheduler.armed)
        self.assertEqual(self.armed, [])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
