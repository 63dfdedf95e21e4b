"""Bounded retry bursts against the transport."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from retooth.config import DEFAULT_POLICY, ReconnectPolicy
from retooth.errors import PersistenceError
from retooth.models import Device, RetryOutcome, RetrySession
from retooth.store import TimestampStore
from retooth.transport import Transport

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]
AttemptCallback = Callable[[RetrySession], None]


class RetryEngine:
    """Run at most one retry burst at a time for a device.

    A burst keeps calling ``transport.connect`` every ``retry_interval``
    seconds until it succeeds, ``max_attempts`` is reached, or
    ``retry_window`` seconds of wall-clock time have passed since it began.
    Each attempt is cut off when the window closes so a hanging connect
    cannot stretch the burst.
    """

    def __init__(
        self,
        transport: Transport,
        store: TimestampStore,
        *,
        policy: ReconnectPolicy = DEFAULT_POLICY,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self.policy = policy
        self._clock = clock
        self._sleep = sleep
        self.on_attempt = on_attempt
        self.session: Optional[RetrySession] = None
        self._task: Optional[asyncio.Task[RetryOutcome]] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def attempt_count(self) -> int:
        return self.session.attempt_count if self.session else 0

    @property
    def status_message(self) -> str:
        return self.session.status_message if self.session else ""

    async def run_burst(self, device: Device) -> RetryOutcome:
        """Start a burst, or join the one already in flight."""
        if self.active:
            logger.debug("Retry burst already running for %s; joining it", device.address)
        else:
            self._task = asyncio.get_running_loop().create_task(self._run(device))
        task = self._task
        assert task is not None
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current is not None and current.cancelling()):
                return RetryOutcome.CANCELLED
            raise

    def cancel(self) -> None:
        task = self._task
        if task is not None and not task.done():
            logger.info("Cancelling retry burst (attempt %d)", self.attempt_count)
            task.cancel()
        self.session = None

    async def _run(self, device: Device) -> RetryOutcome:
        started = self._clock()
        session = RetrySession(
            started_at=started,
            deadline=started + self.policy.retry_window,
            max_attempts=self.policy.max_attempts,
            interval=self.policy.retry_interval,
        )
        self.session = session
        logger.info(
            "Retry burst for %s: up to %d attempts until %.3f",
            device.address,
            session.max_attempts,
            session.deadline,
        )
        try:
            while True:
                session.attempt_count += 1
                self._notify(session)
                try:
                    await asyncio.wait_for(
                        self.transport.connect(device.address),
                        timeout=max(session.remaining(self._clock()), 0.001),
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.debug(
                        "Attempt %d/%d for %s failed: %s",
                        session.attempt_count,
                        session.max_attempts,
                        device.address,
                        str(exc) or type(exc).__name__,
                    )
                    if not session.can_retry(self._clock()):
                        break
                    await self._sleep(session.interval)
                    if self._clock() >= session.deadline:
                        break
                    continue

                await self._record_success(device)
                logger.info("Reconnected to %s after %d attempt(s)", device.address, session.attempt_count)
                return RetryOutcome.SUCCEEDED

            logger.warning(
                "Retry burst for %s exhausted after %d attempt(s) in %.1fs",
                device.address,
                session.attempt_count,
                self._clock() - started,
            )
            return RetryOutcome.EXHAUSTED
        finally:
            if self.session is session:
                self.session = None

    async def _record_success(self, device: Device) -> None:
        try:
            await self.store.set_last_connection_time(self._clock())
        except PersistenceError as exc:
            logger.error("Could not persist connection time for %s: %s", device.address, exc)

    def _notify(self, session: RetrySession) -> None:
        if self.on_attempt is None:
            return
        try:
            self.on_attempt(session)
        except Exception:  # pragma: no cover - observer failure must not stop the burst
            logger.debug("Attempt observer raised", exc_info=True)


__all__ = ["RetryEngine"]
