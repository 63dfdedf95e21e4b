"""Low-frequency liveness polling of the established connection."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union

from retooth.config import DEFAULT_POLICY
from retooth.models import Device
from retooth.retry import RetryEngine, Sleep
from retooth.scheduler import Scheduler
from retooth.transport import Transport

logger = logging.getLogger(__name__)

LostCallback = Callable[[Device], Union[None, Awaitable[None]]]


class ConnectionMonitor:
    """Poll ``transport.is_connected`` and stop the cycle when the link is gone.

    On a negative answer the scheduler's timer and any running burst are
    cancelled, polling stops and ``on_lost`` is invoked. Restarting the cycle
    is left to whoever owns the monitor. A poll that raises is logged and
    treated as inconclusive.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        scheduler: Optional[Scheduler] = None,
        engine: Optional[RetryEngine] = None,
        poll_interval: float = DEFAULT_POLICY.poll_interval,
        on_lost: Optional[LostCallback] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.scheduler = scheduler
        self.engine = engine
        self.poll_interval = max(0.01, poll_interval)
        self.on_lost = on_lost
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, device: Device) -> None:
        if self.running:
            return
        logger.info("Starting liveness poll for %s every %.1fs", device.address, self.poll_interval)
        self._task = asyncio.get_running_loop().create_task(self._poll(device))

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()
        logger.info("Liveness poll stopped")

    async def _poll(self, device: Device) -> None:
        while True:
            await self._sleep(self.poll_interval)
            try:
                connected = await self.transport.is_connected(device.address)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Liveness check for %s failed: %s", device.address, exc)
                continue
            if connected:
                continue

            logger.warning("Connection to %s lost", device.address)
            self._task = None
            if self.scheduler is not None:
                self.scheduler.cancel()
            if self.engine is not None:
                self.engine.cancel()
            if self.on_lost is not None:
                try:
                    result = self.on_lost(device)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception:
                    logger.exception("Connection-lost handler raised for %s", device.address)
            return


__all__ = ["ConnectionMonitor"]
