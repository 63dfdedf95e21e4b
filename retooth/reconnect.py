"""Self-healing connection to one periodically sleeping BLE peripheral."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from retooth.config import DEFAULT_POLICY, ReconnectPolicy
from retooth.errors import PermissionDenied, PersistenceError, TransportError
from retooth.events import (
    DeviceDataReceived,
    EventBus,
    NextConnectionChanged,
    PeripheralDisconnected,
    RetryProgress,
    StateChanged,
)
from retooth.lifecycle import LifecycleReconciler, ReconcileDecision, SuspendWatcher
from retooth.metrics import MetricsLogger
from retooth.models import ConnectionState, Device, RetryOutcome, RetrySession
from retooth.monitor import ConnectionMonitor
from retooth.retry import Clock, RetryEngine, Sleep
from retooth.scheduler import Scheduler
from retooth.store import MemoryTimestampStore, TimestampStore
from retooth.transport import BleakTransport, Transport

logger = logging.getLogger(__name__)

PermissionCheck = Callable[[], Union[bool, Awaitable[bool]]]

# states in which a resume/check-now signal must not restart the cycle
_RECONCILE_BLOCKED = frozenset(
    {
        ConnectionState.IDLE,
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTING,
    }
)


def _as_datetime(timestamp: Optional[float]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class Reconnector:
    """Own the schedule, the retry engine, the liveness monitor and the reconciler.

    After a manual :meth:`connect` the peripheral is reconnected every
    ``policy.connection_interval`` seconds, with bursts starting
    ``policy.early_start_offset`` seconds early. The cadence is anchored on
    the last *successful* connection, which is persisted so it survives
    restarts.
    """

    def __init__(
        self,
        address: str,
        *,
        transport: Optional[Transport] = None,
        store: Optional[TimestampStore] = None,
        policy: Optional[ReconnectPolicy] = None,
        log: Union[MetricsLogger, str, Path, None] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        bus: Optional[EventBus] = None,
        permission_check: Optional[PermissionCheck] = None,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.device = Device(address)
        self.address = self.device.address
        self.policy = policy or DEFAULT_POLICY
        self.metadata = dict(metadata or {})
        self.bus = bus or EventBus()
        self.permission_check = permission_check
        self._clock = clock

        scope_payload = {"address": self.address, **self.metadata}
        if isinstance(log, MetricsLogger):
            self.metrics: Optional[MetricsLogger] = log
        elif log is None:
            self.metrics = None
        else:
            self.metrics = MetricsLogger(log, static_extra=scope_payload)
        self._scope_payload = scope_payload

        if transport is None:
            transport = BleakTransport(on_disconnect=self._on_transport_disconnect)
        elif isinstance(transport, BleakTransport) and transport.on_disconnect is None:
            transport.on_disconnect = self._on_transport_disconnect
        self.transport = transport
        self.store = store if store is not None else MemoryTimestampStore()

        self.engine = RetryEngine(
            self.transport,
            self.store,
            policy=self.policy,
            clock=clock,
            sleep=sleep,
            on_attempt=self._on_attempt,
        )
        self.scheduler = Scheduler(
            self.engine,
            self.store,
            policy=self.policy,
            clock=clock,
            sleep=sleep,
            on_armed=self._on_armed,
            on_fire=self._on_fire,
            on_outcome=self._on_outcome,
        )
        self.monitor = ConnectionMonitor(
            self.transport,
            scheduler=self.scheduler,
            engine=self.engine,
            poll_interval=self.policy.poll_interval,
            on_lost=self._on_lost,
            sleep=sleep,
        )
        self.reconciler = LifecycleReconciler(
            self.scheduler,
            policy=self.policy,
            clock=clock,
            on_refresh=self._on_refresh,
        )

        self._state = ConnectionState.IDLE
        self.first_connection = False
        self.is_retrying = False
        self.retry_message = ""
        self.attempt_count = 0
        self.device_data: List[Any] = []
        self._stop_event: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def next_connection_time(self) -> Optional[datetime]:
        return _as_datetime(self.scheduler.next_connection_time)

    @property
    def early_start_time(self) -> Optional[datetime]:
        return _as_datetime(self.scheduler.early_start_time)

    def snapshot(self) -> Dict[str, Any]:
        next_time = self.next_connection_time
        early = self.early_start_time
        return {
            "address": self.address,
            "state": self._state.value,
            "first_connection": self.first_connection,
            "is_retrying": self.is_retrying,
            "retry_message": self.retry_message,
            "attempt_count": self.attempt_count,
            "next_connection_time": next_time.isoformat() if next_time else None,
            "early_start_time": early.isoformat() if early else None,
            "device_data": list(self.device_data),
        }

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Manual connect; starts the cadence on success.

        Raises :class:`PermissionDenied` or :class:`TransportError`; the state
        is back to ``IDLE`` in both cases.
        """
        if self._state is ConnectionState.CONNECTING:
            logger.debug("Connect already in progress for %s", self.address)
            return
        await self._ensure_permission()

        self._set_state(ConnectionState.CONNECTING)
        try:
            await self.transport.connect(self.address)
        except TransportError as exc:
            logger.error("Connection to %s failed: %s", self.address, exc)
            await self._log("manual_connect", status="error", message=str(exc))
            self._set_state(ConnectionState.IDLE)
            raise

        self.first_connection = True
        await self._save_connection_time()
        self._set_state(ConnectionState.CONNECTED)
        await self._log("manual_connect", status="ok")
        await self._retrieve_device_data()
        self.monitor.start(self.device)
        await self.scheduler.schedule_next(self.device)

    async def disconnect(self) -> None:
        """Stop the cadence and drop the link; the stored timestamp is kept."""
        self._set_state(ConnectionState.DISCONNECTING)
        self._halt()
        self.first_connection = False
        try:
            await self.transport.disconnect(self.address)
        except TransportError as exc:
            await self._log("manual_disconnect", status="error", message=str(exc))
            raise
        else:
            await self._log("manual_disconnect", status="ok")
        finally:
            self._set_state(ConnectionState.IDLE)

    async def reconcile(self) -> Optional[ReconcileDecision]:
        """Re-derive the schedule after a resume; ``None`` when there is no cycle to resume."""
        if not self.first_connection or self._state in _RECONCILE_BLOCKED:
            logger.debug("Reconcile skipped for %s in state %s", self.address, self._state.value)
            return None
        decision = await self.reconciler.reconcile(self.device)
        if decision is not None:
            await self._log(
                "reconcile",
                status="burst" if decision.connect_now else "waiting",
                value=decision.early_start_deadline,
            )
        return decision

    check_now = reconcile

    # ------------------------------------------------------------------
    # Hosting
    # ------------------------------------------------------------------
    async def run(
        self,
        runtime: Optional[float] = None,
        *,
        watch_suspend: bool = True,
        suspend_threshold: float = 30.0,
    ) -> None:
        """Connect, then keep the cadence alive until :meth:`request_stop` or ``runtime`` elapses."""
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        watcher_task: Optional[asyncio.Task[None]] = None

        metrics_scope = contextlib.nullcontext()
        if self.metrics:
            metrics_scope = self.metrics.scope(self._scope_payload)

        with metrics_scope:
            await self._log("monitor_start", status="pending")
            try:
                await self.connect()
                if watch_suspend:
                    watcher = SuspendWatcher(self._on_resume, threshold=suspend_threshold)
                    watcher_task = asyncio.get_running_loop().create_task(watcher.watch())
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop_event.wait(), timeout=runtime)
            finally:
                if watcher_task is not None:
                    watcher_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await watcher_task
                await self.close()
                stop_event.set()
                await self._log("monitor_stop", status="ok")

    def request_stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()

    async def close(self) -> None:
        """Cancel every timer and disconnect quietly."""
        self._halt()
        try:
            await self.transport.disconnect(self.address)
        except TransportError as exc:
            logger.warning("Disconnect during shutdown failed for %s: %s", self.address, exc)
        if self._state is not ConnectionState.IDLE:
            self._set_state(ConnectionState.IDLE)

    # ------------------------------------------------------------------
    # Collaborator callbacks
    # ------------------------------------------------------------------
    def _on_attempt(self, session: RetrySession) -> None:
        self.attempt_count = session.attempt_count
        self.retry_message = session.status_message
        self.bus.publish(RetryProgress(self.address, session.attempt_count, session.status_message))
        self._log_now("retry_attempt", status="pending", value=float(session.attempt_count))

    async def _on_armed(self, device: Device, early_start: float, next_connection: float) -> None:
        self._set_state(ConnectionState.SCHEDULED)
        self.bus.publish(
            NextConnectionChanged(self.address, _as_datetime(next_connection), _as_datetime(early_start))
        )
        await self._log("schedule", status="armed", value=max(0.0, early_start - self._clock()))

    def _on_fire(self, device: Device) -> None:
        self.is_retrying = True
        if not self.engine.active:
            # a fresh burst; a running one is joined and keeps its count
            self.attempt_count = 0
            self.retry_message = "Reconnecting..."
        self._set_state(ConnectionState.RETRYING)

    async def _on_outcome(self, device: Device, outcome: RetryOutcome) -> None:
        self.is_retrying = False
        self.retry_message = ""
        await self._log("burst", status=outcome.value, value=float(self.attempt_count))
        if outcome is RetryOutcome.SUCCEEDED:
            self._set_state(ConnectionState.CONNECTED)
            self.monitor.start(device)
            await self._retrieve_device_data()

    async def _on_lost(self, device: Device) -> None:
        self.is_retrying = False
        self.retry_message = ""
        self._set_state(ConnectionState.DISCONNECTED)
        await self._log("connection_lost", status="error")

    def _on_refresh(self, decision: ReconcileDecision) -> None:
        self.bus.publish(
            NextConnectionChanged(
                self.address,
                _as_datetime(decision.next_connection_time),
                _as_datetime(decision.early_start_deadline),
            )
        )

    async def _on_resume(self, jump: float) -> None:
        await self.reconcile()

    def _on_transport_disconnect(self, address: str) -> None:
        self.bus.publish(PeripheralDisconnected(address))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _halt(self) -> None:
        self.monitor.stop()
        self.scheduler.cancel()
        self.engine.cancel()
        self.is_retrying = False
        self.retry_message = ""

    def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        logger.info("%s: %s -> %s", self.address, previous.value, state.value)
        self.bus.publish(StateChanged(self.address, previous, state))
        self._log_now("state", state=state.value, status="ok")

    async def _ensure_permission(self) -> None:
        if self.permission_check is None:
            return
        granted = self.permission_check()
        if asyncio.iscoroutine(granted):
            granted = await granted
        if not granted:
            raise PermissionDenied("Bluetooth permissions were not granted")

    async def _save_connection_time(self) -> None:
        try:
            await self.store.set_last_connection_time(self._clock())
        except PersistenceError as exc:
            logger.error("Could not persist connection time for %s: %s", self.address, exc)

    async def _retrieve_device_data(self) -> None:
        try:
            value = await self.transport.retrieve_data(self.address)
        except Exception as exc:
            logger.warning("Reading device data from %s failed: %s", self.address, exc)
            return
        if value is None:
            return
        self.device_data.append(value)
        self.bus.publish(DeviceDataReceived(self.address, value))

    def _log_now(self, event: str, **kwargs: Any) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.log(event, extra=self._scope_payload, **kwargs)
        except Exception:  # pragma: no cover - I/O failure safeguard
            logger.debug("Metrics logging failed for %s", event, exc_info=True)

    async def _log(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
    ) -> None:
        if not self.metrics:
            return
        try:
            await self.metrics.log_async(
                event,
                state=self._state.value,
                status=status,
                value=value,
                message=message,
                extra=self._scope_payload,
            )
        except Exception:  # pragma: no cover - I/O failure safeguard
            logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = ["Reconnector"]
