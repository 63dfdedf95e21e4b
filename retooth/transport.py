"""Transport contract and the bleak-backed implementation."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from bleak import BleakClient
from bleak.exc import BleakError

from retooth.errors import TransportError

logger = logging.getLogger(__name__)

DisconnectCallback = Callable[[str], None]

# Position of the characteristic the peripheral exposes its reading on,
# counted across all discovered services.
DEFAULT_CHARACTERISTIC_INDEX = 14


@runtime_checkable
class Transport(Protocol):
	"""What the reconnection core needs from the radio stack.

	``connect`` returns on success and raises :class:`TransportError` with a
	reason otherwise.
	"""

	async def connect(self, address: str) -> None: ...

	async def disconnect(self, address: str) -> None: ...

	async def is_connected(self, address: str) -> bool: ...

	async def retrieve_data(self, address: str) -> Optional[Any]: ...


class BleakTransport:
	"""One :class:`bleak.BleakClient` per address, created on demand."""

	def __init__(
		self,
		*,
		adapter: Optional[str] = None,
		timeout: float = 10.0,
		characteristic_index: int = DEFAULT_CHARACTERISTIC_INDEX,
		on_disconnect: Optional[DisconnectCallback] = None,
		client_factory: Optional[Callable[..., Any]] = None,
	) -> None:
		self.adapter = adapter
		self.timeout = max(1.0, timeout)
		self.characteristic_index = characteristic_index
		self.on_disconnect = on_disconnect
		self._client_factory = client_factory or BleakClient
		self._clients: Dict[str, Any] = {}
		self._lock = asyncio.Lock()

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------
	async def connect(self, address: str) -> None:
		async with self._lock:
			client = self._clients.get(address)
			if client is not None and await self._is_connected(client):
				logger.debug("Device already connected: %s", address)
				return

			kwargs: Dict[str, Any] = {
				"timeout": self.timeout,
				"disconnected_callback": self._make_disconnect_handler(address),
			}
			if self.adapter:
				kwargs["adapter"] = self.adapter
			client = self._client_factory(address, **kwargs)
			self._clients[address] = client

			try:
				await client.connect()
			except asyncio.CancelledError:
				self._clients.pop(address, None)
				raise
			except (BleakError, asyncio.TimeoutError, OSError) as exc:
				self._clients.pop(address, None)
				raise TransportError(f"connect to {address} failed: {exc}", address=address, reason=str(exc)) from exc

			if not await self._is_connected(client):
				self._clients.pop(address, None)
				raise TransportError(f"connect to {address} did not establish a link", address=address)
			logger.info("Connected to %s", address)

	async def disconnect(self, address: str) -> None:
		async with self._lock:
			client = self._clients.pop(address, None)
			if client is None:
				return
			try:
				await client.disconnect()
			except (BleakError, asyncio.TimeoutError, OSError) as exc:
				logger.warning("Disconnect encountered error for %s: %s", address, exc)
				raise TransportError(f"disconnect from {address} failed: {exc}", address=address) from exc
			logger.info("Disconnected from %s", address)

	async def is_connected(self, address: str) -> bool:
		client = self._clients.get(address)
		if client is None:
			return False
		return await self._is_connected(client)

	# ------------------------------------------------------------------
	# Data
	# ------------------------------------------------------------------
	async def retrieve_data(self, address: str) -> Optional[str]:
		"""Return the UUID of the configured characteristic, if the device exposes it."""
		client = self._clients.get(address)
		if client is None or not await self._is_connected(client):
			raise TransportError(f"{address} is not connected", address=address)
		uuids = self._characteristic_uuids(client)
		logger.debug("Services for %s expose %d characteristics", address, len(uuids))
		if len(uuids) <= self.characteristic_index:
			logger.info("Target characteristic #%d not found on %s", self.characteristic_index, address)
			return None
		return uuids[self.characteristic_index]

	@staticmethod
	def _characteristic_uuids(client: Any) -> List[str]:
		services = getattr(client, "services", None) or ()
		return [
			str(characteristic.uuid)
			for service in services
			for characteristic in getattr(service, "characteristics", ())
		]

	def _make_disconnect_handler(self, address: str) -> Callable[[Any], None]:
		def _handler(_: Any) -> None:
			logger.info("Device disconnected: %s", address)
			if self.on_disconnect is None:
				return
			try:
				self.on_disconnect(address)
			except Exception:  # pragma: no cover - user callback failure
				logger.exception("Disconnect callback raised for %s", address)

		return _handler

	async def _is_connected(self, client: Any) -> bool:
		state = getattr(client, "is_connected", None)
		if callable(state):
			with contextlib.suppress(Exception):
				result = state()
				if asyncio.iscoroutine(result):
					return bool(await result)
				return bool(result)
			return False
		return bool(state)


__all__ = [
	"Transport",
	"BleakTransport",
	"DisconnectCallback",
	"DEFAULT_CHARACTERISTIC_INDEX",
]
