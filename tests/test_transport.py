"""BleakTransport against a fake bleak client."""
from __future__ import annotations

import asyncio
import unittest
from types import SimpleNamespace
from typing import Any, List

from bleak.exc import BleakError

from retooth.errors import TransportError
from retooth.transport import BleakTransport, Transport

ADDRESS = "AA:BB:CC:DD:EE:FF"


class _FakeClient:
    def __init__(self, address: str, *, fail: bool = False, characteristics: int = 16, **kwargs: Any) -> None:
        self.address = address
        self.kwargs = kwargs
        self.fail = fail
        self.is_connected = False
        self.services = [
            SimpleNamespace(characteristics=[SimpleNamespace(uuid=f"0000{i:04x}-0000-1000-8000-00805f9b34fb")])
            for i in range(characteristics)
        ]

    async def connect(self) -> None:
        await asyncio.sleep(0)
        if self.fail:
            raise BleakError("Device with address AA:BB:CC:DD:EE:FF was not found")
        self.is_connected = True

    async def disconnect(self) -> None:
        self.is_connected = False
        self.kwargs["disconnected_callback"](self)


class _Factory:
    def __init__(self, **client_kwargs: Any) -> None:
        self.client_kwargs = client_kwargs
        self.clients: List[_FakeClient] = []

    def __call__(self, address: str, **kwargs: Any) -> _FakeClient:
        client = _FakeClient(address, **self.client_kwargs, **kwargs)
        self.clients.append(client)
        return client


class BleakTransportTest(unittest.IsolatedAsyncioTestCase):
    async def test_connect_read_and_disconnect(self) -> None:
        dropped = []
        factory = _Factory()
        transport = BleakTransport(client_factory=factory, timeout=5.0, on_disconnect=dropped.append)
        self.assertIsInstance(transport, Transport)

        await transport.connect(ADDRESS)
        await transport.connect(ADDRESS)

        self.assertEqual(len(factory.clients), 1)
        self.assertEqual(factory.clients[0].kwargs["timeout"], 5.0)
        self.assertTrue(await transport.is_connected(ADDRESS))
        self.assertEqual(await transport.retrieve_data(ADDRESS), "0000000e-0000-1000-8000-00805f9b34fb")

        await transport.disconnect(ADDRESS)
        self.assertFalse(await transport.is_connected(ADDRESS))
        self.assertEqual(dropped, [ADDRESS])
        await transport.disconnect(ADDRESS)

    async def test_bleak_errors_become_transport_errors(self) -> None:
        transport = BleakTransport(client_factory=_Factory(fail=True))

        with self.assertRaises(TransportError) as ctx:
            await transport.connect(ADDRESS)

        self.assertEqual(ctx.exception.address, ADDRESS)
        self.assertIn("not found", ctx.exception.reason)
        self.assertFalse(await transport.is_connected(ADDRESS))

    async def test_missing_characteristic_reads_as_none(self) -> None:
        transport = BleakTransport(client_factory=_Factory(characteristics=3))
        await transport.connect(ADDRESS)

        self.assertIsNone(await transport.retrieve_data(ADDRESS))

    async def test_reading_without_a_link_fails(self) -> None:
        transport = BleakTransport(client_factory=_Factory())

        with self.assertRaises(TransportError):
            await transport.retrieve_data(ADDRESS)

    async def test_adapter_is_forwarded(self) -> None:
        factory = _Factory()
        transport = BleakTransport(client_factory=factory, adapter="hci1")
        await transport.connect(ADDRESS)

        self.assertEqual(factory.clients[0].kwargs["adapter"], "hci1")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
