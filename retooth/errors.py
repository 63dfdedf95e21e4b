"""Exception hierarchy shared by the reconnection core."""
from __future__ import annotations

from typing import Optional


class RetoothError(Exception):
    """Base class for every error raised by retooth."""


class PersistenceError(RetoothError):
    """The last-connection timestamp could not be read or written."""


class TransportError(RetoothError):
    """A connect, disconnect or liveness query against the peripheral failed."""

    def __init__(self, message: str, *, address: Optional[str] = None, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.address = address
        self.reason = reason or message


class InvalidAddress(RetoothError, ValueError):
    """Hardware address is not six hex octets separated by ``:`` or ``-``."""

    def __init__(self, address: object) -> None:
        super().__init__(f"invalid hardware address {address!r}; expected format AA:BB:CC:DD:EE:FF")
        self.address = address


class PermissionDenied(RetoothError):
    """The host refused the Bluetooth permissions needed to connect."""


__all__ = [
    "RetoothError",
    "PersistenceError",
    "TransportError",
    "InvalidAddress",
    "PermissionDenied",
]
