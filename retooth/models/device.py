from __future__ import annotations

import re
from dataclasses import dataclass

from retooth.errors import InvalidAddress

_ADDRESS_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}([0-9A-Fa-f]{2})$")


def normalize_address(raw: str) -> str:
    """Return ``raw`` as upper-case, colon separated octets.

    Surrounding whitespace is ignored. Anything else that is not six hex
    octets separated by ``:`` or ``-`` raises :class:`InvalidAddress`.
    """
    if not isinstance(raw, str):
        raise InvalidAddress(raw)
    candidate = raw.strip()
    if not _ADDRESS_PATTERN.fullmatch(candidate):
        raise InvalidAddress(raw)
    return candidate.replace("-", ":").upper()


@dataclass(frozen=True, slots=True)
class Device:
    """The single peripheral managed by a :class:`~retooth.reconnect.Reconnector`."""

    address: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", normalize_address(self.address))

    def __str__(self) -> str:
        return self.address
