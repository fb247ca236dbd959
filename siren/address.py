"""Address and port decoding shared by the VMess, VLESS, Trojan and Shadowsocks headers."""

from __future__ import annotations

import ipaddress
from typing import Awaitable, Protocol


class AddressError(ValueError):
    """Raised when an address header carries an unknown address type."""


class _Reader(Protocol):
    def readexactly(self, n: int) -> Awaitable[bytes]: ...


_IPV4 = 1
_DOMAIN_TYPES = (2, 3)
_IPV6 = 4


async def parse_addr(reader: _Reader) -> str:
    """Read a typed address and return it as text.

    Type 1 is IPv4, types 2 and 3 are a length-prefixed domain name and
    type 4 is IPv6.
    """
    (addr_type,) = await reader.readexactly(1)
    if addr_type == _IPV4:
        return str(ipaddress.IPv4Address(await reader.readexactly(4)))
    if addr_type in _DOMAIN_TYPES:
        (length,) = await reader.readexactly(1)
        domain = await reader.readexactly(length)
        return domain.decode("utf-8", errors="replace")
    if addr_type == _IPV6:
        return str(ipaddress.IPv6Address(await reader.readexactly(16)))
    raise AddressError("invalid address")


async def read_port(reader: _Reader) -> int:
    """Read a big-endian 16-bit port."""
    return int.from_bytes(await reader.readexactly(2), "big")