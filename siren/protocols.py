"""Protocol detection and the VLESS, Trojan and Shadowsocks request handlers."""

from __future__ import annotations

import logging
from enum import Enum

from .address import parse_addr, read_port
from .vmess import process_vmess

logger = logging.getLogger(__name__)

HEAD_SIZE = 62
_TROJAN_HASH_SIZE = 56
_NETWORK_TCP = 1
_VLESS_RESPONSE = b"\x00\x00"


class Protocol(Enum):
    """Tunnel protocols recognised from the first bytes of a connection."""

    VLESS = "vless"
    SHADOWSOCKS = "shadowsocks"
    TROJAN = "trojan"
    VMESS = "vmess"


def detect_protocol(head: bytes) -> Protocol:
    """Guess the protocol from the first bytes of a connection.

    A leading zero is VLESS, a leading 1 or 3 is Shadowsocks, CRLF after the
    56-byte password hash is Trojan and anything else is VMess.
    """
    if not head:
        raise ValueError("no data to detect protocol")
    first = head[0]
    if first == 0:
        return Protocol.VLESS
    if first in (1, 3):
        return Protocol.SHADOWSOCKS
    if len(head) < _TROJAN_HASH_SIZE + 2:
        raise ValueError(f"need {_TROJAN_HASH_SIZE + 2} bytes, got {len(head)}")
    if head[_TROJAN_HASH_SIZE : _TROJAN_HASH_SIZE + 2] == b"\r\n":
        return Protocol.TROJAN
    return Protocol.VMESS


async def _relay_tcp(stream, addr: str, port: int) -> None:
    targets = ((addr, port), (stream.config.proxy_addr, stream.config.proxy_port))
    for target_addr, target_port in targets:
        try:
            await stream.handle_tcp_outbound(target_addr, target_port)
        except (OSError, EOFError, ValueError) as exc:
            logger.error("error handling tcp: %s", exc)


async def _relay_udp(stream) -> None:
    try:
        await stream.handle_udp_outbound()
    except (OSError, EOFError) as exc:
        logger.error("error handling udp: %s", exc)


async def process_vless(stream) -> None:
    """Handle a VLESS request."""
    await stream.read_u8()  # version
    await stream.readexactly(16)  # user id
    addons_length = await stream.read_u8()
    await stream.readexactly(addons_length)

    is_tcp = await stream.read_u8() == _NETWORK_TCP
    remote_port = await read_port(stream)
    remote_addr = await parse_addr(stream)

    if is_tcp:
        await stream.write(_VLESS_RESPONSE)
        await _relay_tcp(stream, remote_addr, remote_port)
    else:
        await _relay_udp(stream)


async def process_trojan(stream) -> None:
    """Handle a Trojan request; the password hash is not checked."""
    await stream.readexactly(_TROJAN_HASH_SIZE)
    await stream.read_u16()  # CRLF

    is_tcp = await stream.read_u8() == _NETWORK_TCP
    remote_addr = await parse_addr(stream)
    remote_port = await read_port(stream)

    await stream.read_u16()  # CRLF

    if is_tcp:
        await _relay_tcp(stream, remote_addr, remote_port)
    else:
        await _relay_udp(stream)


async def process_shadowsocks(stream) -> None:
    """Handle an unencrypted Shadowsocks request, always over TCP."""
    remote_addr = await parse_addr(stream)
    remote_port = await read_port(stream)
    await _relay_tcp(stream, remote_addr, remote_port)


async def process(stream) -> None:
    """Detect the protocol of ``stream`` and hand it to the matching handler."""
    await stream.fill_buffer_until(HEAD_SIZE)
    protocol = detect_protocol(stream.peek_buffer(HEAD_SIZE))
    logger.info("%s detected!", protocol.name)
    if protocol is Protocol.VLESS:
        await process_vless(stream)
    elif protocol is Protocol.SHADOWSOCKS:
        await process_shadowsocks(stream)
    elif protocol is Protocol.TROJAN:
        await process_trojan(stream)
    else:
        await process_vmess(stream)