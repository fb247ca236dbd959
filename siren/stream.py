"""A byte stream over the messages of a WebSocket, with TCP and DNS outbound relays."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum, auto
from typing import Any, AsyncIterator, Optional, Tuple

import aiohttp

from .config import Config
from .dns import DEFAULT_DOH_URL, doh

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 65536
_UDP_BUFFER_SIZE = 65535


class _Kind(Enum):
    DATA = auto()
    IGNORED = auto()
    CLOSED = auto()
    FAILED = auto()


def _classify(message: Any) -> Tuple[_Kind, Any]:
    """Sort an incoming WebSocket message into data, noise, close or error."""
    if isinstance(message, (bytes, bytearray, memoryview)):
        return _Kind.DATA, bytes(message)
    if isinstance(message, str):
        return _Kind.IGNORED, None
    kind = getattr(message, "type", None)
    if kind == aiohttp.WSMsgType.BINARY:
        return _Kind.DATA, bytes(message.data)
    if kind in (
        aiohttp.WSMsgType.CLOSE,
        aiohttp.WSMsgType.CLOSING,
        aiohttp.WSMsgType.CLOSED,
    ):
        return _Kind.CLOSED, None
    if kind == aiohttp.WSMsgType.ERROR:
        return _Kind.FAILED, message.data
    return _Kind.IGNORED, None


class ProxyStream:
    """Reads binary WebSocket messages as one byte stream and writes back as binary frames.

    ``ws`` must be asynchronously iterable over its incoming messages and
    provide an awaitable ``send_bytes(data)``.
    """

    def __init__(self, config: Config, ws: Any) -> None:
        self.config = config
        self.ws = ws
        self.buffer = bytearray()
        self.doh_url = DEFAULT_DOH_URL
        self._events: AsyncIterator[Any] = aiter(ws)
        self._ended = False

    async def _next_event(self) -> Tuple[_Kind, Any]:
        if self._ended:
            return _Kind.CLOSED, None
        message = await anext(self._events, None)
        if message is None:
            self._ended = True
            return _Kind.CLOSED, None
        kind, payload = _classify(message)
        if kind is _Kind.CLOSED:
            self._ended = True
        return kind, payload

    async def fill_buffer_until(self, n: int) -> None:
        """Buffer incoming data until at least ``n`` bytes are held or the socket closes."""
        while len(self.buffer) < n:
            kind, payload = await self._next_event()
            if kind is _Kind.DATA:
                self.buffer.extend(payload)
            elif kind is _Kind.CLOSED:
                break
            elif kind is _Kind.FAILED:
                raise OSError(str(payload))

    def peek_buffer(self, n: int) -> bytes:
        """Return up to ``n`` buffered bytes without consuming them."""
        return bytes(self.buffer[:n])

    async def read(self, n: int) -> bytes:
        """Return up to ``n`` bytes; an empty result means end of stream."""
        while True:
            if self.buffer and n > 0:
                chunk = bytes(self.buffer[:n])
                del self.buffer[:n]
                return chunk
            kind, payload = await self._next_event()
            if kind is _Kind.DATA:
                self.buffer.extend(payload)
            elif kind is not _Kind.IGNORED:
                return b""

    async def readexactly(self, n: int) -> bytes:
        """Return exactly ``n`` bytes or raise :class:`asyncio.IncompleteReadError`."""
        parts = bytearray()
        while len(parts) < n:
            chunk = await self.read(n - len(parts))
            if not chunk:
                raise asyncio.IncompleteReadError(bytes(parts), n)
            parts.extend(chunk)
        return bytes(parts)

    async def read_u8(self) -> int:
        """Read one unsigned byte."""
        (value,) = await self.readexactly(1)
        return value

    async def read_u16(self) -> int:
        """Read a big-endian unsigned 16-bit integer."""
        return int.from_bytes(await self.readexactly(2), "big")

    async def write(self, data: bytes) -> int:
        """Send ``data`` as one binary message and return its length."""
        await self.ws.send_bytes(bytes(data))
        return len(data)

    async def _pump_to_remote(self, writer: asyncio.StreamWriter) -> int:
        total = 0
        while data := await self.read(_CHUNK_SIZE):
            writer.write(data)
            await writer.drain()
            total += len(data)
        if writer.can_write_eof():
            writer.write_eof()
        return total

    async def _pump_from_remote(self, reader: asyncio.StreamReader) -> int:
        total = 0
        while data := await reader.read(_CHUNK_SIZE):
            await self.write(data)
            total += len(data)
        return total

    async def handle_tcp_outbound(self, addr: str, port: int) -> Tuple[int, int]:
        """Relay between this stream and ``addr:port`` until both directions end.

        Returns the byte counts sent upstream and received from upstream.
        """
        logger.info("connecting to upstream %s:%s", addr, port)
        reader, writer = await asyncio.open_connection(addr, port)
        tasks = [
            asyncio.ensure_future(self._pump_to_remote(writer)),
            asyncio.ensure_future(self._pump_from_remote(reader)),
        ]
        try:
            done, pending = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_EXCEPTION
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                error = task.exception()
                if error is not None:
                    raise error
            return tasks[0].result(), tasks[1].result()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

    async def handle_udp_outbound(self) -> None:
        """Send one datagram to the DoH resolver; on success the datagram is written back."""
        data = await self.read(_UDP_BUFFER_SIZE)
        try:
            await doh(data, self.doh_url)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            logger.debug("DoH request failed: %s", exc)
            return
        await self.write(data)