import asyncio
import contextlib
import socket
import uuid

import pytest

from siren.config import Config
from siren.protocols import (
    Protocol,
    detect_protocol,
    process,
    process_shadowsocks,
    process_trojan,
    process_vless,
)
from siren.stream import ProxyStream

USER_ID = uuid.UUID("96850032-1b92-46e9-a4f2-b99631456894")
LOOPBACK = b"\x01\x7f\x00\x00\x01"


class FakeWebSocket:
    def __init__(self, messages):
        self._messages = list(messages)
        self.sent = []

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for message in self._messages:
            yield message

    async def send_bytes(self, data):
        self.sent.append(bytes(data))


@contextlib.asynccontextmanager
async def echo_server():
    received = []

    async def handle(reader, writer):
        data = await reader.read()
        received.append(data)
        writer.write(data)
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    async with server:
        yield port, received


def closed_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def make_stream(messages, proxy_port=443):
    config = Config(uuid=USER_ID, host="127.0.0.1", proxy_port=proxy_port)
    ws = FakeWebSocket(messages)
    return ProxyStream(config, ws), ws


def vless_header(port, network=1):
    return (
        b"\x00"
        + USER_ID.bytes
        + b"\x02\xaa\xbb"
        + bytes([network])
        + port.to_bytes(2, "big")
        + LOOPBACK
    )


def trojan_header(port):
    return b"a" * 56 + b"\r\n" + b"\x01" + LOOPBACK + port.to_bytes(2, "big") + b"\r\n"


@pytest.mark.parametrize(
    "head, expected",
    [
        (b"\x00" + b"\xff" * 61, Protocol.VLESS),
        (b"\x01" + b"\xff" * 61, Protocol.SHADOWSOCKS),
        (b"\x03" + b"\xff" * 61, Protocol.SHADOWSOCKS),
        (b"x" * 56 + b"\r\n" + b"\x01" * 4, Protocol.TROJAN),
        (b"\x05" * 62, Protocol.VMESS),
    ],
)
def test_detect_protocol(head, expected):
    assert detect_protocol(head) is expected


def test_detect_protocol_short_vless_is_enough():
    assert detect_protocol(b"\x00") is Protocol.VLESS


@pytest.mark.parametrize("head", [b"", b"\x05" * 10])
def test_detect_protocol_too_short(head):
    with pytest.raises(ValueError):
        detect_protocol(head)


@pytest.mark.asyncio
async def test_process_vless_tcp():
    payload = b"vless payload"
    async with echo_server() as (port, received):
        stream, ws = make_stream([vless_header(port), payload], proxy_port=port)
        await process(stream)
    assert ws.sent[0] == b"\x00\x00"
    assert b"".join(ws.sent[1:]) == payload
    assert received == [payload, b""]


@pytest.mark.asyncio
async def test_process_vless_falls_back_when_target_unreachable():
    payload = b"fallback"
    async with echo_server() as (port, received):
        header = vless_header(closed_port())
        stream, ws = make_stream([header + payload], proxy_port=port)
        await process_vless(stream)
    assert received == [payload]
    assert ws.sent == [b"\x00\x00", payload]


@pytest.mark.asyncio
async def test_process_vless_udp_sends_no_header():
    stream, ws = make_stream([vless_header(53, network=2), b"\x12\x34query"])
    stream.doh_url = "http://127.0.0.1:1/dns-query"
    await process_vless(stream)
    assert ws.sent == []


@pytest.mark.asyncio
async def test_process_trojan_tcp():
    payload = b"trojan payload"
    async with echo_server() as (port, received):
        stream, ws = make_stream([trojan_header(port) + payload], proxy_port=port)
        await process(stream)
    assert b"".join(ws.sent) == payload
    assert received == [payload, b""]


@pytest.mark.asyncio
async def test_process_trojan_truncated():
    stream, _ = make_stream([b"a" * 56 + b"\r\n"])
    with pytest.raises(asyncio.IncompleteReadError):
        await process_trojan(stream)


@pytest.mark.asyncio
async def test_process_shadowsocks_tcp():
    payload = b"shadowsocks payload"
    async with echo_server() as (port, received):
        header = LOOPBACK + port.to_bytes(2, "big")
        stream, ws = make_stream([header, payload], proxy_port=port)
        await process(stream)
    assert b"".join(ws.sent) == payload
    assert received == [payload, b""]


@pytest.mark.asyncio
async def test_process_shadowsocks_invalid_address():
    stream, _ = make_stream([b"\x09\x00\x50"])
    with pytest.raises(ValueError):
        await process_shadowsocks(stream)