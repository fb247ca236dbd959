import asyncio
import collections
import contextlib
import socket
import uuid

import aiohttp
import pytest
from aiohttp import web

from siren.config import Config
from siren.stream import ProxyStream

Msg = collections.namedtuple("Msg", ["type", "data"])


class FakeWebSocket:
    def __init__(self, messages):
        self._messages = list(messages)
        self.sent = []

    def __aiter__(self):
        return self._events()

    async def _events(self):
        for message in self._messages:
            yield message

    async def send_bytes(self, data):
        self.sent.append(bytes(data))


def make_stream(messages):
    ws = FakeWebSocket(messages)
    config = Config(uuid=uuid.uuid4(), host="example.com")
    return ProxyStream(config, ws), ws


def unused_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@contextlib.asynccontextmanager
async def serve_doh(handler):
    app = web.Application()
    app.router.add_post("/dns-query", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    try:
        yield f"http://{host}:{port}/dns-query"
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_fill_buffer_stops_once_enough_is_held():
    stream, _ = make_stream([b"ab", b"cd", b"ef"])
    await stream.fill_buffer_until(4)
    assert stream.peek_buffer(3) == b"abc"
    assert stream.peek_buffer(100) == b"abcd"


@pytest.mark.asyncio
async def test_peek_does_not_consume():
    stream, _ = make_stream([b"ab", b"cd", b"ef"])
    await stream.fill_buffer_until(4)
    stream.peek_buffer(4)
    assert await stream.read(10) == b"abcd"
    assert await stream.read(10) == b"ef"
    assert await stream.read(10) == b""


@pytest.mark.asyncio
async def test_fill_buffer_stops_at_close():
    stream, _ = make_stream([b"xy", Msg(aiohttp.WSMsgType.CLOSE, None), b"zz"])
    await stream.fill_buffer_until(62)
    assert stream.peek_buffer(62) == b"xy"


@pytest.mark.asyncio
async def test_fill_buffer_ignores_text_messages():
    stream, _ = make_stream(["hello", b"ab", Msg(aiohttp.WSMsgType.TEXT, "x"), b"c"])
    await stream.fill_buffer_until(3)
    assert stream.peek_buffer(3) == b"abc"


@pytest.mark.asyncio
async def test_fill_buffer_raises_on_error_event():
    stream, _ = make_stream([b"a", Msg(aiohttp.WSMsgType.ERROR, RuntimeError("broken"))])
    with pytest.raises(OSError):
        await stream.fill_buffer_until(10)


@pytest.mark.asyncio
async def test_read_treats_error_event_as_end():
    stream, _ = make_stream([Msg(aiohttp.WSMsgType.ERROR, RuntimeError("broken")), b"a"])
    assert await stream.read(5) == b""


@pytest.mark.asyncio
async def test_read_respects_limit_and_accepts_binary_messages():
    stream, _ = make_stream([Msg(aiohttp.WSMsgType.BINARY, b"abcdef")])
    assert await stream.read(2) == b"ab"
    assert await stream.read(100) == b"cdef"


@pytest.mark.asyncio
async def test_readexactly_spans_messages():
    stream, _ = make_stream([b"ab", b"c", b"defg"])
    assert await stream.readexactly(5) == b"abcde"
    assert await stream.readexactly(2) == b"fg"


@pytest.mark.asyncio
async def test_readexactly_short_stream_raises():
    stream, _ = make_stream([b"ab"])
    with pytest.raises(asyncio.IncompleteReadError) as info:
        await stream.readexactly(4)
    assert info.value.partial == b"ab"


@pytest.mark.asyncio
async def test_read_integers():
    stream, _ = make_stream([b"\x07\x01\x02"])
    assert await stream.read_u8() == 7
    assert await stream.read_u16() == 258


@pytest.mark.asyncio
async def test_write_sends_binary_and_returns_length():
    stream, ws = make_stream([])
    assert await stream.write(b"\x00\x00") == 2
    assert ws.sent == [b"\x00\x00"]


@pytest.mark.asyncio
async def test_handle_tcp_outbound_relays_both_directions():
    received = []

    async def upstream(reader, writer):
        data = await reader.read()
        received.append(data)
        writer.write(data.upper())
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(upstream, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    stream, ws = make_stream([b"hello", b" world"])
    try:
        sent_up, sent_down = await stream.handle_tcp_outbound("127.0.0.1", port)
    finally:
        server.close()
        await server.wait_closed()

    assert received == [b"hello world"]
    assert b"".join(ws.sent) == b"HELLO WORLD"
    assert (sent_up, sent_down) == (len(b"hello world"), len(b"HELLO WORLD"))


@pytest.mark.asyncio
async def test_handle_tcp_outbound_refused_connection_raises():
    stream, ws = make_stream([b"data"])
    with pytest.raises(OSError):
        await stream.handle_tcp_outbound("127.0.0.1", unused_port())
    assert ws.sent == []


@pytest.mark.asyncio
async def test_handle_udp_outbound_writes_datagram_back_on_success():
    queries = []

    async def handler(request):
        queries.append(await request.read())
        return web.Response(body=b"answer")

    query = b"\xab\xcd\x01\x00"
    stream, ws = make_stream([query])
    async with serve_doh(handler) as url:
        stream.doh_url = url
        await stream.handle_udp_outbound()

    assert queries == [query]
    assert ws.sent == [query]


@pytest.mark.asyncio
async def test_handle_udp_outbound_sends_nothing_on_failure():
    stream, ws = make_stream([b"\x01\x02"])
    stream.doh_url = f"http://127.0.0.1:{unused_port()}/dns-query"
    await stream.handle_udp_outbound()
    assert ws.sent == []