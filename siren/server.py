"""HTTP entry point: page routes and the WebSocket tunnel route."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import re
import secrets
import time
import uuid as _uuid
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import aiohttp
from aiohttp import web

from .config import Config
from .protocols import process
from .stream import ProxyStream

logger = logging.getLogger(__name__)

PROXYIP_PATTERN = re.compile(r"^.+-\d+$")
PROXYKV_PATTERN = re.compile(r"^([A-Z]{2})")

DEFAULT_PROXY_LIST_TTL = 60 * 60 * 24
TUNNEL_GREETING = "hi from wasm!"
_MAX_PORT = 0xFFFF


class ProxyListError(RuntimeError):
    """Raised when the proxy list cannot be fetched or has the wrong shape."""


class ProxyListCache:
    """Fetches the country-keyed proxy list and keeps it for ``ttl`` seconds."""

    def __init__(self, url: str, ttl: Optional[float] = DEFAULT_PROXY_LIST_TTL) -> None:
        self.url = url
        self.ttl = ttl
        self._text = ""
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    def _expired(self) -> bool:
        if self.ttl is None:
            return False
        return time.monotonic() - self._fetched_at >= self.ttl

    async def _fetch(self) -> str:
        logger.info("getting proxy kv from %s...", self.url)
        async with aiohttp.ClientSession() as session:
            async with session.get(self.url) as response:
                if response.status != 200:
                    raise ProxyListError(f"error getting proxy kv: {response.status}")
                return await response.text()

    async def get(self) -> Dict[str, List[str]]:
        """Return the proxy list, fetching it again when missing or expired."""
        async with self._lock:
            if not self._text or self._expired():
                self._text = await self._fetch()
                self._fetched_at = time.monotonic()
            text = self._text
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProxyListError(f"invalid proxy list: {exc}") from exc
        if not isinstance(data, dict) or not all(
            isinstance(entries, list) and all(isinstance(e, str) for e in entries)
            for entries in data.values()
        ):
            raise ProxyListError("proxy list must map names to lists of strings")
        return data


def parse_proxy_ip(value: str) -> Optional[Tuple[str, int]]:
    """Split ``addr-port`` at the first dash; ``None`` when it is not of that form."""
    if not PROXYIP_PATTERN.match(value):
        return None
    addr, _, port_text = value.partition("-")
    if not port_text.isdigit():
        return None
    port = int(port_text)
    if port > _MAX_PORT:
        return None
    return addr, port


def select_proxy_ip(
    proxyip: str, proxy_kv: Mapping[str, Sequence[str]], rand_byte: int
) -> str:
    """Resolve a comma-separated list of country codes to one ``addr-port`` entry.

    Values that do not start with two capital letters are returned unchanged.
    The same random byte picks both the country and the entry within it.
    """
    if not PROXYKV_PATTERN.match(proxyip):
        return proxyip
    kv_ids = proxyip.split(",")
    chosen = kv_ids[rand_byte % len(kv_ids)]
    entries = proxy_kv[chosen]
    return entries[rand_byte % len(entries)].replace(":", "-")


def _parse_uuid(value: Union[str, _uuid.UUID]) -> _uuid.UUID:
    if isinstance(value, _uuid.UUID):
        return value
    try:
        return _uuid.UUID(str(value))
    except ValueError:
        return _uuid.UUID(int=0)


async def _fetch_page(url: str) -> web.Response:
    async with aiohttp.ClientSession() as session:
        async with session.get(url) as response:
            body = await response.text()
    return web.Response(text=body, content_type="text/html")


def create_app(
    uuid: Union[str, _uuid.UUID],
    main_page_url: str,
    sub_page_url: str,
    link_page_url: str,
    proxy_cache: Optional[ProxyListCache] = None,
) -> web.Application:
    """Build the web application serving the pages and the tunnel."""
    user_id = _parse_uuid(uuid)

    def make_config(request: web.Request) -> Config:
        return Config(
            uuid=user_id,
            host=request.url.host or "",
            main_page_url=main_page_url,
            sub_page_url=sub_page_url,
            link_page_url=link_page_url,
        )

    async def front(request: web.Request) -> web.Response:
        return await _fetch_page(main_page_url)

    async def sub(request: web.Request) -> web.Response:
        return await _fetch_page(sub_page_url)

    async def link(request: web.Request) -> web.Response:
        return await _fetch_page(link_page_url)

    async def tunnel(request: web.Request) -> web.StreamResponse:
        config = make_config(request)
        proxyip = request.match_info["proxyip"]

        if PROXYKV_PATTERN.match(proxyip):
            if proxy_cache is None:
                raise web.HTTPInternalServerError(text="no proxy list configured")
            proxy_kv = await proxy_cache.get()
            try:
                proxyip = select_proxy_ip(proxyip, proxy_kv, secrets.randbelow(256))
            except KeyError as exc:
                raise web.HTTPInternalServerError(
                    text=f"unknown proxy list entry: {exc}"
                ) from exc

        target = parse_proxy_ip(proxyip)
        if target is not None:
            config = config.with_proxy(*target)

        if request.headers.get("Upgrade", "") != "websocket":
            return web.Response(text=TUNNEL_GREETING, content_type="text/html")

        ws = web.WebSocketResponse()
        await ws.prepare(request)
        try:
            await process(ProxyStream(config, ws))
        except Exception as exc:  # every tunnel failure ends the session quietly
            logger.info("[tunnel]: %s", exc)
        finally:
            await ws.close()
        return ws

    app = web.Application()
    app.router.add_get("/", front)
    app.router.add_get("/sub", sub)
    app.router.add_get("/link", link)
    app.router.add_get("/Mosyaf/{proxyip}", tunnel)
    app.router.add_get("/{proxyip}", tunnel)
    return app


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Run the tunnel server."""
    env = os.environ
    parser = argparse.ArgumentParser(prog="siren", description="WebSocket tunnel server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--uuid", default=env.get("UUID"))
    parser.add_argument("--main-page-url", default=env.get("MAIN_PAGE_URL"))
    parser.add_argument("--sub-page-url", default=env.get("SUB_PAGE_URL"))
    parser.add_argument("--link-page-url", default=env.get("LINK_PAGE_URL"))
    parser.add_argument("--proxy-list-url", default=env.get("PROXY_LIST_URL"))
    parser.add_argument(
        "--proxy-list-ttl", type=float, default=float(DEFAULT_PROXY_LIST_TTL)
    )
    args = parser.parse_args(argv)

    required = {
        "--uuid": args.uuid,
        "--main-page-url": args.main_page_url,
        "--sub-page-url": args.sub_page_url,
        "--link-page-url": args.link_page_url,
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        parser.error("missing settings: " + ", ".join(missing))

    logging.basicConfig(level=logging.INFO)
    cache = (
        ProxyListCache(args.proxy_list_url, args.proxy_list_ttl)
        if args.proxy_list_url
        else None
    )
    app = create_app(
        args.uuid, args.main_page_url, args.sub_page_url, args.link_page_url, cache
    )
    web.run_app(app, host=args.host, port=args.port)