"""Per-request configuration of the tunnel endpoint."""

from __future__ import annotations

import dataclasses
import uuid as _uuid
from dataclasses import dataclass

DEFAULT_PROXY_PORT = 443
_MAX_PORT = 0xFFFF


@dataclass(frozen=True)
class Config:
    """Settings a tunnel uses: user id, host, fallback proxy and page URLs.

    The fallback proxy address defaults to the host itself on port 443.
    """

    uuid: _uuid.UUID
    host: str
    main_page_url: str = ""
    sub_page_url: str = ""
    link_page_url: str = ""
    proxy_addr: str = ""
    proxy_port: int = DEFAULT_PROXY_PORT

    def __post_init__(self) -> None:
        if not self.proxy_addr:
            object.__setattr__(self, "proxy_addr", self.host)
        _check_port(self.proxy_port)

    def with_proxy(self, addr: str, port: int) -> "Config":
        """Return a copy of this config that falls back to ``addr:port``."""
        _check_port(port)
        return dataclasses.replace(self, proxy_addr=addr, proxy_port=port)


def _check_port(port: int) -> None:
    if not 0 <= port <= _MAX_PORT:
        raise ValueError(f"port out of range: {port}")