# siren

An asyncio WebSocket tunnel server built on aiohttp. A client opens a
WebSocket, sends the header of one of several proxy protocols in its first
binary frames, and siren connects to the requested TCP destination and
relays bytes both ways.

## Routes

- `/`, `/sub` and `/link` fetch the configured main, subscription and link
  page URLs and return the fetched body as `text/html`, whatever status the
  page URL answered with.
- `/<proxyip>` and `/Mosyaf/<proxyip>` are tunnel endpoints.
  - A `proxyip` of the form `host-port` (for example `203.0.113.7-443`) sets
    the fallback upstream. The value is split at its first dash, and ports
    above 65535 are ignored.
  - A `proxyip` starting with two capital letters (for example `SG` or
    `SG,JP`) is read as a comma-separated list of keys into a JSON proxy
    list (`{"SG": ["host:port", ...], ...}`). One random byte picks both the
    key and the entry within it; the chosen `host:port` becomes the fallback
    upstream. This needs a proxy list URL (`--proxy-list-url`); without one,
    or when a key is missing from the list, the request fails with HTTP 500.
  - Otherwise the fallback upstream is the request's own host on port 443.
  - A request that is not a WebSocket upgrade gets the text
    `hi from wasm!` as HTML.

## Tunnels

The protocol is told apart from the first 62 bytes of the WebSocket stream:

| first bytes                  | protocol     |
|------------------------------|--------------|
| byte 0 is `0x00`             | VLESS        |
| byte 0 is `0x01` or `0x03`   | Shadowsocks  |
| bytes 56–57 are `\r\n`       | Trojan       |
| anything else                | VMess (AEAD) |

For a TCP command siren first connects to the destination named in the
header and relays until both directions end, then does the same with the
fallback upstream; a failure of either attempt is logged, not raised.
VLESS answers a TCP request with two zero bytes; VMess answers with its
AEAD-sealed response header.

Shadowsocks requests are always treated as TCP and carry no encryption. For
the other protocols a non-TCP command reads one datagram and posts it to a
DNS-over-HTTPS resolver (`https://1.1.1.1/dns-query`); if that request
succeeds, the datagram that was sent is written back to the client. The
resolver's answer is not returned.

Address types in headers are read the same way for every protocol: type 1
is IPv4, types 2 and 3 are a length-prefixed domain name, type 4 is IPv6.

## Installing

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Running

```
siren --help
```

Options (each setting may also come from the environment variable shown):

- `--uuid` (`UUID`): user id used to decrypt VMess headers. A value that is
  not a valid UUID becomes the all-zero UUID.
- `--main-page-url` (`MAIN_PAGE_URL`), `--sub-page-url` (`SUB_PAGE_URL`),
  `--link-page-url` (`LINK_PAGE_URL`): the pages served on `/`, `/sub` and
  `/link`.
- `--proxy-list-url` (`PROXY_LIST_URL`): the JSON proxy list for
  country-code tunnel paths.
- `--proxy-list-ttl`: seconds to keep the fetched proxy list, 86400 by
  default.
- `--host`, `--port`: where to listen, `0.0.0.0:8080` by default.

The UUID and the three page URLs are required.

## Using it as a library

- `siren.server.create_app(uuid, main_page_url, sub_page_url, link_page_url, proxy_cache=None)`
  builds the `aiohttp.web.Application`.
- `siren.server.ProxyListCache(url, ttl)` fetches and caches the proxy list;
  `await cache.get()` returns it as a dict, raising `ProxyListError` on a
  non-200 answer or malformed JSON.
- `siren.server.parse_proxy_ip(value)` returns `(addr, port)` or `None`;
  `select_proxy_ip(proxyip, proxy_kv, rand_byte)` resolves country codes.
- `siren.config.Config` holds the per-request settings;
  `Config.with_proxy(addr, port)` returns a copy with another fallback.
- `siren.protocols.detect_protocol(head)` returns a `Protocol`;
  `process(stream)` detects and handles a tunnel; `process_vless`,
  `process_trojan`, `process_shadowsocks` and `siren.vmess.process_vmess`
  handle one protocol each. `siren.vmess.decrypt_header(stream)` returns the
  decrypted VMess command section and raises `VmessError` on failure.
- `siren.stream.ProxyStream(config, ws)` turns an async iterable of
  WebSocket messages with `send_bytes` into a byte stream.
- `siren.kdf.kdf(key, path)` is the VMess AEAD key derivation (nested
  HMAC-SHA256, 32 bytes); `md5(*parts)` and `sha256(*parts)` hash the
  concatenation of their arguments.
- `siren.address.parse_addr(reader)` and `read_port(reader)` decode header
  addresses and ports; an unknown address type raises `AddressError`.
- `siren.dns.doh(query, url)` posts a wire-format DNS query and returns the
  response body.

## What it does not do

- It does not check the user ids in VLESS and Trojan headers.
- It does not support encrypted Shadowsocks, nor UDP over Shadowsocks.
- It does not relay UDP traffic other than the single DoH round trip above.
- It does not terminate TLS; run it behind something that does.
- The proxy list is cached in memory only and is lost on restart.