"""VMess AEAD request handling: header decryption, response header and relay."""

from __future__ import annotations

import asyncio
import logging
import uuid as _uuid

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .address import parse_addr, read_port
from .kdf import kdf, md5, sha256

logger = logging.getLogger(__name__)

CMD_KEY_SALT = b"c48619fe-8f02-49e0-b9e9-edf763e17e21"

KDFSALT_CONST_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_KEY = b"VMess Header AEAD Key_Length"
KDFSALT_CONST_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_IV = b"VMess Header AEAD Nonce_Length"
KDFSALT_CONST_VMESS_HEADER_PAYLOAD_AEAD_KEY = b"VMess Header AEAD Key"
KDFSALT_CONST_VMESS_HEADER_PAYLOAD_AEAD_IV = b"VMess Header AEAD Nonce"
KDFSALT_CONST_AEAD_RESP_HEADER_LEN_KEY = b"AEAD Resp Header Len Key"
KDFSALT_CONST_AEAD_RESP_HEADER_LEN_IV = b"AEAD Resp Header Len IV"
KDFSALT_CONST_AEAD_RESP_HEADER_KEY = b"AEAD Resp Header Key"
KDFSALT_CONST_AEAD_RESP_HEADER_IV = b"AEAD Resp Header IV"

AUTH_ID_SIZE = 16
SEALED_LENGTH_SIZE = 18
NONCE_SIZE = 8
TAG_SIZE = 16

_VERSION = 1
_CMD_TCP = 0x01
_RESPONSE_DATA_LENGTH = 4


class VmessError(ValueError):
    """Raised when a VMess header cannot be decrypted or is malformed."""


class _BytesReader:
    """In-memory reader with the ``readexactly`` interface of a stream."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    async def readexactly(self, n: int) -> bytes:
        chunk = self._data[self._pos : self._pos + n]
        if len(chunk) < n:
            self._pos = len(self._data)
            raise asyncio.IncompleteReadError(chunk, n)
        self._pos += n
        return chunk


def user_key(user_id: _uuid.UUID) -> bytes:
    """Return the command key derived from a user id."""
    return md5(user_id.bytes, CMD_KEY_SALT)


def _open(key: bytes, nonce: bytes, sealed: bytes, aad: bytes) -> bytes:
    try:
        return AESGCM(key).decrypt(nonce, sealed, aad)
    except InvalidTag as exc:
        raise VmessError("aead decryption failed") from exc


def _seal(key: bytes, nonce: bytes, data: bytes) -> bytes:
    return AESGCM(key).encrypt(nonce, data, None)


async def decrypt_header(stream) -> bytes:
    """Read and decrypt the AEAD request header, returning the command section."""
    key = user_key(stream.config.uuid)
    auth_id = await stream.readexactly(AUTH_ID_SIZE)
    sealed_length = await stream.readexactly(SEALED_LENGTH_SIZE)
    nonce = await stream.readexactly(NONCE_SIZE)

    length = _open(
        kdf(key, [KDFSALT_CONST_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_KEY, auth_id, nonce])[:16],
        kdf(key, [KDFSALT_CONST_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_IV, auth_id, nonce])[:12],
        sealed_length,
        auth_id,
    )
    if len(length) < 2:
        raise VmessError("header length too short")
    header_length = int.from_bytes(length[:2], "big")

    sealed_cmd = await stream.readexactly(header_length + TAG_SIZE)
    return _open(
        kdf(key, [KDFSALT_CONST_VMESS_HEADER_PAYLOAD_AEAD_KEY, auth_id, nonce])[:16],
        kdf(key, [KDFSALT_CONST_VMESS_HEADER_PAYLOAD_AEAD_IV, auth_id, nonce])[:12],
        sealed_cmd,
        auth_id,
    )


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


async def process_vmess(stream) -> None:
    """Handle a VMess request: answer with the AEAD response header, then relay."""
    command = _BytesReader(await decrypt_header(stream))

    (version,) = await command.readexactly(1)
    if version != _VERSION:
        raise VmessError("invalid version")

    body_iv = await command.readexactly(16)
    body_key = await command.readexactly(16)
    options = await command.readexactly(4)
    (cmd,) = await command.readexactly(1)
    is_tcp = cmd == _CMD_TCP

    remote_port = await read_port(command)
    remote_addr = await parse_addr(command)

    response_key = sha256(body_key)[:16]
    response_iv = sha256(body_iv)[:16]

    sealed_length = _seal(
        kdf(response_key, [KDFSALT_CONST_AEAD_RESP_HEADER_LEN_KEY])[:16],
        kdf(response_iv, [KDFSALT_CONST_AEAD_RESP_HEADER_LEN_IV])[:12],
        _RESPONSE_DATA_LENGTH.to_bytes(2, "big"),
    )
    await stream.write(sealed_length)

    sealed_header = _seal(
        kdf(response_key, [KDFSALT_CONST_AEAD_RESP_HEADER_KEY])[:16],
        kdf(response_iv, [KDFSALT_CONST_AEAD_RESP_HEADER_IV])[:12],
        bytes([options[0], 0x00, 0x00, 0x00]),
    )
    await stream.write(sealed_header)

    if is_tcp:
        await _relay_tcp(stream, remote_addr, remote_port)
    else:
        await _relay_udp(stream)