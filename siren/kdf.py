"""Key derivation used by the VMess AEAD header: nested HMAC-SHA256."""

from __future__ import annotations

import hashlib
from typing import Iterable, Protocol

_BLOCK_SIZE = 64
_ROOT_KEY = b"VMess AEAD KDF"


class _Hasher(Protocol):
    def copy(self) -> "_Hasher": ...

    def update(self, data: bytes) -> None: ...

    def digest(self) -> bytes: ...


class _Sha256:
    def __init__(self, state=None) -> None:
        self._state = state if state is not None else hashlib.sha256()

    def copy(self) -> "_Sha256":
        return _Sha256(self._state.copy())

    def update(self, data: bytes) -> None:
        self._state.update(data)

    def digest(self) -> bytes:
        return self._state.digest()


class _NestedHmac:
    """HMAC construction over an arbitrary inner hasher."""

    def __init__(self, key: bytes, base: _Hasher, *, _parts=None) -> None:
        if _parts is not None:
            self._inner, self._outer, self._opad = _parts
            return
        if len(key) > _BLOCK_SIZE:
            raise ValueError(f"key longer than {_BLOCK_SIZE} bytes")
        padded = key.ljust(_BLOCK_SIZE, b"\x00")
        ipad = bytes(b ^ 0x36 for b in padded)
        self._opad = bytes(b ^ 0x5C for b in padded)
        self._inner = base.copy()
        self._inner.update(ipad)
        self._outer = base

    def copy(self) -> "_NestedHmac":
        return _NestedHmac(
            b"", self._outer, _parts=(self._inner.copy(), self._outer.copy(), self._opad)
        )

    def update(self, data: bytes) -> None:
        self._inner.update(data)

    def digest(self) -> bytes:
        inner_result = self._inner.copy().digest()
        outer = self._outer.copy()
        outer.update(self._opad)
        outer.update(inner_result)
        return outer.digest()


def kdf(key: bytes, path: Iterable[bytes]) -> bytes:
    """Derive a 32-byte key from ``key`` along the salt ``path``."""
    current: _Hasher = _NestedHmac(_ROOT_KEY, _Sha256())
    for salt in path:
        current = _NestedHmac(bytes(salt), current)
    current.update(bytes(key))
    return current.digest()


def md5(*args: bytes) -> bytes:
    """MD5 digest of the concatenation of ``args``."""
    h = hashlib.md5()
    for part in args:
        h.update(part)
    return h.digest()


def sha256(*args: bytes) -> bytes:
    """SHA-256 digest of the concatenation of ``args``."""
    h = hashlib.sha256()
    for part in args:
        h.update(part)
    return h.digest()