"""Nonce generators for packet headers."""

from __future__ import annotations

import hashlib
import os
from typing import Optional

from Crypto.Cipher import AES

NONCE_SIZE = 16


def _check_seed(seed: Optional[bytes]) -> bytes:
    if seed is None:
        return bytes(NONCE_SIZE)
    seed = bytes(seed)
    if len(seed) != NONCE_SIZE:
        raise ValueError(f"seed must be {NONCE_SIZE} bytes, got {len(seed)}")
    return seed


class NonceMD5:
    """Nonces from an MD5 chain, reseeded from the OS when the state starts with 0."""

    def __init__(self, seed: Optional[bytes] = None) -> None:
        self._seed = _check_seed(seed)

    def fill(self) -> bytes:
        """Return the next 16-byte nonce."""
        if self._seed[0] == 0:
            self._seed = os.urandom(NONCE_SIZE)
        self._seed = hashlib.md5(self._seed).digest()
        return self._seed


class NonceAES128:
    """Nonces from repeated AES-128 encryption of a random seed."""

    def __init__(self, key: Optional[bytes] = None, seed: Optional[bytes] = None) -> None:
        if key is None:
            key = os.urandom(16)
        key = bytes(key)
        if len(key) != 16:
            raise ValueError(f"key must be 16 bytes, got {len(key)}")
        self._seed = os.urandom(NONCE_SIZE) if seed is None else _check_seed(seed)
        self._block = AES.new(key, AES.MODE_ECB)

    def fill(self) -> bytes:
        """Return the next 16-byte nonce."""
        if self._seed[0] == 0:
            self._seed = os.urandom(NONCE_SIZE)
        self._seed = self._block.encrypt(self._seed)
        return self._seed