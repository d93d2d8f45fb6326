"""Packet encryption used on the tunnel's UDP datagrams.

Block ciphers run in a local CFB mode with a fixed initial vector: each
datagram already carries a random nonce in its first bytes, so every
packet encrypts differently. Salsa20 takes its nonce from the first
8 bytes of the packet. The simple XOR cipher uses a key-derived table.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from functools import reduce
from typing import Callable, List, Sequence

from Crypto.Cipher import AES, CAST, DES3, Blowfish, Salsa20
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

INITIAL_VECTOR = bytes(
    [167, 115, 79, 156, 18, 172, 27, 1, 164, 21, 242, 193, 252, 120, 230, 107]
)
SALT_XOR = b"sH3CIVoF#rWLtJo6"
MTU_LIMIT = 1500

_MASK = 0xFFFFFFFF

BlockFunction = Callable[[bytes], bytes]


def _xor(a: bytes, b: bytes) -> bytes:
    """XOR two byte strings over the length of the shorter one."""
    return bytes(x ^ y for x, y in zip(a, b))


class BlockCrypt(ABC):
    """Encrypts and decrypts whole datagrams."""

    @abstractmethod
    def encrypt(self, data: bytes) -> bytes:
        """Return the encrypted form of ``data``, of the same length."""

    @abstractmethod
    def decrypt(self, data: bytes) -> bytes:
        """Return the decrypted form of ``data``, of the same length."""


class CFBBlockCrypt(BlockCrypt):
    """A block cipher in CFB mode with the fixed initial vector.

    ``encrypt_block`` enciphers exactly one block of ``block_size`` bytes.
    A trailing partial block is XORed with the last keystream block.
    """

    def __init__(self, encrypt_block: BlockFunction, block_size: int) -> None:
        if block_size <= 0 or block_size > len(INITIAL_VECTOR):
            raise ValueError(f"unsupported block size {block_size}")
        self._encrypt_block = encrypt_block
        self.block_size = block_size

    def _start(self) -> bytes:
        return self._encrypt_block(INITIAL_VECTOR[: self.block_size])

    def encrypt(self, data: bytes) -> bytes:
        data = bytes(data)
        size = self.block_size
        full = len(data) - len(data) % size
        table = self._start()
        out = bytearray()
        for start in range(0, full, size):
            block = _xor(data[start:start + size], table)
            out += block
            table = self._encrypt_block(block)
        out += _xor(data[full:], table)
        return bytes(out)

    def decrypt(self, data: bytes) -> bytes:
        data = bytes(data)
        size = self.block_size
        full = len(data) - len(data) % size
        table = self._start()
        out = bytearray()
        for start in range(0, full, size):
            chunk = data[start:start + size]
            out += _xor(chunk, table)
            table = self._encrypt_block(chunk)
        out += _xor(data[full:], table)
        return bytes(out)


class Salsa20BlockCrypt(BlockCrypt):
    """Salsa20 keyed by 32 bytes; the packet's first 8 bytes are the nonce."""

    def __init__(self, key: bytes) -> None:
        self._key = bytes(key)[:32].ljust(32, b"\0")

    def _apply(self, data: bytes) -> bytes:
        data = bytes(data)
        if len(data) < 8:
            raise ValueError("packet shorter than the 8-byte salsa20 nonce")
        nonce = data[:8]
        cipher = Salsa20.new(key=self._key, nonce=nonce)
        return nonce + cipher.encrypt(data[8:])

    def encrypt(self, data: bytes) -> bytes:
        return self._apply(data)

    def decrypt(self, data: bytes) -> bytes:
        return self._apply(data)


class SimpleXORBlockCrypt(BlockCrypt):
    """XOR with a table expanded from the key by PBKDF2-SHA1."""

    def __init__(self, key: bytes) -> None:
        self._table = hashlib.pbkdf2_hmac("sha1", bytes(key), SALT_XOR, 32, MTU_LIMIT)

    def _apply(self, data: bytes) -> bytes:
        data = bytes(data)
        head = _xor(data, self._table)
        return head + data[len(head):]

    def encrypt(self, data: bytes) -> bytes:
        return self._apply(data)

    def decrypt(self, data: bytes) -> bytes:
        return self._apply(data)


class NoneBlockCrypt(BlockCrypt):
    """Leaves packets as they are."""

    def encrypt(self, data: bytes) -> bytes:
        return bytes(data)

    def decrypt(self, data: bytes) -> bytes:
        return bytes(data)


# --- TEA and XTEA -----------------------------------------------------------

_TEA_DELTA = 0x9E3779B9


class _Tea:
    """TEA with a configurable (even) number of rounds, big-endian words."""

    def __init__(self, key: bytes, rounds: int = 64) -> None:
        if len(key) != 16:
            raise ValueError(f"tea key must be 16 bytes, got {len(key)}")
        if rounds <= 0 or rounds % 2:
            raise ValueError(f"tea rounds must be a positive even number, got {rounds}")
        self._k = [int.from_bytes(key[i:i + 4], "big") for i in range(0, 16, 4)]
        self._rounds = rounds

    def encrypt_block(self, block: bytes) -> bytes:
        v0 = int.from_bytes(block[0:4], "big")
        v1 = int.from_bytes(block[4:8], "big")
        k0, k1, k2, k3 = self._k
        total = 0
        for _ in range(self._rounds // 2):
            total = (total + _TEA_DELTA) & _MASK
            v0 = (v0 + ((((v1 << 4) + k0) ^ (v1 + total) ^ ((v1 >> 5) + k1)) & _MASK)) & _MASK
            v1 = (v1 + ((((v0 << 4) + k2) ^ (v0 + total) ^ ((v0 >> 5) + k3)) & _MASK)) & _MASK
        return v0.to_bytes(4, "big") + v1.to_bytes(4, "big")


class _XTea:
    """XTEA with 64 Feistel rounds, big-endian words."""

    _ROUNDS = 64

    def __init__(self, key: bytes) -> None:
        if len(key) != 16:
            raise ValueError(f"xtea key must be 16 bytes, got {len(key)}")
        k = [int.from_bytes(key[i:i + 4], "big") for i in range(0, 16, 4)]
        table: List[int] = []
        total = 0
        for _ in range(self._ROUNDS // 2):
            table.append((total + k[total & 3]) & _MASK)
            total = (total + _TEA_DELTA) & _MASK
            table.append((total + k[(total >> 11) & 3]) & _MASK)
        self._table = table

    def encrypt_block(self, block: bytes) -> bytes:
        v0 = int.from_bytes(block[0:4], "big")
        v1 = int.from_bytes(block[4:8], "big")
        pairs = zip(self._table[0::2], self._table[1::2])
        for first, second in pairs:
            v0 = (v0 + (((((v1 << 4) & _MASK) ^ (v1 >> 5)) + v1) & _MASK ^ first)) & _MASK
            v1 = (v1 + (((((v0 << 4) & _MASK) ^ (v0 >> 5)) + v0) & _MASK ^ second)) & _MASK
        return v0.to_bytes(4, "big") + v1.to_bytes(4, "big")


# --- Twofish ----------------------------------------------------------------

_Q0_T = (
    (8, 1, 7, 13, 6, 15, 3, 2, 0, 11, 5, 9, 14, 12, 10, 4),
    (14, 12, 11, 8, 1, 2, 3, 5, 15, 4, 10, 6, 7, 0, 9, 13),
    (11, 10, 5, 14, 6, 13, 9, 0, 12, 8, 15, 3, 2, 4, 7, 1),
    (13, 7, 15, 4, 1, 2, 6, 14, 9, 11, 3, 0, 8, 5, 12, 10),
)
_Q1_T = (
    (2, 8, 11, 13, 15, 7, 6, 14, 3, 1, 9, 4, 0, 10, 12, 5),
    (1, 14, 2, 11, 4, 12, 3, 7, 6, 13, 10, 5, 15, 9, 0, 8),
    (4, 12, 7, 5, 1, 6, 9, 10, 0, 14, 13, 8, 2, 11, 3, 15),
    (11, 9, 5, 1, 12, 3, 13, 14, 6, 4, 7, 15, 2, 0, 8, 10),
)
_MDS = (
    (0x01, 0xEF, 0x5B, 0x5B),
    (0x5B, 0xEF, 0xEF, 0x01),
    (0xEF, 0x5B, 0x01, 0xEF),
    (0xEF, 0x01, 0xEF, 0x5B),
)
_RS = (
    (0x01, 0xA4, 0x55, 0x87, 0x5A, 0x58, 0xDB, 0x9E),
    (0xA4, 0x56, 0x82, 0xF3, 0x1E, 0xC6, 0x68, 0xE5),
    (0x02, 0xA1, 0xFC, 0xC1, 0x47, 0xAE, 0x3D, 0x19),
    (0xA4, 0x55, 0x87, 0x5A, 0x58, 0xDB, 0x9E, 0x03),
)
_MDS_POLY = 0x169
_RS_POLY = 0x14D
_RHO = 0x01010101


def _gf_mul(a: int, b: int, poly: int) -> int:
    result = 0
    while b:
        if b & 1:
            result ^= a
        a <<= 1
        if a & 0x100:
            a ^= poly
        b >>= 1
    return result


def _ror4(x: int, n: int) -> int:
    return ((x >> n) | (x << (4 - n))) & 0xF


def _build_q(t: Sequence[Sequence[int]]) -> bytes:
    out = bytearray()
    for x in range(256):
        a0, b0 = x >> 4, x & 0xF
        a1 = a0 ^ b0
        b1 = a0 ^ _ror4(b0, 1) ^ ((8 * a0) & 0xF)
        a2, b2 = t[0][a1], t[1][b1]
        a3 = a2 ^ b2
        b3 = a2 ^ _ror4(b2, 1) ^ ((8 * a2) & 0xF)
        a4, b4 = t[2][a3], t[3][b3]
        out.append((b4 << 4) | a4)
    return bytes(out)


_Q0 = _build_q(_Q0_T)
_Q1 = _build_q(_Q1_T)
_STEP4 = (_Q1, _Q0, _Q0, _Q1)
_STEP3 = (_Q1, _Q1, _Q0, _Q0)
_FIRST = (_Q0, _Q1, _Q0, _Q1)
_SECOND = (_Q0, _Q0, _Q1, _Q1)
_THIRD = (_Q1, _Q0, _Q1, _Q0)


def _rol(x: int, n: int) -> int:
    return ((x << n) | (x >> (32 - n))) & _MASK


def _ror(x: int, n: int) -> int:
    return ((x >> n) | (x << (32 - n))) & _MASK


def _mds_column(j: int, value: int) -> int:
    return reduce(
        lambda acc, i: acc | (_gf_mul(_MDS[i][j], value, _MDS_POLY) << (8 * i)),
        range(4),
        0,
    )


def _chain(j: int, x: int, words: Sequence[bytes]) -> int:
    if len(words) == 4:
        x = _STEP4[j][x] ^ words[3][j]
    if len(words) >= 3:
        x = _STEP3[j][x] ^ words[2][j]
    x = _FIRST[j][x] ^ words[1][j]
    x = _SECOND[j][x] ^ words[0][j]
    return _THIRD[j][x]


def _h(x: int, words: Sequence[int]) -> int:
    raw = [w.to_bytes(4, "little") for w in words]
    data = x.to_bytes(4, "little")
    result = 0
    for j in range(4):
        result ^= _mds_column(j, _chain(j, data[j], raw))
    return result


class _Twofish:
    """The Twofish block cipher (encryption direction) for 128/192/256-bit keys."""

    def __init__(self, key: bytes) -> None:
        key = bytes(key)
        if len(key) not in (16, 24, 32):
            raise ValueError(f"twofish key must be 16, 24 or 32 bytes, got {len(key)}")
        k = len(key) // 8
        words = [int.from_bytes(key[4 * i:4 * i + 4], "little") for i in range(2 * k)]
        even, odd = words[0::2], words[1::2]

        s_words = []
        for i in range(k):
            chunk = key[8 * i:8 * i + 8]
            row_bytes = bytes(
                reduce(lambda acc, c: acc ^ _gf_mul(row[c], chunk[c], _RS_POLY), range(8), 0)
                for row in _RS
            )
            s_words.append(int.from_bytes(row_bytes, "little"))
        s_raw = [w.to_bytes(4, "little") for w in reversed(s_words)]

        self._sbox = [
            [_mds_column(j, _chain(j, x, s_raw)) for x in range(256)] for j in range(4)
        ]

        subkeys: List[int] = []
        for i in range(20):
            a = _h((2 * i * _RHO) & _MASK, even)
            b = _rol(_h(((2 * i + 1) * _RHO) & _MASK, odd), 8)
            subkeys.append((a + b) & _MASK)
            subkeys.append(_rol((a + 2 * b) & _MASK, 9))
        self._k = subkeys

    def _g(self, x: int) -> int:
        s = self._sbox
        return s[0][x & 0xFF] ^ s[1][(x >> 8) & 0xFF] ^ s[2][(x >> 16) & 0xFF] ^ s[3][x >> 24]

    def encrypt_block(self, block: bytes) -> bytes:
        k = self._k
        r = [int.from_bytes(block[4 * i:4 * i + 4], "little") ^ k[i] for i in range(4)]
        for rnd in range(16):
            t0 = self._g(r[0])
            t1 = self._g(_rol(r[1], 8))
            f0 = (t0 + t1 + k[2 * rnd + 8]) & _MASK
            f1 = (t0 + 2 * t1 + k[2 * rnd + 9]) & _MASK
            r2 = _ror(r[2] ^ f0, 1)
            r3 = _rol(r[3], 1) ^ f1
            r = [r2, r3, r[0], r[1]]
        out = (r[2] ^ k[4], r[3] ^ k[5], r[0] ^ k[6], r[1] ^ k[7])
        return b"".join(w.to_bytes(4, "little") for w in out)


# --- factories --------------------------------------------------------------


def _require_length(name: str, key: bytes, *lengths: int) -> bytes:
    key = bytes(key)
    if len(key) not in lengths:
        allowed = " or ".join(str(n) for n in lengths)
        raise ValueError(f"{name} key must be {allowed} bytes, got {len(key)}")
    return key


def new_aes_block_crypt(key: bytes) -> CFBBlockCrypt:
    """AES with a 16, 24 or 32 byte key."""
    key = _require_length("aes", key, 16, 24, 32)
    return CFBBlockCrypt(AES.new(key, AES.MODE_ECB).encrypt, 16)


def new_sm4_block_crypt(key: bytes) -> CFBBlockCrypt:
    """SM4 with a 16 byte key."""
    key = _require_length("sm4", key, 16)
    encryptor = Cipher(algorithms.SM4(key), modes.ECB()).encryptor()
    return CFBBlockCrypt(encryptor.update, 16)


def new_twofish_block_crypt(key: bytes) -> CFBBlockCrypt:
    """Twofish with a 16, 24 or 32 byte key."""
    return CFBBlockCrypt(_Twofish(key).encrypt_block, 16)


def new_triple_des_block_crypt(key: bytes) -> CFBBlockCrypt:
    """Triple DES with a 24 byte key."""
    key = _require_length("3des", key, 24)
    return CFBBlockCrypt(DES3.new(key, DES3.MODE_ECB).encrypt, 8)


def new_cast5_block_crypt(key: bytes) -> CFBBlockCrypt:
    """CAST5 with a 16 byte key."""
    key = _require_length("cast5", key, 16)
    return CFBBlockCrypt(CAST.new(key, CAST.MODE_ECB).encrypt, 8)


def new_blowfish_block_crypt(key: bytes) -> CFBBlockCrypt:
    """Blowfish with a key of up to 56 bytes."""
    key = bytes(key)
    if not 4 <= len(key) <= 56:
        raise ValueError(f"blowfish key must be 4 to 56 bytes, got {len(key)}")
    return CFBBlockCrypt(Blowfish.new(key, Blowfish.MODE_ECB).encrypt, 8)


def new_tea_block_crypt(key: bytes) -> CFBBlockCrypt:
    """TEA with 16 rounds and a 16 byte key."""
    return CFBBlockCrypt(_Tea(bytes(key), rounds=16).encrypt_block, 8)


def new_xtea_block_crypt(key: bytes) -> CFBBlockCrypt:
    """XTEA with a 16 byte key."""
    return CFBBlockCrypt(_XTea(bytes(key)).encrypt_block, 8)


def new_salsa20_block_crypt(key: bytes) -> Salsa20BlockCrypt:
    """Salsa20; the key is zero-padded or cut to 32 bytes."""
    return Salsa20BlockCrypt(key)


def new_simple_xor_block_crypt(key: bytes) -> SimpleXORBlockCrypt:
    """XOR with a table expanded from the key."""
    return SimpleXORBlockCrypt(key)


def new_none_block_crypt(key: bytes) -> NoneBlockCrypt:
    """No encryption; the key is ignored."""
    return NoneBlockCrypt()