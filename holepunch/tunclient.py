"""Pairing handshake of the tunnel client.

Two clients log in to a pairing server with a shared key. The server
answers with the address of the other client and tells each whether it
plays the server or the client role in the tunnel. Messages are JSON
objects, one per line.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from .crypt import (
    BlockCrypt,
    new_aes_block_crypt,
    new_blowfish_block_crypt,
    new_cast5_block_crypt,
    new_none_block_crypt,
    new_salsa20_block_crypt,
    new_simple_xor_block_crypt,
    new_sm4_block_crypt,
    new_tea_block_crypt,
    new_triple_des_block_crypt,
    new_twofish_block_crypt,
    new_xtea_block_crypt,
)

SALT = b"kcp-go"
PING_INTERVAL = 10
KEY_ITERATIONS = 4096
KEY_LENGTH = 32

_Factory = Callable[[bytes], BlockCrypt]

_CIPHERS: Dict[str, Tuple[_Factory, Optional[int]]] = {
    "sm4": (new_sm4_block_crypt, 16),
    "tea": (new_tea_block_crypt, 16),
    "xor": (new_simple_xor_block_crypt, None),
    "none": (new_none_block_crypt, None),
    "aes-128": (new_aes_block_crypt, 16),
    "aes-192": (new_aes_block_crypt, 24),
    "blowfish": (new_blowfish_block_crypt, None),
    "twofish": (new_twofish_block_crypt, None),
    "cast5": (new_cast5_block_crypt, 16),
    "3des": (new_triple_des_block_crypt, 24),
    "xtea": (new_xtea_block_crypt, 16),
    "salsa20": (new_salsa20_block_crypt, None),
}


@dataclass
class DigHoleMessage:
    """One line of the pairing conversation."""

    cmd: str = ""
    data: str = ""


def encode_dig_hole_message(cmd: str, data: str) -> bytes:
    """Serialise a message as one newline-terminated JSON line."""
    text = json.dumps({"Cmd": cmd, "Data": data}, separators=(",", ":"), ensure_ascii=False)
    text = text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")
    return text.encode("utf-8") + b"\n"


def _field(obj: Dict[str, Any], name: str) -> str:
    for key, value in obj.items():
        if key.lower() == name:
            if not isinstance(value, str):
                raise ValueError(f"field {key!r} must be a string")
            return value
    return ""


def decode_dig_hole_message(line: Union[str, bytes]) -> DigHoleMessage:
    """Parse one JSON line; field names match case-insensitively."""
    if isinstance(line, (bytes, bytearray)):
        line = bytes(line).decode("utf-8")
    obj = json.loads(line)
    if not isinstance(obj, dict):
        raise ValueError("expected a JSON object")
    return DigHoleMessage(cmd=_field(obj, "cmd"), data=_field(obj, "data"))


def derive_key(passwd: str) -> bytes:
    """Expand the pre-shared secret into a 32-byte key with PBKDF2-SHA1."""
    return hashlib.pbkdf2_hmac("sha1", passwd.encode("utf-8"), SALT, KEY_ITERATIONS, KEY_LENGTH)


def select_block_crypt(config: Any, key: bytes) -> BlockCrypt:
    """Build the cipher named by ``config.crypt``; unknown names select AES.

    When AES is chosen as the fallback, ``config.crypt`` is set to ``"aes"``.
    """
    entry = _CIPHERS.get(config.crypt)
    if entry is None:
        config.crypt = "aes"
        return new_aes_block_crypt(key)
    factory, size = entry
    return factory(key if size is None else key[:size])


@dataclass
class PairingState:
    """What the client has learnt so far from the pairing server."""

    is_server: bool = False
    peer_addr: str = ""
    data_ready: bool = False
    done: bool = False

    def handle(self, message: DigHoleMessage) -> Optional[bytes]:
        """Apply one server message; return the line to send back, if any.

        ``ping`` marks the link alive, ``pair_s``/``pair_c`` give the peer
        address and role and are answered with ``fin``, and ``fin`` ends
        the handshake.
        """
        if message.cmd == "ping":
            self.data_ready = True
        elif message.cmd in ("pair_s", "pair_c"):
            self.is_server = message.cmd == "pair_s"
            self.peer_addr = message.data
            return encode_dig_hole_message("fin", "good bye")
        elif message.cmd == "fin":
            self.done = True
        return None