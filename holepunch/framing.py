"""Length-prefixed framing of tunnel packets over a TCP stream.

Each frame is a 4-byte big-endian magic number, a 2-byte big-endian
payload length, then the payload.
"""

from __future__ import annotations

import struct
from typing import List

MAGIC = 0x123456
HEADER = struct.Struct(">IH")
MAX_PAYLOAD = 0xFFFF


def encode_frame(payload: bytes) -> bytes:
    """Wrap one packet in a frame header."""
    if len(payload) > MAX_PAYLOAD:
        raise ValueError(f"payload of {len(payload)} bytes does not fit in a frame")
    return HEADER.pack(MAGIC, len(payload)) + bytes(payload)


class FrameDecoder:
    """Splits a byte stream back into packets, keeping partial frames."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet forming a whole frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[bytes]:
        """Add received bytes and return every complete payload.

        A header with the wrong magic number means the stream lost sync;
        everything buffered is then dropped.
        """
        self._buffer.extend(data)
        packets: List[bytes] = []
        while len(self._buffer) >= HEADER.size:
            magic, size = HEADER.unpack_from(self._buffer)
            if magic != MAGIC:
                self._buffer.clear()
                break
            end = HEADER.size + size
            if end > len(self._buffer):
                break
            packets.append(bytes(self._buffer[HEADER.size:end]))
            del self._buffer[:end]
        return packets