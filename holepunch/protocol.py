"""Message types exchanged between rendezvous server and peers.

The JSON layout (field names, base64 byte strings, RFC 3339 timestamps)
matches what the peers put on the wire, so messages interoperate.
"""

from __future__ import annotations

import base64
import json
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Optional, Tuple, Union

PACKAGE_SIZE = 65535
"""Largest datagram a peer reads in one go."""

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
"""Timestamp used when none has been recorded yet."""

Raw = Union[str, bytes, bytearray]


class ClientType(str, Enum):
    """Which side of the tunnel a peer is on."""

    CLIENT_SERVER = "client_server_type"
    CLIENT_CLIENT = "client_client_type"


class UdpType(IntEnum):
    """Codes carried in :class:`UDPMsg.code`."""

    KEEP_ALIVE = 0
    BI_DIRECTION_HOLE = 1
    TRANCE = 2
    DISCOVERY = 3
    RDP = 4
    SEQ_RESPONSE = 5
    REPORT = 6
    GET_CLIENT_IP = 7
    DISCOVERY_FORCE_P2P = 8


class MessageType(str, Enum):
    """Kinds of discovery answers sent by the rendezvous server."""

    FOR_CLIENT_SERVER_WITH_CLIENT_IPS = "MESSAGE_TYPE_FOR_CLIENT_SERVER_WITH_CLIENT_IPS"
    FOR_CLIENT_CLIENT_WITH_SERVER_IPS = "MESSAGE_TYPE_FOR_CLIENT_CLIENT_WITH_SERVER_IPS"
    KEEP_ALIVE = "MESSAGE_TYPE_KEEP_ALIVE"


def make_seq() -> str:
    """Return a random packet tag in the range 0..999999."""
    return str(random.randrange(1_000_000))


_TIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    minutes = int(offset.total_seconds()) // 60
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"{text}{sign}{hours:02d}:{mins:02d}"


def _parse_time(text: str) -> datetime:
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp: {text!r}")
    year, month, day, hour, minute, second, frac, zone = match.groups()
    micro = int(frac[:6].ljust(6, "0")) if frac else 0
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
    )


def _load(raw: Raw) -> dict:
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8")
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError("expected a JSON object")
    return value


def _dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@dataclass
class Res:
    """Result of a request: code 0 means success."""

    code: int = 0
    message: str = ""

    def _to_dict(self) -> dict:
        return {"Code": int(self.code), "Message": self.message}

    @classmethod
    def _from_dict(cls, data: Optional[dict]) -> "Res":
        data = data or {}
        return cls(code=int(data.get("Code") or 0), message=data.get("Message") or "")


@dataclass
class Ip:
    """A peer's public address and when it was last seen."""

    addr: str = ""
    time: datetime = ZERO_TIME

    def _to_dict(self) -> dict:
        return {"Addr": self.addr, "Time": _format_time(self.time)}

    @classmethod
    def _from_dict(cls, data: Optional[dict]) -> "Ip":
        data = data or {}
        stamp = data.get("Time")
        return cls(addr=data.get("Addr") or "", time=_parse_time(stamp) if stamp else ZERO_TIME)

    def to_json(self) -> str:
        return _dump(self._to_dict())

    @classmethod
    def from_json(cls, raw: Raw) -> "Ip":
        return cls._from_dict(_load(raw))


@dataclass
class Peer:
    """The two ends registered under one application name."""

    server: Ip = field(default_factory=Ip)
    client: Ip = field(default_factory=Ip)


@dataclass
class Msg:
    """Control message carried inside a :class:`UDPMsg`."""

    type: str = ""
    app_name: str = ""
    res: Res = field(default_factory=Res)
    seq: str = ""

    def to_json(self) -> str:
        return _dump(
            {
                "Type": _plain(self.type),
                "AppName": self.app_name,
                "Res": self.res._to_dict(),
                "Seq": self.seq,
            }
        )

    @classmethod
    def from_json(cls, raw: Raw) -> "Msg":
        data = _load(raw)
        return cls(
            type=data.get("Type") or "",
            app_name=data.get("AppName") or "",
            res=Res._from_dict(data.get("Res")),
            seq=data.get("Seq") or "",
        )


@dataclass
class UDPMsg:
    """Envelope of every datagram exchanged with the rendezvous server."""

    code: int = UdpType.KEEP_ALIVE
    data: bytes = b""
    seq: str = ""
    count: int = 0
    offset: int = 0
    lenth: int = 0
    addr: Optional[Tuple[str, int]] = None

    def to_json(self) -> str:
        addr = None
        if self.addr is not None:
            addr = {"IP": self.addr[0], "Port": int(self.addr[1]), "Zone": ""}
        return _dump(
            {
                "Code": int(self.code),
                "Data": base64.b64encode(self.data).decode("ascii") if self.data else None,
                "Seq": self.seq,
                "Count": self.count,
                "Offset": self.offset,
                "Lenth": self.lenth,
                "Addr": addr,
            }
        )

    @classmethod
    def from_json(cls, raw: Raw) -> "UDPMsg":
        data = _load(raw)
        payload = data.get("Data")
        addr_data = data.get("Addr")
        addr = None
        if isinstance(addr_data, dict):
            addr = (addr_data.get("IP") or "", int(addr_data.get("Port") or 0))
        return cls(
            code=int(data.get("Code") or 0),
            data=base64.b64decode(payload, validate=True) if payload else b"",
            seq=data.get("Seq") or "",
            count=int(data.get("Count") or 0),
            offset=int(data.get("Offset") or 0),
            lenth=int(data.get("Lenth") or 0),
            addr=addr,
        )