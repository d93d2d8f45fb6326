"""Settings of the peer-to-peer TCP tunnel client."""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Tuple, Union

DEFAULT_KEY = "placeholder"
DEFAULT_PASSWD = "password"

# nodelay, interval, resend, nc for each named profile
_MODES: Dict[str, Tuple[int, int, int, int]] = {
    "normal": (0, 40, 2, 1),
    "fast": (0, 30, 2, 1),
    "fast2": (1, 20, 2, 1),
    "fast3": (1, 10, 2, 1),
}


@dataclass
class TunConfig:
    """Client configuration; defaults are those of the command line."""

    listen_tcp: str = ":2022"
    target_tcp: str = "127.0.0.1:80"
    bind_udp: str = ""
    remote_udp: str = "127.0.0.1:4000"
    key: str = DEFAULT_KEY
    passwd: str = DEFAULT_PASSWD
    crypt: str = "none"
    mode: str = "fast"
    auto_expire: int = 0
    mtu: int = 1350
    snd_wnd: int = 1024
    rcv_wnd: int = 1024
    data_shard: int = 0
    parity_shard: int = 0
    dscp: int = 0
    no_comp: bool = False
    ack_nodelay: bool = False
    no_delay: int = 0
    interval: int = 50
    resend: int = 0
    no_congestion: int = 0
    sock_buf: int = 4194304
    keep_alive: int = 10
    log: str = ""
    snmp_log: str = ""
    snmp_period: int = 0
    quiet: bool = False

    def apply_mode(self) -> "TunConfig":
        """Return a copy with the KCP tuning of the named mode applied.

        Unknown modes (such as ``manual``) leave the tuning unchanged.
        """
        profile = _MODES.get(self.mode)
        if profile is None:
            return dataclasses.replace(self)
        no_delay, interval, resend, nc = profile
        return dataclasses.replace(
            self, no_delay=no_delay, interval=interval, resend=resend, no_congestion=nc
        )


def _json_key(attr: str) -> str:
    # JSON keys are the field names without underscores; congestion is spelled "nc".
    if attr == "no_congestion":
        return "nc"
    return attr.replace("_", "")


_JSON_KEYS: Dict[str, str] = {
    _json_key(field.name): field.name for field in dataclasses.fields(TunConfig)
}


def _check_type(key: str, attr: str, value: object) -> None:
    expected = type(getattr(TunConfig(), attr))
    if expected is bool:
        ok = isinstance(value, bool)
    elif expected is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        ok = isinstance(value, str)
    if not ok:
        raise ValueError(f"config field {key!r} must be {expected.__name__}, got {value!r}")


def load_json_config(config: TunConfig, path: Union[str, Path]) -> TunConfig:
    """Return ``config`` overridden by the fields present in a JSON file.

    Keys match case-insensitively; unknown keys and nulls are ignored.
    """
    with open(path, encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError("config file must hold a JSON object")
    changes = {}
    for key, value in data.items():
        attr = _JSON_KEYS.get(key.lower())
        if attr is None or value is None:
            continue
        _check_type(key, attr, value)
        changes[attr] = value
    return dataclasses.replace(config, **changes)