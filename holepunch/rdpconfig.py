"""YAML configuration files of the remote-desktop peer and rendezvous server.

A missing or unreadable file yields the built-in defaults. A file that
parses takes its values as they are: fields it does not mention stay
empty or zero. Keys are the lower-cased field names.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar, Union

import yaml

from .protocol import ClientType

PathLike = Union[str, Path]
_C = TypeVar("_C")


@dataclass
class ClientConfig:
    """Settings of a peer taking part in a remote-desktop tunnel."""

    server_host: str = "1.1.1.1"
    server_port: int = 30124
    type: str = ClientType.CLIENT_CLIENT.value
    client_port_for_svc: int = 30124
    client_port_for_p2p_trance: int = 30123
    rdp_p2p_port: int = 30122
    app_name: str = "rdp-p2p"
    remote_rdp_addr: str = "127.0.0.1:3389"

    def save(self, path: PathLike) -> None:
        """Write the configuration to ``path`` as YAML."""
        _save(self, _CLIENT_KEYS, path)


@dataclass
class ServerConfig:
    """Address the rendezvous server listens on."""

    host: str = "0.0.0.0"
    port: int = 30124

    def save(self, path: PathLike) -> None:
        """Write the configuration to ``path`` as YAML."""
        _save(self, _SERVER_KEYS, path)


_CLIENT_KEYS: Dict[str, str] = {
    "serverhost": "server_host",
    "serverport": "server_port",
    "type": "type",
    "clientportfrosvc": "client_port_for_svc",
    "clientportforp2ptrance": "client_port_for_p2p_trance",
    "rdpp2pport": "rdp_p2p_port",
    "appname": "app_name",
    "remoterdpaddr": "remote_rdp_addr",
}

_SERVER_KEYS: Dict[str, str] = {"host": "host", "port": "port"}


def _zero(cls: Type[_C]) -> _C:
    values = {
        f.name: (0 if f.type in (int, "int") else "") for f in dataclasses.fields(cls)
    }
    return cls(**values)


def _convert(expected: type, value: Any) -> Any:
    if expected is int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        raise ValueError(f"expected an integer, got {value!r}")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ValueError(f"expected a scalar, got {value!r}")


def _decode(cls: Type[_C], keys: Dict[str, str], text: str) -> Optional[_C]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError:
        return None
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return None
    config = _zero(cls)
    defaults = cls()
    changes = {}
    for key, value in data.items():
        attr = keys.get(key) if isinstance(key, str) else None
        if attr is None or value is None:
            continue
        try:
            changes[attr] = _convert(type(getattr(defaults, attr)), value)
        except ValueError:
            return None
    return dataclasses.replace(config, **changes)


def _load(cls: Type[_C], keys: Dict[str, str], path: PathLike) -> _C:
    target = Path(path)
    if not target.exists():
        return cls()
    try:
        text = target.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return cls()
    config = _decode(cls, keys, text)
    return cls() if config is None else config


def _save(config: Any, keys: Dict[str, str], path: PathLike) -> None:
    data = {key: getattr(config, attr) for key, attr in keys.items()}
    Path(path).write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")


def load_client_config(path: PathLike) -> ClientConfig:
    """Read a peer configuration, falling back to defaults."""
    return _load(ClientConfig, _CLIENT_KEYS, path)


def load_server_config(path: PathLike) -> ServerConfig:
    """Read a server configuration, falling back to defaults."""
    return _load(ServerConfig, _SERVER_KEYS, path)