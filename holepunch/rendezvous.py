"""Rendezvous server that introduces the two ends of a tunnel.

Peers register their public UDP addresses under an application name.
When one end asks for the other, the server answers with its address
and tells the other end about the asker, so both can punch a hole.
Two tables are kept: one for the ports used by the tunnel itself and one
for the ports used to talk to this server.
"""

from __future__ import annotations

import argparse
import logging
import logging.handlers
import os
import signal
import socket
import subprocess
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from .protocol import (
    PACKAGE_SIZE,
    ClientType,
    Ip,
    MessageType,
    Msg,
    Peer,
    Res,
    UDPMsg,
    UdpType,
)
from .rdpconfig import ServerConfig, load_server_config

log = logging.getLogger(__name__)

Address = Tuple[str, int]
Reply = Tuple[bytes, Address]

EXPIRY = timedelta(minutes=5)
CLEAN_INTERVAL = 60.0
SERVER_SIDE_OFFLINE = "服务侧不在线"
CLIENT_SIDE_OFFLINE = "客户侧不在线"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def check_expire(ip: Ip, now: datetime) -> bool:
    """True while ``ip`` was seen within the last five minutes."""
    return ip.time >= now - EXPIRY


def parse_addr(addr: str) -> Address:
    """Split ``host:port`` (IPv6 hosts may be bracketed) into a tuple."""
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address without port: {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"invalid port in address: {addr!r}") from None


def _format_addr(addr: Address) -> str:
    host, port = addr[0], addr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class PeerTable:
    """Thread-safe map from application name to its registered peers."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._peers: Dict[str, Peer] = {}

    def get(self, app_name: str) -> Optional[Peer]:
        with self._lock:
            return self._peers.get(app_name)

    def set(self, app_name: str, peer: Peer) -> None:
        with self._lock:
            self._peers[app_name] = peer

    def count(self) -> int:
        with self._lock:
            return len(self._peers)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._peers)

    def touch(self, addr: str, app_name: str, client_type: str) -> bool:
        """Record that ``addr`` is alive; True if it was already the known address."""
        now = _now()
        with self._lock:
            peer = self._peers.get(app_name)
            if peer is None:
                if client_type == ClientType.CLIENT_CLIENT:
                    self._peers[app_name] = Peer(client=Ip(addr, now))
                elif client_type == ClientType.CLIENT_SERVER:
                    self._peers[app_name] = Peer(server=Ip(addr, now))
                return False
            if client_type == ClientType.CLIENT_CLIENT:
                side = peer.client
            elif client_type == ClientType.CLIENT_SERVER:
                side = peer.server
            else:
                return False
            side.time = now
            if side.addr == addr:
                return True
            side.addr = addr
            return False

    def clear_expired(self, now: datetime) -> None:
        """Forget addresses not refreshed within the expiry period."""
        with self._lock:
            for peer in self._peers.values():
                if not check_expire(peer.server, now):
                    peer.server.addr = ""
                if not check_expire(peer.client, now):
                    peer.client.addr = ""


def _discovery(app_name: str, kind: MessageType, res: Res, force: bool = False) -> bytes:
    msg = Msg(type=kind.value, app_name=app_name, res=res)
    code = UdpType.DISCOVERY_FORCE_P2P if force else UdpType.DISCOVERY
    return UDPMsg(code=code, data=msg.to_json().encode("utf-8")).to_json().encode("utf-8")


class RendezvousServer:
    """Answers discovery requests; usable without a socket via :meth:`handle_datagram`."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.peers = PeerTable()
        self.peers_for_svc = PeerTable()
        self._sock: Optional[socket.socket] = None
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def handle_datagram(self, data: bytes, addr: Address) -> List[Reply]:
        """Process one datagram from ``addr`` and return the datagrams to send."""
        try:
            udp = UDPMsg.from_json(data)
        except ValueError as exc:
            log.error("bad udp packet from %s: %s", _format_addr(addr), exc)
            return []
        msg = self._inner(udp)
        if udp.code == UdpType.REPORT:
            log.info("report group %s type %s addr %s", msg.app_name, msg.type, _format_addr(addr))
            self.peers.touch(_format_addr(addr), msg.app_name, msg.type)
            return []
        if udp.code == UdpType.GET_CLIENT_IP:
            if msg.type == ClientType.CLIENT_SERVER:
                log.info("group %s server side request from %s", msg.app_name, _format_addr(addr))
                return self._server_side(addr, msg)
            if msg.type == ClientType.CLIENT_CLIENT:
                log.info("group %s client side request from %s", msg.app_name, _format_addr(addr))
                return self._client_side(addr, msg)
            log.error("unknown request type %r", msg.type)
        return []

    @staticmethod
    def _inner(udp: UDPMsg) -> Msg:
        try:
            return Msg.from_json(udp.data) if udp.data else Msg()
        except ValueError:
            return Msg()

    def _counterpart(self, app_name: str, server: bool) -> Optional[Address]:
        peer = self.peers_for_svc.get(app_name)
        if peer is None:
            return None
        text = peer.server.addr if server else peer.client.addr
        if not text:
            return None
        try:
            return parse_addr(text)
        except ValueError:
            return None

    def _client_side(self, addr: Address, req: Msg) -> List[Reply]:
        known = self.peers_for_svc.touch(_format_addr(addr), req.app_name, req.type)
        peer = self.peers.get(req.app_name)
        kind = MessageType.FOR_CLIENT_CLIENT_WITH_SERVER_IPS
        if peer is None or not peer.server.addr:
            return [(_discovery(req.app_name, kind, Res(404, SERVER_SIDE_OFFLINE)), addr)]
        replies = [(_discovery(req.app_name, kind, Res(0, peer.server.to_json())), addr)]
        target = self._counterpart(req.app_name, server=True)
        if target is not None:
            note = _discovery(
                req.app_name,
                MessageType.FOR_CLIENT_SERVER_WITH_CLIENT_IPS,
                Res(0, peer.client.to_json()),
                force=not known,
            )
            replies.append((note, target))
        return replies

    def _server_side(self, addr: Address, req: Msg) -> List[Reply]:
        known = self.peers_for_svc.touch(_format_addr(addr), req.app_name, req.type)
        peer = self.peers.get(req.app_name)
        kind = MessageType.FOR_CLIENT_SERVER_WITH_CLIENT_IPS
        if peer is None or not peer.client.addr:
            return [(_discovery(req.app_name, kind, Res(404, CLIENT_SIDE_OFFLINE)), addr)]
        replies = [(_discovery(req.app_name, kind, Res(0, peer.client.to_json())), addr)]
        target = self._counterpart(req.app_name, server=False)
        if target is not None:
            note = _discovery(
                req.app_name,
                MessageType.FOR_CLIENT_CLIENT_WITH_SERVER_IPS,
                Res(0, peer.server.to_json()),
                force=not known,
            )
            replies.append((note, target))
        return replies

    def clear_expired(self) -> None:
        """Drop stale addresses from both tables."""
        now = _now()
        self.peers.clear_expired(now)
        self.peers_for_svc.clear_expired(now)

    def start(self) -> None:
        """Bind the UDP socket and start the receive and cleanup threads."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self.config.host, self.config.port))
        except OSError:
            sock.close()
            log.error("cannot listen on %s:%d", self.config.host, self.config.port)
            raise
        self._sock = sock
        self._stop.clear()
        log.info("listening on %s:%d", self.config.host, self.config.port)
        self._threads = [
            threading.Thread(target=self._receive_loop, daemon=True),
            threading.Thread(target=self._cleanup_loop, daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    @property
    def address(self) -> Optional[Address]:
        """The bound socket address, once started."""
        return self._sock.getsockname() if self._sock else None

    def _receive_loop(self) -> None:
        sock = self._sock
        while not self._stop.is_set() and sock is not None:
            try:
                data, addr = sock.recvfrom(PACKAGE_SIZE)
            except OSError as exc:
                if self._stop.is_set():
                    return
                log.error("read from socket failed: %s", exc)
                continue
            for payload, target in self.handle_datagram(data, addr):
                try:
                    sock.sendto(payload, target)
                except OSError as exc:
                    log.error("send to %s failed: %s", _format_addr(target), exc)

    def _cleanup_loop(self) -> None:
        while not self._stop.wait(CLEAN_INTERVAL):
            self.clear_expired()

    def close(self) -> None:
        """Stop the threads and close the socket."""
        self._stop.set()
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        for thread in self._threads:
            thread.join(timeout=2)
        self._threads = []


def _setup_logging() -> None:
    os.makedirs("logs", exist_ok=True)
    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s]: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )
    file_handler = logging.handlers.TimedRotatingFileHandler(
        os.path.join("logs", "server.log"), when="midnight", encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.addHandler(file_handler)
    root.addHandler(stream)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the rendezvous server until interrupted."""
    parser = argparse.ArgumentParser(prog="rendezvous", description="p2p rdp rendezvous server")
    parser.add_argument("-d", action="store_true", help="running as a daemon")
    parser.add_argument("-c", default="config.yml", help="config file path")
    args = parser.parse_args(argv)

    if args.d:
        subprocess.Popen(
            [sys.executable, "-m", "holepunch.rendezvous", "-c", args.c],
            start_new_session=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        return 0

    _setup_logging()
    config = load_server_config(args.c)
    config.save(args.c)
    server = RendezvousServer(config)
    server.start()
    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    log.info("ready")
    try:
        while not stop.wait(1.0):
            pass
    finally:
        server.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())