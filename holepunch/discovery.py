"""Peer side of the remote-desktop rendezvous protocol.

A peer reports its public UDP addresses to the rendezvous server, asks it
for the address of the other end and, whenever that address changes,
sends hole-punching datagrams to it so both NATs open a path.
"""

from __future__ import annotations

import argparse
import json
import logging
import queue
import signal
import socket
import subprocess
import sys
import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from .protocol import (
    PACKAGE_SIZE,
    ClientType,
    Ip,
    MessageType,
    Msg,
    UDPMsg,
    UdpType,
    make_seq,
)
from .rdpconfig import ClientConfig, load_client_config
from .rendezvous import parse_addr

log = logging.getLogger(__name__)

Address = Tuple[str, int]
Reply = Tuple[bytes, Address]

HOLE_PUNCH_TEXT = "我是打洞消息"
SEQ_CACHE_SIZE = 200
SEQ_TTL = 10.0
STATUS_TIMEOUT = timedelta(seconds=30)
POLL_INTERVAL = 5.0
REPORT_INTERVAL = 30.0
_SIDES = (ClientType.CLIENT_SERVER.value, ClientType.CLIENT_CLIENT.value)
_DISCOVERY_KINDS = (
    MessageType.FOR_CLIENT_SERVER_WITH_CLIENT_IPS.value,
    MessageType.FOR_CLIENT_CLIENT_WITH_SERVER_IPS.value,
)


class SeqCache:
    """Least-recently-used set of packet tags that expire after a while."""

    def __init__(
        self,
        size: int = SEQ_CACHE_SIZE,
        ttl: float = SEQ_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if size <= 0:
            raise ValueError(f"cache size must be positive, got {size}")
        self._size = size
        self._ttl = ttl
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, seq: str) -> None:
        """Remember ``seq`` for the cache's time to live."""
        with self._lock:
            self._entries[seq] = self._clock() + self._ttl
            self._entries.move_to_end(seq)
            while len(self._entries) > self._size:
                self._entries.popitem(last=False)

    def contains(self, seq: str) -> bool:
        """True if ``seq`` was added and has not yet expired or been evicted."""
        with self._lock:
            expiry = self._entries.get(seq)
            if expiry is None:
                return False
            if self._clock() >= expiry:
                del self._entries[seq]
                return False
            self._entries.move_to_end(seq)
            return True


class DiscoveryClient:
    """Talks to the rendezvous server and punches holes towards the other end.

    :meth:`handle_datagram` holds the protocol logic and does no I/O, so it
    can be driven directly; :meth:`start` adds the sockets and timers.
    New addresses of the other end are put on :attr:`ip_changes` when this
    peer is on the client side.
    """

    def __init__(self, config: ClientConfig) -> None:
        self.config = config
        self.client_server_ip = Ip()
        self.cache = SeqCache()
        self.ip_changes: "queue.Queue[str]" = queue.Queue()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._local_sock: Optional[socket.socket] = None
        self._p2p_sock: Optional[socket.socket] = None

    # --- messages -----------------------------------------------------------

    def _request(self, code: UdpType) -> bytes:
        side = self.config.type if self.config.type in _SIDES else ""
        msg = Msg(type=side, app_name=self.config.app_name, seq=make_seq())
        envelope = UDPMsg(code=code, data=msg.to_json().encode("utf-8"))
        return envelope.to_json().encode("utf-8")

    def build_report(self) -> bytes:
        """Datagram registering this peer's tunnel port with the server."""
        return self._request(UdpType.REPORT)

    def build_ip_request(self) -> bytes:
        """Datagram asking the server for the other end's address."""
        return self._request(UdpType.GET_CLIENT_IP)

    def hole_punch_message(self) -> bytes:
        """Datagram sent to the other end to open the NAT path."""
        msg = UDPMsg(
            code=UdpType.BI_DIRECTION_HOLE,
            data=HOLE_PUNCH_TEXT.encode("utf-8"),
            seq=make_seq(),
        )
        return msg.to_json().encode("utf-8")

    def seq_response(self, seq: str) -> bytes:
        """Datagram confirming that the packet tagged ``seq`` arrived."""
        msg = UDPMsg(code=UdpType.SEQ_RESPONSE, data=seq.encode("utf-8"), seq=seq)
        return msg.to_json().encode("utf-8")

    # --- protocol -----------------------------------------------------------

    def handle_datagram(self, data: bytes) -> List[Reply]:
        """Process a datagram from the server; return hole-punch datagrams to send."""
        try:
            udp = UDPMsg.from_json(data)
        except (ValueError, TypeError) as exc:
            log.error("json parse error: %s", exc)
            return []
        if udp.code == UdpType.DISCOVERY:
            msg = self._inner(udp)
            log.debug("message from server: %r", msg)
            with self._lock:
                return self._progress(msg)
        if udp.code == UdpType.DISCOVERY_FORCE_P2P:
            msg = self._inner(udp)
            log.info("server forces hole punching: %r", msg)
            with self._lock:
                self.client_server_ip = self._parse_ip(msg.res.message)
                return self._make_p2p()
        return []

    @staticmethod
    def _inner(udp: UDPMsg) -> Msg:
        try:
            return Msg.from_json(udp.data) if udp.data else Msg()
        except (ValueError, TypeError):
            return Msg()

    @staticmethod
    def _parse_ip(text: str) -> Ip:
        try:
            return Ip.from_json(text)
        except (ValueError, TypeError) as exc:
            log.error("cannot decode peer address: %s", exc)
            return Ip()

    def _progress(self, msg: Msg) -> List[Reply]:
        if msg.type not in _DISCOVERY_KINDS:
            return []
        if msg.res.code != 0:
            log.error("other side is not ready: %r", msg.res)
            return []
        peer_ip = self._parse_ip(msg.res.message)
        if peer_ip.addr == self.client_server_ip.addr:
            self.client_server_ip = peer_ip
            return []
        self.client_server_ip = peer_ip
        log.info("address of the other side changed to %s", peer_ip.addr)
        replies = self._make_p2p()
        if self.config.type == ClientType.CLIENT_CLIENT.value:
            self.ip_changes.put(peer_ip.addr)
        return replies

    def _make_p2p(self) -> List[Reply]:
        addr = self.client_server_ip.addr
        if not addr:
            log.error("no udp address of the other side")
            return []
        try:
            target = parse_addr(addr)
        except ValueError as exc:
            log.error("bad address of the other side: %s", exc)
            return []
        message = self.hole_punch_message()
        log.info("sending hole punching message to %s", addr)
        return [(message, target), (message, target)]

    def check_status(self, now: Optional[datetime] = None) -> None:
        """Forget the other end's address if it was not refreshed in 30 seconds."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            ip = self.client_server_ip
            if ip.addr and ip.time < now - STATUS_TIMEOUT:
                ip.addr = ""

    # --- network ------------------------------------------------------------

    def _server_address(self) -> Address:
        infos = socket.getaddrinfo(
            self.config.server_host, self.config.server_port, socket.AF_INET, socket.SOCK_DGRAM
        )
        return infos[0][4][:2]

    @staticmethod
    def _bind(port: int) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            sock.close()
            raise
        return sock

    def _send_report(self) -> None:
        if self._p2p_sock is not None:
            self._p2p_sock.sendto(self.build_report(), self._server_address())

    def _send_ip_request(self) -> None:
        if self._local_sock is not None:
            self._local_sock.sendto(self.build_ip_request(), self._server_address())

    def start(self) -> None:
        """Bind both ports, contact the server and start background threads."""
        self._stop.clear()
        self._local_sock = self._bind(self.config.client_port_for_svc)
        try:
            self._p2p_sock = self._bind(self.config.client_port_for_p2p_trance)
        except OSError:
            self._local_sock.close()
            self._local_sock = None
            raise
        self._threads = [
            threading.Thread(target=self._receive_loop, daemon=True),
            threading.Thread(target=self._timer_loop, daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        self._send_report()
        self._send_ip_request()

    def _receive_loop(self) -> None:
        sock = self._local_sock
        while not self._stop.is_set() and sock is not None:
            try:
                data, _ = sock.recvfrom(PACKAGE_SIZE)
            except OSError as exc:
                if self._stop.is_set():
                    return
                log.error("read from server failed: %s", exc)
                continue
            for payload, target in self.handle_datagram(data):
                p2p = self._p2p_sock
                if p2p is None:
                    return
                try:
                    p2p.sendto(payload, target)
                except OSError as exc:
                    log.error("send to %s failed: %s", target, exc)

    def _timer_loop(self) -> None:
        last_report = time.monotonic()
        while not self._stop.wait(POLL_INTERVAL):
            try:
                self._send_ip_request()
                if time.monotonic() - last_report >= REPORT_INTERVAL:
                    last_report = time.monotonic()
                    self._send_report()
            except OSError as exc:
                log.error("contacting server failed: %s", exc)
            self.check_status()

    def close(self) -> None:
        """Stop the threads and close both sockets."""
        self._stop.set()
        for sock in (self._local_sock, self._p2p_sock):
            if sock is not None:
                sock.close()
        self._local_sock = None
        self._p2p_sock = None
        for thread in self._threads:
            thread.join(timeout=2)
        self._threads = []


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(
            {
                "level": record.levelname.lower(),
                "msg": record.getMessage(),
                "time": self.formatTime(record, "%Y-%m-%d %H:%M:%S"),
            },
            ensure_ascii=False,
        )


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run a remote-desktop peer until interrupted."""
    parser = argparse.ArgumentParser(prog="discovery", description="p2p rdp client")
    parser.add_argument("-d", action="store_true", help="running as a daemon")
    parser.add_argument("-c", default="config.yml", help="config file path")
    args = parser.parse_args(argv)

    if args.d:
        subprocess.Popen(
            [sys.executable, "-m", "holepunch.discovery", "-c", args.c],
            start_new_session=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        return 0

    handler = logging.StreamHandler()
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.addHandler(handler)

    config = load_client_config(args.c)
    config.save(args.c)
    client = DiscoveryClient(config)
    client.start()
    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    log.info("ready")
    try:
        while not stop.wait(1.0):
            pass
    finally:
        client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())