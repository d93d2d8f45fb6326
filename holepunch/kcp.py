"""The KCP reliable-delivery protocol state machine.

A :class:`KCP` object turns user messages into numbered segments, sends
them through an ``output`` callable, retransmits what is not acknowledged
and reassembles what arrives through :meth:`KCP.input`. It does no I/O of
its own; the caller drives it by calling :meth:`KCP.update` or
:meth:`KCP.flush` and feeding received datagrams back in.
"""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .snmp import DEFAULT_SNMP

RTO_NDL = 30  # no-delay minimum rto
RTO_MIN = 100  # normal minimum rto
RTO_DEF = 200
RTO_MAX = 60000
CMD_PUSH = 81  # push data
CMD_ACK = 82  # acknowledgement
CMD_WASK = 83  # window probe (ask)
CMD_WINS = 84  # window size (tell)
ASK_SEND = 1  # need to send CMD_WASK
ASK_TELL = 2  # need to send CMD_WINS
WND_SND = 32
WND_RCV = 32
MTU_DEF = 1400
ACK_FAST = 3
INTERVAL = 100
OVERHEAD = 24
DEADLINK = 20
THRESH_INIT = 2
THRESH_MIN = 2
PROBE_INIT = 7000  # 7 secs to probe window size
PROBE_LIMIT = 120000  # up to 120 secs to probe window

_MASK = 0xFFFFFFFF
_HEADER = struct.Struct("<IBBHIIII")
_VALID_CMDS = (CMD_PUSH, CMD_ACK, CMD_WASK, CMD_WINS)

_START = time.monotonic()


def _default_clock() -> int:
    """Milliseconds elapsed since this module was loaded, as a uint32."""
    return int((time.monotonic() - _START) * 1000) & _MASK


def itimediff(later: int, earlier: int) -> int:
    """Signed 32-bit difference of two wrapping uint32 timestamps."""
    return ((later - earlier + 0x80000000) & _MASK) - 0x80000000


class KcpError(Exception):
    """Raised for malformed packets and requests the protocol cannot honour."""


@dataclass
class Segment:
    """One KCP segment: a header plus its payload."""

    conv: int = 0
    cmd: int = 0
    frg: int = 0
    wnd: int = 0
    ts: int = 0
    sn: int = 0
    una: int = 0
    rto: int = 0
    xmit: int = 0
    resendts: int = 0
    fastack: int = 0
    acked: bool = False
    data: bytes = b""

    def encode(self) -> bytes:
        """The 24-byte little-endian wire header of this segment."""
        DEFAULT_SNMP.add("out_segs")
        return _HEADER.pack(
            self.conv & _MASK,
            self.cmd & 0xFF,
            self.frg & 0xFF,
            self.wnd & 0xFFFF,
            self.ts & _MASK,
            self.sn & _MASK,
            self.una & _MASK,
            len(self.data),
        )


class KCP:
    """A single KCP connection.

    ``conv`` must be equal on both peers or packets are rejected.
    ``output`` is called with each datagram to put on the wire; its first
    :meth:`reserve_bytes` bytes are left zeroed for the caller's header.
    ``clock`` returns the current time in milliseconds.
    """

    def __init__(
        self,
        conv: int,
        output: Callable[[bytes], object],
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.conv = conv & _MASK
        self.output = output
        self.clock = clock or _default_clock
        self.mtu = MTU_DEF
        self.mss = self.mtu - OVERHEAD
        self.state = 0
        self.snd_una = 0
        self.snd_nxt = 0
        self.rcv_nxt = 0
        self.ssthresh = THRESH_INIT
        self.rx_rttvar = 0
        self.rx_srtt = 0
        self.rx_rto = RTO_DEF
        self.rx_minrto = RTO_MIN
        self.snd_wnd = WND_SND
        self.rcv_wnd = WND_RCV
        self.rmt_wnd = WND_RCV
        self.cwnd = 0
        self.probe = 0
        self.interval = INTERVAL
        self.ts_flush = INTERVAL
        self.nodelay_enabled = 0
        self.updated = False
        self.ts_probe = 0
        self.probe_wait = 0
        self.dead_link = DEADLINK
        self.incr = 0
        self.fastresend = 0
        self.nocwnd = 0
        self.stream = False
        self.snd_queue: List[Segment] = []
        self.rcv_queue: List[Segment] = []
        self.snd_buf: List[Segment] = []
        self.rcv_buf: List[Segment] = []
        self.acklist: List[Tuple[int, int]] = []
        self.reserved = 0

    def reserve_bytes(self, n: int) -> None:
        """Keep ``n`` bytes untouched at the start of every output datagram."""
        if n >= self.mtu - OVERHEAD or n < 0:
            raise ValueError(f"cannot reserve {n} bytes with mtu {self.mtu}")
        self.reserved = n
        self.mss = self.mtu - OVERHEAD - n

    def peek_size(self) -> Optional[int]:
        """Size of the next complete message, or None if none is ready."""
        if not self.rcv_queue:
            return None
        first = self.rcv_queue[0]
        if first.frg == 0:
            return len(first.data)
        if len(self.rcv_queue) < first.frg + 1:
            return None
        length = 0
        for seg in self.rcv_queue:
            length += len(seg.data)
            if seg.frg == 0:
                break
        return length

    def recv(self, bufsize: Optional[int] = None) -> Optional[bytes]:
        """Take the next complete message, or None if nothing is readable.

        Raises :class:`KcpError` if the message is larger than ``bufsize``.
        """
        peeksize = self.peek_size()
        if peeksize is None:
            return None
        if bufsize is not None and peeksize > bufsize:
            raise KcpError(f"message of {peeksize} bytes exceeds buffer of {bufsize}")

        fast_recover = len(self.rcv_queue) >= self.rcv_wnd

        parts = []
        count = 0
        for seg in self.rcv_queue:
            parts.append(seg.data)
            count += 1
            if seg.frg == 0:
                break
        del self.rcv_queue[:count]

        self._move_to_queue()

        if len(self.rcv_queue) < self.rcv_wnd and fast_recover:
            self.probe |= ASK_TELL
        return b"".join(parts)

    def send(self, data: bytes) -> None:
        """Queue user data for sending."""
        data = bytes(data)
        if not data:
            raise ValueError("cannot send an empty message")

        if self.stream:
            if self.snd_queue:
                last = self.snd_queue[-1]
                if len(last.data) < self.mss:
                    extend = min(self.mss - len(last.data), len(data))
                    last.data = last.data + data[:extend]
                    data = data[extend:]
            if not data:
                return

        if len(data) <= self.mss:
            count = 1
        else:
            count = (len(data) + self.mss - 1) // self.mss
        if count > 255:
            raise KcpError(f"message needs {count} fragments, at most 255 allowed")

        for i in range(count):
            size = min(self.mss, len(data))
            frg = 0 if self.stream else count - i - 1
            self.snd_queue.append(Segment(frg=frg, data=data[:size]))
            data = data[size:]

    def _update_ack(self, rtt: int) -> None:
        if self.rx_srtt == 0:
            self.rx_srtt = rtt
            self.rx_rttvar = rtt >> 1
        else:
            delta = rtt - self.rx_srtt
            self.rx_srtt += delta >> 3
            if delta < 0:
                delta = -delta
            if rtt < self.rx_srtt - self.rx_rttvar:
                self.rx_rttvar += (delta - self.rx_rttvar) >> 5
            else:
                self.rx_rttvar += (delta - self.rx_rttvar) >> 2
        rto = ((self.rx_srtt & _MASK) + max(self.interval, (self.rx_rttvar << 2) & _MASK)) & _MASK
        self.rx_rto = min(max(self.rx_minrto, rto), RTO_MAX)

    def _shrink_buf(self) -> None:
        self.snd_una = self.snd_buf[0].sn if self.snd_buf else self.snd_nxt

    def _parse_ack(self, sn: int) -> None:
        if itimediff(sn, self.snd_una) < 0 or itimediff(sn, self.snd_nxt) >= 0:
            return
        for seg in self.snd_buf:
            if sn == seg.sn:
                seg.acked = True
                seg.data = b""
                break
            if itimediff(sn, seg.sn) < 0:
                break

    def _parse_fastack(self, sn: int, ts: int) -> None:
        if itimediff(sn, self.snd_una) < 0 or itimediff(sn, self.snd_nxt) >= 0:
            return
        for seg in self.snd_buf:
            if itimediff(sn, seg.sn) < 0:
                break
            if sn != seg.sn and itimediff(seg.ts, ts) <= 0:
                seg.fastack += 1

    def _parse_una(self, una: int) -> None:
        count = 0
        for seg in self.snd_buf:
            if itimediff(una, seg.sn) > 0:
                count += 1
            else:
                break
        del self.snd_buf[:count]

    def _move_to_queue(self) -> None:
        count = 0
        queue_has_room = len(self.rcv_queue) < self.rcv_wnd
        for seg in self.rcv_buf:
            if seg.sn == self.rcv_nxt and queue_has_room:
                self.rcv_nxt = (self.rcv_nxt + 1) & _MASK
                count += 1
            else:
                break
        if count:
            self.rcv_queue.extend(self.rcv_buf[:count])
            del self.rcv_buf[:count]

    def _parse_data(self, newseg: Segment) -> bool:
        """Store a received data segment; True if it was a repeat."""
        sn = newseg.sn
        if (
            itimediff(sn, (self.rcv_nxt + self.rcv_wnd) & _MASK) >= 0
            or itimediff(sn, self.rcv_nxt) < 0
        ):
            return True

        insert_idx = 0
        repeat = False
        for i, seg in reversed(list(enumerate(self.rcv_buf))):
            if seg.sn == sn:
                repeat = True
                break
            if itimediff(sn, seg.sn) > 0:
                insert_idx = i + 1
                break

        if not repeat:
            newseg.data = bytes(newseg.data)
            self.rcv_buf.insert(insert_idx, newseg)

        self._move_to_queue()
        return repeat

    def input(self, data: bytes, regular: bool = True, ack_no_delay: bool = False) -> None:
        """Feed one received datagram (without any caller header) into KCP.

        ``regular`` is False for packets rebuilt by error correction; only
        regular packets update the remote window and round-trip time.
        ``ack_no_delay`` sends acknowledgements at once.
        """
        data = bytes(data)
        snd_una = self.snd_una
        if len(data) < OVERHEAD:
            raise KcpError("packet shorter than a KCP header")

        latest = 0
        acked = False
        in_segs = 0
        offset = 0

        while len(data) - offset >= OVERHEAD:
            conv, cmd, frg, wnd, ts, sn, una, length = _HEADER.unpack_from(data, offset)
            offset += OVERHEAD
            if conv != self.conv:
                raise KcpError(f"conversation {conv} does not match {self.conv}")
            if len(data) - offset < length:
                raise KcpError("segment payload truncated")
            if cmd not in _VALID_CMDS:
                raise KcpError(f"unknown command {cmd}")

            if regular:
                self.rmt_wnd = wnd
            self._parse_una(una)
            self._shrink_buf()

            if cmd == CMD_ACK:
                self._parse_ack(sn)
                self._parse_fastack(sn, ts)
                acked = True
                latest = ts
            elif cmd == CMD_PUSH:
                repeat = True
                if itimediff(sn, (self.rcv_nxt + self.rcv_wnd) & _MASK) < 0:
                    self.acklist.append((sn, ts))
                    if itimediff(sn, self.rcv_nxt) >= 0:
                        seg = Segment(
                            conv=conv,
                            cmd=cmd,
                            frg=frg,
                            wnd=wnd,
                            ts=ts,
                            sn=sn,
                            una=una,
                            data=data[offset:offset + length],
                        )
                        repeat = self._parse_data(seg)
                if regular and repeat:
                    DEFAULT_SNMP.add("repeat_segs")
            elif cmd == CMD_WASK:
                self.probe |= ASK_TELL

            in_segs += 1
            offset += length

        DEFAULT_SNMP.add("in_segs", in_segs)

        if acked and regular:
            current = self.clock()
            if itimediff(current, latest) >= 0:
                self._update_ack(itimediff(current, latest))

        if not self.nocwnd and itimediff(self.snd_una, snd_una) > 0 and self.cwnd < self.rmt_wnd:
            mss = self.mss
            if self.cwnd < self.ssthresh:
                self.cwnd += 1
                self.incr += mss
            else:
                if self.incr < mss:
                    self.incr = mss
                self.incr += (mss * mss) // self.incr + mss // 16
                if (self.cwnd + 1) * mss <= self.incr:
                    self.cwnd += 1
            if self.cwnd > self.rmt_wnd:
                self.cwnd = self.rmt_wnd
                self.incr = self.rmt_wnd * mss
            self.incr &= _MASK

        if ack_no_delay and self.acklist:
            self.flush(True)

    def _wnd_unused(self) -> int:
        if len(self.rcv_queue) < self.rcv_wnd:
            return (self.rcv_wnd - len(self.rcv_queue)) & 0xFFFF
        return 0

    def flush(self, ack_only: bool = False) -> int:
        """Send pending acks, probes and data; return ms until the next flush."""
        seg = Segment(conv=self.conv, cmd=CMD_ACK, wnd=self._wnd_unused(), una=self.rcv_nxt)
        reserved = self.reserved
        buf = bytearray(reserved)

        def make_space(space: int) -> None:
            if len(buf) + space > self.mtu:
                self.output(bytes(buf))
                del buf[reserved:]

        def flush_buffer() -> None:
            if len(buf) > reserved:
                self.output(bytes(buf))

        last = len(self.acklist) - 1
        for i, (sn, ts) in enumerate(self.acklist):
            make_space(OVERHEAD)
            if sn >= self.rcv_nxt or i == last:
                seg.sn, seg.ts = sn, ts
                buf += seg.encode()
        self.acklist.clear()

        if ack_only:
            flush_buffer()
            return self.interval

        if self.rmt_wnd == 0:
            current = self.clock()
            if self.probe_wait == 0:
                self.probe_wait = PROBE_INIT
                self.ts_probe = (current + self.probe_wait) & _MASK
            elif itimediff(current, self.ts_probe) >= 0:
                if self.probe_wait < PROBE_INIT:
                    self.probe_wait = PROBE_INIT
                self.probe_wait += self.probe_wait // 2
                if self.probe_wait > PROBE_LIMIT:
                    self.probe_wait = PROBE_LIMIT
                self.ts_probe = (current + self.probe_wait) & _MASK
                self.probe |= ASK_SEND
        else:
            self.ts_probe = 0
            self.probe_wait = 0

        if self.probe & ASK_SEND:
            seg.cmd = CMD_WASK
            make_space(OVERHEAD)
            buf += seg.encode()
        if self.probe & ASK_TELL:
            seg.cmd = CMD_WINS
            make_space(OVERHEAD)
            buf += seg.encode()
        self.probe = 0

        cwnd = min(self.snd_wnd, self.rmt_wnd)
        if not self.nocwnd:
            cwnd = min(self.cwnd, cwnd)

        new_segs = 0
        for newseg in self.snd_queue:
            if itimediff(self.snd_nxt, (self.snd_una + cwnd) & _MASK) >= 0:
                break
            newseg.conv = self.conv
            newseg.cmd = CMD_PUSH
            newseg.sn = self.snd_nxt
            self.snd_buf.append(newseg)
            self.snd_nxt = (self.snd_nxt + 1) & _MASK
            new_segs += 1
        del self.snd_queue[:new_segs]

        resent = self.fastresend if self.fastresend > 0 else _MASK

        current = self.clock()
        change = lost = lost_segs = fast_retrans = early_retrans = 0
        minrto = self.interval

        for segment in self.snd_buf:
            if segment.acked:
                continue
            needsend = False
            if segment.xmit == 0:
                needsend = True
                segment.rto = self.rx_rto
                segment.resendts = (current + segment.rto) & _MASK
            elif itimediff(current, segment.resendts) >= 0:
                needsend = True
                if self.nodelay_enabled == 0:
                    segment.rto += self.rx_rto
                else:
                    segment.rto += self.rx_rto // 2
                segment.rto &= _MASK
                segment.resendts = (current + segment.rto) & _MASK
                lost += 1
                lost_segs += 1
            elif segment.fastack >= resent:
                needsend = True
                segment.fastack = 0
                segment.rto = self.rx_rto
                segment.resendts = (current + segment.rto) & _MASK
                change += 1
                fast_retrans += 1
            elif segment.fastack > 0 and new_segs == 0:
                needsend = True
                segment.fastack = 0
                segment.rto = self.rx_rto
                segment.resendts = (current + segment.rto) & _MASK
                change += 1
                early_retrans += 1

            if needsend:
                current = self.clock()
                segment.xmit += 1
                segment.ts = current
                segment.wnd = seg.wnd
                segment.una = seg.una
                make_space(OVERHEAD + len(segment.data))
                buf += segment.encode()
                buf += segment.data
                if segment.xmit >= self.dead_link:
                    self.state = _MASK

            rto = itimediff(segment.resendts, current)
            if 0 < rto < minrto:
                minrto = rto

        flush_buffer()

        total = lost_segs
        if lost_segs:
            DEFAULT_SNMP.add("lost_segs", lost_segs)
        if fast_retrans:
            DEFAULT_SNMP.add("fast_retrans_segs", fast_retrans)
            total += fast_retrans
        if early_retrans:
            DEFAULT_SNMP.add("early_retrans_segs", early_retrans)
            total += early_retrans
        if total:
            DEFAULT_SNMP.add("retrans_segs", total)

        if not self.nocwnd:
            if change:
                inflight = (self.snd_nxt - self.snd_una) & _MASK
                self.ssthresh = max(inflight // 2, THRESH_MIN)
                self.cwnd = (self.ssthresh + resent) & _MASK
                self.incr = (self.cwnd * self.mss) & _MASK
            if lost:
                self.ssthresh = max(cwnd // 2, THRESH_MIN)
                self.cwnd = 1
                self.incr = self.mss
            if self.cwnd < 1:
                self.cwnd = 1
                self.incr = self.mss

        return minrto & _MASK

    def update(self) -> None:
        """Advance the state machine; call every 10-100 ms."""
        current = self.clock()
        if not self.updated:
            self.updated = True
            self.ts_flush = current

        slap = itimediff(current, self.ts_flush)
        if slap >= 10000 or slap < -10000:
            self.ts_flush = current
            slap = 0

        if slap >= 0:
            self.ts_flush = (self.ts_flush + self.interval) & _MASK
            if itimediff(current, self.ts_flush) >= 0:
                self.ts_flush = (current + self.interval) & _MASK
            self.flush(False)

    def check(self) -> int:
        """Timestamp (ms) at which :meth:`update` should next be called."""
        current = self.clock()
        if not self.updated:
            return current

        ts_flush = self.ts_flush
        if itimediff(current, ts_flush) >= 10000 or itimediff(current, ts_flush) < -10000:
            ts_flush = current
        if itimediff(current, ts_flush) >= 0:
            return current

        tm_flush = itimediff(ts_flush, current)
        tm_packet = 0x7FFFFFFF
        for seg in self.snd_buf:
            diff = itimediff(seg.resendts, current)
            if diff <= 0:
                return current
            tm_packet = min(tm_packet, diff)

        minimal = tm_flush if tm_packet >= tm_flush else tm_packet
        minimal = min(minimal, self.interval)
        return (current + minimal) & _MASK

    def set_mtu(self, mtu: int) -> None:
        """Change the maximum datagram size (default 1400)."""
        if mtu < 50 or mtu < OVERHEAD:
            raise ValueError(f"mtu {mtu} is too small")
        if self.reserved >= self.mtu - OVERHEAD or self.reserved < 0:
            raise ValueError(f"reserved size {self.reserved} does not fit the mtu")
        self.mtu = mtu
        self.mss = self.mtu - OVERHEAD - self.reserved

    def nodelay(self, nodelay: int, interval: int, resend: int, nc: int) -> None:
        """Tune latency; negative arguments leave the setting unchanged.

        nodelay: 0 off, 1 on. interval: update interval in ms (10..5000).
        resend: fast-resend threshold, 0 off. nc: 1 disables congestion control.
        """
        if nodelay >= 0:
            self.nodelay_enabled = nodelay
            self.rx_minrto = RTO_NDL if nodelay != 0 else RTO_MIN
        if interval >= 0:
            self.interval = min(max(interval, 10), 5000)
        if resend >= 0:
            self.fastresend = resend
        if nc >= 0:
            self.nocwnd = nc

    def wnd_size(self, sndwnd: int, rcvwnd: int) -> None:
        """Set the send and receive windows, in packets; zero keeps the old one."""
        if sndwnd > 0:
            self.snd_wnd = sndwnd
        if rcvwnd > 0:
            self.rcv_wnd = rcvwnd

    def wait_snd(self) -> int:
        """Number of segments queued or in flight."""
        return len(self.snd_buf) + len(self.snd_queue)