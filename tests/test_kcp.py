import pytest

from holepunch.kcp import (
    CMD_ACK,
    CMD_PUSH,
    KCP,
    OVERHEAD,
    KcpError,
    Segment,
    itimediff,
)
from holepunch.snmp import DEFAULT_SNMP


class FakeClock:
    def __init__(self, now=1000):
        self.now = now

    def __call__(self):
        return self.now


def make_pair(clock, conv=1):
    a_out, b_out = [], []
    a = KCP(conv, a_out.append, clock)
    b = KCP(conv, b_out.append, clock)
    for side in (a, b):
        side.nodelay(1, 10, 2, 1)
    return a, b, a_out, b_out


def pump(a, b, a_out, b_out, rounds=10):
    for _ in range(rounds):
        a.flush(False)
        b.flush(False)
        while a_out or b_out:
            while a_out:
                b.input(a_out.pop(0))
            while b_out:
                a.input(b_out.pop(0))


def test_itimediff_handles_wraparound():
    assert itimediff(5, 3) == 2
    assert itimediff(3, 5) == -2
    assert itimediff(0, 0xFFFFFFFF) == 1


def test_segment_encode_header_layout():
    seg = Segment(conv=7, cmd=CMD_PUSH, frg=2, wnd=32, ts=100, sn=9, una=4, data=b"abc")
    header = seg.encode()
    assert len(header) == OVERHEAD
    assert header[:4] == (7).to_bytes(4, "little")
    assert header[4] == CMD_PUSH
    assert header[5] == 2
    assert header[20:24] == (3).to_bytes(4, "little")


def test_message_round_trip():
    clock = FakeClock()
    a, b, a_out, b_out = make_pair(clock)
    a.send(b"hello")
    a.send(b"world")
    pump(a, b, a_out, b_out)
    assert b.recv() == b"hello"
    assert b.recv() == b"world"
    assert b.recv() is None
    assert a.wait_snd() == 0


def test_fragmented_message_reassembled():
    clock = FakeClock()
    a, b, a_out, b_out = make_pair(clock)
    payload = bytes(range(256)) * 12
    a.send(payload)
    assert a.wait_snd() > 1
    pump(a, b, a_out, b_out)
    assert b.peek_size() == len(payload)
    assert b.recv() == payload


def test_recv_buffer_too_small_keeps_message():
    clock = FakeClock()
    a, b, a_out, b_out = make_pair(clock)
    a.send(b"0123456789")
    pump(a, b, a_out, b_out)
    with pytest.raises(KcpError):
        b.recv(4)
    assert b.recv(10) == b"0123456789"


def test_stream_mode_coalesces_writes():
    clock = FakeClock()
    a, b, a_out, b_out = make_pair(clock)
    a.stream = True
    a.send(b"ab")
    a.send(b"cd")
    assert a.wait_snd() == 1
    pump(a, b, a_out, b_out)
    assert b.recv() == b"abcd"


def test_out_of_order_delivery_is_reordered():
    clock = FakeClock()
    a, b, a_out, b_out = make_pair(clock)
    chunks = [bytes([i]) * a.mss for i in range(3)]
    for chunk in chunks:
        a.send(chunk)
    a.flush(False)
    assert len(a_out) == 3
    for packet in reversed(a_out):
        b.input(packet)
    a_out.clear()
    assert [b.recv() for _ in range(3)] == chunks


def test_duplicate_packet_delivered_once():
    clock = FakeClock()
    a, b, a_out, b_out = make_pair(clock)
    a.send(b"once")
    a.flush(False)
    packet = a_out.pop()
    before = DEFAULT_SNMP.copy().repeat_segs
    b.input(packet)
    b.input(packet)
    assert b.recv() == b"once"
    assert b.recv() is None
    assert DEFAULT_SNMP.copy().repeat_segs > before


def test_lost_packet_is_retransmitted():
    clock = FakeClock()
    a, b, a_out, b_out = make_pair(clock)
    a.send(b"retry")
    a.flush(False)
    assert len(a_out) == 1
    a_out.clear()
    before = DEFAULT_SNMP.copy().lost_segs
    clock.now += 5000
    pump(a, b, a_out, b_out)
    assert b.recv() == b"retry"
    assert DEFAULT_SNMP.copy().lost_segs > before
    assert a.wait_snd() == 0


def test_dead_link_sets_state():
    clock = FakeClock()
    sent = []
    kcp = KCP(1, sent.append, clock)
    kcp.nodelay(1, 10, 0, 1)
    kcp.dead_link = 3
    kcp.send(b"lost")
    for _ in range(10):
        kcp.flush(False)
        clock.now += 60000
    assert kcp.state == 0xFFFFFFFF
    assert len(sent) >= 3


def test_reserved_bytes_are_left_zero():
    clock = FakeClock()
    a_out = []
    a = KCP(1, a_out.append, clock)
    b = KCP(1, lambda data: None, clock)
    a.nodelay(1, 10, 2, 1)
    a.reserve_bytes(20)
    assert a.mss == a.mtu - OVERHEAD - 20
    a.send(b"payload")
    a.flush(False)
    packet = a_out[0]
    assert packet[:20] == bytes(20)
    b.input(packet[20:])
    assert b.recv() == b"payload"


def test_send_rejects_empty_and_oversized():
    kcp = KCP(1, lambda data: None, FakeClock())
    with pytest.raises(ValueError):
        kcp.send(b"")
    with pytest.raises(KcpError):
        kcp.send(b"x" * (kcp.mss * 255 + 1))
    assert kcp.wait_snd() == 0


def test_input_rejects_malformed_packets():
    kcp = KCP(1, lambda data: None, FakeClock())
    with pytest.raises(KcpError):
        kcp.input(b"\x00" * 10)
    with pytest.raises(KcpError):
        kcp.input(Segment(conv=2, cmd=CMD_ACK).encode())
    with pytest.raises(KcpError):
        kcp.input(Segment(conv=1, cmd=99).encode())
    with pytest.raises(KcpError):
        kcp.input(Segment(conv=1, cmd=CMD_PUSH, data=b"abc").encode())


def test_set_mtu_and_reserve_limits():
    kcp = KCP(1, lambda data: None, FakeClock())
    with pytest.raises(ValueError):
        kcp.set_mtu(40)
    with pytest.raises(ValueError):
        kcp.reserve_bytes(-1)
    with pytest.raises(ValueError):
        kcp.reserve_bytes(kcp.mtu - OVERHEAD)
    kcp.set_mtu(1350)
    assert kcp.mss == 1350 - OVERHEAD


def test_nodelay_clamps_interval():
    kcp = KCP(1, lambda data: None, FakeClock())
    kcp.nodelay(1, 1, -1, -1)
    assert kcp.interval == 10
    kcp.nodelay(-1, 99999, -1, -1)
    assert kcp.interval == 5000
    assert kcp.nodelay_enabled == 1


def test_wnd_size_ignores_non_positive():
    kcp = KCP(1, lambda data: None, FakeClock())
    kcp.wnd_size(128, 0)
    assert kcp.snd_wnd == 128
    assert kcp.rcv_wnd == 32


def test_check_and_update_schedule():
    clock = FakeClock(5000)
    kcp = KCP(1, lambda data: None, clock)
    assert kcp.check() == 5000
    kcp.update()
    next_call = kcp.check()
    assert 5000 <= next_call <= 5000 + kcp.interval