import threading

import pytest

from holepunch.snmp import Snmp


def test_header_order():
    header = Snmp().header()
    assert len(header) == 24
    assert header[0] == "BytesSent"
    assert header[-4:] == ["FECParityShards", "FECErrs", "FECRecovered", "FECShortShards"]


def test_add_and_to_slice_line_up_with_header():
    snmp = Snmp()
    snmp.add("bytes_sent", 10)
    snmp.add("fec_short_shards")
    row = dict(zip(snmp.header(), snmp.to_slice()))
    assert row["BytesSent"] == "10"
    assert row["FECShortShards"] == "1"
    assert row["InPkts"] == "0"


def test_add_returns_new_value():
    snmp = Snmp()
    assert snmp.add("in_segs", 3) == 3
    assert snmp.add("in_segs", 2) == 5


def test_copy_is_independent():
    snmp = Snmp()
    snmp.add("out_pkts", 7)
    snap = snmp.copy()
    snmp.add("out_pkts", 1)
    assert snap.out_pkts == 7
    assert snmp.out_pkts == 8


def test_reset_zeroes_everything():
    snmp = Snmp()
    for name in ("bytes_sent", "lost_segs", "max_conn"):
        snmp.add(name, 4)
    snmp.reset()
    assert snmp == Snmp()
    assert set(snmp.to_slice()) == {"0"}


def test_unknown_counter_raises():
    with pytest.raises(KeyError):
        Snmp().add("no_such_counter")
    with pytest.raises(KeyError):
        Snmp().add("_lock")


def test_concurrent_adds_are_not_lost():
    snmp = Snmp()

    def work():
        for _ in range(1000):
            snmp.add("in_bytes")

    threads = [threading.Thread(target=work) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert snmp.in_bytes == 4000