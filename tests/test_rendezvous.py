from datetime import datetime, timedelta, timezone

import pytest

from holepunch.protocol import Ip, Msg, UDPMsg, UdpType
from holepunch.rdpconfig import ServerConfig
from holepunch.rendezvous import (
    PeerTable,
    RendezvousServer,
    check_expire,
    parse_addr,
)

APP = "office"
SERVER_RDP = ("1.1.1.1", 100)
SERVER_SVC = ("1.1.1.1", 200)
CLIENT_RDP = ("2.2.2.2", 100)
CLIENT_SVC = ("2.2.2.2", 200)


def _request(code, kind):
    inner = Msg(type=kind, app_name=APP).to_json().encode()
    return UDPMsg(code=code, data=inner).to_json().encode()


def _decode(raw):
    udp = UDPMsg.from_json(raw)
    return udp, Msg.from_json(udp.data)


def test_check_expire():
    now = datetime.now(timezone.utc)
    assert check_expire(Ip("a:1", now - timedelta(minutes=1)), now)
    assert not check_expire(Ip("a:1", now - timedelta(minutes=6)), now)
    assert not check_expire(Ip(), now)


def test_parse_addr():
    assert parse_addr("10.0.0.1:3389") == ("10.0.0.1", 3389)
    assert parse_addr("[::1]:80") == ("::1", 80)
    with pytest.raises(ValueError):
        parse_addr("10.0.0.1")


def test_touch_reports_known_address():
    table = PeerTable()
    assert table.touch("1.1.1.1:5", APP, "client_server_type") is False
    assert table.touch("1.1.1.1:5", APP, "client_server_type") is True
    assert table.touch("1.1.1.1:6", APP, "client_server_type") is False
    assert table.get(APP).server.addr == "1.1.1.1:6"
    assert table.count() == 1
    assert table.keys() == [APP]


def test_clear_expired_drops_stale_sides():
    table = PeerTable()
    table.touch("1.1.1.1:5", APP, "client_server_type")
    table.touch("2.2.2.2:5", APP, "client_client_type")
    table.get(APP).client.time = datetime.now(timezone.utc) - timedelta(minutes=10)
    table.clear_expired(datetime.now(timezone.utc))
    assert table.get(APP).server.addr == "1.1.1.1:5"
    assert table.get(APP).client.addr == ""


def test_invalid_datagram_is_ignored():
    server = RendezvousServer(ServerConfig())
    assert server.handle_datagram(b"not json", CLIENT_SVC) == []


def test_report_registers_peer():
    server = RendezvousServer(ServerConfig())
    replies = server.handle_datagram(_request(UdpType.REPORT, "client_server_type"), SERVER_RDP)
    assert replies == []
    assert server.peers.get(APP).server.addr == "1.1.1.1:100"


def test_request_without_counterpart_gets_404():
    server = RendezvousServer(ServerConfig())
    replies = server.handle_datagram(
        _request(UdpType.GET_CLIENT_IP, "client_client_type"), CLIENT_SVC
    )
    assert len(replies) == 1
    raw, target = replies[0]
    udp, msg = _decode(raw)
    assert target == CLIENT_SVC
    assert udp.code == UdpType.DISCOVERY
    assert msg.type == "MESSAGE_TYPE_FOR_CLIENT_CLIENT_WITH_SERVER_IPS"
    assert msg.res.code == 404


def test_full_introduction():
    server = RendezvousServer(ServerConfig())
    server.handle_datagram(_request(UdpType.REPORT, "client_server_type"), SERVER_RDP)
    server.handle_datagram(_request(UdpType.GET_CLIENT_IP, "client_server_type"), SERVER_SVC)
    server.handle_datagram(_request(UdpType.REPORT, "client_client_type"), CLIENT_RDP)

    replies = server.handle_datagram(
        _request(UdpType.GET_CLIENT_IP, "client_client_type"), CLIENT_SVC
    )
    assert [target for _, target in replies] == [CLIENT_SVC, SERVER_SVC]

    udp, msg = _decode(replies[0][0])
    assert msg.res.code == 0
    assert Ip.from_json(msg.res.message).addr == "1.1.1.1:100"

    udp, msg = _decode(replies[1][0])
    assert udp.code == UdpType.DISCOVERY_FORCE_P2P
    assert msg.type == "MESSAGE_TYPE_FOR_CLIENT_SERVER_WITH_CLIENT_IPS"
    assert Ip.from_json(msg.res.message).addr == "2.2.2.2:100"

    again = server.handle_datagram(
        _request(UdpType.GET_CLIENT_IP, "client_client_type"), CLIENT_SVC
    )
    udp, _ = _decode(again[1][0])
    assert udp.code == UdpType.DISCOVERY


def test_server_side_request_notifies_client():
    server = RendezvousServer(ServerConfig())
    server.handle_datagram(_request(UdpType.REPORT, "client_server_type"), SERVER_RDP)
    server.handle_datagram(_request(UdpType.REPORT, "client_client_type"), CLIENT_RDP)
    server.handle_datagram(_request(UdpType.GET_CLIENT_IP, "client_client_type"), CLIENT_SVC)

    replies = server.handle_datagram(
        _request(UdpType.GET_CLIENT_IP, "client_server_type"), SERVER_SVC
    )
    assert [target for _, target in replies] == [SERVER_SVC, CLIENT_SVC]
    _, msg = _decode(replies[0][0])
    assert Ip.from_json(msg.res.message).addr == "2.2.2.2:100"
    _, msg = _decode(replies[1][0])
    assert Ip.from_json(msg.res.message).addr == "1.1.1.1:100"


def test_unknown_request_type_gets_no_reply():
    server = RendezvousServer(ServerConfig())
    assert server.handle_datagram(_request(UdpType.GET_CLIENT_IP, "other"), CLIENT_SVC) == []