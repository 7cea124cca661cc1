from datetime import datetime, timedelta, timezone

import pytest

from armiarma import models
from armiarma.models import (
    AttemptStatus,
    ConnDirection,
    ConnEvent,
    ConnInfo,
    EndConnInfo,
    IpApiMsg,
    IpInfo,
    PeerInfo,
)

PEER = "12D3KooW9pdHR2n4xvYU1RBEgrJMH1kd557QSXYURzEFWeEECjGn"
NETWORK = "ethereum"


def _ts(text):
    return datetime.fromisoformat(text.replace("Z", "+00:00"))


def _conn_info():
    return ConnInfo(
        direction=ConnDirection.INBOUND,
        conn_time=_ts("2022-10-12T00:00:00.000Z"),
        latency=timedelta(microseconds=100),
        identified=True,
        att={},
        error="None",
    )


def _test_conn_event():
    ev = ConnEvent(PEER)
    ev.add_conn_info(_conn_info())
    ev.add_disconn(EndConnInfo(disc_time=_ts("2022-10-12T02:00:00.000Z")))
    return ev


def _test_peer_info(user_agent="migalabs-crawler"):
    return PeerInfo(
        remote_peer=PEER,
        user_agent=user_agent,
        protocol_version="protocol-version",
        protocols=["discv5", "gossipsub", "rpcs"],
        latency=timedelta(milliseconds=1),
    )


def test_conn_event_from_source_case():
    ev = _test_conn_event()
    assert ev.peer_id == PEER
    assert models.direction_to_string(ev.direction) == "inbound"
    assert ev.conn_duration == timedelta(hours=2)
    assert ev.error == "None"
    assert ev.is_ready_to_persist() is True


def test_disconnection_before_connection_info():
    ev = ConnEvent(PEER)
    ev.add_disconn(EndConnInfo(disc_time=_ts("2022-10-12T02:00:00.000Z")))
    assert ev.is_ready_to_persist() is False
    ev.add_conn_info(_conn_info())
    assert ev.conn_duration == timedelta(hours=2)
    assert ev.is_ready_to_persist() is True


def test_conn_event_merges_attributes():
    ev = ConnEvent(PEER, att={"a": 1})
    info = _conn_info()
    info.att = {"b": 2}
    ev.add_conn_info(info)
    assert ev.att == {"a": 1, "b": 2}


def test_direction_strings():
    assert models.direction_to_string(ConnDirection.OUTBOUND) == "outbound"
    assert models.direction_to_string(ConnDirection.UNSET) == "unset"


def test_new_conn_attempt_source_case():
    before = datetime.now(timezone.utc)
    att = models.new_conn_attempt(PEER, AttemptStatus.POSITIVE, "None", False, False)
    assert att.remote_peer == PEER
    assert att.status.value == "positive"
    assert att.error == "None"
    assert att.deprecable is False and att.left_network is False
    assert before <= att.timestamp <= datetime.now(timezone.utc)


def test_host_info_with_ip_and_ports_source_case():
    host = models.new_host_info(PEER, NETWORK, models.with_ip_and_ports("192.168.1.1", 9000))
    assert host.id == PEER
    assert host.network == NETWORK
    assert host.ip == "192.168.1.1"
    assert host.port == 9000
    assert host.maddrs == ["/ip4/192.168.1.1/tcp/9000"]


def test_invalid_ip_option_is_logged_not_raised():
    host = models.new_host_info(PEER, NETWORK, models.with_ip_and_ports("not-an-ip", 9000))
    assert host.maddrs == []
    assert host.ip == "not-an-ip"


def test_with_multiaddress_picks_first_public():
    addrs = ["/ip4/192.168.0.11/tcp/9000", "/ip4/8.8.8.8/tcp/13000", "/ip4/1.1.1.1/tcp/1"]
    host = models.new_host_info(PEER, NETWORK, models.with_multiaddress(addrs))
    assert host.ip == "8.8.8.8"
    assert host.port == 13000
    assert host.maddrs == addrs


def test_with_multiaddress_without_public_ip():
    host = models.new_host_info(PEER, NETWORK, models.with_multiaddress(["/ip4/127.0.0.1/tcp/9000"]))
    assert host.ip == ""
    assert host.port == 0


def test_peer_info_identification():
    assert _test_peer_info().is_peer_identified() is True
    assert PeerInfo().is_peer_identified() is False
    assert PeerInfo(protocols=["x"]).is_peer_identified() is True


def test_peer_info_copies_protocols():
    protocols = ["discv5"]
    info = PeerInfo(protocols=protocols)
    protocols.append("gossipsub")
    assert info.protocols == ["discv5"]


def test_identify_host():
    host = models.new_host_info(PEER, NETWORK)
    assert host.is_host_identified() is False
    host.identify_host(_test_peer_info())
    assert host.is_host_identified() is True
    assert host.peer_info.latency == timedelta(milliseconds=1)
    assert host.peer_info.protocols == ["discv5", "gossipsub", "rpcs"]


def test_compose_addrs_and_persistable():
    host = models.new_host_info(PEER, NETWORK, models.with_ip_and_ports("192.168.1.1", 9000))
    addr_info = host.compose_addrs_info()
    assert addr_info == models.AddrInfo(PEER, ("/ip4/192.168.1.1/tcp/9000",))
    persistable = host.compose_persistable()
    assert persistable.id == host.id
    assert persistable.network == host.network
    assert len(persistable.addrs) == len(host.maddrs)


def test_add_att():
    host = models.new_host_info(PEER, NETWORK)
    host.add_att("enr", {"seq": 1})
    assert host.attr == {"enr": {"seq": 1}}


@pytest.mark.parametrize(
    "ip,expected",
    [("192.168.0.1", False), ("127.0.0.1", False), ("34.107.92.185", True), ("garbage", False), (None, False)],
)
def test_is_ip_public(ip, expected):
    assert models.is_ip_public(ip) is expected


def test_ip_api_msg_from_json_and_empty():
    msg = IpApiMsg.from_json({"query": "34.107.92.185", "country": "Germany", "as": "AS1", "asname": "X"})
    assert msg.ip == "34.107.92.185"
    assert msg.as_ == "AS1" and msg.as_name == "X"
    assert msg.is_empty() is False
    assert IpApiMsg().is_empty() is True


def test_ip_info_carries_expiration():
    exp = datetime(2022, 10, 12, tzinfo=timezone.utc)
    info = IpInfo.from_json({"query": "1.2.3.4", "city": "Town"}, expiration_time=exp)
    assert info.expiration_time == exp
    assert info.city == "Town"
    assert models.IP_INFO_TTL == timedelta(days=30)