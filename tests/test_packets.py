import struct
from ipaddress import IPv4Address

import pytest

from upfcore.match import MatchRule
from upfcore.packets import (
    MatchTable,
    check_gtpu_version,
    check_is_gtpu,
    gtpu_header_len,
    packet_matches,
)
from upfcore.pdr import PDR, UpfError

ALL_ONES = 0xFFFFFFFF


def ipv4_packet(src, dst, proto=17, sport=1000, dport=2000, payload=b""):
    total = 28 + len(payload)
    header = (
        bytes([0x45, 0]) + total.to_bytes(2, "big") + bytes(4)
        + bytes([64, proto, 0, 0])
        + IPv4Address(src).packed + IPv4Address(dst).packed
    )
    udp = struct.pack("!HHHH", sport, dport, 8 + len(payload), 0)
    return header + udp + payload


def gtp_packet(teid, inner, flags=0x30):
    return struct.pack("!BBHI", flags, 255, len(inner), teid) + inner


def ip(text):
    return int(IPv4Address(text))


def test_check_gtpu_version():
    assert check_gtpu_version(gtp_packet(1, b"")) is True
    assert check_gtpu_version(gtp_packet(1, b"", flags=0x48)) is False
    assert check_gtpu_version(b"\x30") is False


def test_check_is_gtpu():
    outer = ipv4_packet("192.0.2.1", "192.0.2.2", dport=2152, payload=gtp_packet(5, b""))
    assert check_is_gtpu(outer) is True
    other = ipv4_packet("192.0.2.1", "192.0.2.2", dport=2153, payload=gtp_packet(5, b""))
    assert check_is_gtpu(other) is False
    tcp = ipv4_packet("192.0.2.1", "192.0.2.2", proto=6, dport=2152, payload=gtp_packet(5, b""))
    assert check_is_gtpu(tcp) is False
    assert check_is_gtpu(ipv4_packet("192.0.2.1", "192.0.2.2", dport=2152)) is False


def test_check_is_gtpu_rejects_wrong_version():
    outer = ipv4_packet(
        "192.0.2.1", "192.0.2.2", dport=2152, payload=gtp_packet(5, b"", flags=0x48)
    )
    with pytest.raises(UpfError):
        check_is_gtpu(outer)


@pytest.mark.parametrize(
    "packet, expected",
    [
        (gtp_packet(1, b""), 8),
        (gtp_packet(1, bytes(4), flags=0x32), 12),
        (struct.pack("!BBHI", 0x34, 255, 8, 1) + bytes([0, 0, 0, 0x85, 1, 0, 9, 0]), 16),
    ],
)
def test_gtpu_header_len(packet, expected):
    assert gtpu_header_len(packet) == expected


def test_gtpu_header_len_truncated_extension():
    packet = struct.pack("!BBHI", 0x34, 255, 4, 1) + bytes([0, 0, 0, 0x85])
    with pytest.raises(UpfError):
        gtpu_header_len(packet)


def test_packet_matches_addresses_and_protocol():
    pkt = ipv4_packet("10.0.0.9", "10.60.0.1")
    assert packet_matches(pkt, 0, MatchRule(daddr=ip("10.60.0.1"), dmask=ALL_ONES)) is True
    assert packet_matches(pkt, 0, MatchRule(daddr=ip("10.60.0.2"), dmask=ALL_ONES)) is False
    assert packet_matches(pkt, 0, MatchRule(proto=6)) is False
    assert packet_matches(pkt, 0, MatchRule(saddr=ip("10.0.0.0"), smask=0xFF000000)) is True


def test_packet_matches_ports():
    rule = MatchRule(dport_list=[(2000, 2100)])
    assert packet_matches(ipv4_packet("10.0.0.9", "10.60.0.1", dport=2050), 0, rule) is True
    assert packet_matches(ipv4_packet("10.0.0.9", "10.60.0.1", dport=3000), 0, rule) is False
    ip_only = ipv4_packet("10.0.0.9", "10.60.0.1")[:20]
    assert packet_matches(ip_only, 0, rule) is False


def test_packet_matches_short_packet():
    with pytest.raises(UpfError):
        packet_matches(bytes(10), 0, MatchRule())


def test_find_by_ue_ip():
    table = MatchTable(seed=7)
    pdr = PDR(pdr_id=3, precedence=10)
    table.register(MatchRule(precedence=10, daddr=ip("10.60.0.1"), dmask=ALL_ONES, pdr=pdr))
    assert table.find_by_ue_ip(ipv4_packet("8.8.8.8", "10.60.0.1")) == pdr
    assert table.find_by_ue_ip(ipv4_packet("8.8.8.8", "10.60.0.2")) is None


def test_lowest_precedence_wins():
    table = MatchTable(seed=1)
    dst = ip("10.60.0.1")
    table.register(MatchRule(precedence=200, daddr=dst, dmask=ALL_ONES, pdr=PDR(pdr_id=1)))
    table.register(MatchRule(precedence=100, daddr=dst, dmask=ALL_ONES, pdr=PDR(pdr_id=2)))
    table.register(
        MatchRule(precedence=50, proto=6, daddr=dst, dmask=ALL_ONES, pdr=PDR(pdr_id=3))
    )
    found = table.find_by_ue_ip(ipv4_packet("8.8.8.8", "10.60.0.1"))
    assert found.pdr_id == 2


def test_deregister():
    table = MatchTable(seed=3)
    rule = MatchRule(daddr=ip("10.60.0.1"), dmask=ALL_ONES, pdr=PDR(pdr_id=1))
    table.register(rule)
    table.deregister(rule)
    assert table.find_by_ue_ip(ipv4_packet("8.8.8.8", "10.60.0.1")) is None
    with pytest.raises(UpfError):
        table.deregister(rule)


def test_find_by_teid():
    table = MatchTable(seed=11)
    pdr = PDR(pdr_id=9)
    table.register(MatchRule(teid=0x1234, saddr=ip("10.60.0.1"), smask=ALL_ONES, pdr=pdr))
    inner = ipv4_packet("10.60.0.1", "8.8.8.8")
    assert table.find_by_teid(gtp_packet(0x1234, inner)) == pdr
    assert table.find_by_teid(gtp_packet(0x1235, inner)) is None
    assert table.find_by_teid(gtp_packet(0x1234, ipv4_packet("10.60.0.2", "8.8.8.8"))) is None


def test_find_by_teid_with_outer_headers():
    table = MatchTable(seed=11)
    pdr = PDR(pdr_id=4)
    table.register(MatchRule(teid=77, pdr=pdr))
    outer = ipv4_packet(
        "192.0.2.1", "192.0.2.2", dport=2152,
        payload=gtp_packet(77, ipv4_packet("10.60.0.1", "8.8.8.8")),
    )
    assert table.find_by_teid(outer, 28) == pdr


def test_find_by_teid_short_packet():
    with pytest.raises(UpfError):
        MatchTable(seed=0).find_by_teid(bytes(4))