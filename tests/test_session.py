import ipaddress

import pytest

from upfcore.pdr import PDI, PDR, UEIPAddress, UpfError
from upfcore.session import PdnType, UpfContext, session_hash_key


def make_pdr(pdr_id, ue_ip="10.60.0.1"):
    return PDR(
        pdr_id=pdr_id,
        precedence=32,
        pdi=PDI(
            source_interface=1,
            ue_ip_address=UEIPAddress(v4=True, ipv4=ipaddress.IPv4Address(ue_ip)),
        ),
        far_id=1,
    )


def test_hash_key_is_address_then_dnn():
    address = ipaddress.IPv4Address("10.60.0.1")
    assert session_hash_key(address, "internet") == address.packed + b"internet"


def test_hash_key_stops_at_nul():
    address = ipaddress.IPv6Address("2001:db8::1")
    assert session_hash_key(address, b"ims\x00junk") == address.packed + b"ims"


def test_add_ipv4_session_and_find():
    context = UpfContext()
    session = context.add_session("10.60.0.1", "internet", PdnType.IPV4)
    assert session.ue_ipv4 == ipaddress.IPv4Address("10.60.0.1")
    assert session.ue_ipv6 is None
    assert context.find_session(session.index) is session
    assert context.find_session_by_seid(session.upf_seid) is session
    assert context.sessions == [session]


def test_ipv6_session_key():
    context = UpfContext()
    session = context.add_session("2001:db8::5", "internet", PdnType.IPV6)
    assert session.hash_key == ipaddress.IPv6Address("2001:db8::5").packed + b"internet"


def test_dual_stack_session_uses_empty_ipv6_key():
    context = UpfContext()
    session = context.add_session(None, "internet", PdnType.IPV4V6)
    assert session.hash_key == ipaddress.IPv6Address(0).packed + b"internet"


def test_unsupported_pdn_type_raises():
    context = UpfContext()
    with pytest.raises(UpfError):
        context.add_session("10.60.0.1", "internet", 9)


def test_invalid_ue_address_raises():
    context = UpfContext()
    with pytest.raises(UpfError):
        context.add_session("not-an-ip", "internet", PdnType.IPV4)


def test_pool_exhaustion_raises():
    context = UpfContext(max_sessions=1)
    context.add_session("10.60.0.1", "internet", PdnType.IPV4)
    with pytest.raises(UpfError):
        context.add_session("10.60.0.2", "internet", PdnType.IPV4)


def test_index_reused_after_removal():
    context = UpfContext()
    first = context.add_session("10.60.0.1", "internet", PdnType.IPV4)
    context.add_session("10.60.0.2", "internet", PdnType.IPV4)
    context.remove_session(first)
    third = context.add_session("10.60.0.3", "internet", PdnType.IPV4)
    assert third.index == first.index


def test_remove_session_clears_rules_and_buffers():
    context = UpfContext()
    session = context.add_session("10.60.0.1", "internet", PdnType.IPV4)
    context.rules.register_pdr(session.rules, make_pdr(1))
    slot = context.add_buf_packet(session, 1)
    context.remove_session(session)
    assert context.rules.find_pdr(1) is None
    assert context.find_buf_packet(1) is None
    assert slot.session is None
    assert context.find_session(session.index) is None
    assert context.sessions == []


def test_remove_twice_raises():
    context = UpfContext()
    session = context.add_session("10.60.0.1", "internet", PdnType.IPV4)
    context.remove_session(session)
    with pytest.raises(UpfError):
        context.remove_session(session)


def test_remove_all_sessions():
    context = UpfContext()
    for address in ("10.60.0.1", "10.60.0.2", "10.60.0.3"):
        context.add_session(address, "internet", PdnType.IPV4)
    context.remove_all_sessions()
    assert context.sessions == []


def test_buf_packet_lifecycle():
    context = UpfContext()
    session = context.add_session("10.60.0.1", "internet", PdnType.IPV4)
    slot = context.add_buf_packet(session, 7)
    assert context.find_buf_packet(7) is slot
    assert slot.session is session
    slot.packet_buffer = bytearray(b"data")
    context.remove_buf_packet(slot)
    assert context.find_buf_packet(7) is None
    assert slot.packet_buffer is None


def test_buf_packet_needs_session_and_id():
    context = UpfContext()
    session = context.add_session("10.60.0.1", "internet", PdnType.IPV4)
    with pytest.raises(UpfError):
        context.add_buf_packet(session, 0)
    with pytest.raises(UpfError):
        context.add_buf_packet(None, 3)


def test_remove_all_buf_packets():
    context = UpfContext()
    session = context.add_session("10.60.0.1", "internet", PdnType.IPV4)
    context.add_buf_packet(session, 1)
    context.add_buf_packet(session, 2)
    context.remove_all_buf_packets()
    assert context.buf_packets == []