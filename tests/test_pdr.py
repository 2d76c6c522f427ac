import ipaddress
import logging
import struct

import pytest

from upfcore.pdr import (
    PDI,
    PDIIEs,
    PDR,
    PDRIEs,
    SourceInterface,
    UpfError,
    parse_f_teid,
    parse_sdf_filter,
    parse_ue_ip_address,
    pdr_from_ies,
)


def test_f_teid_ipv4():
    data = bytes([0x01]) + struct.pack("!I", 0x1234) + bytes([10, 0, 0, 1])
    fteid = parse_f_teid(data)
    assert fteid.v4 and not fteid.v6
    assert fteid.teid == 0x1234
    assert fteid.ipv4 == ipaddress.IPv4Address("10.0.0.1")
    assert fteid.ipv6 is None
    assert fteid.choose_id is None


def test_f_teid_dual_stack():
    v6 = ipaddress.IPv6Address("2001:db8::1")
    data = bytes([0x03]) + struct.pack("!I", 7) + bytes([192, 168, 0, 2]) + v6.packed
    fteid = parse_f_teid(data)
    assert fteid.teid == 7
    assert fteid.ipv4 == ipaddress.IPv4Address("192.168.0.2")
    assert fteid.ipv6 == v6


def test_f_teid_choose_with_id():
    fteid = parse_f_teid(bytes([0x0C, 5]))
    assert fteid.ch and fteid.chid
    assert fteid.teid == 0
    assert fteid.choose_id == 5


def test_f_teid_truncated():
    with pytest.raises(UpfError):
        parse_f_teid(bytes([0x01, 0, 0, 0, 1, 10]))


def test_ue_ip_v4():
    ue = parse_ue_ip_address(bytes([0x02, 60, 60, 0, 1]))
    assert ue.v4 and not ue.v6
    assert ue.ipv4 == ipaddress.IPv4Address("60.60.0.1")


def test_ue_ip_v6_with_delegation():
    v6 = ipaddress.IPv6Address("2001:db8::5")
    ue = parse_ue_ip_address(bytes([0x09]) + v6.packed + bytes([48]))
    assert ue.v6 and ue.ipv6d and not ue.v4
    assert ue.ipv6 == v6
    assert ue.ipv6_prefix_delegation_bits == 48


def test_ue_ip_empty_raises():
    with pytest.raises(UpfError):
        parse_ue_ip_address(b"")


def test_sdf_flow_description():
    text = b"permit out ip from any to assigned"
    data = bytes([0x01, 0x00]) + struct.pack("!H", len(text)) + text
    sdf = parse_sdf_filter(data)
    assert sdf.fd
    assert sdf.flow_description == text.decode()
    assert sdf.tos_traffic_class is None


def test_sdf_all_fields():
    text = b"permit out 17 from 10.0.0.1 to any"
    data = (
        bytes([0x1F, 0x00])
        + struct.pack("!H", len(text)) + text
        + struct.pack("!H", 0x2A10)
        + struct.pack("!I", 99)
        + b"\x01\x02\x03"
        + struct.pack("!I", 42)
    )
    sdf = parse_sdf_filter(data)
    assert sdf.flow_description == text.decode()
    assert sdf.tos_traffic_class == 0x2A10
    assert sdf.security_parameter_index == 99
    assert sdf.flow_label == b"\x01\x02\x03"
    assert sdf.sdf_filter_id == 42


def test_sdf_truncated_description():
    data = bytes([0x01, 0x00]) + struct.pack("!H", 20) + b"permit"
    with pytest.raises(UpfError):
        parse_sdf_filter(data)


def test_pdr_from_ies_full():
    ies = PDRIEs(
        pdr_id=struct.pack("!H", 3),
        precedence=struct.pack("!I", 255),
        pdi=PDIIEs(
            source_interface=bytes([SourceInterface.CORE]),
            ue_ip_address=bytes([0x02, 60, 60, 0, 1]),
        ),
        outer_header_removal=bytes([0]),
        far_id=struct.pack("!I", 11),
        qer_ids=[struct.pack("!I", 21), struct.pack("!I", 22)],
    )
    pdr = pdr_from_ies(ies)
    assert pdr.pdr_id == 3
    assert pdr.precedence == 255
    assert pdr.pdi.source_interface == SourceInterface.CORE
    assert pdr.pdi.ue_ip_address.ipv4 == ipaddress.IPv4Address("60.60.0.1")
    assert pdr.pdi.f_teid is None
    assert pdr.outer_header_removal == 0
    assert pdr.far_id == 11
    assert pdr.qer_ids == [21, 22]


def test_pdr_update_keeps_existing_fields():
    existing = PDR(pdr_id=3, precedence=10, pdi=PDI(source_interface=0), far_id=1)
    ies = PDRIEs(pdr_id=struct.pack("!H", 3), far_id=struct.pack("!I", 2))
    updated = pdr_from_ies(ies, existing)
    assert updated.far_id == 2
    assert updated.precedence == 10
    assert updated.pdi.source_interface == 0
    assert existing.far_id == 1


def test_pdr_update_pdi_merges():
    existing = PDR(pdr_id=1, pdi=PDI(source_interface=SourceInterface.ACCESS))
    ies = PDRIEs(pdi=PDIIEs(local_f_teid=bytes([0x01]) + struct.pack("!I", 9) + bytes(4)))
    updated = pdr_from_ies(ies, existing)
    assert updated.pdi.source_interface == SourceInterface.ACCESS
    assert updated.pdi.f_teid.teid == 9
    assert existing.pdi.f_teid is None


def test_empty_ies_give_empty_pdr():
    assert pdr_from_ies(PDRIEs()) == PDR()


def test_short_pdr_id_raises():
    with pytest.raises(UpfError):
        pdr_from_ies(PDRIEs(pdr_id=b"\x01"))


def test_urr_is_ignored_with_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="upfcore.pdr"):
        pdr = pdr_from_ies(PDRIEs(urr_id=struct.pack("!I", 1)))
    assert pdr == PDR()
    assert "URR" in caplog.text