"""Packet Detection Rules and the PFCP information elements they are built from."""

from __future__ import annotations

import copy
import ipaddress
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

log = logging.getLogger(__name__)


class UpfError(Exception):
    """Raised when a rule, an information element or a message cannot be handled."""


class SourceInterface(IntEnum):
    """Source interface values carried in a PDI (TS 29.244 8.2.2)."""

    ACCESS = 0
    CORE = 1
    SGI_LAN = 2
    CP_FUNCTION = 3


class _Reader:
    """Sequential reader over the value of one information element."""

    def __init__(self, data: bytes, what: str) -> None:
        self._data = bytes(data)
        self._pos = 0
        self._what = what

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise UpfError(
                f"{self._what} is truncated: need {end} bytes, have {len(self._data)}"
            )
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def byte(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return int.from_bytes(self.take(2), "big")

    def u32(self) -> int:
        return int.from_bytes(self.take(4), "big")


def _u8(data: bytes, what: str) -> int:
    return _Reader(data, what).byte()


def _u16(data: bytes, what: str) -> int:
    return _Reader(data, what).u16()


def _u32(data: bytes, what: str) -> int:
    return _Reader(data, what).u32()


@dataclass
class FTEID:
    """Fully qualified tunnel endpoint identifier."""

    v4: bool = False
    v6: bool = False
    ch: bool = False
    chid: bool = False
    teid: int = 0
    ipv4: Optional[ipaddress.IPv4Address] = None
    ipv6: Optional[ipaddress.IPv6Address] = None
    choose_id: Optional[int] = None


@dataclass
class UEIPAddress:
    """UE IP address information element."""

    v6: bool = False
    v4: bool = False
    sd: bool = False
    ipv6d: bool = False
    ipv4: Optional[ipaddress.IPv4Address] = None
    ipv6: Optional[ipaddress.IPv6Address] = None
    ipv6_prefix_delegation_bits: Optional[int] = None


@dataclass
class SDFFilter:
    """Service data flow filter."""

    fd: bool = False
    ttc: bool = False
    spi: bool = False
    fl: bool = False
    bid: bool = False
    flow_description: Optional[str] = None
    tos_traffic_class: Optional[int] = None
    security_parameter_index: Optional[int] = None
    flow_label: Optional[bytes] = None
    sdf_filter_id: Optional[int] = None


@dataclass
class PDI:
    """Packet detection information of a PDR."""

    source_interface: Optional[int] = None
    f_teid: Optional[FTEID] = None
    ue_ip_address: Optional[UEIPAddress] = None
    sdf_filter: Optional[SDFFilter] = None


@dataclass
class PDR:
    """A Packet Detection Rule as kept by the user plane."""

    pdr_id: Optional[int] = None
    precedence: Optional[int] = None
    pdi: Optional[PDI] = None
    outer_header_removal: Optional[int] = None
    far_id: Optional[int] = None
    qer_ids: list[int] = field(default_factory=list)


@dataclass
class PDIIEs:
    """Raw values of the information elements inside a PDI group; None when absent."""

    source_interface: Optional[bytes] = None
    local_f_teid: Optional[bytes] = None
    ue_ip_address: Optional[bytes] = None
    sdf_filter: Optional[bytes] = None


@dataclass
class PDRIEs:
    """Raw values of a Create PDR or Update PDR group; None when absent."""

    pdr_id: Optional[bytes] = None
    precedence: Optional[bytes] = None
    pdi: Optional[PDIIEs] = None
    outer_header_removal: Optional[bytes] = None
    far_id: Optional[bytes] = None
    urr_id: Optional[bytes] = None
    qer_ids: list[bytes] = field(default_factory=list)
    activate_predefined_rules: Optional[bytes] = None
    deactivate_predefined_rules: Optional[bytes] = None


def parse_f_teid(data: bytes) -> FTEID:
    """Decode an F-TEID value."""
    reader = _Reader(data, "F-TEID")
    flags = reader.byte()
    fteid = FTEID(
        v4=bool(flags & 0x01),
        v6=bool(flags & 0x02),
        ch=bool(flags & 0x04),
        chid=bool(flags & 0x08),
    )
    if not fteid.ch:
        fteid.teid = reader.u32()
        if fteid.v4:
            fteid.ipv4 = ipaddress.IPv4Address(reader.take(4))
        if fteid.v6:
            fteid.ipv6 = ipaddress.IPv6Address(reader.take(16))
    if fteid.chid:
        fteid.choose_id = reader.byte()
    log.debug("F-TEID TEID: %u", fteid.teid)
    return fteid


def parse_ue_ip_address(data: bytes) -> UEIPAddress:
    """Decode a UE IP Address value."""
    reader = _Reader(data, "UE IP Address")
    flags = reader.byte()
    ue_ip = UEIPAddress(
        v6=bool(flags & 0x01),
        v4=bool(flags & 0x02),
        sd=bool(flags & 0x04),
        ipv6d=bool(flags & 0x08),
    )
    if ue_ip.v4:
        ue_ip.ipv4 = ipaddress.IPv4Address(reader.take(4))
        log.debug("UE IP Address IPv4: %s", ue_ip.ipv4)
    if ue_ip.v6:
        ue_ip.ipv6 = ipaddress.IPv6Address(reader.take(16))
        log.debug("UE IP Address IPv6: %s", ue_ip.ipv6)
    if ue_ip.ipv6d:
        ue_ip.ipv6_prefix_delegation_bits = reader.byte()
    return ue_ip


def parse_sdf_filter(data: bytes) -> SDFFilter:
    """Decode an SDF Filter value; fields follow the flag octet and a spare octet."""
    reader = _Reader(data, "SDF Filter")
    flags = reader.byte()
    reader.take(1)
    sdf = SDFFilter(
        fd=bool(flags & 0x01),
        ttc=bool(flags & 0x02),
        spi=bool(flags & 0x04),
        fl=bool(flags & 0x08),
        bid=bool(flags & 0x10),
    )
    if sdf.fd:
        length = reader.u16()
        sdf.flow_description = reader.take(length).decode("latin-1")
        log.debug("SDF Filter Flow Description: %s", sdf.flow_description)
    if sdf.ttc:
        sdf.tos_traffic_class = reader.u16()
    if sdf.spi:
        sdf.security_parameter_index = reader.u32()
    if sdf.fl:
        sdf.flow_label = reader.take(3)
    if sdf.bid:
        sdf.sdf_filter_id = reader.u32()
    return sdf


def _apply_pdi(ies: PDIIEs, pdi: PDI) -> PDI:
    if ies.source_interface is not None:
        pdi.source_interface = _u8(ies.source_interface, "Source Interface")
        log.debug("PDI Source Interface: %u", pdi.source_interface)
    if ies.local_f_teid is not None:
        pdi.f_teid = parse_f_teid(ies.local_f_teid)
    if ies.ue_ip_address is not None:
        pdi.ue_ip_address = parse_ue_ip_address(ies.ue_ip_address)
    if ies.sdf_filter is not None:
        pdi.sdf_filter = parse_sdf_filter(ies.sdf_filter)
    return pdi


def pdr_from_ies(ies: PDRIEs, pdr: Optional[PDR] = None) -> PDR:
    """Build a PDR from raw IEs, starting from a copy of ``pdr`` when one is given."""
    result = copy.deepcopy(pdr) if pdr is not None else PDR()

    if ies.pdr_id is not None:
        result.pdr_id = _u16(ies.pdr_id, "PDR ID")
    if ies.precedence is not None:
        result.precedence = _u32(ies.precedence, "Precedence")
    if ies.pdi is not None:
        result.pdi = _apply_pdi(ies.pdi, result.pdi if result.pdi is not None else PDI())
    if ies.outer_header_removal is not None:
        result.outer_header_removal = _u8(ies.outer_header_removal, "Outer Header Removal")
    if ies.far_id is not None:
        result.far_id = _u32(ies.far_id, "FAR ID")
    if ies.urr_id is not None:
        log.warning("UPF do NOT support URR yet")
    if ies.qer_ids:
        result.qer_ids = [_u32(value, "QER ID") for value in ies.qer_ids]
    if ies.activate_predefined_rules is not None:
        log.warning("UPF do NOT support Activate Predefined Rules yet")
    if ies.deactivate_predefined_rules is not None:
        log.warning("UPF do NOT support Deactivate Predefined Rules yet")
    return result