"""Forwarding Action Rules and QoS Enforcement Rules built from PFCP information elements."""

from __future__ import annotations

import copy
import ipaddress
import logging
from dataclasses import dataclass
from enum import IntFlag
from typing import Optional

from upfcore.pdr import UpfError

log = logging.getLogger(__name__)

_GTPU_UDP_IPV4 = 0x01
_GTPU_UDP_IPV6 = 0x02
_UDP_IPV4 = 0x04
_UDP_IPV6 = 0x08


class ApplyAction(IntFlag):
    """Apply Action flags of a FAR (TS 29.244 8.2.26)."""

    DROP = 0x01
    FORW = 0x02
    BUFF = 0x04
    NOCP = 0x08
    DUPL = 0x10


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


@dataclass
class OuterHeaderCreation:
    """Outer header to add when forwarding a packet."""

    description: int = 0
    teid: Optional[int] = None
    ipv4: Optional[ipaddress.IPv4Address] = None
    ipv6: Optional[ipaddress.IPv6Address] = None
    port: Optional[int] = None

    @property
    def gtpu_ipv4(self) -> bool:
        return bool(self.description & _GTPU_UDP_IPV4)

    @property
    def gtpu_ipv6(self) -> bool:
        return bool(self.description & _GTPU_UDP_IPV6)

    @property
    def udp_ipv4(self) -> bool:
        return bool(self.description & _UDP_IPV4)

    @property
    def udp_ipv6(self) -> bool:
        return bool(self.description & _UDP_IPV6)


@dataclass
class ForwardingPolicy:
    """Forwarding policy identifier."""

    identifier: bytes = b""

    @property
    def length(self) -> int:
        return len(self.identifier)


@dataclass
class ForwardingParameters:
    """Forwarding parameters of a FAR."""

    destination_interface: Optional[int] = None
    network_instance: Optional[str] = None
    outer_header_creation: Optional[OuterHeaderCreation] = None
    forwarding_policy: Optional[ForwardingPolicy] = None


@dataclass
class FAR:
    """A Forwarding Action Rule as kept by the user plane."""

    far_id: Optional[int] = None
    apply_action: Optional[ApplyAction] = None
    forwarding_parameters: Optional[ForwardingParameters] = None


@dataclass
class BitRate:
    """Uplink and downlink bit rates in kbps."""

    ul: int = 0
    dl: int = 0


@dataclass
class PacketRate:
    """Packet Rate information element."""

    ulpr: bool = False
    dlpr: bool = False
    uplink_time_unit: Optional[int] = None
    maximum_uplink_packet_rate: Optional[int] = None
    downlink_time_unit: Optional[int] = None
    maximum_downlink_packet_rate: Optional[int] = None


@dataclass
class DLFlowLevelMarking:
    """Downlink flow level marking; both fields are kept as their two raw octets."""

    ttc: bool = False
    sci: bool = False
    tos_traffic_class: Optional[bytes] = None
    service_class_indicator: Optional[bytes] = None


@dataclass
class QER:
    """A QoS Enforcement Rule as kept by the user plane."""

    qer_id: Optional[int] = None
    qer_correlation_id: Optional[int] = None
    gate_status: Optional[int] = None
    maximum_bitrate: Optional[BitRate] = None
    guaranteed_bitrate: Optional[BitRate] = None
    packet_rate: Optional[PacketRate] = None
    dl_flow_level_marking: Optional[DLFlowLevelMarking] = None
    qos_flow_identifier: Optional[int] = None
    reflective_qos: Optional[int] = None


@dataclass
class ForwardingParametersIEs:
    """Raw values of a (Update) Forwarding Parameters group; None when absent."""

    destination_interface: Optional[bytes] = None
    network_instance: Optional[bytes] = None
    outer_header_creation: Optional[bytes] = None
    forwarding_policy: Optional[bytes] = None


@dataclass
class FARIEs:
    """Raw values of a Create FAR or Update FAR group; None when absent."""

    far_id: Optional[bytes] = None
    apply_action: Optional[bytes] = None
    forwarding_parameters: Optional[ForwardingParametersIEs] = None


@dataclass
class QERIEs:
    """Raw values of a Create QER or Update QER group; None when absent."""

    qer_id: Optional[bytes] = None
    qer_correlation_id: Optional[bytes] = None
    gate_status: Optional[bytes] = None
    maximum_bitrate: Optional[bytes] = None
    guaranteed_bitrate: Optional[bytes] = None
    packet_rate: Optional[bytes] = None
    dl_flow_level_marking: Optional[bytes] = None
    qos_flow_identifier: Optional[bytes] = None
    reflective_qos: Optional[bytes] = None


def parse_outer_header_creation(data: bytes) -> OuterHeaderCreation:
    """Decode an Outer Header Creation value."""
    reader = _Reader(data, "Outer Header Creation")
    ohc = OuterHeaderCreation(description=reader.byte())
    reader.take(1)
    log.debug("Outer Header Creation Description: %u", ohc.description)

    if ohc.gtpu_ipv4 or ohc.gtpu_ipv6:
        ohc.teid = reader.u32()
        log.debug("Outer Header Creation TEID: %u", ohc.teid)
    if ohc.udp_ipv4 or ohc.gtpu_ipv4:
        ohc.ipv4 = ipaddress.IPv4Address(reader.take(4))
        log.debug("Outer Header Creation IPv4: %s", ohc.ipv4)
    if ohc.udp_ipv6 or ohc.gtpu_ipv6:
        ohc.ipv6 = ipaddress.IPv6Address(reader.take(16))
        log.debug("Outer Header Creation IPv6: %s", ohc.ipv6)
    if (ohc.udp_ipv4 and not ohc.gtpu_ipv4) or (ohc.udp_ipv6 and not ohc.gtpu_ipv6):
        ohc.port = reader.u16()
        log.debug("Outer Header Creation Port: %u", ohc.port)
    return ohc


def parse_forwarding_policy(data: bytes) -> ForwardingPolicy:
    """Decode a Forwarding Policy value: a length octet then the identifier."""
    reader = _Reader(data, "Forwarding Policy")
    length = reader.byte()
    return ForwardingPolicy(identifier=reader.take(length))


def _bitrate_5(data: bytes) -> int:
    return int.from_bytes(data, "big")


def bitrate_from_bytes(data: bytes) -> BitRate:
    """Decode an MBR or GBR value: five octets uplink then five octets downlink."""
    reader = _Reader(data, "Bit Rate")
    return BitRate(ul=_bitrate_5(reader.take(5)), dl=_bitrate_5(reader.take(5)))


def parse_packet_rate(data: bytes) -> PacketRate:
    """Decode a Packet Rate value."""
    reader = _Reader(data, "Packet Rate")
    flags = reader.byte()
    rate = PacketRate(ulpr=bool(flags & 0x01), dlpr=bool(flags & 0x02))
    if rate.ulpr:
        rate.uplink_time_unit = reader.byte()
        rate.maximum_uplink_packet_rate = reader.u16()
    if rate.dlpr:
        rate.downlink_time_unit = reader.byte()
        rate.maximum_downlink_packet_rate = reader.u16()
    return rate


def parse_dl_flow_level_marking(data: bytes) -> DLFlowLevelMarking:
    """Decode a DL Flow Level Marking value."""
    reader = _Reader(data, "DL Flow Level Marking")
    flags = reader.byte()
    marking = DLFlowLevelMarking(ttc=bool(flags & 0x01), sci=bool(flags & 0x02))
    if marking.ttc:
        marking.tos_traffic_class = reader.take(2)
    if marking.sci:
        marking.service_class_indicator = reader.take(2)
    return marking


def _network_instance(data: bytes) -> str:
    return bytes(data).split(b"\x00", 1)[0].decode("latin-1")


def _apply_forwarding_parameters(
    ies: ForwardingParametersIEs, params: ForwardingParameters
) -> ForwardingParameters:
    if ies.destination_interface is not None:
        params.destination_interface = _Reader(
            ies.destination_interface, "Destination Interface"
        ).byte()
        log.debug("Forwarding Parameters Destination Interface: %u", params.destination_interface)
    if ies.network_instance is not None:
        params.network_instance = _network_instance(ies.network_instance)
    if ies.outer_header_creation is not None:
        params.outer_header_creation = parse_outer_header_creation(ies.outer_header_creation)
    if ies.forwarding_policy is not None:
        params.forwarding_policy = parse_forwarding_policy(ies.forwarding_policy)
    return params


def far_from_ies(ies: FARIEs, far: Optional[FAR] = None) -> FAR:
    """Build a FAR from raw IEs, starting from a copy of ``far`` when one is given."""
    result = copy.deepcopy(far) if far is not None else FAR()

    if ies.far_id is not None:
        result.far_id = _Reader(ies.far_id, "FAR ID").u32()
        log.debug("FAR ID: %u", result.far_id)
    if ies.apply_action is not None:
        result.apply_action = ApplyAction(_Reader(ies.apply_action, "Apply Action").byte())
        log.debug("FAR Apply Action: %u", int(result.apply_action))
    if ies.forwarding_parameters is not None:
        base = result.forwarding_parameters or ForwardingParameters()
        result.forwarding_parameters = _apply_forwarding_parameters(
            ies.forwarding_parameters, base
        )
    return result


def qer_from_ies(ies: QERIEs, qer: Optional[QER] = None) -> QER:
    """Build a QER from raw IEs, starting from a copy of ``qer`` when one is given."""
    result = copy.deepcopy(qer) if qer is not None else QER()

    if ies.qer_id is not None:
        result.qer_id = _Reader(ies.qer_id, "QER ID").u32()
        log.debug("QER ID: %u", result.qer_id)
    if ies.qer_correlation_id is not None:
        result.qer_correlation_id = _Reader(ies.qer_correlation_id, "QER Correlation ID").u32()
    if ies.gate_status is not None:
        result.gate_status = _Reader(ies.gate_status, "Gate Status").byte()
    if ies.maximum_bitrate is not None:
        result.maximum_bitrate = bitrate_from_bytes(ies.maximum_bitrate)
        log.debug("QER MBR UL: %u, DL: %u", result.maximum_bitrate.ul, result.maximum_bitrate.dl)
    if ies.guaranteed_bitrate is not None:
        result.guaranteed_bitrate = bitrate_from_bytes(ies.guaranteed_bitrate)
        log.debug(
            "QER GBR UL: %u, DL: %u", result.guaranteed_bitrate.ul, result.guaranteed_bitrate.dl
        )
    if ies.packet_rate is not None:
        result.packet_rate = parse_packet_rate(ies.packet_rate)
    if ies.dl_flow_level_marking is not None:
        result.dl_flow_level_marking = parse_dl_flow_level_marking(ies.dl_flow_level_marking)
    if ies.qos_flow_identifier is not None:
        result.qos_flow_identifier = _Reader(ies.qos_flow_identifier, "QFI").byte()
    if ies.reflective_qos is not None:
        result.reflective_qos = _Reader(ies.reflective_qos, "Reflective QoS").byte()
    return result