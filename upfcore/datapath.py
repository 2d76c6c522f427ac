"""Handling of user-plane packets handed up for classification and buffering."""

from __future__ import annotations

import ipaddress
import logging
import struct
from collections.abc import Callable
from enum import IntEnum
from typing import Optional, Union

from upfcore.farqer import FAR, ApplyAction
from upfcore.gtp import (
    GtpType,
    build_echo_response,
    build_tpdu,
    check_echo_response,
    iter_buffered_packets,
)
from upfcore.packets import check_gtpu_version, check_is_gtpu
from upfcore.pdr import PDR, UpfError
from upfcore.session import UpfContext

log = logging.getLogger(__name__)

_IPV4_HEADER_LEN = 20
_UDP_HEADER_LEN = 8
_GTP_HEADER_LEN = 8
_LENGTH_PREFIX = struct.Struct("!H")

Address = tuple[str, int]
SendFunc = Callable[[bytes, Address], None]
ReportFunc = Callable[[int, int], None]


class PacketVerdict(IntEnum):
    """Outcome of handing a packet to the user plane."""

    NO_MATCH = -1
    MATCHED = 0
    HANDLED = 1


Result = tuple[PacketVerdict, Optional[PDR]]


class DataPath:
    """Classifies packets, answers GTP-U signalling and buffers packets for their PDRs."""

    def __init__(
        self,
        context: UpfContext,
        send: SendFunc,
        on_report: Optional[ReportFunc] = None,
    ) -> None:
        self.context = context
        self.send = send
        self.on_report = on_report

    def _handle_gtpu(self, pkt: bytes, hdrlen: int, remote: Address) -> Result:
        if len(pkt) < hdrlen + _GTP_HEADER_LEN:
            log.error("Packet length is not enough")
            return PacketVerdict.NO_MATCH, None

        msg_type = pkt[hdrlen + 1]
        gtp = bytes(pkt[hdrlen:])
        try:
            if msg_type == GtpType.T_PDU:
                pdr = self.context.rules.match_table.find_by_teid(pkt, hdrlen)
                if pdr is None:
                    return PacketVerdict.NO_MATCH, None
                return self._handle_buffer(pkt, pdr)
            if msg_type == GtpType.ECHO_REQUEST:
                self.send(build_echo_response(gtp), remote)
            elif msg_type == GtpType.ECHO_RESPONSE:
                check_echo_response(gtp)
            elif msg_type in (GtpType.ERROR_INDICATION, GtpType.END_MARK):
                pass
            else:
                log.debug("This type[%d] of GTPv1 header does not implement yet", msg_type)
        except (UpfError, OSError) as exc:
            log.debug("Packet match with GTP-U header failed: %s", exc)
            return PacketVerdict.NO_MATCH, None
        return PacketVerdict.HANDLED, None

    def _handle_buffer(self, pkt: bytes, pdr: PDR) -> Result:
        try:
            action = self.context.rules.apply_action(pdr.far_id)
        except UpfError as exc:
            log.error("FAR[%s] does not existed: %s", pdr.far_id, exc)
            return PacketVerdict.NO_MATCH, None

        if not action & ApplyAction.BUFF:
            return PacketVerdict.MATCHED, pdr

        storage = self.context.find_buf_packet(pdr.pdr_id)
        if storage is None:
            log.error("Cannot find matching PDR ID buffer slot")
            return PacketVerdict.NO_MATCH, None
        if len(pkt) > 0xFFFF:
            log.error("Packet is too long to buffer")
            return PacketVerdict.NO_MATCH, None

        with self.context.buff_lock:
            if storage.packet_buffer is None:
                storage.packet_buffer = bytearray()
            storage.packet_buffer += _LENGTH_PREFIX.pack(len(pkt))
            storage.packet_buffer += pkt

        if action & ApplyAction.NOCP and self.on_report is not None:
            seid = storage.session.upf_seid if storage.session is not None else 0
            log.debug("buffer NOCP to SMF: SEID: %u, PDRID: %u", seid, pdr.pdr_id)
            self.on_report(seid, pdr.pdr_id)

        return PacketVerdict.HANDLED, pdr

    def packet_in_l3(self, pkt: bytes) -> Result:
        """Classify an IPv4 packet, which may carry GTP-U to this UPF."""
        pkt = bytes(pkt)
        if not pkt:
            log.error("Packet should not be empty")
            return PacketVerdict.NO_MATCH, None
        try:
            is_gtpu = check_is_gtpu(pkt, 0)
        except UpfError as exc:
            log.debug("%s", exc)
            return PacketVerdict.NO_MATCH, None

        if is_gtpu:
            remote = (
                str(ipaddress.IPv4Address(pkt[12:16])),
                int.from_bytes(pkt[_IPV4_HEADER_LEN:_IPV4_HEADER_LEN + 2], "big"),
            )
            return self._handle_gtpu(pkt, _IPV4_HEADER_LEN + _UDP_HEADER_LEN, remote)

        try:
            pdr = self.context.rules.match_table.find_by_ue_ip(pkt, 0)
        except UpfError as exc:
            log.debug("Packet match with L3/L4 header failed: %s", exc)
            return PacketVerdict.NO_MATCH, None
        if pdr is None:
            log.debug("Packet match with L3/L4 header failed")
            return PacketVerdict.NO_MATCH, None
        return self._handle_buffer(pkt, pdr)

    def packet_in_gtpu(
        self,
        pkt: bytes,
        remote_ip: Union[str, int, ipaddress.IPv4Address],
        remote_port: int,
    ) -> Result:
        """Classify a GTP-U message received from ``remote_ip``:``remote_port``."""
        pkt = bytes(pkt)
        if not pkt:
            log.error("Packet should not be empty")
            return PacketVerdict.NO_MATCH, None
        try:
            address = ipaddress.IPv4Address(remote_ip)
        except ValueError:
            log.error("Remote IP %r is invalid", remote_ip)
            return PacketVerdict.NO_MATCH, None
        if not int(address) or not remote_port:
            log.error("Remote IP and port should not be 0")
            return PacketVerdict.NO_MATCH, None
        if not check_gtpu_version(pkt, 0):
            log.debug("Packet GTP version error")
            return PacketVerdict.NO_MATCH, None
        return self._handle_gtpu(pkt, 0, (str(address), remote_port))

    def send_buffered_packets(self, pdr: PDR, far: FAR) -> int:
        """Send what is buffered for ``pdr`` through the tunnel of ``far``; returns the count."""
        if pdr is None:
            raise UpfError("PDR error")
        if far is None:
            raise UpfError("FAR error")
        params = far.forwarding_parameters
        if params is None or params.outer_header_creation is None:
            raise UpfError("Need OuterHeaderCreation to send packet")
        ohc = params.outer_header_creation

        if not ohc.gtpu_ipv4:
            log.warning("outer header creatation not implement: GTP-IPV6, IPV4, IPV6")
            return 0
        if ohc.ipv4 is None:
            raise UpfError("Outer header creation has no IPv4 address")

        storage = self.context.find_buf_packet(pdr.pdr_id)
        if storage is None:
            raise UpfError(f"No buffer slot for PDR ID[{pdr.pdr_id}]")

        remote = (str(ohc.ipv4), self.context.gtpv1_port)
        sent = 0
        with self.context.buff_lock:
            buffered = storage.packet_buffer
            storage.packet_buffer = None
            if not buffered:
                log.debug("bufStorage is empty")
                return 0
            for packet in iter_buffered_packets(buffered):
                try:
                    self.send(build_tpdu(ohc.teid or 0, packet), remote)
                except OSError as exc:
                    log.debug("UdpSendTo failed: %s", exc)
                    continue
                sent += 1
        return sent