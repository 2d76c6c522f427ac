"""Sessions, buffered-packet slots and the user plane context that owns them."""

from __future__ import annotations

import heapq
import ipaddress
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional, Union

from upfcore.pdr import UpfError
from upfcore.store import RuleSet, RuleStore

log = logging.getLogger(__name__)

GTPV1_U_UDP_PORT = 2152
PFCP_UDP_PORT = 8805
DEFAULT_MAX_SESSIONS = 1024

_IPv4 = ipaddress.IPv4Address
_IPv6 = ipaddress.IPv6Address
AddressLike = Union[str, int, bytes, _IPv4, _IPv6]


class PdnType(IntEnum):
    """PDN Type values carried by PFCP (TS 29.244 8.2.79)."""

    IPV4 = 1
    IPV6 = 2
    IPV4V6 = 3


@dataclass(eq=False)
class Session:
    """One PDU session held by the user plane."""

    index: int
    dnn: str
    pdn_type: PdnType
    hash_key: bytes
    upf_seid: int = 0
    smf_seid: int = 0
    ue_ipv4: Optional[_IPv4] = None
    ue_ipv6: Optional[_IPv6] = None
    pfcp_node: Any = None
    rules: RuleSet = field(default_factory=RuleSet)


@dataclass(eq=False)
class BufPacket:
    """Buffering slot of one PDR; packets are stored each after a two-octet length."""

    session: Optional[Session]
    pdr_id: int
    packet_buffer: Optional[bytearray] = None


def _dnn_bytes(dnn: Union[str, bytes]) -> bytes:
    raw = dnn.encode("latin-1") if isinstance(dnn, str) else bytes(dnn)
    return raw.split(b"\x00", 1)[0]


def session_hash_key(ue_ip: Union[_IPv4, _IPv6], dnn: Union[str, bytes]) -> bytes:
    """The key a session is hashed under: the packed UE address followed by the DNN."""
    return ue_ip.packed + _dnn_bytes(dnn)


class UpfContext:
    """State of the user plane: rules, sessions and buffered packets."""

    def __init__(
        self,
        rules: Optional[RuleStore] = None,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ) -> None:
        self.rules = rules if rules is not None else RuleStore()
        self.max_sessions = max_sessions
        self.gtp_dev_name_prefix = "upfgtp"
        self.gtpv1_port = GTPV1_U_UDP_PORT
        self.pfcp_port = PFCP_UDP_PORT
        self.recovery_time = int(time.time())
        self.buff_lock = threading.Lock()
        self._sessions: dict[int, Session] = {}
        self._session_hash: dict[bytes, Session] = {}
        self._free_indexes: list[int] = []
        self._next_index = 1
        self._buf_packets: dict[int, BufPacket] = {}

    @property
    def sessions(self) -> list[Session]:
        """Sessions reachable through the session hash."""
        return list(self._session_hash.values())

    @property
    def buf_packets(self) -> list[BufPacket]:
        """All buffering slots."""
        return list(self._buf_packets.values())

    def _alloc_index(self) -> int:
        if len(self._sessions) >= self.max_sessions:
            raise UpfError("session alloc error")
        if self._free_indexes:
            return heapq.heappop(self._free_indexes)
        index = self._next_index
        self._next_index += 1
        return index

    def add_session(
        self, ue_ip: Optional[AddressLike], dnn: Union[str, bytes], pdn_type: int
    ) -> Session:
        """Create a session for ``ue_ip`` on ``dnn`` and index it by address and DNN."""
        try:
            kind = PdnType(pdn_type)
        except ValueError:
            raise UpfError(f"UnSupported PDN Type({pdn_type})") from None

        ue_ipv4 = ue_ipv6 = None
        try:
            if kind is PdnType.IPV4:
                ue_ipv4 = _IPv4(ue_ip)
            elif kind is PdnType.IPV6:
                ue_ipv6 = _IPv6(ue_ip)
        except (ValueError, TypeError):
            raise UpfError(f"UE IP address {ue_ip!r} is invalid") from None

        index = self._alloc_index()
        key_address = ue_ipv4 if ue_ipv4 is not None else (ue_ipv6 or _IPv6(0))
        session = Session(
            index=index,
            dnn=_dnn_bytes(dnn).decode("latin-1"),
            pdn_type=kind,
            hash_key=session_hash_key(key_address, dnn),
            upf_seid=index + 1,
            ue_ipv4=ue_ipv4,
            ue_ipv6=ue_ipv6,
        )
        self._sessions[index] = session
        self._session_hash[session.hash_key] = session
        log.debug("UPF session added: index %u, SEID %u", index, session.upf_seid)
        return session

    def remove_session(self, session: Session) -> None:
        """Remove ``session`` with its rules and buffering slots."""
        if session is None or self._sessions.get(session.index) is not session:
            raise UpfError("session error")
        if self._session_hash.get(session.hash_key) is session:
            del self._session_hash[session.hash_key]

        for pdr_id in list(session.rules.pdrs):
            buf_packet = self._buf_packets.get(pdr_id)
            if buf_packet is not None:
                self.remove_buf_packet(buf_packet)

        self.rules.clear(session.rules)
        del self._sessions[session.index]
        heapq.heappush(self._free_indexes, session.index)

    def remove_all_sessions(self) -> None:
        """Remove every session reachable through the session hash."""
        for session in self.sessions:
            self.remove_session(session)

    def find_session(self, index: int) -> Optional[Session]:
        """The session with ``index``, or None."""
        return self._sessions.get(index)

    def find_session_by_seid(self, seid: int) -> Optional[Session]:
        """The session whose UPF SEID is ``seid``, or None."""
        return self.find_session((seid - 1) & 0xFFFFFFFF)

    def add_buf_packet(self, session: Session, pdr_id: int) -> BufPacket:
        """Create the buffering slot of PDR ``pdr_id`` in ``session``."""
        if session is None:
            raise UpfError("No session")
        if not pdr_id:
            raise UpfError("PDR ID cannot be 0")
        buf_packet = BufPacket(session=session, pdr_id=pdr_id)
        self._buf_packets[pdr_id] = buf_packet
        return buf_packet

    def find_buf_packet(self, pdr_id: int) -> Optional[BufPacket]:
        """The buffering slot of PDR ``pdr_id``, or None."""
        return self._buf_packets.get(pdr_id)

    def remove_buf_packet(self, buf_packet: BufPacket) -> None:
        """Drop ``buf_packet`` and whatever it has buffered."""
        if buf_packet is None:
            raise UpfError("Input bufPacket error")
        buf_packet.session = None
        buf_packet.packet_buffer = None
        if self._buf_packets.get(buf_packet.pdr_id) is buf_packet:
            del self._buf_packets[buf_packet.pdr_id]

    def remove_all_buf_packets(self) -> None:
        """Drop every buffering slot."""
        for buf_packet in self.buf_packets:
            self.remove_buf_packet(buf_packet)