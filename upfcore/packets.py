"""Classification of user-plane packets against registered match rules."""

from __future__ import annotations

import copy
import random
import threading
from bisect import insort
from typing import Optional

from upfcore.match import MatchRule, port_match
from upfcore.pdr import PDR, UpfError

GTPU_PORT = 2152
_UDP_PROTO = 17
_IPV4_HEADER_LEN = 20
_UDP_HEADER_LEN = 8
_GTP_HEADER_LEN = 8
_NUM_BUCKETS = 8192


def _u16(pkt: bytes, offset: int) -> int:
    return int.from_bytes(pkt[offset:offset + 2], "big")


def _u32(pkt: bytes, offset: int) -> int:
    return int.from_bytes(pkt[offset:offset + 4], "big")


def check_gtpu_version(pkt: bytes, hdrlen: int = 0) -> bool:
    """True when the GTP header at ``hdrlen`` is present and carries version 1."""
    if len(pkt) < hdrlen + _GTP_HEADER_LEN:
        return False
    return (pkt[hdrlen] >> 5) == 1


def check_is_gtpu(pkt: bytes, hdrlen: int = 0) -> bool:
    """True when the IPv4 packet at ``hdrlen`` carries GTP-U.

    Raises UpfError when the packet goes to the GTP-U port but is not GTPv1.
    """
    outer = _IPV4_HEADER_LEN + _UDP_HEADER_LEN
    if len(pkt) < hdrlen + outer + _GTP_HEADER_LEN:
        return False
    proto = pkt[hdrlen + 9]
    dport = _u16(pkt, hdrlen + _IPV4_HEADER_LEN + 2)
    if proto != _UDP_PROTO or dport != GTPU_PORT:
        return False
    if not check_gtpu_version(pkt, hdrlen + outer):
        raise UpfError("Packet GTP version error")
    return True


def gtpu_header_len(pkt: bytes) -> int:
    """Total length of the GTP-U header at the start of ``pkt``, extensions included."""
    if len(pkt) < _GTP_HEADER_LEN:
        raise UpfError("GTP-U header is truncated")
    flags = pkt[0]
    length = _GTP_HEADER_LEN + (4 if flags & 0x07 else 0)
    if flags & 0x04:
        while True:
            if length > len(pkt):
                raise UpfError("GTP-U extension header is truncated")
            if pkt[length - 1] == 0:
                break
            if length >= len(pkt):
                raise UpfError("GTP-U extension header is truncated")
            units = pkt[length]
            if units == 0:
                raise UpfError("GTP-U extension header length is zero")
            length += units * 4
    return length


def packet_matches(pkt: bytes, hdrlen: int, rule: MatchRule) -> bool:
    """True when the IPv4 packet at ``hdrlen`` satisfies every field set in ``rule``."""
    if len(pkt) < hdrlen + _IPV4_HEADER_LEN:
        raise UpfError("Packet length is not enough")
    proto = pkt[hdrlen + 9]
    saddr = _u32(pkt, hdrlen + 12)
    daddr = _u32(pkt, hdrlen + 16)
    l4 = hdrlen + _IPV4_HEADER_LEN
    has_l4 = len(pkt) >= l4 + _UDP_HEADER_LEN

    if rule.proto and proto != rule.proto:
        return False
    if rule.saddr and rule.smask and (saddr ^ rule.saddr) & rule.smask:
        return False
    if rule.daddr and rule.dmask and (daddr ^ rule.daddr) & rule.dmask:
        return False
    if rule.sport_list and (not has_l4 or not port_match(_u16(pkt, l4), rule.sport_list)):
        return False
    if rule.dport_list and (not has_l4 or not port_match(_u16(pkt, l4 + 2), rule.dport_list)):
        return False
    return True


class MatchTable:
    """Hashed lists of match rules, kept in ascending precedence within each bucket."""

    def __init__(self, seed: Optional[int] = None, buckets: int = _NUM_BUCKETS) -> None:
        self._seed = random.getrandbits(32) if seed is None else seed & 0xFFFFFFFF
        self._num_buckets = buckets
        self._teid: dict[int, list[MatchRule]] = {}
        self._ipv4: dict[int, list[MatchRule]] = {}
        self._teid_lock = threading.Lock()
        self._ipv4_lock = threading.Lock()

    def _bucket(self, key: int) -> int:
        value = self._seed
        for _ in range(4):
            value = (value * 33 + (key & 0xFF)) & 0xFFFFFFFF
            key >>= 8
        return value % self._num_buckets

    def _slot(self, rule: MatchRule) -> tuple[dict[int, list[MatchRule]], threading.Lock, int]:
        if rule.teid:
            return self._teid, self._teid_lock, self._bucket(rule.teid)
        return self._ipv4, self._ipv4_lock, self._bucket(rule.daddr)

    def register(self, rule: MatchRule) -> None:
        """Add ``rule`` after every rule of equal or lower precedence in its bucket."""
        if rule is None:
            raise UpfError("MatchRule should not be None")
        table, lock, index = self._slot(rule)
        with lock:
            insort(table.setdefault(index, []), rule, key=lambda item: item.precedence)

    def deregister(self, rule: MatchRule) -> None:
        """Remove ``rule``; raises UpfError when it is not registered."""
        table, lock, index = self._slot(rule)
        with lock:
            bucket = table.get(index, [])
            try:
                bucket.remove(rule)
            except ValueError:
                raise UpfError("Match rule is not registered") from None
            if not bucket:
                del table[index]

    def find_by_teid(self, pkt: bytes, hdrlen: int = 0) -> Optional[PDR]:
        """PDR of the first rule matching the GTP-U packet whose header is at ``hdrlen``."""
        if len(pkt) < hdrlen + _GTP_HEADER_LEN:
            raise UpfError("Packet length is not enough")
        inner = bytes(pkt[hdrlen:])
        teid = _u32(inner, 4)
        gtpu_len = gtpu_header_len(inner)
        with self._teid_lock:
            for rule in self._teid.get(self._bucket(teid), []):
                if rule.teid != teid:
                    continue
                if not packet_matches(inner, gtpu_len, rule):
                    continue
                return copy.deepcopy(rule.pdr)
        return None

    def find_by_ue_ip(self, pkt: bytes, hdrlen: int = 0) -> Optional[PDR]:
        """PDR of the first rule matching the IPv4 packet at ``hdrlen``, keyed by its destination."""
        if len(pkt) < hdrlen + _IPV4_HEADER_LEN:
            raise UpfError("Packet length is not enough")
        daddr = _u32(pkt, hdrlen + 16)
        with self._ipv4_lock:
            for rule in self._ipv4.get(self._bucket(daddr), []):
                if packet_matches(pkt, hdrlen, rule):
                    return copy.deepcopy(rule.pdr)
        return None