"""Match rules compiled from PDRs for user-plane packet classification."""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from upfcore.pdr import PDR, SourceInterface, UpfError

log = logging.getLogger(__name__)

_ALL_ONES = 0xFFFFFFFF

_IPV4 = r"[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}"
_ADDR = rf"(any|assigned|{_IPV4}(/[0-9]{{1,2}})?)"
_PORTS = r"([ ][0-9]{1,5}([,-][0-9]{1,5})*)?"
_SDF_PATTERN = re.compile(
    rf"(permit) (in|out) (ip|[0-9]{{1,3}}) from {_ADDR}{_PORTS} to {_ADDR}{_PORTS}",
    re.IGNORECASE,
)


@dataclass(eq=False)
class MatchRule:
    """Fields a packet is matched against; addresses and masks are host-order integers."""

    precedence: int = 0
    teid: int = 0
    proto: int = 0
    saddr: int = 0
    smask: int = 0
    daddr: int = 0
    dmask: int = 0
    sport_list: list[tuple[int, int]] = field(default_factory=list)
    dport_list: list[tuple[int, int]] = field(default_factory=list)
    pdr: Optional[PDR] = None


def _atoi(text: str) -> int:
    digits = re.match(r"\s*([+-]?[0-9]+)", text)
    return int(digits.group(1)) if digits else 0


def decimal_to_netmask(mask: int) -> int:
    """Turn a prefix length into a 32-bit netmask."""
    mask = max(0, min(int(mask), 32))
    return (_ALL_ONES << (32 - mask)) & _ALL_ONES


def port_list_create(text: str) -> list[tuple[int, int]]:
    """Parse a comma separated list of ports and ranges into (low, high) pairs."""
    ports = []
    for token in (part for part in text.split(",") if part):
        if "-" in token:
            first, second = token.split("-", 1)
            low, high = sorted((_atoi(first), _atoi(second)))
            ports.append((low, high))
        else:
            port = _atoi(token)
            ports.append((port, port))
    return ports


def port_match(port: int, ports: list[tuple[int, int]]) -> bool:
    """True when ``ports`` is empty or one of its ranges holds ``port``."""
    if not ports:
        return True
    return any(low <= port <= high for low, high in ports)


def _ipv4_match(target: int, match: int, mask: int) -> bool:
    return not ((target ^ match) & mask)


def _parse_ipv4(text: str, what: str) -> int:
    try:
        return int(ipaddress.IPv4Address(text))
    except ValueError:
        raise UpfError(f"SDF filter description {what} ip[{text}] is invalid") from None


def _parse_mask(text: Optional[str], what: str) -> Optional[int]:
    if not text:
        return None
    bits = _atoi(text[1:])
    if not 0 < bits <= 32:
        raise UpfError(f"SDF filter description {what} mask[{text[1:]}] is invalid")
    return decimal_to_netmask(bits)


def _address_part(addr: str, mask: Optional[str]) -> str:
    return addr[: len(addr) - len(mask)] if mask else addr


def _apply_flow_description(rule: MatchRule, description: str) -> None:
    found = _SDF_PATTERN.fullmatch(description)
    if found is None:
        raise UpfError("SDF filter description format error")

    action = found.group(1)
    if action != "permit":
        raise UpfError(
            f"SDF filter description action only support 'permit', not support '{action}'"
        )

    direction = found.group(2)
    if direction not in ("in", "out"):
        raise UpfError(f"SDF filter description direction not support '{direction}'")

    proto = found.group(3)
    if proto == "ip":
        rule.proto = 0
    else:
        value = _atoi(proto)
        if value > 0xFF:
            raise UpfError(f"SDF filter description protocol[{proto}] not support")
        rule.proto = value

    smask = _parse_mask(found.group(5), "SRC")
    if smask is not None:
        rule.smask = smask
    src = _address_part(found.group(4), found.group(5))
    if src == "assigned":
        raise UpfError("SDF filter description src ip do NOT use assigned")
    src_ip = _parse_ipv4(src, "src")
    if not rule.saddr:
        rule.saddr = src_ip
    elif not _ipv4_match(rule.saddr, src_ip, rule.smask):
        raise UpfError(
            f"SDF filter description src ip[{ipaddress.IPv4Address(src_ip)}] with "
            f"mask[{ipaddress.IPv4Address(rule.smask)}] is conflict to "
            f"UE IP[{ipaddress.IPv4Address(rule.saddr)}]"
        )
    if found.group(6):
        rule.sport_list = port_list_create(found.group(6)[1:])

    dmask = _parse_mask(found.group(9), "Dest")
    if dmask is not None:
        rule.dmask = dmask
    dst = _address_part(found.group(8), found.group(9))
    if dst == "assigned":
        raise UpfError("SDF filter description dest ip do NOT use assigned")
    dst_ip = _parse_ipv4(dst, "dest")
    if not rule.daddr:
        rule.daddr = dst_ip
    elif not _ipv4_match(rule.daddr, dst_ip, rule.dmask):
        raise UpfError(
            f"SDF filter description dest ip[{ipaddress.IPv4Address(dst_ip)}] with "
            f"mask[{ipaddress.IPv4Address(rule.dmask)}] is conflict to "
            f"UE IP[{ipaddress.IPv4Address(rule.daddr)}]"
        )
    if found.group(10):
        rule.dport_list = port_list_create(found.group(10)[1:])


def compile_match_rule(pdr: PDR) -> MatchRule:
    """Compile a PDR into the match rule used to classify packets."""
    if pdr is None:
        raise UpfError("PDR should not be None")

    rule = MatchRule(precedence=pdr.precedence or 0, pdr=pdr)
    pdi = pdr.pdi
    if pdi is None:
        return rule

    if pdi.source_interface is None:
        raise UpfError("Need source interface in PDI to represent UL or DL")
    if pdi.source_interface == SourceInterface.ACCESS:
        uplink = True
    elif pdi.source_interface in (SourceInterface.CORE, SourceInterface.SGI_LAN):
        uplink = False
    elif pdi.source_interface == SourceInterface.CP_FUNCTION:
        raise UpfError("Source interface does NOT support CP-function yet")
    else:
        raise UpfError(
            f"{pdi.source_interface} in Source interface is reserved, it cannot be used"
        )

    ue_ip = pdi.ue_ip_address
    if ue_ip is not None:
        if ue_ip.v6:
            log.warning("Do NOT support IPv6 yet")
        if ue_ip.v4 and ue_ip.ipv4 is not None:
            if uplink:
                rule.saddr, rule.smask = int(ue_ip.ipv4), _ALL_ONES
            else:
                rule.daddr, rule.dmask = int(ue_ip.ipv4), _ALL_ONES

    if pdi.f_teid is not None:
        rule.teid = pdi.f_teid.teid

    sdf = pdi.sdf_filter
    if sdf is not None and sdf.fd and sdf.flow_description:
        _apply_flow_description(rule, sdf.flow_description)

    return rule