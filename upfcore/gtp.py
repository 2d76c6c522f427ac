"""GTPv1-U message building and checking for the user plane path."""

from __future__ import annotations

import struct
from collections.abc import Iterator
from enum import IntEnum

from upfcore.pdr import UpfError

HEADER_LEN = 8
OPT_HEADER_LEN = 4
_RECOVERY_IE_TYPE = 14
_HEADER = struct.Struct("!BBHI")
_OPT_HEADER = struct.Struct("!HBB")
_LENGTH_PREFIX = struct.Struct("!H")


class GtpType(IntEnum):
    """GTPv1 message types handled by the user plane."""

    ECHO_REQUEST = 1
    ECHO_RESPONSE = 2
    ERROR_INDICATION = 26
    END_MARK = 254
    T_PDU = 255


def _header(data: bytes) -> tuple[int, int, int, int]:
    if len(data) < HEADER_LEN:
        raise UpfError("GTP data is too short")
    return _HEADER.unpack_from(data)


def build_echo_response(data: bytes) -> bytes:
    """Build the Echo Response answering the Echo Request in ``data``."""
    flags, msg_type, _, _ = _header(data)
    if msg_type != GtpType.ECHO_REQUEST:
        raise UpfError("The type of GTP data is not 'Echo Request'")

    resp_flags = 0x30 + (flags & 0x03)
    body = bytearray()
    if resp_flags & 0x03:
        if len(data) < HEADER_LEN + OPT_HEADER_LEN:
            raise UpfError("GTP optional header is missing")
        seq, npdu, _ = _OPT_HEADER.unpack_from(data, HEADER_LEN)
        seq = ((seq + 1) & 0xFFFF) if resp_flags & 0x02 else 0
        npdu = npdu if resp_flags & 0x01 else 0
        body += _OPT_HEADER.pack(seq, npdu, 0)

    body += bytes((_RECOVERY_IE_TYPE, 0))
    return _HEADER.pack(resp_flags, GtpType.ECHO_RESPONSE, len(body), 0) + bytes(body)


def check_echo_response(data: bytes) -> bool:
    """Accept an Echo Response; its restart counter is ignored."""
    _, msg_type, _, _ = _header(data)
    if msg_type != GtpType.ECHO_RESPONSE:
        raise UpfError("The type of GTP data is not 'Echo Response'")
    return True


def build_tpdu(teid: int, payload: bytes) -> bytes:
    """Wrap ``payload`` in a GTPv1-U T-PDU header for tunnel ``teid``."""
    if not 0 <= teid <= 0xFFFFFFFF:
        raise UpfError(f"TEID {teid} is out of range")
    if len(payload) > 0xFFFF:
        raise UpfError("Payload is too long for a GTP-U packet")
    return _HEADER.pack(0x30, GtpType.T_PDU, len(payload), teid) + bytes(payload)


def iter_buffered_packets(buffer: bytes) -> Iterator[bytes]:
    """Yield the packets of a buffer where each is preceded by its two-octet length."""
    view = memoryview(bytes(buffer))
    pos = 0
    while pos < len(view):
        if pos + _LENGTH_PREFIX.size > len(view):
            raise UpfError("Buffered packet length is truncated")
        (length,) = _LENGTH_PREFIX.unpack_from(view, pos)
        pos += _LENGTH_PREFIX.size
        if pos + length > len(view):
            raise UpfError("Buffered packet is truncated")
        yield bytes(view[pos:pos + length])
        pos += length