import struct

import pytest

from upfcore.gtp import (
    GtpType,
    build_echo_response,
    build_tpdu,
    check_echo_response,
    iter_buffered_packets,
)
from upfcore.pdr import UpfError


def _echo_request(flags=0x30, opt=b""):
    return struct.pack("!BBHI", flags, GtpType.ECHO_REQUEST, len(opt), 0) + opt


def test_echo_response_without_optional_header():
    response = build_echo_response(_echo_request())
    assert response == b"\x30\x02\x00\x02\x00\x00\x00\x00\x0e\x00"


def test_echo_response_increments_sequence():
    request = _echo_request(flags=0x32, opt=struct.pack("!HBB", 5, 9, 0))
    response = build_echo_response(request)
    flags, msg_type, length, teid = struct.unpack_from("!BBHI", response)
    seq, npdu, nxt = struct.unpack_from("!HBB", response, 8)
    assert (flags, msg_type, teid) == (0x32, GtpType.ECHO_RESPONSE, 0)
    assert length == len(response) - 8
    assert (seq, npdu, nxt) == (6, 0, 0)
    assert response[-2:] == b"\x0e\x00"


def test_echo_response_keeps_npdu_and_wraps_sequence():
    request = _echo_request(flags=0x33, opt=struct.pack("!HBB", 0xFFFF, 9, 0))
    response = build_echo_response(request)
    seq, npdu, _ = struct.unpack_from("!HBB", response, 8)
    assert seq == 0
    assert npdu == 9


def test_echo_response_rejects_other_types():
    with pytest.raises(UpfError):
        build_echo_response(build_tpdu(1, b"x"))


def test_echo_response_rejects_short_data():
    with pytest.raises(UpfError):
        build_echo_response(b"\x30\x01")
    with pytest.raises(UpfError):
        build_echo_response(_echo_request(flags=0x32))


def test_check_echo_response_round_trip():
    assert check_echo_response(build_echo_response(_echo_request())) is True


def test_check_echo_response_rejects_request():
    with pytest.raises(UpfError):
        check_echo_response(_echo_request())


def test_build_tpdu_header():
    payload = b"\x45\x00hello"
    packet = build_tpdu(0x01020304, payload)
    flags, msg_type, length, teid = struct.unpack_from("!BBHI", packet)
    assert (flags, msg_type, length, teid) == (0x30, 255, len(payload), 0x01020304)
    assert packet[8:] == payload


def test_build_tpdu_rejects_bad_input():
    with pytest.raises(UpfError):
        build_tpdu(-1, b"")
    with pytest.raises(UpfError):
        build_tpdu(1, bytes(0x10000))


def test_iter_buffered_packets_round_trip():
    packets = [b"first", b"", b"third packet"]
    buffer = b"".join(struct.pack("!H", len(p)) + p for p in packets)
    assert list(iter_buffered_packets(buffer)) == packets


def test_iter_buffered_packets_empty():
    assert list(iter_buffered_packets(b"")) == []


@pytest.mark.parametrize("buffer", [b"\x00", b"\x00\x05abc"])
def test_iter_buffered_packets_truncated(buffer):
    with pytest.raises(UpfError):
        list(iter_buffered_packets(buffer))