import struct
import time

import dns.edns
import dns.flags
import dns.message
import dns.rdatatype
import dns.rcode
import pytest

from dnsrelay.quic import (
    DoQErrorCode,
    DoQVersion,
    QuicAddrValidator,
    QuicProtocolError,
    decode_quic_query,
    encode_quic_response,
    validate_quic_message,
)

TEST_HOST = "google-public-dns-a.google.com."


def make_query(host: str = TEST_HOST) -> dns.message.Message:
    msg = dns.message.make_query(host, dns.rdatatype.A)
    msg.id = 0x1234
    msg.flags |= dns.flags.RD
    return msg


@pytest.mark.parametrize("version", [DoQVersion.V1, DoQVersion.V1_DRAFT])
def test_query_round_trip_for_each_version(version):
    query = make_query()
    wire = query.to_wire()
    data = struct.pack("!H", len(wire)) + wire if version is DoQVersion.V1 else wire

    msg, got_version = decode_quic_query(data)

    assert got_version is version
    assert msg.id == query.id
    assert msg.question[0].name.to_text() == TEST_HOST
    assert msg.question[0].rdtype == dns.rdatatype.A


def test_repeated_messages_in_both_framings():
    for _ in range(10):
        for version in (DoQVersion.V1, DoQVersion.V1_DRAFT):
            query = make_query()
            data = encode_quic_response(query, version)
            msg, got = decode_quic_query(data)
            assert got is version
            assert msg == query


def test_encode_v1_has_length_prefix():
    reply = dns.message.make_response(make_query())
    wire = reply.to_wire()

    data = encode_quic_response(reply, DoQVersion.V1)

    assert data[:2] == struct.pack("!H", len(wire))
    assert data[2:] == wire


def test_encode_draft_is_raw():
    reply = dns.message.make_response(make_query())
    assert encode_quic_response(reply, DoQVersion.V1_DRAFT) == reply.to_wire()


def test_encoded_response_is_longer_than_min_packet():
    reply = dns.message.make_response(make_query())
    data = encode_quic_response(reply, DoQVersion.V1)
    parsed = dns.message.from_wire(data[2:])
    assert len(data) > 17
    assert parsed.id == 0x1234


def test_encode_missing_response_is_internal_error():
    with pytest.raises(QuicProtocolError) as info:
        encode_quic_response(None, DoQVersion.V1)
    assert info.value.code is DoQErrorCode.INTERNAL_ERROR


def test_encode_invalid_version():
    with pytest.raises(ValueError, match="invalid protocol version"):
        encode_quic_response(make_query(), 7)


def test_decode_short_packet():
    with pytest.raises(ValueError, match="too short"):
        decode_quic_query(b"\x00" * 16)


def test_decode_garbage_is_protocol_error():
    garbage = b"\x00\x01" + b"\xff" * 30
    with pytest.raises(QuicProtocolError) as info:
        decode_quic_query(garbage)
    assert info.value.code is DoQErrorCode.PROTOCOL_ERROR


def test_keepalive_option_is_rejected():
    query = make_query()
    query.use_edns(edns=0, options=[dns.edns.GenericOption(11, b"")])
    assert validate_quic_message(query) is False

    with pytest.raises(QuicProtocolError) as info:
        decode_quic_query(encode_quic_response(query, DoQVersion.V1))
    assert info.value.code is DoQErrorCode.PROTOCOL_ERROR


def test_plain_and_edns_messages_are_valid():
    query = make_query()
    assert validate_quic_message(query) is True
    query.use_edns(edns=0, payload=1232)
    assert validate_quic_message(query) is True


def test_addr_validator_first_seen_requires_validation():
    validator = QuicAddrValidator(10, 60.0)
    addr = ("127.0.0.1", 5353)

    assert validator.requires_validation(addr) is True
    assert validator.requires_validation(addr) is False
    assert validator.requires_validation(("127.0.0.1", 5354)) is True


def test_addr_validator_lru_eviction():
    validator = QuicAddrValidator(1, 60.0)
    first, second = ("10.0.0.1", 1), ("10.0.0.2", 1)

    assert validator.requires_validation(first) is True
    assert validator.requires_validation(second) is True
    assert validator.requires_validation(first) is True


def test_addr_validator_expiry():
    validator = QuicAddrValidator(10, 0.05)
    addr = ("::1", 853)

    assert validator.requires_validation(addr) is True
    assert validator.requires_validation(addr) is False
    time.sleep(0.1)
    assert validator.requires_validation(addr) is True