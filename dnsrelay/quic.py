"""DNS-over-QUIC message framing, validation and address validation."""

from __future__ import annotations

import enum
import ipaddress
import struct
import threading
from typing import Any

import dns.exception
import dns.message
from cachetools import TTLCache

NEXT_PROTO_DQ = "doq"
"""The ALPN token for DoQ."""

COMPAT_PROTO_DQ = (NEXT_PROTO_DQ, "doq-i02", "doq-i00", "dq")
"""ALPN tokens accepted on a QUIC connection, the final one and older drafts."""

MAX_QUIC_IDLE_TIMEOUT = 5 * 60.0
"""Maximum QUIC idle timeout, in seconds."""

QUIC_ADDR_VALIDATOR_CACHE_SIZE = 1000
"""Size of the cache of addresses that need no validation."""

QUIC_ADDR_VALIDATOR_CACHE_TTL = 30 * 60.0
"""Lifetime of an entry in the address validator cache, in seconds."""

MAX_INCOMING_STREAMS = 0xFFFF
"""Maximum number of incoming streams on a connection."""

MIN_DNS_PACKET_SIZE = 12 + 5
"""The smallest packet that can hold a DNS query."""

_EDNS0_TCP_KEEPALIVE = 11
_LENGTH_PREFIX = struct.Struct("!H")


class DoQVersion(enum.Enum):
    """How DNS messages are framed on a DoQ stream."""

    V1 = "doq"
    """RFC 9250: messages carry a two-byte length prefix."""
    V1_DRAFT = "doq-draft"
    """Old drafts: messages are sent without a prefix."""


class DoQErrorCode(enum.IntEnum):
    """Application error codes used to close DoQ connections."""

    NO_ERROR = 0
    INTERNAL_ERROR = 1
    PROTOCOL_ERROR = 2


class QuicProtocolError(Exception):
    """A DoQ error after which the connection must be closed with ``code``."""

    def __init__(
        self, message: str, code: DoQErrorCode = DoQErrorCode.PROTOCOL_ERROR
    ) -> None:
        super().__init__(message)
        self.code = code


def validate_quic_message(msg: dns.message.Message) -> bool:
    """Return False if ``msg`` breaks the DoQ rules that can be checked here.

    A message carrying the edns-tcp-keepalive EDNS(0) option is a protocol
    error.  Non-zero message IDs are consciously allowed.
    """
    if msg.edns < 0:
        return True
    return all(int(option.otype) != _EDNS0_TCP_KEEPALIVE for option in msg.options)


def decode_quic_query(data: bytes) -> tuple[dns.message.Message, DoQVersion]:
    """Parse a query read from a DoQ stream.

    A message whose first two bytes equal the length of the rest is taken as
    RFC 9250 framing; anything else as an unprefixed draft message.  Raises
    ValueError if the data is too short to be a query, and QuicProtocolError
    if it cannot be parsed or is not allowed over DoQ.
    """
    if len(data) < MIN_DNS_PACKET_SIZE:
        raise ValueError("quic packet too short for dns query")

    (packet_len,) = _LENGTH_PREFIX.unpack_from(data)
    if packet_len == len(data) - 2:
        version = DoQVersion.V1
        wire = data[2:]
    else:
        version = DoQVersion.V1_DRAFT
        wire = data

    try:
        msg = dns.message.from_wire(wire, ignore_trailing=True)
    except (dns.exception.DNSException, ValueError) as err:
        raise QuicProtocolError(f"unpacking quic packet: {err}") from err

    if not validate_quic_message(msg):
        raise QuicProtocolError("client sent EDNS0 TCP keepalive option")

    return msg, version


def encode_quic_response(
    message: dns.message.Message | None, version: DoQVersion
) -> bytes:
    """Return the bytes to write to a DoQ stream for ``message``.

    A missing response is an internal error that closes the connection.
    """
    if message is None:
        raise QuicProtocolError("no response to write", DoQErrorCode.INTERNAL_ERROR)
    if not isinstance(version, DoQVersion):
        raise ValueError(f"invalid protocol version: {version}")

    try:
        wire = message.to_wire()
    except (dns.exception.DNSException, ValueError) as err:
        raise ValueError(f"couldn't convert message into wire format: {err}") from err

    if version is DoQVersion.V1:
        return _LENGTH_PREFIX.pack(len(wire)) + wire
    return wire


def _addr_key(addr: Any) -> str:
    if isinstance(addr, (tuple, list)) and len(addr) >= 2:
        host, port = addr[0], addr[1]
        try:
            is_v6 = ipaddress.ip_address(str(host)).version == 6
        except ValueError:
            is_v6 = ":" in str(host)
        return f"[{host}]:{port}" if is_v6 else f"{host}:{port}"
    return str(addr)


class QuicAddrValidator:
    """Remembers recently validated client addresses in a small LRU cache.

    Addresses seen within ``ttl`` seconds need no QUIC Retry validation.
    """

    def __init__(self, cache_size: int, ttl: float) -> None:
        self._cache: TTLCache = TTLCache(maxsize=cache_size, ttl=ttl)
        self._lock = threading.Lock()

    def requires_validation(self, addr: Any) -> bool:
        """Return True if the server should validate ``addr`` with a Retry."""
        key = _addr_key(addr)
        with self._lock:
            if key in self._cache:
                return False
            self._cache[key] = True
            return True