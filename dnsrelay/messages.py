"""DNS request context and helpers that build and adjust DNS messages."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import dns.flags
import dns.message
import dns.opcode
import dns.rcode
import dns.rrset

DEFAULT_UDP_BUF_SIZE = 2048
"""UDP payload size advertised in EDNS0 records added to queries."""

NOT_IMPL_UDP_BUF_SIZE = 1452
"""UDP payload size advertised in NOTIMP responses."""


class Proto(str, enum.Enum):
    """The protocol a DNS query arrived over."""

    UDP = "udp"
    TCP = "tcp"
    TLS = "tls"
    HTTPS = "https"
    QUIC = "quic"
    DNSCRYPT = "dnscrypt"

    def __str__(self) -> str:
        return self.value


@dataclass
class DNSContext:
    """Everything known about one DNS query while it is being handled."""

    proto: Proto
    req: dns.message.Message
    res: Optional[dns.message.Message] = None
    addr: Any = None
    start_time: float = field(default_factory=time.time)
    request_id: int = 0
    upstream: Any = None
    custom_upstream_config: Any = None
    cached_upstream_addr: str = ""
    req_ecs: Any = None
    local_ip: Any = None
    doq_version: Any = None
    http_request: Any = None
    has_edns0: bool = False
    ad_bit: bool = False
    do_bit: bool = False


def _first_question(request: dns.message.Message) -> list[dns.rrset.RRset]:
    if not request.question:
        return []
    q = request.question[0]
    return [dns.rrset.RRset(q.name, q.rdclass, q.rdtype)]


def gen_with_rcode(request: dns.message.Message, rcode: int) -> dns.message.Message:
    """Return a reply to ``request`` carrying ``rcode`` with recursion available.

    The reply keeps the request's ID and opcode and only its first question;
    for standard queries it also keeps the RD and CD bits.  No EDNS0 record
    is added.
    """
    resp = dns.message.Message(id=request.id)
    opcode = request.opcode()
    flags = dns.flags.QR
    if opcode == dns.opcode.QUERY:
        flags |= request.flags & (dns.flags.RD | dns.flags.CD)
    resp.flags = flags
    resp.set_opcode(opcode)
    resp.question = _first_question(request)
    resp.set_rcode(rcode)
    resp.flags |= dns.flags.RA
    return resp


def gen_server_failure(request: dns.message.Message) -> dns.message.Message:
    """Return a SERVFAIL reply to ``request``."""
    return gen_with_rcode(request, dns.rcode.SERVFAIL)


def gen_not_impl(request: dns.message.Message) -> dns.message.Message:
    """Return a NOTIMP reply to ``request``.

    The reply carries EDNS0 explicitly, since NOTIMP without it reads as
    "EDNS is not supported".
    """
    resp = gen_with_rcode(request, dns.rcode.NOTIMP)
    resp.use_edns(0, 0, NOT_IMPL_UDP_BUF_SIZE)
    return resp


def add_do(msg: dns.message.Message) -> None:
    """Set the DNSSEC OK bit of ``msg``, adding an EDNS0 record if it has none."""
    if msg.edns >= 0:
        if not msg.ednsflags & dns.flags.DO:
            msg.use_edns(
                msg.edns,
                msg.ednsflags | dns.flags.DO,
                msg.payload,
                options=list(msg.options),
            )
        return

    msg.use_edns(0, dns.flags.DO, DEFAULT_UDP_BUF_SIZE)


def respect_ttl_overrides(ttl: int, min_ttl: int, max_ttl: int) -> int:
    """Clamp ``ttl`` to ``min_ttl`` and, when non-zero, ``max_ttl``."""
    if ttl < min_ttl:
        return min_ttl
    if max_ttl and ttl > max_ttl:
        return max_ttl
    return ttl


def set_min_max_ttl(msg: dns.message.Message, min_ttl: int, max_ttl: int) -> None:
    """Clamp the TTL of every answer record in ``msg``; a ``max_ttl`` of 0 means no cap."""
    for rrset in msg.answer:
        new_ttl = respect_ttl_overrides(rrset.ttl, min_ttl, max_ttl)
        if new_ttl != rrset.ttl:
            rrset.ttl = new_ttl


def ensure_question(
    reply: dns.message.Message, request: dns.message.Message
) -> dns.message.Message:
    """Give ``reply`` the request's first question if it came back without one."""
    if request.question and not reply.question:
        reply.question = _first_question(request)
    return reply