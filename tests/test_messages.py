import dns.flags
import dns.message
import dns.opcode
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset
import pytest

from dnsrelay.messages import (
    DNSContext,
    Proto,
    add_do,
    ensure_question,
    gen_not_impl,
    gen_server_failure,
    gen_with_rcode,
    set_min_max_ttl,
)


def make_query(host="google-public-dns-a.google.com.", rdtype="A"):
    return dns.message.make_query(host, rdtype, use_edns=False)


def make_reply_with_ttl(req, ttl):
    resp = dns.message.make_response(req)
    resp.answer.append(
        dns.rrset.from_text(req.question[0].name, ttl, "IN", "A", "4.3.2.1")
    )
    return resp


def test_proto_values():
    assert [p.value for p in Proto] == ["udp", "tcp", "tls", "https", "quic", "dnscrypt"]
    assert Proto("https") is Proto.HTTPS
    assert str(Proto.QUIC) == "quic"


def test_dns_context_defaults():
    req = make_query()
    ctx = DNSContext(Proto.UDP, req)
    assert ctx.req is req
    assert ctx.res is None
    assert ctx.custom_upstream_config is None
    assert ctx.cached_upstream_addr == ""
    assert ctx.start_time > 0


def test_server_failure_reply():
    req = make_query()
    resp = gen_server_failure(req)
    assert resp.rcode() == dns.rcode.SERVFAIL
    assert resp.id == req.id
    assert resp.flags & dns.flags.QR
    assert resp.flags & dns.flags.RA
    assert resp.flags & dns.flags.RD
    assert resp.question == req.question
    assert resp.edns == -1
    assert resp.answer == []


def test_reply_keeps_only_first_question():
    req = make_query()
    req.question.append(
        dns.rrset.RRset(
            dns.name.from_text("example.com."), dns.rdataclass.IN, dns.rdatatype.AAAA
        )
    )
    resp = gen_with_rcode(req, dns.rcode.NXDOMAIN)
    assert resp.rcode() == dns.rcode.NXDOMAIN
    assert len(resp.question) == 1
    assert resp.question[0] == req.question[0]


def test_reply_to_request_without_question():
    req = make_query()
    req.question = []
    resp = gen_server_failure(req)
    assert resp.question == []
    assert resp.rcode() == dns.rcode.SERVFAIL


def test_reply_round_trips_through_wire():
    req = make_query()
    resp = gen_server_failure(req)
    parsed = dns.message.from_wire(resp.to_wire())
    assert parsed.id == req.id
    assert parsed.rcode() == dns.rcode.SERVFAIL
    assert parsed.question == req.question


def test_not_impl_reply_has_edns():
    req = make_query("google.com.", "ANY")
    resp = gen_not_impl(req)
    assert resp.rcode() == dns.rcode.NOTIMP
    assert resp.edns == 0
    assert resp.payload == 1452
    assert not resp.ednsflags & dns.flags.DO
    assert resp.flags & dns.flags.RA


def test_add_do_without_edns():
    req = make_query()
    add_do(req)
    assert req.edns == 0
    assert req.ednsflags & dns.flags.DO
    assert req.payload == 2048


def test_add_do_keeps_existing_payload():
    req = make_query()
    req.use_edns(0, 0, 512)
    add_do(req)
    assert req.ednsflags & dns.flags.DO
    assert req.payload == 512


def test_add_do_is_idempotent():
    req = make_query()
    add_do(req)
    wire = req.to_wire()
    add_do(req)
    assert req.to_wire() == wire


@pytest.mark.parametrize(
    ("ttl", "expected"),
    [(10, 20), (60, 40), (30, 30)],
)
def test_set_min_max_ttl(ttl, expected):
    req = make_query("host.")
    resp = make_reply_with_ttl(req, ttl)
    set_min_max_ttl(resp, 20, 40)
    assert resp.answer[0].ttl == expected


def test_set_min_max_ttl_without_cap():
    req = make_query("host.")
    resp = make_reply_with_ttl(req, 100000)
    set_min_max_ttl(resp, 0, 0)
    assert resp.answer[0].ttl == 100000


def test_ensure_question_fills_missing_question():
    req = make_query("host.")
    resp = make_reply_with_ttl(req, 60)
    resp.question = []
    result = ensure_question(resp, req)
    assert result is resp
    assert resp.question[0] == req.question[0]
    assert len(resp.answer) == 1


def test_ensure_question_keeps_existing_question():
    req = make_query("host.")
    resp = make_reply_with_ttl(req, 60)
    other = make_query("other.example.com.")
    ensure_question(resp, other)
    assert resp.question == req.question