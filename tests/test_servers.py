import asyncio

import dns.message
import dns.rrset
import pytest

from dnsrelay.servers import (
    UDPServerProtocol,
    add_prefix,
    read_prefixed,
    serve_tcp_connection,
    write_prefixed,
)


def _query():
    return dns.message.make_query("google-public-dns-a.google.com.", "A")


def _answer(req):
    resp = dns.message.make_response(req)
    resp.answer.append(
        dns.rrset.from_text(req.question[0].name, 60, "IN", "A", "8.8.8.8")
    )
    return resp


def _require_response(req, reply):
    assert reply.id == req.id
    assert len(reply.answer) == 1
    assert reply.answer[0][0].address == "8.8.8.8"


class _Writer:
    def __init__(self):
        self.data = b""
        self.drained = 0

    def write(self, data):
        self.data += data

    async def drain(self):
        self.drained += 1


class _UDPClient(asyncio.DatagramProtocol):
    def __init__(self):
        self.queue = asyncio.Queue()

    def datagram_received(self, data, addr):
        self.queue.put_nowait(data)


def test_add_prefix():
    assert add_prefix(b"abc") == b"\x00\x03abc"


def test_add_prefix_too_long():
    with pytest.raises(ValueError):
        add_prefix(b"x" * 0x10000)


@pytest.mark.asyncio
async def test_read_prefixed():
    reader = asyncio.StreamReader()
    reader.feed_data(b"\x00\x02hi\x00\x01z")
    reader.feed_eof()
    assert await read_prefixed(reader) == b"hi"
    assert await read_prefixed(reader) == b"z"
    with pytest.raises(asyncio.IncompleteReadError):
        await read_prefixed(reader)


@pytest.mark.asyncio
async def test_read_prefixed_short_body():
    reader = asyncio.StreamReader()
    reader.feed_data(b"\x00\x05abc")
    reader.feed_eof()
    with pytest.raises(asyncio.IncompleteReadError):
        await read_prefixed(reader)


@pytest.mark.asyncio
async def test_write_prefixed():
    writer = _Writer()
    await write_prefixed(writer, b"abcd")
    assert writer.data == b"\x00\x04abcd"
    assert writer.drained == 1


async def _start_tcp(handler):
    server = await asyncio.start_server(
        lambda r, w: serve_tcp_connection(r, w, handler), "127.0.0.1", 0
    )
    port = server.sockets[0].getsockname()[1]
    return server, port


@pytest.mark.asyncio
async def test_tcp_proxy():
    peers = []

    async def handler(req, addr):
        peers.append(addr)
        return _answer(req)

    server, port = await _start_tcp(handler)
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        for _ in range(10):
            req = _query()
            await write_prefixed(writer, req.to_wire())
            data = await asyncio.wait_for(read_prefixed(reader), 5)
            _require_response(req, dns.message.from_wire(data))
    finally:
        writer.close()
        await writer.wait_closed()
        server.close()
        await server.wait_closed()

    assert len(peers) == 10
    assert peers[0][0] == "127.0.0.1"


@pytest.mark.asyncio
async def test_tcp_no_response_closes_connection():
    async def handler(req, addr):
        return None

    server, port = await _start_tcp(handler)
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        await write_prefixed(writer, _query().to_wire())
        with pytest.raises(asyncio.IncompleteReadError):
            await asyncio.wait_for(read_prefixed(reader), 5)
    finally:
        writer.close()
        await writer.wait_closed()
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_tcp_bad_message_closes_connection():
    calls = []

    async def handler(req, addr):
        calls.append(req)
        return _answer(req)

    server, port = await _start_tcp(handler)
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        await write_prefixed(writer, b"\x01\x02\x03")
        with pytest.raises(asyncio.IncompleteReadError):
            await asyncio.wait_for(read_prefixed(reader), 5)
    finally:
        writer.close()
        await writer.wait_closed()
        server.close()
        await server.wait_closed()

    assert calls == []


async def _start_udp(handler):
    loop = asyncio.get_running_loop()
    server_transport, _ = await loop.create_datagram_endpoint(
        lambda: UDPServerProtocol(handler), local_addr=("127.0.0.1", 0)
    )
    server_addr = server_transport.get_extra_info("sockname")
    client_transport, client = await loop.create_datagram_endpoint(
        _UDPClient, remote_addr=server_addr
    )
    return server_transport, client_transport, client


@pytest.mark.asyncio
async def test_udp_proxy():
    async def handler(req, addr):
        return _answer(req)

    server_transport, client_transport, client = await _start_udp(handler)
    try:
        for _ in range(10):
            req = _query()
            client_transport.sendto(req.to_wire())
            data = await asyncio.wait_for(client.queue.get(), 5)
            _require_response(req, dns.message.from_wire(data))
    finally:
        client_transport.close()
        server_transport.close()


@pytest.mark.asyncio
async def test_udp_no_reply_for_none_or_garbage():
    async def handler(req, addr):
        if req.question[0].name.to_text() == "drop.example.com.":
            return None
        return _answer(req)

    server_transport, client_transport, client = await _start_udp(handler)
    try:
        client_transport.sendto(dns.message.make_query("drop.example.com.", "A").to_wire())
        client_transport.sendto(b"\x01\x02\x03")
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(client.queue.get(), 0.3)

        req = _query()
        client_transport.sendto(req.to_wire())
        data = await asyncio.wait_for(client.queue.get(), 5)
        _require_response(req, dns.message.from_wire(data))
    finally:
        client_transport.close()
        server_transport.close()