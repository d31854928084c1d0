"""Plain DNS over TCP and UDP: framing and connection handling."""

from __future__ import annotations

import asyncio
import logging
import struct
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import dns.exception
import dns.message

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
"""Seconds to wait for a query on an idle TCP connection."""

_MAX_PREFIXED_LEN = 0xFFFF
_LENGTH_PREFIX = struct.Struct("!H")

Handler = Callable[[dns.message.Message, Any], Awaitable[Optional[dns.message.Message]]]


def add_prefix(data: bytes) -> bytes:
    """Return ``data`` preceded by its two-byte big-endian length."""
    if len(data) > _MAX_PREFIXED_LEN:
        raise ValueError(f"message too long: {len(data)} > {_MAX_PREFIXED_LEN}")
    return _LENGTH_PREFIX.pack(len(data)) + data


async def read_prefixed(reader: asyncio.StreamReader) -> bytes:
    """Read one length-prefixed message.

    Raises asyncio.IncompleteReadError if the stream ends early.
    """
    header = await reader.readexactly(_LENGTH_PREFIX.size)
    (length,) = _LENGTH_PREFIX.unpack(header)
    return await reader.readexactly(length)


async def write_prefixed(writer: Any, data: bytes) -> None:
    """Write ``data`` with its length prefix and wait until it is flushed."""
    writer.write(add_prefix(data))
    await writer.drain()


def _log_with_non_crit(err: BaseException, msg: str) -> None:
    if isinstance(
        err, (asyncio.IncompleteReadError, EOFError, BrokenPipeError, ConnectionError)
    ):
        log.debug("%s: connection is closed; original error: %s", msg, err)
    elif isinstance(err, (asyncio.TimeoutError, TimeoutError)):
        log.debug("%s: connection timed out; original error: %s", msg, err)
    else:
        log.error("%s: %s", msg, err)


async def serve_tcp_connection(
    reader: asyncio.StreamReader, writer: Any, handler: Handler
) -> None:
    """Answer length-prefixed queries on one TCP connection until it ends.

    ``handler`` is awaited with each query and the peer address and returns
    the response.  A missing response, an unparsable query, an idle timeout
    or the end of the stream closes the connection.
    """
    peer = writer.get_extra_info("peername")
    log.debug("handling tcp: started handling request from %s", peer)
    try:
        while True:
            try:
                packet = await asyncio.wait_for(read_prefixed(reader), DEFAULT_TIMEOUT)
            except (asyncio.IncompleteReadError, ConnectionError, asyncio.TimeoutError) as err:
                _log_with_non_crit(err, "handling tcp: reading msg")
                break

            try:
                req = dns.message.from_wire(packet, ignore_trailing=True)
            except (dns.exception.DNSException, ValueError) as err:
                log.error("handling tcp: unpacking msg: %s", err)
                return

            try:
                resp = await handler(req, peer)
            except Exception as err:  # noqa: BLE001 - one bad query must not end the loop
                _log_with_non_crit(err, "handling tcp: handling request")
                continue

            if resp is None:
                # No response: close the connection right away.
                return

            try:
                wire = resp.to_wire()
            except (dns.exception.DNSException, ValueError) as err:
                log.error("responding tcp request: packing message: %s", err)
                continue

            try:
                await write_prefixed(writer, wire)
            except ConnectionError as err:
                _log_with_non_crit(err, "responding tcp request")
                break
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError) as err:
            _log_with_non_crit(err, "handling tcp: closing conn")


class UDPServerProtocol(asyncio.DatagramProtocol):
    """Answers DNS queries arriving as UDP datagrams.

    Each datagram is handled in its own task; ``handler`` is awaited with the
    query and the sender's address and returns the response, or None to send
    nothing.
    """

    def __init__(self, handler: Handler) -> None:
        self._handler = handler
        self.transport: Optional[asyncio.DatagramTransport] = None
        self._tasks: set[asyncio.Future] = set()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Any) -> None:
        log.debug("Start handling new UDP packet from %s", addr)
        try:
            req = dns.message.from_wire(data, ignore_trailing=True)
        except (dns.exception.DNSException, ValueError) as err:
            log.error("unpacking udp packet: %s", err)
            return

        task = asyncio.ensure_future(self._handle(req, addr))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def error_received(self, exc: Exception) -> None:
        _log_with_non_crit(exc, "reading from UDP listen")

    async def _handle(self, req: dns.message.Message, addr: Any) -> None:
        try:
            resp = await self._handler(req, addr)
        except Exception as err:  # noqa: BLE001 - log and drop the query
            log.debug("error handling DNS (udp) request: %s", err)
            return

        if resp is None or self.transport is None or self.transport.is_closing():
            return

        try:
            wire = resp.to_wire()
        except (dns.exception.DNSException, ValueError) as err:
            log.error("responding udp request: packing message: %s", err)
            return

        self.transport.sendto(wire, addr)