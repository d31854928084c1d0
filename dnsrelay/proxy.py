"""The DNS proxy: listeners, request handling and upstream resolution."""

from __future__ import annotations

import asyncio
import ipaddress
import itertools
import logging
import ssl
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import dns.flags
import dns.message
import dns.rdatatype

from dnsrelay.https import pack_doh_response, parse_doh_request, remote_addr
from dnsrelay.messages import (
    DNSContext,
    Proto,
    ensure_question,
    gen_not_impl,
    gen_server_failure,
    set_min_max_ttl,
)
from dnsrelay.ratelimit import IPRateLimiter
from dnsrelay.sema import ChanSemaphore, NoopSemaphore, new_semaphore
from dnsrelay.servers import UDPServerProtocol, serve_tcp_connection
from dnsrelay.upstreams import Upstream, UpstreamConfig

log = logging.getLogger(__name__)

ListenAddr = tuple[str, int]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class UpstreamError(Exception):
    """No upstream returned a response to a query."""


@dataclass
class Config:
    """Settings of a Proxy."""

    udp_listen_addr: list[ListenAddr] = field(default_factory=list)
    tcp_listen_addr: list[ListenAddr] = field(default_factory=list)
    tls_listen_addr: list[ListenAddr] = field(default_factory=list)
    tls_config: Optional[ssl.SSLContext] = None

    upstream_config: UpstreamConfig = field(default_factory=UpstreamConfig)
    fallbacks: list[Upstream] = field(default_factory=list)

    ratelimit: int = 0
    ratelimit_whitelist: list[str] = field(default_factory=list)
    refuse_any: bool = False

    cache_min_ttl: int = 0
    cache_max_ttl: int = 0

    max_goroutines: int = 0
    trusted_proxies: list[str] = field(default_factory=list)

    before_request_handler: Optional[Callable[[Proxy, DNSContext], bool]] = None
    request_handler: Optional[Callable[[Proxy, DNSContext], None]] = None
    response_handler: Optional[
        Callable[[DNSContext, Optional[BaseException]], None]
    ] = None


class Proxy:
    """A DNS proxy forwarding queries from its listeners to upstream servers."""

    def __init__(self, config: Optional[Config] = None) -> None:
        self.config = config if config is not None else Config()
        self._counter = itertools.count(1)
        self._counter_lock = threading.Lock()
        self._started = False
        self._udp_listen: list[asyncio.DatagramTransport] = []
        self._tcp_listen: list[asyncio.AbstractServer] = []
        self._tls_listen: list[asyncio.AbstractServer] = []
        self._tcp_conns: set[Any] = set()
        self._sema: Union[NoopSemaphore, ChanSemaphore] = NoopSemaphore()
        self._ratelimiter = IPRateLimiter(0)
        self._trusted: list[IPNetwork] = []
        self._init()

    def _init(self) -> None:
        cfg = self.config
        if cfg.max_goroutines > 0:
            log.info("MaxGoroutines is set to %d", cfg.max_goroutines)
        self._sema = new_semaphore(cfg.max_goroutines)
        self._ratelimiter = IPRateLimiter(cfg.ratelimit, cfg.ratelimit_whitelist)
        try:
            self._trusted = [
                ipaddress.ip_network(subnet, strict=False)
                for subnet in cfg.trusted_proxies
            ]
        except ValueError as err:
            raise ValueError(
                f"initializing subnet detector for proxies verifying: {err}"
            ) from err

    def _validate(self) -> None:
        if self.config.tls_listen_addr and self.config.tls_config is None:
            raise ValueError("cannot listen for TLS without a TLS configuration")

    @property
    def started(self) -> bool:
        """Whether the proxy is listening."""
        return self._started

    async def start(self) -> None:
        """Initialize the proxy and start all configured listeners."""
        if self._started:
            raise RuntimeError("the DNS proxy server is already started")

        log.info("Starting the DNS proxy server")
        self._validate()
        self._init()

        cfg = self.config
        loop = asyncio.get_running_loop()
        try:
            udp_handler = self._dns_handler(Proto.UDP)
            for host, port in cfg.udp_listen_addr:
                transport, _ = await loop.create_datagram_endpoint(
                    lambda: UDPServerProtocol(udp_handler), local_addr=(host, port)
                )
                self._udp_listen.append(transport)
                log.info("Listening to udp://%s", transport.get_extra_info("sockname"))

            for host, port in cfg.tcp_listen_addr:
                server = await asyncio.start_server(
                    self._tcp_client_handler(Proto.TCP), host, port
                )
                self._tcp_listen.append(server)
                log.info("Listening to tcp://%s:%d", host, port)

            for host, port in cfg.tls_listen_addr:
                server = await asyncio.start_server(
                    self._tcp_client_handler(Proto.TLS), host, port, ssl=cfg.tls_config
                )
                self._tls_listen.append(server)
                log.info("Listening to tls://%s:%d", host, port)
        except BaseException:
            await self._close_all()
            raise

        self._started = True

    async def stop(self) -> None:
        """Stop all listeners; does nothing if the proxy is not started."""
        log.info("Stopping the DNS proxy server")
        if not self._started:
            log.info("The DNS proxy server is not started")
            return

        errors = await self._close_all()
        self._started = False
        log.info("Stopped the DNS proxy server")
        if errors:
            joined = "; ".join(str(err) for err in errors)
            raise OSError(f"stopping dns proxy server: {joined}")

    async def _close_all(self) -> list[BaseException]:
        errors: list[BaseException] = []
        for transport in self._udp_listen:
            transport.close()

        servers = self._tcp_listen + self._tls_listen
        for server in servers:
            server.close()
        for writer in list(self._tcp_conns):
            writer.close()
        for server in servers:
            try:
                await server.wait_closed()
            except OSError as err:
                errors.append(err)

        self._udp_listen = []
        self._tcp_listen = []
        self._tls_listen = []
        return errors

    def _dns_handler(self, proto: Proto):
        sema = self._sema

        async def handle(req: dns.message.Message, addr: Any):
            ctx = self.new_context(proto, req)
            ctx.addr = addr
            return await asyncio.to_thread(self._handle_bounded, sema, ctx)

        return handle

    def _handle_bounded(self, sema, ctx: DNSContext) -> Optional[dns.message.Message]:
        with sema:
            return self.handle_dns_request(ctx)

    def _tcp_client_handler(self, proto: Proto):
        handler = self._dns_handler(proto)

        async def on_client(reader: asyncio.StreamReader, writer: Any) -> None:
            self._tcp_conns.add(writer)
            try:
                await serve_tcp_connection(reader, writer, handler)
            finally:
                self._tcp_conns.discard(writer)

        return on_client

    def addrs(self, proto: Union[Proto, str]) -> list[ListenAddr]:
        """Return every listen address for ``proto``.

        Raises ValueError for an unknown protocol.
        """
        proto = Proto(proto)
        if proto is Proto.UDP:
            return [t.get_extra_info("sockname")[:2] for t in self._udp_listen]
        if proto is Proto.TCP:
            servers = self._tcp_listen
        elif proto is Proto.TLS:
            servers = self._tls_listen
        else:
            return []
        return [
            sock.getsockname()[:2] for server in servers for sock in server.sockets
        ]

    def addr(self, proto: Union[Proto, str]) -> Optional[ListenAddr]:
        """Return the first listen address for ``proto``, or None."""
        addrs = self.addrs(proto)
        return addrs[0] if addrs else None

    def new_context(
        self, proto: Union[Proto, str], req: dns.message.Message
    ) -> DNSContext:
        """Return a new context for ``req`` with the next request ID."""
        with self._counter_lock:
            request_id = next(self._counter)
        return DNSContext(
            proto=Proto(proto), req=req, start_time=time.time(), request_id=request_id
        )

    @staticmethod
    def _exchange(
        req: dns.message.Message, upstreams: Sequence[Upstream]
    ) -> tuple[dns.message.Message, Upstream]:
        if not upstreams:
            raise UpstreamError("no upstream specified")

        failures: list[str] = []
        for upstream in upstreams:
            try:
                reply = upstream.exchange(req)
            except Exception as err:  # noqa: BLE001 - try the next upstream
                failures.append(f"{upstream.address()}: {err}")
                continue
            if reply is None:
                failures.append(f"{upstream.address()}: no response")
                continue
            return reply, upstream

        raise UpstreamError("all upstreams failed to respond: " + "; ".join(failures))

    def _upstreams_for(self, ctx: DNSContext) -> list[Upstream]:
        host = ctx.req.question[0].name.to_text()
        upstreams = None
        if ctx.custom_upstream_config is not None:
            upstreams = ctx.custom_upstream_config.upstreams_for_domain(host)
        if not upstreams:
            upstreams = self.config.upstream_config.upstreams_for_domain(host)
        return upstreams

    def resolve(self, ctx: DNSContext) -> None:
        """Resolve ``ctx.req`` with the upstreams and store the reply in ``ctx.res``.

        On failure ``ctx.res`` is a SERVFAIL reply and UpstreamError is raised
        after the response handler has run.
        """
        req = ctx.req
        if not req.question:
            raise ValueError("request has no question")

        start = time.monotonic()
        error: Optional[UpstreamError] = None
        reply: Optional[dns.message.Message] = None
        used: Optional[Upstream] = None
        try:
            reply, used = self._exchange(req, self._upstreams_for(ctx))
        except UpstreamError as err:
            error = err
        log.debug("RTT: %.3fs", time.monotonic() - start)

        if error is not None and self.config.fallbacks:
            log.debug("using the fallback upstream due to %s", error)
            try:
                reply, used = self._exchange(req, self.config.fallbacks)
                error = None
            except UpstreamError as err:
                error = err

        if reply is not None:
            ctx.upstream = used
            set_min_max_ttl(reply, self.config.cache_min_ttl, self.config.cache_max_ttl)
            # Some upstreams answer without the question section.
            ensure_question(reply, req)
        else:
            reply = gen_server_failure(req)
            ctx.has_edns0 = False
        ctx.res = reply

        if self.config.response_handler is not None:
            self.config.response_handler(ctx, error)

        if error is not None:
            raise error

    def handle_dns_request(self, ctx: DNSContext) -> Optional[dns.message.Message]:
        """Process the query in ``ctx`` and return the response to send, if any."""
        ctx.start_time = time.time()
        cfg = self.config
        req = ctx.req

        if req.flags & dns.flags.QR:
            log.debug("Dropping incoming Reply packet from %s", ctx.addr)
            return None

        if cfg.before_request_handler is not None:
            try:
                ok = cfg.before_request_handler(self, ctx)
            except Exception as err:  # noqa: BLE001 - answer with SERVFAIL
                log.error("Error in the BeforeRequestHandler: %s", err)
                ctx.res = gen_server_failure(req)
                return ctx.res
            if not ok:
                return None

        # Rate limiting by IP only protects CPU cycles and outbound connections.
        if ctx.proto is Proto.UDP and self._ratelimiter.is_ratelimited(ctx.addr):
            log.debug("Ratelimiting %s based on IP only", ctx.addr)
            return None

        if len(req.question) != 1:
            log.debug("got invalid number of questions: %d", len(req.question))
            ctx.res = gen_server_failure(req)

        if (
            cfg.refuse_any
            and req.question
            and req.question[0].rdtype == dns.rdatatype.ANY
        ):
            log.debug("Refusing type=ANY request")
            ctx.res = gen_not_impl(req)

        if ctx.res is None:
            if not cfg.upstream_config.upstreams:
                raise RuntimeError("no default upstreams specified")
            try:
                if cfg.request_handler is not None:
                    cfg.request_handler(self, ctx)
                else:
                    self.resolve(ctx)
            except Exception as err:  # noqa: BLE001 - the reply is already set
                log.debug("talking to dns upstream: %s", err)

        return ctx.res

    def _is_trusted(self, ip: Any) -> bool:
        return any(ip in network for network in self._trusted)

    def handle_doh_request(
        self,
        method: str,
        query: str,
        headers: Optional[Mapping[str, Any]],
        body: Optional[bytes],
        remote: str,
    ) -> tuple[dict[str, str], bytes]:
        """Answer a DoH request and return the response headers and body.

        Raises DoHError with the HTTP status to send when the request is
        malformed or no response was produced.
        """
        content_type = None
        for name, value in (headers or {}).items():
            if str(name).lower() == "content-type":
                content_type = str(value)
                break

        req = parse_doh_request(method, query, content_type, body)

        addr = prx = None
        try:
            addr, prx = remote_addr(remote, headers, False)
        except ValueError as err:
            log.debug("warning: getting real ip: %s", err)

        ctx = self.new_context(Proto.HTTPS, req)
        ctx.addr = addr
        ctx.http_request = {
            "method": method,
            "query": query,
            "headers": dict(headers or {}),
        }

        if prx is not None:
            log.debug("request came from proxy server %s", prx)
            if not self._is_trusted(prx.host):
                log.debug("proxy %s is not trusted, using original remote addr", prx.host)
                ctx.addr = prx

        return pack_doh_response(self.handle_dns_request(ctx))