# dnsrelay

`dnsrelay` is a library for building a forwarding DNS proxy. It listens for
DNS queries over plain UDP, TCP and DNS-over-TLS with `asyncio`, and passes
each query to upstream resolvers that are chosen by the domain being asked
for. It also has the message-level pieces needed to answer DNS-over-HTTPS
and DNS-over-QUIC clients.

It is a library only: there is no command to run.

## Upstreams

An upstream is any subclass of `dnsrelay.upstreams.Upstream` that implements
two methods:

- `exchange(msg)` takes a `dns.message.Message` and returns the reply (or
  raises, or returns `None`, when it cannot answer);
- `address()` returns the server's address as a string.

The package does not ship any upstream implementations; you supply them.

## Upstream configuration

Each line of an upstream configuration is either a plain upstream address or
an address reserved for a list of domains:

```
1.1.1.1                       default upstream
[/example.org/]9.9.9.9        example.org and its subdomains
[/*.example.org/]8.8.8.8      only the subdomains of example.org
[/www.example.org/]#          www.example.org goes back to the defaults
[//]192.168.1.1               names with fewer than two dots
```

`parse_upstreams_config(lines, factory)` in `dnsrelay.upstreams` turns such
lines into an `UpstreamConfig`. `factory` is called with an address string
and returns an `Upstream`; it is called once per distinct address, so the
same object is shared by every line that names it. Malformed lines, invalid
domain names and factory failures raise `ValueError`.

`UpstreamConfig.upstreams_for_domain(host)` returns the upstreams for a fully
qualified name. More specific domains win over less specific ones, and a
domain excluded with `#` is sent to the default upstreams.
`parse_upstream_line` and `validate_domain_name` are available on their own.

## Running a proxy

```python
import asyncio

import dns.message
import dns.query

from dnsrelay.proxy import Config, Proxy
from dnsrelay.upstreams import Upstream, parse_upstreams_config


class UDPUpstream(Upstream):
    def __init__(self, host):
        self._host = host

    def exchange(self, msg):
        return dns.query.udp(msg, self._host, timeout=2)

    def address(self):
        return f"{self._host}:53"


async def main():
    config = Config(
        udp_listen_addr=[("127.0.0.1", 0)],
        tcp_listen_addr=[("127.0.0.1", 0)],
        upstream_config=parse_upstreams_config(["9.9.9.9"], UDPUpstream),
        refuse_any=True,
    )
    proxy = Proxy(config)
    await proxy.start()
    print("listening on", proxy.addr("udp"))
    await asyncio.sleep(60)
    await proxy.stop()


asyncio.run(main())
```

`Config` (in `dnsrelay.proxy`) holds:

- `udp_listen_addr`, `tcp_listen_addr`, `tls_listen_addr`: lists of
  `(host, port)` pairs; `tls_config` is the `ssl.SSLContext` required for TLS
  listeners;
- `upstream_config` and `fallbacks`, the upstreams tried when every selected
  upstream fails;
- `ratelimit` (requests per second per client IP, over UDP; 0 disables it)
  and `ratelimit_whitelist`;
- `refuse_any`, which answers `ANY` queries with NOTIMP;
- `cache_min_ttl` and `cache_max_ttl`, which clamp answer TTLs (a maximum of
  0 means no cap);
- `max_goroutines`, the most queries handled at once (0 means no limit);
- `trusted_proxies`, subnets whose forwarding headers are believed for DoH;
- `before_request_handler`, `request_handler` and `response_handler` hooks.

`Proxy.start()` and `Proxy.stop()` are coroutines. `start` raises
`RuntimeError` if the proxy is already started. `Proxy.addr(proto)` and
`Proxy.addrs(proto)` report the bound addresses for `udp`, `tcp` or `tls`.

Queries can also be handled without sockets. `Proxy.new_context(proto, req)`
wraps a request in a `DNSContext`; `Proxy.handle_dns_request(ctx)` applies
the checks (replies dropped, rate limiting, SERVFAIL for a wrong number of
questions, NOTIMP for `ANY`) and returns the response to send, or `None`;
`Proxy.resolve(ctx)` forwards to the upstreams, stores the reply in
`ctx.res` and raises `UpstreamError` with a SERVFAIL reply set when no
upstream answered. `Proxy.handle_doh_request(method, query, headers, body,
remote)` answers a DNS-over-HTTPS request given its parts and returns the
response headers and body.

## Building blocks

- `dnsrelay.sema`: `new_semaphore` returns a bounded `ChanSemaphore` or an
  unbounded `NoopSemaphore`; both are context managers.
- `dnsrelay.ratelimit`: `RateLimiter` allows a fixed number of events per
  sliding interval; `IPRateLimiter` keeps one limiter per client address.
- `dnsrelay.messages`: `Proto`, `DNSContext`, and helpers `gen_with_rcode`,
  `gen_server_failure`, `gen_not_impl`, `add_do`, `set_min_max_ttl` and
  `ensure_question`.
- `dnsrelay.servers`: `add_prefix`, `read_prefixed`, `write_prefixed`,
  `serve_tcp_connection` and `UDPServerProtocol` for `asyncio`.
- `dnsrelay.https`: `parse_doh_request`, `pack_doh_response`,
  `real_ip_from_headers` and `remote_addr`; `DoHError` carries the HTTP
  status to answer with.
- `dnsrelay.quic`: `decode_quic_query` and `encode_quic_response` for both
  length-prefixed (`DoQVersion.V1`) and unprefixed draft framing,
  `validate_quic_message`, `QuicProtocolError` with a `DoQErrorCode`, and
  `QuicAddrValidator`, which decides when a client address needs a Retry.

## What it does not do

- It does not open HTTPS, HTTP/3, QUIC or DNSCrypt listeners; for DoH and DoQ
  it only parses and builds the messages, and you bring the transport.
- It has no response cache and no EDNS Client Subnet or DNS64 handling.
- It has no built-in upstream clients and no command-line program.

## Requirements

Python 3.10 or later, `dnspython` and `cachetools`.