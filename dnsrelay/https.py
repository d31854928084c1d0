"""DNS-over-HTTPS request parsing and client address detection."""

from __future__ import annotations

import base64
import binascii
import ipaddress
import logging
import re
from collections.abc import Mapping
from http import HTTPStatus
from typing import Any, NamedTuple, Optional, Union
from urllib.parse import parse_qs

import dns.exception
import dns.message

log = logging.getLogger(__name__)

DNS_MESSAGE_CONTENT_TYPE = "application/dns-message"
SERVER_NAME = "dnsrelay"

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# Headers that carry the real client IP, in priority order.  X-Forwarded-For
# is checked last and handled separately.
_REAL_IP_HEADERS = ("cf-connecting-ip", "true-client-ip", "x-real-ip")

_RAW_URL_B64 = re.compile(r"[A-Za-z0-9_-]*")
_PORT = re.compile(r"[+-]?[0-9]+")


class DoHError(Exception):
    """A DoH request that must be answered with an HTTP error status."""

    def __init__(self, status: int) -> None:
        self.status = HTTPStatus(status)
        super().__init__(f"{self.status.value} {self.status.phrase}")


class _NetAddr(NamedTuple):
    host: IPAddress
    port: int
    network: str

    def __str__(self) -> str:
        if self.host.version == 6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def _parse_ip(value: str) -> Optional[IPAddress]:
    value = value.strip()
    if not value or "%" in value:
        return None
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        return None


def _lower_headers(headers: Optional[Mapping[str, Any]]) -> dict[str, str]:
    if not headers:
        return {}
    lowered: dict[str, str] = {}
    for name, value in headers.items():
        lowered.setdefault(str(name).lower(), str(value))
    return lowered


def real_ip_from_headers(headers: Optional[Mapping[str, Any]]) -> Optional[IPAddress]:
    """Return the client's IP address from proxy headers, or None.

    Priority: CF-Connecting-IP, True-Client-IP, X-Real-IP, then the first
    entry of X-Forwarded-For.
    """
    hdrs = _lower_headers(headers)
    for name in _REAL_IP_HEADERS:
        ip = _parse_ip(hdrs.get(name, ""))
        if ip is not None:
            return ip

    xff = hdrs.get("x-forwarded-for", "")
    return _parse_ip(xff.split(",", 1)[0])


def _split_host_port(hostport: str) -> tuple[str, str]:
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']' in address")
        rest = hostport[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {hostport}: missing port in address")
        return hostport[1:end], rest[1:]

    host, sep, port = hostport.rpartition(":")
    if not sep:
        raise ValueError(f"address {hostport}: missing port in address")
    if ":" in host:
        raise ValueError(f"address {hostport}: too many colons in address")
    return host, port


def remote_addr(
    remote: str, headers: Optional[Mapping[str, Any]], h3: bool
) -> tuple[_NetAddr, Optional[_NetAddr]]:
    """Return the real client's address and that of the last proxy, if any.

    ``remote`` is the connection's peer as ``host:port``.  When the headers
    name the real client, it is returned with port 0 and the peer becomes
    the proxy.  Raises ValueError if ``remote`` is malformed.
    """
    host_str, port_str = _split_host_port(remote)
    if not _PORT.fullmatch(port_str):
        raise ValueError(f"parsing port {port_str!r}: invalid syntax")
    port = int(port_str)

    host = _parse_ip(host_str)
    if host is None or host_str != host_str.strip():
        raise ValueError(f"invalid ip: {host_str}")

    real_ip = real_ip_from_headers(headers)
    if real_ip is not None:
        log.debug("Using IP address from HTTP request: %s", real_ip)
        network = "udp" if h3 else "tcp"
        return _NetAddr(real_ip, 0, network), _NetAddr(host, port, network)

    return _NetAddr(host, port, "tcp"), None


def _decode_raw_url_b64(value: str) -> bytes:
    if not _RAW_URL_B64.fullmatch(value) or len(value) % 4 == 1:
        raise ValueError("illegal base64 data")
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def parse_doh_request(
    method: str, query: str, content_type: Optional[str], body: Optional[bytes]
) -> dns.message.Message:
    """Extract the DNS query from a DoH request.

    GET requests carry the query base64url-encoded, unpadded, in the ``dns``
    parameter of ``query``; POST requests carry it in ``body`` with the
    ``application/dns-message`` content type.  Raises DoHError with 400 for
    missing or malformed data, 415 for another content type and 405 for
    other methods.
    """
    method = method.upper()
    if method == "GET":
        values = parse_qs(query or "", keep_blank_values=True).get("dns", [""])
        param = values[0]
        try:
            buf = _decode_raw_url_b64(param)
        except (ValueError, binascii.Error):
            buf = b""
        if not buf:
            log.debug("Cannot parse DNS request from %s", param)
            raise DoHError(HTTPStatus.BAD_REQUEST)
    elif method == "POST":
        if content_type != DNS_MESSAGE_CONTENT_TYPE:
            log.debug("Unsupported media type: %s", content_type)
            raise DoHError(HTTPStatus.UNSUPPORTED_MEDIA_TYPE)
        buf = bytes(body or b"")
    else:
        log.debug("Wrong HTTP method: %s", method)
        raise DoHError(HTTPStatus.METHOD_NOT_ALLOWED)

    try:
        return dns.message.from_wire(buf, ignore_trailing=True)
    except (dns.exception.DNSException, ValueError) as err:
        log.debug("msg.Unpack: %s", err)
        raise DoHError(HTTPStatus.BAD_REQUEST) from err


def pack_doh_response(
    message: Optional[dns.message.Message],
) -> tuple[dict[str, str], bytes]:
    """Return the response headers and body for a DoH reply.

    A missing or unpackable response raises DoHError with status 500.
    """
    if message is None:
        raise DoHError(HTTPStatus.INTERNAL_SERVER_ERROR)
    try:
        wire = message.to_wire()
    except (dns.exception.DNSException, ValueError) as err:
        raise DoHError(HTTPStatus.INTERNAL_SERVER_ERROR) from err

    headers = {"Server": SERVER_NAME, "Content-Type": DNS_MESSAGE_CONTENT_TYPE}
    return headers, wire