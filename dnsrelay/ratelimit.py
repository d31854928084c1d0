"""Per-client-IP request rate limiting."""

from __future__ import annotations

import ipaddress
import logging
import sys
import threading
import time
from collections import deque
from collections.abc import Iterable
from typing import Any

from cachetools import TTLCache

log = logging.getLogger(__name__)

_BUCKET_TTL = 3600.0


class RateLimiter:
    """Allows at most ``limit`` events in any sliding window of ``interval`` seconds."""

    def __init__(self, limit: int, interval: float) -> None:
        if limit < 1:
            raise ValueError(f"bad limit: {limit}")
        self._limit = limit
        self._interval = interval
        self._times: deque[float] = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> tuple[bool, float]:
        """Record an event if allowed.

        Returns whether it was allowed and, if not, how many seconds remain
        until the next one would be.
        """
        with self._lock:
            now = time.monotonic()
            if len(self._times) < self._limit:
                self._times.append(now)
                return True, 0.0

            elapsed = now - self._times[0]
            if elapsed < self._interval:
                return False, self._interval - elapsed

            self._times.popleft()
            self._times.append(now)
            return True, 0.0


def _ip_from_addr(addr: Any) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if not addr:
        return None
    host = addr[0] if isinstance(addr, (tuple, list)) else addr
    if isinstance(host, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        ip = host
    else:
        try:
            ip = ipaddress.ip_address(str(host))
        except ValueError:
            return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


class IPRateLimiter:
    """Limits requests per second from each client IP address.

    A ``ratelimit`` of zero or less disables limiting.  Addresses in
    ``whitelist`` are never limited.
    """

    def __init__(self, ratelimit: int, whitelist: Iterable[str] = ()) -> None:
        self.ratelimit = ratelimit
        self.whitelist = frozenset(whitelist)
        self._buckets: TTLCache = TTLCache(maxsize=sys.maxsize, ttl=_BUCKET_TTL)
        self._lock = threading.Lock()

    def _limiter_for(self, ip: str) -> RateLimiter:
        with self._lock:
            limiter = self._buckets.get(ip)
            if limiter is None:
                limiter = RateLimiter(self.ratelimit, 1.0)
                self._buckets[ip] = limiter
            return limiter

    def is_ratelimited(self, addr: Any) -> bool:
        """Report whether a request from ``addr`` must be dropped."""
        if self.ratelimit <= 0:
            return False

        ip = _ip_from_addr(addr)
        if ip is None:
            log.info("failed to split %r into host/port", addr)
            return False

        ip_str = str(ip)
        if ip_str in self.whitelist:
            return False

        allowed, _ = self._limiter_for(ip_str).try_acquire()
        return not allowed