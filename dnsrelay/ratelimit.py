"""Per-client request rate limiting."""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from collections import deque
from collections.abc import Iterable

log = logging.getLogger(__name__)

BUCKET_TTL = 3600.0


class RateLimiter:
    """Allows at most limit events within any sliding window of interval seconds."""

    def __init__(self, limit: int, interval: float) -> None:
        if limit < 1:
            raise ValueError(f"bad limit: {limit}")
        self._limit = limit
        self._interval = interval
        self._times: deque[float] = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        """Record an event and return True, or return False if over the limit."""
        with self._lock:
            now = time.monotonic()
            if len(self._times) < self._limit:
                self._times.append(now)
                return True
            if now - self._times[0] < self._interval:
                return False
            self._times.popleft()
            self._times.append(now)
            return True


def _ip_of(addr):
    if isinstance(addr, tuple):
        addr = addr[0] if addr else None
    if isinstance(addr, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        ip = addr
    else:
        try:
            ip = ipaddress.ip_address(addr)
        except (ValueError, TypeError):
            return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


class IPRateLimiter:
    """Limits each client IP to ratelimit requests per second.

    A ratelimit of zero or less disables limiting.  Addresses in whitelist are
    never limited.
    """

    def __init__(self, ratelimit: int, whitelist: Iterable[str] = ()) -> None:
        self.ratelimit = ratelimit
        self.whitelist = frozenset(whitelist)
        self._buckets: dict[str, tuple[RateLimiter, float]] = {}
        self._lock = threading.Lock()
        self._last_purge = time.monotonic()

    def _purge(self, now: float) -> None:
        if now - self._last_purge < BUCKET_TTL:
            return
        self._buckets = {ip: entry for ip, entry in self._buckets.items() if entry[1] > now}
        self._last_purge = now

    def _limiter_for(self, ip: str) -> RateLimiter:
        with self._lock:
            now = time.monotonic()
            self._purge(now)
            entry = self._buckets.get(ip)
            if entry is None or entry[1] <= now:
                entry = (RateLimiter(self.ratelimit, 1.0), now + BUCKET_TTL)
                self._buckets[ip] = entry
            return entry[0]

    def is_ratelimited(self, addr) -> bool:
        """Return True if a request from addr must be dropped."""
        if self.ratelimit <= 0:
            return False
        ip = _ip_of(addr)
        if ip is None:
            log.info("failed to split %r into host/port", addr)
            return False
        ip_str = str(ip)
        if ip_str in self.whitelist:
            return False
        return not self._limiter_for(ip_str).try_acquire()