"""Request handling and upstream resolution shared by all transports."""

from __future__ import annotations

import enum
import ipaddress
import itertools
import logging
import ssl
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Optional

import dns.exception
import dns.flags
import dns.message
import dns.opcode
import dns.rcode
import dns.rdatatype
import dns.reversename

from dnsrelay.doq import DoQVersion
from dnsrelay.ratelimit import IPRateLimiter
from dnsrelay.sema import new_semaphore
from dnsrelay.upstreams import Upstream, UpstreamConfig

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_UDP_BUF_SIZE = 2048
NOT_IMPL_EDNS_PAYLOAD = 1452


class Proto(str, enum.Enum):
    """The transport a DNS request arrived over."""

    UDP = "udp"
    TCP = "tcp"
    TLS = "tls"
    HTTPS = "https"
    QUIC = "quic"
    DNSCRYPT = "dnscrypt"

    def __str__(self) -> str:
        return self.value


class NoUpstreamsError(LookupError):
    """No upstream servers are available for the request."""

    def __init__(self, message: str = "no upstream specified") -> None:
        super().__init__(message)


@dataclass(eq=False)
class DNSContext:
    """The state of a single DNS request while it is being handled."""

    proto: Proto
    req: dns.message.Message
    res: Optional[dns.message.Message] = None
    addr: Any = None
    conn: Any = None
    local_ip: Any = None
    upstream: Optional[Upstream] = None
    custom_upstream_config: Optional[UpstreamConfig] = None
    doq_version: Optional[DoQVersion] = None
    start_time: float = field(default_factory=time.time)
    request_id: int = 0


@dataclass
class ProxyConfig:
    """Settings of the proxy and its request handling."""

    upstream_config: Optional[UpstreamConfig] = None
    private_rdns_upstream_config: Optional[UpstreamConfig] = None
    fallbacks: list[Upstream] = field(default_factory=list)

    udp_listen_addr: list[tuple[str, int]] = field(default_factory=list)
    tcp_listen_addr: list[tuple[str, int]] = field(default_factory=list)
    tls_listen_addr: list[tuple[str, int]] = field(default_factory=list)
    tls_context: Optional[ssl.SSLContext] = None
    udp_buffer_size: int = 0

    ratelimit: int = 0
    ratelimit_whitelist: list[str] = field(default_factory=list)
    refuse_any: bool = False
    cache_min_ttl: int = 0
    cache_max_ttl: int = 0
    max_concurrent_requests: int = 0
    trusted_proxies: list[str] = field(default_factory=list)

    before_request_handler: Optional[Callable[["Resolver", DNSContext], bool]] = None
    request_handler: Optional[Callable[["Resolver", DNSContext], None]] = None
    response_handler: Optional[Callable[[DNSContext, Optional[BaseException]], None]] = None


def gen_with_rcode(req: dns.message.Message, code: int) -> dns.message.Message:
    """Return a reply to req carrying only the response code."""
    resp = dns.message.Message(id=req.id)
    resp.set_opcode(req.opcode())
    resp.flags |= dns.flags.QR | dns.flags.RA
    if req.opcode() == dns.opcode.QUERY:
        resp.flags |= req.flags & (dns.flags.RD | dns.flags.CD)
    resp.question = list(req.question[:1])
    resp.set_rcode(code)
    return resp


def gen_server_failure(req: dns.message.Message) -> dns.message.Message:
    """Return a SERVFAIL reply to req."""
    return gen_with_rcode(req, dns.rcode.SERVFAIL)


def gen_not_impl(req: dns.message.Message) -> dns.message.Message:
    """Return a NOTIMP reply to req.

    It carries an OPT record, since NOTIMP without EDNS would read as lack of
    EDNS support.
    """
    resp = gen_with_rcode(req, dns.rcode.NOTIMP)
    resp.use_edns(0, 0, NOT_IMPL_EDNS_PAYLOAD)
    return resp


def add_do(msg: dns.message.Message) -> None:
    """Set the DO bit of msg, adding an OPT record if it has none."""
    if msg.edns >= 0:
        msg.ednsflags |= dns.flags.DO
        return
    msg.use_edns(0, dns.flags.DO, DEFAULT_UDP_BUF_SIZE)


def _ip_of(addr):
    """Return the IP address held by addr, or None."""
    if addr is None:
        return None
    ip = getattr(addr, "ip", None)
    if ip is None:
        ip = addr[0] if isinstance(addr, tuple) and addr else addr
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        result = ip
    else:
        try:
            result = ipaddress.ip_address(ip)
        except (ValueError, TypeError):
            return None
    if isinstance(result, ipaddress.IPv6Address) and result.ipv4_mapped is not None:
        return result.ipv4_mapped
    return result


def _is_locally_served(ip) -> bool:
    return ip.is_private or ip.is_loopback or ip.is_link_local


def _respect_ttl_overrides(ttl: int, min_ttl: int, max_ttl: int) -> int:
    if ttl < min_ttl:
        return min_ttl
    if max_ttl != 0 and ttl > max_ttl:
        return max_ttl
    return ttl


class Resolver:
    """Handles DNS requests by forwarding them to the configured upstreams."""

    def __init__(self, config: ProxyConfig) -> None:
        self.config = config
        self._counter = itertools.count(1)
        self._counter_lock = threading.Lock()
        self.semaphore = new_semaphore(config.max_concurrent_requests)
        if config.max_concurrent_requests > 0:
            log.info("max concurrent requests is set to %d", config.max_concurrent_requests)
        self._ratelimiter = IPRateLimiter(config.ratelimit, config.ratelimit_whitelist)
        try:
            self.trusted_proxies = [
                ipaddress.ip_network(s, strict=False) for s in config.trusted_proxies
            ]
        except ValueError as err:
            raise ValueError(
                f"initializing subnet detector for proxies verifying: {err}"
            ) from err

    def new_context(self, proto: Proto, req: dns.message.Message) -> DNSContext:
        """Return a fresh context for req with a unique request id."""
        with self._counter_lock:
            request_id = next(self._counter)
        return DNSContext(proto=proto, req=req, request_id=request_id)

    def _needs_local_upstream(self, req: dns.message.Message) -> bool:
        question = req.question[0]
        if question.rdtype != dns.rdatatype.PTR:
            return False
        try:
            ip = ipaddress.ip_address(dns.reversename.to_address(question.name))
        except (dns.exception.DNSException, ValueError) as err:
            log.debug("failed to parse ip from ptr request: %s", err)
            return False
        return _is_locally_served(ip)

    def select_upstreams(self, dctx: DNSContext) -> Optional[list[Upstream]]:
        """Return the upstreams for the request, or None if none may serve it.

        Reverse lookups of private addresses go only to the private upstreams
        and only for local clients; otherwise custom upstreams are preferred
        to the configured ones.
        """
        host = dctx.req.question[0].name.to_text()
        if self._needs_local_upstream(dctx.req):
            private = self.config.private_rdns_upstream_config
            if private is None:
                return None
            ip = _ip_of(dctx.addr)
            if ip is None or not _is_locally_served(ip):
                return None
            return private.get_upstreams_for_domain(host)

        if dctx.custom_upstream_config is not None:
            ups = dctx.custom_upstream_config.get_upstreams_for_domain(host)
            if ups:
                return ups

        if self.config.upstream_config is None:
            return []
        return self.config.upstream_config.get_upstreams_for_domain(host)

    @staticmethod
    def _exchange(req, upstreams: Sequence[Upstream]):
        if not upstreams:
            raise NoUpstreamsError()
        last_error: Optional[BaseException] = None
        for ups in upstreams:
            try:
                return ups.exchange(req), ups
            except Exception as err:  # noqa: BLE001 - any upstream failure moves on
                log.debug("upstream %s failed: %s", ups.address(), err)
                last_error = err
        raise last_error

    @staticmethod
    def _exchange_parallel(req, upstreams: Sequence[Upstream]):
        if not upstreams:
            raise NoUpstreamsError()
        pool = ThreadPoolExecutor(max_workers=len(upstreams))
        try:
            futures = {pool.submit(u.exchange, req.__copy__()): u for u in upstreams}
            last_error: Optional[BaseException] = None
            for fut in as_completed(futures):
                try:
                    return fut.result(), futures[fut]
                except Exception as err:  # noqa: BLE001 - try the others
                    last_error = err
            raise last_error
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _reply_from_upstream(self, dctx: DNSContext) -> None:
        req = dctx.req
        upstreams = self.select_upstreams(dctx)
        if upstreams is None:
            raise NoUpstreamsError()

        start = time.monotonic()
        reply, ups, error = None, None, None
        try:
            reply, ups = self._exchange(req, upstreams)
        except Exception as err:  # noqa: BLE001 - reported after fallbacks
            error = err
        log.debug("RTT: %.3fs", time.monotonic() - start)

        if error is not None and self.config.fallbacks:
            log.debug("using the fallback upstream due to %s", error)
            try:
                reply, ups = self._exchange_parallel(req, self.config.fallbacks)
                error = None
            except Exception as err:  # noqa: BLE001 - reported below
                error = err

        if reply is not None:
            dctx.upstream = ups
            self.set_min_max_ttl(reply)
            if req.question and not reply.question:
                reply.question = [req.question[0]]
        else:
            reply = gen_server_failure(req)
        dctx.res = reply

        if error is not None:
            raise error

    def resolve(self, dctx: DNSContext) -> None:
        """Resolve the request of dctx, leaving the reply in dctx.res.

        On failure dctx.res holds a SERVFAIL reply where possible and the
        error is raised after the response handler has seen it.
        """
        error: Optional[BaseException] = None
        try:
            self._reply_from_upstream(dctx)
        except Exception as err:  # noqa: BLE001 - re-raised below
            error = err

        if self.config.response_handler is not None:
            self.config.response_handler(dctx, error)

        if error is not None:
            raise error

    def _is_ratelimited(self, dctx: DNSContext) -> bool:
        return dctx.proto is Proto.UDP and self._ratelimiter.is_ratelimited(dctx.addr)

    def handle_dns_request(self, dctx: DNSContext) -> bool:
        """Process the request of dctx and return True if a reply must be sent.

        The reply, if any, is left in dctx.res.
        """
        dctx.start_time = time.time()
        log.debug("IN: %s", dctx.req)

        if dctx.req.flags & dns.flags.QR:
            log.debug("dropping incoming reply packet from %s", dctx.addr)
            return False

        before = self.config.before_request_handler
        if before is not None:
            try:
                ok = before(self, dctx)
            except Exception as err:  # noqa: BLE001 - answered with SERVFAIL
                log.error("error in the before request handler: %s", err)
                dctx.res = gen_server_failure(dctx.req)
                return True
            if not ok:
                return False

        if self._is_ratelimited(dctx):
            log.debug("ratelimiting %s based on IP only", dctx.addr)
            return False

        if len(dctx.req.question) != 1:
            log.debug("got invalid number of questions: %d", len(dctx.req.question))
            dctx.res = gen_server_failure(dctx.req)

        if (
            self.config.refuse_any
            and dctx.req.question
            and dctx.req.question[0].rdtype == dns.rdatatype.ANY
        ):
            log.debug("refusing type=ANY request")
            dctx.res = gen_not_impl(dctx.req)

        if dctx.res is None:
            uc = self.config.upstream_config
            if uc is None or not uc.upstreams:
                raise RuntimeError("no default upstreams specified")
            try:
                if self.config.request_handler is not None:
                    self.config.request_handler(self, dctx)
                else:
                    self.resolve(dctx)
            except Exception as err:  # noqa: BLE001 - the reply is still sent
                log.debug("talking to dns upstream: %s", err)

        if dctx.res is not None:
            log.debug("OUT: %s", dctx.res)
        return True

    def set_min_max_ttl(self, msg: dns.message.Message) -> None:
        """Clamp the TTLs of the answer records to the configured bounds."""
        for rrset in msg.answer:
            new_ttl = _respect_ttl_overrides(
                rrset.ttl, self.config.cache_min_ttl, self.config.cache_max_ttl
            )
            if new_ttl != rrset.ttl:
                log.debug("override TTL from %d to %d", rrset.ttl, new_ttl)
                rrset.ttl = new_ttl