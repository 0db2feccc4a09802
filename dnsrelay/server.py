"""Plain DNS listeners over UDP, TCP and TLS."""

from __future__ import annotations

import errno
import ipaddress
import logging
import socket
import ssl
import struct
import sys
import threading
from dataclasses import dataclass

import dns.exception
import dns.message

from dnsrelay.core import DEFAULT_TIMEOUT, DNSContext, Proto, ProxyConfig, Resolver
from dnsrelay.framing import MAX_MSG_SIZE, MessageTooLargeError, read_prefixed, write_prefixed

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2
_JOIN_TIMEOUT = 2.0

# struct in_pktinfo { int ipi_ifindex; struct in_addr ipi_spec_dst; struct in_addr ipi_addr; }
_IN_PKTINFO = struct.Struct("@i4s4s")
# struct in6_pktinfo { struct in6_addr ipi6_addr; unsigned int ipi6_ifindex; }
_IN6_PKTINFO = struct.Struct("@16sI")

_CLOSED_ERRNOS = frozenset({errno.EBADF, errno.ENOTCONN})


class ProxyStopError(Exception):
    """Some listeners or upstreams failed to close while stopping."""

    def __init__(self, errors: list[BaseException]) -> None:
        super().__init__("stopping dns proxy server: " + "; ".join(str(e) for e in errors))
        self.errors = errors


@dataclass
class _UDPListener:
    sock: socket.socket
    oob_size: int = 0


def _family(host: str) -> int:
    try:
        return socket.AF_INET6 if ipaddress.ip_address(host).version == 6 else socket.AF_INET
    except ValueError:
        return socket.AF_INET


def _is_closed(err: BaseException) -> bool:
    return isinstance(err, OSError) and err.errno in _CLOSED_ERRNOS


def _log_with_non_crit(err: BaseException, msg: str) -> None:
    """Log err at a level depending on whether it is critical."""
    if isinstance(err, socket.timeout):
        log.debug("%s: connection timed out; original error: %s", msg, err)
    elif isinstance(err, (EOFError, ConnectionError)) or _is_closed(err):
        log.debug("%s: connection is closed; original error: %s", msg, err)
    else:
        log.error("%s: %s", msg, err)


def _udp_oob_size() -> int:
    if not hasattr(socket, "CMSG_SPACE"):
        return 0
    return max(socket.CMSG_SPACE(_IN_PKTINFO.size), socket.CMSG_SPACE(_IN6_PKTINFO.size))


def _udp_set_options(sock: socket.socket) -> bool:
    """Ask for the destination address of received packets.

    Returns False where the platform offers no way to do so.
    """
    ip6 = getattr(socket, "IPV6_RECVPKTINFO", None)
    ip4 = getattr(socket, "IP_PKTINFO", None)
    if (ip6 is None and ip4 is None) or not hasattr(sock, "recvmsg"):
        return False

    errors = []
    enabled = False
    for level, opt, name in (
        (socket.IPPROTO_IPV6, ip6, "ipv6"),
        (socket.IPPROTO_IP, ip4, "ipv4"),
    ):
        if opt is None:
            errors.append(f"{name}: unsupported")
            continue
        try:
            sock.setsockopt(level, opt, 1)
            enabled = True
        except OSError as err:
            errors.append(f"{name}: {err}")
    if not enabled:
        raise OSError("failed to set control message options: " + "; ".join(errors))
    return True


def _udp_dst_from_oob(ancdata):
    ip6_kind = getattr(socket, "IPV6_PKTINFO", None)
    ip4_kind = getattr(socket, "IP_PKTINFO", None)
    for level, kind, data in ancdata:
        if level == socket.IPPROTO_IPV6 and kind == ip6_kind and len(data) >= _IN6_PKTINFO.size:
            return ipaddress.IPv6Address(bytes(data[:16]))
        if level == socket.IPPROTO_IP and kind == ip4_kind and len(data) >= _IN_PKTINFO.size:
            return ipaddress.IPv4Address(bytes(data[8:12]))
    return None


def _udp_make_oob(ip) -> list:
    """Return ancillary data making a reply leave from ip."""
    if ip is None:
        return []
    if ip.version == 4:
        # Setting the IPv4 source this way can leave it unspecified on darwin.
        kind = getattr(socket, "IP_PKTINFO", None)
        if sys.platform == "darwin" or kind is None:
            return []
        return [(socket.IPPROTO_IP, kind, _IN_PKTINFO.pack(0, ip.packed, bytes(4)))]
    kind = getattr(socket, "IPV6_PKTINFO", None)
    if kind is None:
        return []
    return [(socket.IPPROTO_IPV6, kind, _IN6_PKTINFO.pack(ip.packed, 0))]


def _udp_read(listener: _UDPListener):
    if listener.oob_size:
        data, ancdata, _flags, remote = listener.sock.recvmsg(MAX_MSG_SIZE, listener.oob_size)
        return data, _udp_dst_from_oob(ancdata), remote
    data, remote = listener.sock.recvfrom(MAX_MSG_SIZE)
    return data, None, remote


def _udp_write(data: bytes, listener: _UDPListener, remote, local_ip) -> int:
    if listener.oob_size:
        return listener.sock.sendmsg([data], _udp_make_oob(local_ip), remote)
    return listener.sock.sendto(data, remote)


def _unpack(packet: bytes) -> dns.message.Message:
    try:
        return dns.message.from_wire(packet)
    except (dns.exception.DNSException, ValueError, IndexError) as err:
        raise ValueError(str(err)) from err


class Proxy:
    """A DNS proxy listening for plain DNS over UDP, TCP and TLS."""

    def __init__(self, config: ProxyConfig) -> None:
        self.config = config
        self._lock = threading.RLock()
        self._started = False
        self._resolver: Resolver | None = None
        self._udp_listen: list[_UDPListener] = []
        self._tcp_listen: list[socket.socket] = []
        self._tls_listen: list[socket.socket] = []
        self._threads: list[threading.Thread] = []

    @property
    def started(self) -> bool:
        return self._started

    @property
    def resolver(self) -> Resolver | None:
        return self._resolver

    def start(self) -> None:
        """Set up request handling and start listening."""
        with self._lock:
            if self._started:
                raise RuntimeError("the DNS proxy server is already started")
            log.info("starting the DNS proxy server")
            self._validate_config()
            resolver = Resolver(self.config)
            try:
                self._create_listeners()
            except BaseException:
                self._close_listeners()
                raise
            self._resolver = resolver
            self._started = True
            self._start_loops(resolver)

    def stop(self) -> None:
        """Stop listening and close the upstreams."""
        log.info("stopping the DNS proxy server")
        with self._lock:
            if not self._started:
                log.info("the DNS proxy server is not started")
                return
            self._started = False
            errors = self._close_listeners()
            threads, self._threads = self._threads, []
            if self.config.upstream_config is not None:
                try:
                    self.config.upstream_config.close()
                except Exception as err:  # noqa: BLE001 - reported below
                    errors.append(err)

        for thread in threads:
            thread.join(timeout=_JOIN_TIMEOUT)
        log.info("stopped the DNS proxy server")
        if errors:
            raise ProxyStopError(errors)

    def addrs(self, proto) -> list[tuple[str, int]]:
        """Return all addresses listened to for proto."""
        proto = Proto(proto)
        with self._lock:
            if proto is Proto.UDP:
                socks = [listener.sock for listener in self._udp_listen]
            elif proto is Proto.TCP:
                socks = list(self._tcp_listen)
            elif proto is Proto.TLS:
                socks = list(self._tls_listen)
            else:
                socks = []
            return [tuple(s.getsockname()[:2]) for s in socks]

    def addr(self, proto) -> tuple[str, int] | None:
        """Return the first address listened to for proto, or None."""
        addrs = self.addrs(proto)
        return addrs[0] if addrs else None

    def __enter__(self) -> "Proxy":
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.stop()

    def _validate_config(self) -> None:
        uc = self.config.upstream_config
        if uc is None or not uc.upstreams:
            raise ValueError("no default upstreams specified")
        if self.config.tls_listen_addr and self.config.tls_context is None:
            raise ValueError("cannot listen for tls without a tls context")

    def _create_listeners(self) -> None:
        for addr in self.config.udp_listen_addr:
            self._udp_listen.append(self._udp_create(addr))
        for addr in self.config.tcp_listen_addr:
            log.info("creating a TCP server socket")
            sock = self._tcp_create(addr, "starting listening on tcp socket")
            self._tcp_listen.append(sock)
            log.info("listening to tcp://%s:%d", *sock.getsockname()[:2])
        for addr in self.config.tls_listen_addr:
            log.info("creating a TLS server socket")
            sock = self._tcp_create(addr, "starting tls listener")
            self._tls_listen.append(sock)
            log.info("listening to tls://%s:%d", *sock.getsockname()[:2])

    def _close_listeners(self) -> list[BaseException]:
        errors: list[BaseException] = []
        socks = [s for s in self._tcp_listen]
        socks += [listener.sock for listener in self._udp_listen]
        socks += self._tls_listen
        for sock in socks:
            try:
                sock.close()
            except OSError as err:
                errors.append(err)
        self._tcp_listen = []
        self._udp_listen = []
        self._tls_listen = []
        return errors

    def _spawn(self, target, *args) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        return thread

    def _start_loops(self, resolver: Resolver) -> None:
        sema = resolver.semaphore
        for listener in self._udp_listen:
            self._threads.append(self._spawn(self._udp_packet_loop, resolver, listener, sema))
        for sock in self._tcp_listen:
            self._threads.append(
                self._spawn(self._tcp_packet_loop, resolver, sock, Proto.TCP, sema)
            )
        for sock in self._tls_listen:
            self._threads.append(
                self._spawn(self._tcp_packet_loop, resolver, sock, Proto.TLS, sema)
            )

    def _udp_create(self, addr) -> _UDPListener:
        log.info("creating the UDP server socket")
        host, port = addr
        sock = socket.socket(_family(host), socket.SOCK_DGRAM)
        try:
            sock.bind((host, port))
        except OSError as err:
            sock.close()
            raise OSError(f"listening to udp socket: {err}") from err

        if self.config.udp_buffer_size > 0:
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, self.config.udp_buffer_size)
            except OSError as err:
                sock.close()
                raise OSError(f"setting udp buf size: {err}") from err

        try:
            oob = _udp_set_options(sock)
        except OSError as err:
            sock.close()
            raise OSError(f"setting udp opts: {err}") from err

        sock.settimeout(_POLL_INTERVAL)
        log.info("listening to udp://%s:%d", *sock.getsockname()[:2])
        return _UDPListener(sock, _udp_oob_size() if oob else 0)

    @staticmethod
    def _tcp_create(addr, what: str) -> socket.socket:
        host, port = addr
        try:
            sock = socket.create_server((host, port), family=_family(host))
        except OSError as err:
            raise OSError(f"{what}: {err}") from err
        sock.settimeout(_POLL_INTERVAL)
        return sock

    def _udp_packet_loop(self, resolver: Resolver, listener: _UDPListener, sema) -> None:
        log.info("entering the UDP listener loop on %s", listener.sock.getsockname()[:2])
        while self._started:
            try:
                packet, local_ip, remote = _udp_read(listener)
            except socket.timeout:
                continue
            except OSError as err:
                if self._started:
                    log.error("got error when reading from UDP listen: %s", err)
                else:
                    log.debug("udp packet loop: connection closed")
                break
            if not packet:
                continue
            sema.acquire()
            self._spawn(self._udp_worker, resolver, packet, local_ip, remote, listener, sema)

    def _udp_worker(self, resolver, packet, local_ip, remote, listener, sema) -> None:
        try:
            self._udp_handle_packet(resolver, packet, local_ip, remote, listener)
        finally:
            sema.release()

    def _udp_handle_packet(self, resolver, packet, local_ip, remote, listener) -> None:
        log.debug("start handling new UDP packet from %s", remote)
        try:
            req = _unpack(packet)
        except ValueError as err:
            log.error("unpacking udp packet: %s", err)
            return
        dctx = resolver.new_context(Proto.UDP, req)
        dctx.addr = remote
        dctx.conn = listener
        dctx.local_ip = local_ip
        self._process(resolver, dctx)

    def _tcp_packet_loop(self, resolver: Resolver, sock: socket.socket, proto: Proto, sema) -> None:
        log.info("entering the %s listener loop on %s", proto, sock.getsockname()[:2])
        while self._started:
            try:
                conn, remote = sock.accept()
            except socket.timeout:
                continue
            except OSError as err:
                if self._started:
                    log.info("got error when reading from TCP listen: %s", err)
                else:
                    log.debug("tcp packet loop: connection closed: %s", err)
                break
            sema.acquire()
            self._spawn(self._tcp_worker, resolver, conn, remote, proto, sema)

    def _tcp_worker(self, resolver, conn, remote, proto, sema) -> None:
        try:
            self._handle_tcp_connection(resolver, conn, remote, proto)
        finally:
            sema.release()

    def _handle_tcp_connection(self, resolver: Resolver, conn, remote, proto: Proto) -> None:
        log.debug("handling tcp: started handling %s request from %s", proto, remote)
        try:
            conn.settimeout(DEFAULT_TIMEOUT)
            if proto is Proto.TLS:
                try:
                    conn = self.config.tls_context.wrap_socket(conn, server_side=True)
                except OSError as err:
                    _log_with_non_crit(err, "handling tcp: tls handshake")
                    return

            while self._started:
                try:
                    conn.settimeout(DEFAULT_TIMEOUT)
                    packet = read_prefixed(conn)
                except (OSError, EOFError, MessageTooLargeError) as err:
                    _log_with_non_crit(err, "handling tcp: reading msg")
                    break

                try:
                    req = _unpack(packet)
                except ValueError as err:
                    log.error("handling tcp: unpacking msg: %s", err)
                    return

                dctx = resolver.new_context(proto, req)
                dctx.addr = remote
                dctx.conn = conn
                self._process(resolver, dctx)
        finally:
            try:
                conn.close()
            except OSError as err:
                _log_with_non_crit(err, "handling tcp: closing conn")

    def _process(self, resolver: Resolver, dctx: DNSContext) -> None:
        try:
            reply = resolver.handle_dns_request(dctx)
        except Exception:  # noqa: BLE001 - a broken request must not kill the loop
            log.exception("handling %s request", dctx.proto)
            return
        if reply:
            self._respond(dctx)

    def _respond(self, dctx: DNSContext) -> None:
        try:
            if dctx.proto is Proto.UDP:
                self._respond_udp(dctx)
            elif dctx.proto in (Proto.TCP, Proto.TLS):
                self._respond_tcp(dctx)
            else:
                raise ValueError(f"unknown protocol: {dctx.proto}")
        except Exception as err:  # noqa: BLE001 - logged by severity
            _log_with_non_crit(err, f"responding {dctx.proto} request")

    @staticmethod
    def _respond_udp(dctx: DNSContext) -> None:
        if dctx.res is None:
            return
        wire = dctx.res.to_wire()
        try:
            n = _udp_write(wire, dctx.conn, dctx.addr, dctx.local_ip)
        except OSError as err:
            if _is_closed(err):
                return
            raise
        if n != len(wire):
            raise OSError(f"udp write returned with {n} != {len(wire)}")

    @staticmethod
    def _respond_tcp(dctx: DNSContext) -> None:
        conn = dctx.conn
        if dctx.res is None:
            conn.close()
            return
        wire = dctx.res.to_wire()
        try:
            write_prefixed(wire, conn)
        except OSError as err:
            if not _is_closed(err):
                raise