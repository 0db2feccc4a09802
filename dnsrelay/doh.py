"""DNS-over-HTTPS request decoding and client address detection."""

from __future__ import annotations

import base64
import ipaddress
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from http import HTTPStatus
from ipaddress import IPv4Address, IPv6Address
from typing import Union
from urllib.parse import parse_qs

import dns.exception
import dns.message

log = logging.getLogger(__name__)

IPAddress = Union[IPv4Address, IPv6Address]

DNS_MESSAGE_CONTENT_TYPE = "application/dns-message"
SERVER_HEADER = "dnsrelay"

# Headers carrying the client address, in order of priority.  X-Forwarded-For
# is consulted last.
REAL_IP_HEADERS = ("CF-Connecting-IP", "True-Client-IP", "X-Real-IP")
FORWARDED_FOR_HEADER = "X-Forwarded-For"

_RAW_URL_B64 = re.compile(r"[A-Za-z0-9_-]*")
_PORT = re.compile(r"[+-]?[0-9]+")


class DoHError(Exception):
    """A DoH request cannot be served; status is the HTTP status to reply with."""

    def __init__(self, status: int, detail: str | None = None) -> None:
        self.status = HTTPStatus(status)
        self.detail = detail
        super().__init__(self.status.phrase)


@dataclass(frozen=True)
class Address:
    """A network address of a client or a proxy."""

    ip: IPAddress
    port: int = 0
    udp: bool = False

    @property
    def network(self) -> str:
        return "udp" if self.udp else "tcp"

    def __str__(self) -> str:
        host = f"[{self.ip}]" if self.ip.version == 6 else str(self.ip)
        return f"{host}:{self.port}"


def _parse_ip(value: str) -> IPAddress | None:
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        return None


def _header(headers, name: str) -> str:
    if not headers:
        return ""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            if isinstance(value, (list, tuple)):
                return value[0] if value else ""
            return value
    return ""


def real_ip_from_headers(headers) -> IPAddress | None:
    """Return the client address found in proxy headers, or None.

    CF-Connecting-IP, True-Client-IP and X-Real-IP are tried in that order,
    then the first entry of X-Forwarded-For.
    """
    for name in REAL_IP_HEADERS:
        ip = _parse_ip(_header(headers, name).strip())
        if ip is not None:
            return ip

    forwarded = _header(headers, FORWARDED_FOR_HEADER)
    first = forwarded.split(",", 1)[0]
    return _parse_ip(first.strip())


def _split_host_port(remote: str) -> tuple[str, str]:
    def fail(reason: str) -> ValueError:
        return ValueError(f"address {remote}: {reason}")

    if remote.startswith("["):
        end = remote.find("]")
        if end < 0:
            raise fail("missing ']' in address")
        host, rest = remote[1:end], remote[end + 1:]
        if not rest:
            raise fail("missing port in address")
        if not rest.startswith(":") or ":" in rest[1:]:
            raise fail("too many colons in address")
        return host, rest[1:]

    host, sep, port = remote.rpartition(":")
    if not sep:
        raise fail("missing port in address")
    if ":" in host:
        raise fail("too many colons in address")
    return host, port


def remote_addr(remote: str, headers, h3: bool) -> tuple[Address, Address | None]:
    """Return the real client address and the address of the last proxy, if any.

    remote is the ``host:port`` the request came from; h3 marks requests
    received over HTTP/3, whose addresses are UDP ones.
    """
    host_str, port_str = _split_host_port(remote)

    if not _PORT.fullmatch(port_str):
        raise ValueError(f'parsing port "{port_str}": invalid syntax')
    port = int(port_str)

    host = _parse_ip(host_str)
    if host is None:
        raise ValueError(f"invalid ip: {host_str}")

    real_ip = real_ip_from_headers(headers)
    if real_ip is not None:
        log.debug("using IP address from HTTP request: %s", real_ip)
        return Address(real_ip, 0, h3), Address(host, port, h3)

    return Address(host, port, h3), None


def _decode_raw_url_b64(value: str) -> bytes:
    if not _RAW_URL_B64.fullmatch(value) or len(value) % 4 == 1:
        raise ValueError(f"bad base64 data: {value!r}")
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _query_param(query, name: str) -> str:
    if query is None:
        return ""
    params = parse_qs(query, keep_blank_values=True) if isinstance(query, str) else query
    if not isinstance(params, Mapping):
        return ""
    value = params.get(name, "")
    if isinstance(value, (list, tuple)):
        return value[0] if value else ""
    return value


def decode_doh_request(method: str, query, content_type: str | None, body) -> dns.message.Message:
    """Return the DNS query carried by a DoH request.

    GET requests carry it base64url-encoded without padding in the ``dns``
    query parameter; POST requests carry it as an application/dns-message
    body.  Raises DoHError with the HTTP status to reply with otherwise.
    """
    if method == "GET":
        param = _query_param(query, "dns")
        try:
            buf = _decode_raw_url_b64(param)
        except ValueError:
            buf = b""
        if not buf:
            raise DoHError(HTTPStatus.BAD_REQUEST, f"cannot parse DNS request from {param!r}")
    elif method == "POST":
        if content_type != DNS_MESSAGE_CONTENT_TYPE:
            raise DoHError(HTTPStatus.UNSUPPORTED_MEDIA_TYPE, f"unsupported media type: {content_type}")
        if body is None:
            raise DoHError(HTTPStatus.BAD_REQUEST, "no request body")
        try:
            buf = body.read() if hasattr(body, "read") else bytes(body)
        except OSError as err:
            raise DoHError(HTTPStatus.BAD_REQUEST, f"cannot read the request body: {err}") from err
    else:
        raise DoHError(HTTPStatus.METHOD_NOT_ALLOWED, f"wrong HTTP method: {method}")

    try:
        return dns.message.from_wire(buf)
    except (dns.exception.DNSException, ValueError, IndexError) as err:
        raise DoHError(HTTPStatus.BAD_REQUEST, f"unpacking message: {err}") from err


def encode_doh_response(msg: dns.message.Message | None) -> tuple[bytes, dict[str, str]]:
    """Return the body and headers of a DoH reply carrying msg.

    Raises DoHError with status 500 if there is no response or it cannot be packed.
    """
    if msg is None:
        raise DoHError(HTTPStatus.INTERNAL_SERVER_ERROR, "no response")
    try:
        wire = msg.to_wire()
    except dns.exception.DNSException as err:
        raise DoHError(HTTPStatus.INTERNAL_SERVER_ERROR, f"packing message: {err}") from err
    headers = {"Server": SERVER_HEADER, "Content-Type": DNS_MESSAGE_CONTENT_TYPE}
    return wire, headers