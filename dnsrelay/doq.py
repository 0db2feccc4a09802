"""DNS-over-QUIC message encoding and validation."""

from __future__ import annotations

import enum
import logging
import struct
import threading
import time
from collections import OrderedDict

import dns.exception
import dns.message

from dnsrelay.framing import MAX_MSG_SIZE, add_prefix

log = logging.getLogger(__name__)

NEXT_PROTO_DQ = "doq"
"""ALPN token for DoQ."""

COMPAT_PROTO_DQ = (NEXT_PROTO_DQ, "doq-i02", "doq-i00", "dq")
"""ALPN tokens accepted on QUIC connections, the RFC one and older drafts."""

MAX_QUIC_IDLE_TIMEOUT = 300.0
QUIC_ADDR_VALIDATOR_CACHE_SIZE = 1000
QUIC_ADDR_VALIDATOR_CACHE_TTL = 1800.0

MIN_DNS_PACKET_SIZE = 12 + 5
READ_BUFFER_SIZE = 2 + MAX_MSG_SIZE

EDNS0_TCP_KEEPALIVE = 11


class DoQVersion(enum.Enum):
    """How DNS messages are framed on a DoQ stream."""

    V1 = "v1"
    """RFC 9250: messages carry a 2-byte length prefix."""
    V1_DRAFT = "v1-draft"
    """Older drafts: bare messages."""


class DoQErrorCode(enum.IntEnum):
    """DoQ application error codes."""

    NO_ERROR = 0
    INTERNAL_ERROR = 1
    PROTOCOL_ERROR = 2


class ShortBufferError(Exception):
    """The data did not fit into the buffer."""

    def __init__(self, data: bytes) -> None:
        super().__init__("short buffer")
        self.data = data


class AddressValidator:
    """Remembers recently seen client addresses that need no validation.

    Holds at most cache_size addresses, each for ttl seconds, dropping the
    oldest first.
    """

    def __init__(self, cache_size: int, ttl: float) -> None:
        if cache_size < 1:
            raise ValueError(f"bad cache size: {cache_size}")
        self._size = cache_size
        self._ttl = ttl
        self._items: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    def requires_validation(self, ip) -> bool:
        """Return True if a Retry must validate ip; remember it either way."""
        key = str(ip)
        with self._lock:
            now = time.monotonic()
            expires = self._items.get(key)
            if expires is not None and expires > now:
                return False
            self._items.pop(key, None)
            self._items[key] = now + self._ttl
            while len(self._items) > self._size:
                self._items.popitem(last=False)
            return True


def read_all(reader, size: int) -> bytes:
    """Read from reader until end of stream, at most size bytes.

    Raises ShortBufferError when the buffer fills before the end of stream.
    """
    read = getattr(reader, "read", None) or reader.recv
    buf = bytearray()
    while True:
        if len(buf) == size:
            raise ShortBufferError(bytes(buf))
        chunk = read(size - len(buf))
        if not chunk:
            return bytes(buf)
        buf += chunk


def decode_doq_query(buf: bytes) -> tuple[dns.message.Message, DoQVersion]:
    """Unpack a query read from a DoQ stream and tell which framing it used.

    A query whose first two bytes equal the length of the rest is taken as
    RFC framing; anything else as a bare draft-version message.
    """
    if len(buf) < MIN_DNS_PACKET_SIZE:
        raise ValueError("quic packet too short for dns query")

    (length,) = struct.unpack_from(">H", buf)
    if length == len(buf) - 2:
        version, wire = DoQVersion.V1, buf[2:]
    else:
        version, wire = DoQVersion.V1_DRAFT, buf

    try:
        msg = dns.message.from_wire(wire, ignore_trailing=True)
    except (dns.exception.DNSException, ValueError, IndexError) as err:
        raise ValueError(f"unpacking quic packet: {err}") from err
    return msg, version


def encode_doq_response(msg: dns.message.Message | None, version: DoQVersion) -> bytes:
    """Return msg framed for a DoQ stream of the given version."""
    if msg is None:
        raise ValueError("no response to write")
    try:
        wire = msg.to_wire()
    except dns.exception.DNSException as err:
        raise ValueError(f"couldn't convert message into wire format: {err}") from err

    if version is DoQVersion.V1:
        return add_prefix(wire)
    if version is DoQVersion.V1_DRAFT:
        return wire
    raise ValueError(f"invalid protocol version: {version}")


def valid_quic_msg(msg: dns.message.Message) -> bool:
    """Return False if msg breaks DoQ rules, as by carrying edns-tcp-keepalive."""
    if msg.edns >= 0:
        for option in msg.options:
            if int(option.otype) == EDNS0_TCP_KEEPALIVE:
                log.debug("client sent EDNS0 TCP keepalive option")
                return False
    return True