"""Length-prefixed DNS message framing used by stream transports."""

from __future__ import annotations

import struct

import dns.message

MAX_MSG_SIZE = 65535
MIN_MSG_SIZE = 512

_PREFIX = struct.Struct(">H")


class MessageTooLargeError(ValueError):
    """A DNS message is larger than 64KiB."""

    def __init__(self, message: str = "dns message is too large") -> None:
        super().__init__(message)


def dns_size(is_udp: bool, msg: dns.message.Message) -> int:
    """Return the response size the client can accept.

    Over UDP this is the buffer size advertised in the OPT record, but never
    less than the classic 512 bytes.  Over TCP it is always 64KiB.
    """
    size = msg.payload if msg.edns >= 0 else 0
    if not is_udp:
        return MAX_MSG_SIZE
    if size < MIN_MSG_SIZE:
        return MIN_MSG_SIZE
    return size


def _read_exact(stream, size: int, what: str) -> bytes:
    read = getattr(stream, "read", None) or stream.recv
    buf = bytearray()
    while len(buf) < size:
        chunk = read(size - len(buf))
        if not chunk:
            raise EOFError(f"reading {what}: unexpected EOF")
        buf += chunk
    return bytes(buf)


def read_prefixed(stream) -> bytes:
    """Read one DNS message preceded by its 2-byte big-endian length."""
    (length,) = _PREFIX.unpack(_read_exact(stream, _PREFIX.size, "len"))
    if length > MAX_MSG_SIZE:
        raise MessageTooLargeError()
    return _read_exact(stream, length, "msg")


def add_prefix(data: bytes) -> bytes:
    """Return data preceded by its 2-byte big-endian length."""
    if len(data) > MAX_MSG_SIZE:
        raise MessageTooLargeError()
    return _PREFIX.pack(len(data)) + bytes(data)


def write_prefixed(data: bytes, stream) -> None:
    """Write data to a stream or socket preceded by its 2-byte length."""
    payload = add_prefix(data)
    sendall = getattr(stream, "sendall", None)
    if sendall is not None:
        sendall(payload)
        return
    stream.write(payload)
    flush = getattr(stream, "flush", None)
    if flush is not None:
        flush()