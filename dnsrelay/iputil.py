"""Helpers for IP addresses found in DNS answers."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable
from ipaddress import IPv4Address, IPv6Address
from typing import Union

import dns.rdatatype
import dns.rrset

IPAddress = Union[IPv4Address, IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def _to_ip(value) -> IPAddress | None:
    """Normalise value to an address, unmapping IPv4-mapped IPv6 ones."""
    if value is None:
        return None
    if isinstance(value, (IPv4Address, IPv6Address)):
        ip = value
    elif isinstance(value, (bytes, bytearray)):
        if len(value) not in (4, 16):
            return None
        ip = ipaddress.ip_address(bytes(value))
    else:
        try:
            ip = ipaddress.ip_address(value)
        except ValueError:
            return None
    if isinstance(ip, IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def ip_from_rr(rr) -> IPAddress | None:
    """Return the address of an A or AAAA record, or None for other types."""
    if rr.rdtype == dns.rdatatype.A:
        return IPv4Address(rr.address)
    if rr.rdtype == dns.rdatatype.AAAA:
        return IPv6Address(rr.address)
    return None


def contains_ip(nets: Iterable[IPNetwork], ip) -> bool:
    """Return True if any of nets contains ip."""
    addr = _to_ip(ip)
    if addr is None:
        return False
    return any(addr in net for net in nets)


def collect_ip_addrs(answers) -> list[IPAddress]:
    """Return the addresses of all A and AAAA records among answers.

    answers may hold RRsets as well as single records.
    """
    addrs = []
    for item in answers:
        records = item if isinstance(item, dns.rrset.RRset) else (item,)
        for rr in records:
            ip = ip_from_rr(rr)
            if ip is not None:
                addrs.append(ip)
    return addrs


def _sort_key(value):
    ip = _to_ip(value)
    return (0 if ip.version == 4 else 1, ip.packed)


def sort_ip_addrs(addrs):
    """Return addrs ordered with IPv4 addresses first, each family ascending."""
    return sorted(addrs, key=_sort_key)