"""Upstream selection by domain name."""

from __future__ import annotations

import logging
import string
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import dns.message

log = logging.getLogger(__name__)

UNQUALIFIED_NAMES = "unqualified_names"
"""Reserved name for names without dots."""

MAX_DOMAIN_NAME_LEN = 253
MAX_DOMAIN_LABEL_LEN = 63

_OUTER_CHARS = frozenset(string.ascii_letters + string.digits)
_INNER_CHARS = _OUTER_CHARS | {"-"}


class Upstream(ABC):
    """A DNS server that queries are forwarded to."""

    closed: bool = False

    @abstractmethod
    def address(self) -> str:
        """Return the address of the upstream."""

    @abstractmethod
    def exchange(self, msg: dns.message.Message) -> dns.message.Message:
        """Send msg to the upstream and return its response."""

    def close(self) -> None:
        """Mark the upstream closed; subclasses holding resources release them here."""
        self.closed = True


class UpstreamCloseError(Exception):
    """Some upstreams failed to close."""

    def __init__(self, message: str, errors: list[BaseException]) -> None:
        super().__init__(f"{message}: " + "; ".join(str(e) for e in errors))
        self.errors = errors


def _check_label(label: str) -> str | None:
    if not label:
        return "label is empty"
    if len(label) > MAX_DOMAIN_LABEL_LEN:
        return f"label {label!r} is too long"
    if label[0] not in _OUTER_CHARS or label[-1] not in _OUTER_CHARS:
        return f"label {label!r} has a bad first or last character"
    if any(ch not in _INNER_CHARS for ch in label[1:-1]):
        return f"label {label!r} has a bad character"
    return None


def validate_domain_name(name: str) -> None:
    """Raise ValueError if name is not a valid domain name."""
    ascii_name = name
    if not name.isascii():
        try:
            ascii_name = name.encode("idna").decode("ascii")
        except UnicodeError as err:
            raise ValueError(f"bad domain name {name!r}: {err}") from err
    if not ascii_name:
        raise ValueError(f"bad domain name {name!r}: name is empty")
    if len(ascii_name) > MAX_DOMAIN_NAME_LEN:
        raise ValueError(f"bad domain name {name!r}: name is too long")
    for label in ascii_name.split("."):
        reason = _check_label(label)
        if reason is not None:
            raise ValueError(f"bad domain name {name!r}: {reason}")


def parse_upstream_line(line: str) -> tuple[str, list[str]]:
    """Split a configuration line into an upstream address and its domains.

    Lines of the form ``[/domain1/../domainN/]upstream`` reserve the upstream
    for the listed domains; an empty domain stands for unqualified names.
    """
    if not line.startswith("[/"):
        return line, []
    parts = line[len("[/"):].split("/]")
    if len(parts) != 2:
        raise ValueError(f"wrong upstream specification: {line}")
    domains, address = parts
    hosts = []
    for conf_host in domains.split("/"):
        if not conf_host:
            hosts.append(UNQUALIFIED_NAMES)
            continue
        validate_domain_name(conf_host.removeprefix("*."))
        hosts.append((conf_host + ".").lower())
    return address, hosts


def _suffixes(host: str, count: int):
    """Yield host and its parent names, count names in total."""
    for i in range(count):
        yield host.split(".", i)[-1]


@dataclass
class UpstreamConfig:
    """Default upstreams plus upstreams reserved for particular domains."""

    upstreams: list[Upstream] = field(default_factory=list)
    domain_reserved_upstreams: dict[str, list[Upstream]] = field(default_factory=dict)
    specified_domain_upstreams: dict[str, list[Upstream]] = field(default_factory=dict)
    subdomain_exclusions: set[str] = field(default_factory=set)

    def get_upstreams_for_domain(self, host: str) -> list[Upstream]:
        """Return the upstreams for host.

        More specific domains take priority over less specific ones; a domain
        reserved with an empty list is excluded and gets the defaults.
        """
        if not self.domain_reserved_upstreams:
            return list(self.upstreams)

        dots = host.count(".")
        if dots < 2:
            host = UNQUALIFIED_NAMES
        else:
            host = host.lower()
            if host in self.subdomain_exclusions:
                ups = self.specified_domain_upstreams.get(host)
                if ups:
                    return list(ups)
                ups = self.domain_reserved_upstreams.get(host.split(".", 1)[1])
                if ups:
                    return list(ups)
                return list(self.upstreams)

        for name in _suffixes(host, dots):
            if name not in self.domain_reserved_upstreams:
                continue
            ups = self.domain_reserved_upstreams[name]
            return list(ups) if ups else list(self.upstreams)

        return list(self.upstreams)

    def close(self) -> None:
        """Close every upstream, raising UpstreamCloseError if any failed."""
        errors: list[BaseException] = []

        def close_all(ups: Iterable[Upstream]) -> None:
            for u in ups:
                try:
                    u.close()
                except Exception as err:  # noqa: BLE001 - collected and reported
                    errors.append(err)

        close_all(self.upstreams)
        for spec in (self.domain_reserved_upstreams, self.specified_domain_upstreams):
            for domain in sorted(spec):
                close_all(spec[domain] or ())

        if errors:
            raise UpstreamCloseError("failed to close some upstreams", errors)

    def __enter__(self) -> "UpstreamConfig":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def parse_upstreams_config(
    lines: Iterable[str],
    factory: Callable[[str], Upstream],
) -> UpstreamConfig:
    """Build an UpstreamConfig from configuration lines.

    factory turns an upstream address into an Upstream; identical addresses
    share one instance.  ``[/domain/]#`` excludes a domain from reserved
    upstreams, and ``*.domain`` reserves only the subdomains of domain.
    """
    upstreams: list[Upstream] = []
    index: dict[str, Upstream] = {}
    domain_reserved: dict[str, list[Upstream]] = {}
    specified: dict[str, list[Upstream]] = {}
    subdomains_only: dict[str, list[Upstream]] = {}
    exclusions: set[str] = set()

    for i, line in enumerate(lines):
        address, hosts = parse_upstream_line(line)

        if address == "#" and hosts:
            for host in hosts:
                if host.startswith("*."):
                    host = host[len("*."):]
                    exclusions.add(host)
                    subdomains_only[host] = []
                else:
                    domain_reserved[host] = []
                    specified[host] = []
            continue

        upstream = index.get(address)
        if upstream is None:
            try:
                upstream = factory(address)
            except (ValueError, OSError) as err:
                raise ValueError(f"cannot prepare the upstream {line}: {err}") from err
            index[address] = upstream

        if not hosts:
            log.debug("Upstream %d: %s", i, upstream.address())
            upstreams.append(upstream)
            continue

        for host in hosts:
            if host.startswith("*."):
                host = host[len("*."):]
                exclusions.add(host)
                log.debug("domain %s is added to exclusions list", host)
                subdomains_only.setdefault(host, []).append(upstream)
            else:
                specified.setdefault(host, []).append(upstream)
            domain_reserved.setdefault(host, []).append(upstream)

        log.debug(
            "Upstream %d: %s is reserved for next domains: %s",
            i,
            upstream.address(),
            ", ".join(hosts),
        )

    domain_reserved.update(subdomains_only)

    return UpstreamConfig(
        upstreams=upstreams,
        domain_reserved_upstreams=domain_reserved,
        specified_domain_upstreams=specified,
        subdomain_exclusions=exclusions,
    )