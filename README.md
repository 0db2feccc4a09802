# dnsrelay

`dnsrelay` is a forwarding DNS proxy library. It listens for plain DNS queries
over UDP, TCP and TLS. It passes each query to upstream resolvers that you
supply and sends the answer back to the client. It also has helpers to decode
and encode DNS-over-HTTPS and DNS-over-QUIC messages.

Features:

- routing by domain: chosen domains, or only their subdomains, go to their own
  upstreams, and all other names use the defaults
- reverse (PTR) lookups of private addresses go only to a separate set of
  private upstreams, and only when the client itself is local
- fallback upstreams, queried in parallel when the regular upstreams fail
- per-client rate limiting for UDP, with an allowlist
- a cap on how many requests are handled at the same time
- refusing `ANY` queries, and minimum and maximum TTL overrides on answers
- hooks called before a request, in place of resolving, and after the response
- helpers for the 2-byte length prefix that DNS over TCP, TLS and QUIC use

## Installation

```
pip install dnsrelay
```

To run the test suite:

```
pip install "dnsrelay[test]"
pytest
```

## Upstreams

The package does not include a network client for upstream servers. An
upstream is any subclass of `dnsrelay.upstreams.Upstream` that implements
`address()` and `exchange(msg)`. You can also override `close()`. For
example, with dnspython:

```python
import dns.query
from dnsrelay.upstreams import Upstream


class PlainUpstream(Upstream):
    def __init__(self, addr):
        host, _, port = addr.partition(":")
        self.host, self.port = host, int(port or 53)

    def address(self):
        return f"{self.host}:{self.port}"

    def exchange(self, msg):
        return dns.query.udp(msg, self.host, port=self.port, timeout=5)
```

## Upstream configuration

`parse_upstreams_config(lines, factory)` builds an `UpstreamConfig` from
configuration lines. The `factory` argument turns an address into an
`Upstream`. Lines that name the same address share one instance. If the
factory raises `ValueError` or `OSError`, that error is reported as a
`ValueError`.

| Line                          | Meaning                                                 |
|-------------------------------|---------------------------------------------------------|
| `1.1.1.1`                     | a default upstream                                      |
| `[/example.org/]10.0.0.1`     | `example.org` and its subdomains go to `10.0.0.1`       |
| `[/*.example.org/]10.0.0.2`   | subdomains of `example.org` only, not the domain itself |
| `[/www.example.org/]#`        | exclude this domain; it goes back to the defaults       |
| `[//]10.0.0.3`                | unqualified names (no dots) only                        |

A more specific domain takes priority over a less specific one.

- `UpstreamConfig.get_upstreams_for_domain(host)` returns the upstreams for a
  fully qualified name such as `"www.example.org."`.
- `parse_upstream_line` splits a single line into an address and its domains.
- `validate_domain_name` raises `ValueError` for a bad domain.
- `UpstreamConfig.close()` closes every upstream it holds. If any of them fail
  to close, it raises `UpstreamCloseError`.

## Running the proxy

```python
from dnsrelay.core import Proto, ProxyConfig
from dnsrelay.server import Proxy
from dnsrelay.upstreams import parse_upstreams_config

config = ProxyConfig(
    upstream_config=parse_upstreams_config(["8.8.8.8", "[/lan/]192.168.1.1"], PlainUpstream),
    udp_listen_addr=[("127.0.0.1", 0)],
    tcp_listen_addr=[("127.0.0.1", 0)],
    ratelimit=20,
    refuse_any=True,
)

with Proxy(config) as proxy:
    print(proxy.addr(Proto.UDP), proxy.addrs(Proto.TCP))
    ...
```

The main `ProxyConfig` fields are:

- `upstream_config` sets the default upstreams. At least one is required.
- `private_rdns_upstream_config` and `fallbacks` set the private and fallback
  upstreams.
- `udp_listen_addr`, `tcp_listen_addr` and `tls_listen_addr` are lists of
  `(host, port)` pairs to listen on.
- `tls_context` is required for TLS listeners.
- `udp_buffer_size`, `ratelimit`, `ratelimit_whitelist`, `refuse_any`,
  `cache_min_ttl`, `cache_max_ttl`, `max_concurrent_requests` and
  `trusted_proxies` tune request handling. `cache_min_ttl` and `cache_max_ttl`
  clamp the TTLs of answers.
- `before_request_handler`, `request_handler` and `response_handler` are the
  hooks.

`Proxy.start()` opens the listeners and `Proxy.stop()` closes them, together
with the upstreams. If anything fails to close, `stop()` raises
`ProxyStopError`. `Proxy.addr(proto)` and `Proxy.addrs(proto)` report the
addresses actually bound, which is useful when port 0 was requested.

`dnsrelay.core.Resolver` holds the request handling and works without
sockets:

1. `Resolver.new_context(proto, req)` creates a `DNSContext` for a query.
2. `Resolver.resolve(dctx)` or `Resolver.handle_dns_request(dctx)` handles it.
3. The reply is left in `dctx.res`.

`handle_dns_request` returns whether a reply should be sent. It drops
responses sent as queries. It answers SERVFAIL when a query does not have
exactly one question, and NOTIMP to `ANY` queries when `refuse_any` is set.
The module also provides `gen_with_rcode`, `gen_server_failure`,
`gen_not_impl` and `add_do`.

## Smaller pieces

- `dnsrelay.framing`
  - `add_prefix`, `read_prefixed` and `write_prefixed` handle the 2-byte
    length prefix.
  - `read_prefixed` raises `MessageTooLargeError` when the prefix is too large.
  - `dns_size` returns the response size a client accepts.
- `dnsrelay.iputil`
  - `ip_from_rr`, `contains_ip` and `collect_ip_addrs`.
  - `sort_ip_addrs` puts IPv4 addresses before IPv6 ones.
- `dnsrelay.ratelimit`
  - `RateLimiter` is a sliding-window limiter.
  - `IPRateLimiter` applies a limit per client IP.
- `dnsrelay.sema`: `new_semaphore`, `BoundedSemaphore` and `NoopSemaphore`.
- `dnsrelay.doh`
  - `decode_doh_request` and `encode_doh_response` raise `DoHError`, which
    carries the HTTP status to reply with.
  - `real_ip_from_headers` and `remote_addr` find the client `Address` behind
    proxy headers.
- `dnsrelay.doq`
  - `decode_doq_query` and `encode_doq_response` support both RFC and draft
    framing (`DoQVersion`).
  - `valid_quic_msg`, `read_all`, `ShortBufferError`, `DoQErrorCode` and
    `AddressValidator`.

## What it does not do

- There is no command-line program. The proxy is used from Python code.
- It ships no upstream clients. You provide `Upstream` implementations.
- It keeps no response cache. `cache_min_ttl` and `cache_max_ttl` only rewrite
  answer TTLs.
- It does not listen for DNS over HTTPS, DNS over QUIC or DNSCrypt. The DoH
  and DoQ modules only decode and encode messages for a server you run
  yourself. `Proxy.addrs` returns an empty list for those protocols.
- It has no EDNS Client Subnet and no DNS64 handling.