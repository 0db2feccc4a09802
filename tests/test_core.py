import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype
import dns.reversename
import dns.rrset
import pytest

from dnsrelay.core import (
    DNSContext,
    NoUpstreamsError,
    Proto,
    ProxyConfig,
    Resolver,
    add_do,
    gen_not_impl,
    gen_server_failure,
    gen_with_rcode,
)
from dnsrelay.upstreams import Upstream, UpstreamConfig, parse_upstreams_config


class FakeUpstream(Upstream):
    def __init__(self, addr="stub", answer_ip=None, error=None, ttl=60, strip_question=False):
        self.addr = addr
        self.answer_ip = answer_ip
        self.error = error
        self.ttl = ttl
        self.strip_question = strip_question
        self.requests = []

    def address(self):
        return self.addr

    def exchange(self, msg):
        self.requests.append(msg)
        if self.error is not None:
            raise self.error
        resp = dns.message.make_response(msg)
        if self.answer_ip is not None:
            resp.answer.append(
                dns.rrset.from_text(msg.question[0].name, self.ttl, "IN", "A", self.answer_ip)
            )
        if self.strip_question:
            resp.question = []
        return resp


def make_resolver(upstream=None, **kwargs):
    if upstream is None:
        upstream = FakeUpstream("8.8.8.8:53", answer_ip="8.8.8.8")
    config = ProxyConfig(upstream_config=UpstreamConfig(upstreams=[upstream]), **kwargs)
    return Resolver(config)


def host_query(host, rdtype="A"):
    return dns.message.make_query(host + ".", rdtype)


def answer_ip(msg):
    return msg.answer[0][0].address


def test_reply_from_upstream_bad_response_restores_question():
    resolver = make_resolver()
    u = FakeUpstream(answer_ip="1.2.3.4", strip_question=True)
    dctx = resolver.new_context(Proto.TCP, host_query("host"))
    dctx.custom_upstream_config = UpstreamConfig(upstreams=[u])
    dctx.addr = ("1.2.3.0", 0)

    resolver.resolve(dctx)

    assert dctx.res.question[0] == dctx.req.question[0]


def test_exchange_custom_upstream_config():
    resolver = make_resolver()
    u = FakeUpstream(answer_ip="4.3.2.1")
    dctx = resolver.new_context(Proto.TCP, host_query("host"))
    dctx.custom_upstream_config = UpstreamConfig(upstreams=[u])
    dctx.addr = ("1.2.3.0", 0)

    resolver.resolve(dctx)

    assert answer_ip(dctx.res) == "4.3.2.1"
    assert dctx.upstream is u


def test_refuse_any():
    resolver = make_resolver(refuse_any=True)
    dctx = resolver.new_context(Proto.UDP, host_query("google.com", "ANY"))
    dctx.addr = ("127.0.0.1", 5353)

    assert resolver.handle_dns_request(dctx) is True
    assert dctx.res.rcode() == dns.rcode.NOTIMP


def test_invalid_request_without_question():
    resolver = make_resolver(refuse_any=True)
    req = dns.message.Message()
    req.flags |= dns.flags.RD
    dctx = resolver.new_context(Proto.UDP, req)
    dctx.addr = ("127.0.0.1", 5353)

    assert resolver.handle_dns_request(dctx) is True
    assert dctx.res.rcode() == dns.rcode.SERVFAIL


def test_response_in_request_is_dropped():
    resolver = make_resolver()
    req = host_query("google-public-dns-a.google.com")
    req.flags |= dns.flags.QR
    dctx = resolver.new_context(Proto.UDP, req)

    assert resolver.handle_dns_request(dctx) is False
    assert dctx.res is None


def test_handle_dns_request_resolves():
    resolver = make_resolver()
    req = host_query("google-public-dns-a.google.com")
    dctx = resolver.new_context(Proto.UDP, req)
    dctx.addr = ("127.0.0.1", 5353)

    assert resolver.handle_dns_request(dctx) is True
    assert dctx.res.id == req.id
    assert answer_ip(dctx.res) == "8.8.8.8"


def test_fallback_used_when_upstream_fails():
    good = FakeUpstream("8.8.8.8:53", answer_ip="8.8.8.8")
    bad = FakeUpstream("1.2.3.4:53", error=OSError("refused"))
    primary = FakeUpstream("8.8.8.8:555", error=OSError("timeout"))
    resolver = make_resolver(primary, fallbacks=[bad, good])
    dctx = resolver.new_context(Proto.UDP, host_query("google-public-dns-a.google.com"))

    resolver.resolve(dctx)

    assert answer_ip(dctx.res) == "8.8.8.8"
    assert dctx.upstream is good


def test_upstream_failure_gives_servfail_and_raises():
    seen = []
    primary = FakeUpstream(error=OSError("timeout"))
    resolver = make_resolver(primary, response_handler=lambda d, e: seen.append(e))
    dctx = resolver.new_context(Proto.UDP, host_query("example.org"))

    with pytest.raises(OSError, match="timeout"):
        resolver.resolve(dctx)

    assert dctx.res.rcode() == dns.rcode.SERVFAIL
    assert len(seen) == 1 and isinstance(seen[0], OSError)


def test_handle_dns_request_replies_servfail_on_upstream_error():
    resolver = make_resolver(FakeUpstream(error=OSError("down")))
    dctx = resolver.new_context(Proto.TCP, host_query("example.org"))

    assert resolver.handle_dns_request(dctx) is True
    assert dctx.res.rcode() == dns.rcode.SERVFAIL


def test_exchange_with_reserved_domains():
    answers = {"1.1.1.1": "8.8.8.8"}
    created = {}

    def factory(addr):
        created[addr] = FakeUpstream(addr, answer_ip=answers.get(addr))
        return created[addr]

    config = parse_upstreams_config(
        [
            "[/adguard.com/]1.2.3.4",
            "[/google.ru/]2.3.4.5",
            "[/maps.google.ru/]#",
            "1.1.1.1",
        ],
        factory,
    )
    resolver = Resolver(ProxyConfig(upstream_config=config))

    dctx = resolver.new_context(Proto.TCP, host_query("google-public-dns-a.google.com"))
    resolver.resolve(dctx)
    assert answer_ip(dctx.res) == "8.8.8.8"

    dctx = resolver.new_context(Proto.TCP, host_query("adguard.com"))
    resolver.resolve(dctx)
    assert dctx.res.answer == []
    assert dctx.upstream is created["1.2.3.4"]

    dctx = resolver.new_context(Proto.TCP, host_query("www.google.ru"))
    resolver.resolve(dctx)
    assert dctx.res.answer == []
    assert dctx.upstream is created["2.3.4.5"]

    dctx = resolver.new_context(Proto.TCP, host_query("maps.google.ru"))
    resolver.resolve(dctx)
    assert answer_ip(dctx.res) == "8.8.8.8"


@pytest.mark.parametrize(
    ("ttl", "expected"),
    [(10, 20), (60, 40), (30, 30)],
)
def test_min_max_ttl(ttl, expected):
    u = FakeUpstream(answer_ip="4.3.2.1", ttl=ttl)
    resolver = make_resolver(u, cache_min_ttl=20, cache_max_ttl=40)
    dctx = resolver.new_context(Proto.UDP, host_query("host"))

    resolver.resolve(dctx)

    assert dctx.res.answer[0].ttl == expected


def test_set_min_max_ttl_zero_max_means_unbounded():
    resolver = make_resolver(cache_min_ttl=5)
    msg = dns.message.make_response(host_query("host"))
    msg.answer.append(dns.rrset.from_text("host.", 100000, "IN", "A", "1.2.3.4"))

    resolver.set_min_max_ttl(msg)

    assert msg.answer[0].ttl == 100000


def test_ratelimit_udp():
    resolver = make_resolver(ratelimit=1)
    first = resolver.new_context(Proto.UDP, host_query("host"))
    first.addr = ("127.0.0.1", 1232)
    second = resolver.new_context(Proto.UDP, host_query("host"))
    second.addr = ("127.0.0.1", 1232)

    assert resolver.handle_dns_request(first) is True
    assert resolver.handle_dns_request(second) is False
    assert second.res is None


def test_ratelimit_not_applied_to_tcp():
    resolver = make_resolver(ratelimit=1)
    results = []
    for _ in range(2):
        dctx = resolver.new_context(Proto.TCP, host_query("host"))
        dctx.addr = ("127.0.0.1", 1232)
        results.append(resolver.handle_dns_request(dctx))
    assert results == [True, True]


def test_before_request_handler_error_gives_servfail():
    def before(resolver, dctx):
        raise RuntimeError("boom")

    resolver = make_resolver(before_request_handler=before)
    dctx = resolver.new_context(Proto.TCP, host_query("host"))

    assert resolver.handle_dns_request(dctx) is True
    assert dctx.res.rcode() == dns.rcode.SERVFAIL


def test_before_request_handler_can_drop():
    resolver = make_resolver(before_request_handler=lambda r, d: False)
    dctx = resolver.new_context(Proto.TCP, host_query("host"))

    assert resolver.handle_dns_request(dctx) is False
    assert dctx.res is None


def test_request_handler_replaces_resolve():
    def handler(resolver, dctx):
        resp = dns.message.make_response(dctx.req)
        resp.answer.append(dns.rrset.from_text("host.", 60, "IN", "A", "9.9.9.9"))
        dctx.res = resp

    u = FakeUpstream(answer_ip="8.8.8.8")
    resolver = make_resolver(u, request_handler=handler)
    dctx = resolver.new_context(Proto.TCP, host_query("host"))

    assert resolver.handle_dns_request(dctx) is True
    assert answer_ip(dctx.res) == "9.9.9.9"
    assert u.requests == []


def test_handle_without_default_upstreams_raises():
    resolver = Resolver(ProxyConfig(upstream_config=UpstreamConfig()))
    dctx = resolver.new_context(Proto.TCP, host_query("host"))
    with pytest.raises(RuntimeError):
        resolver.handle_dns_request(dctx)


def ptr_query(ip):
    return dns.message.make_query(dns.reversename.from_address(ip), "PTR")


def test_private_ptr_goes_to_private_upstreams():
    private = FakeUpstream("192.168.1.1:53")
    resolver = Resolver(
        ProxyConfig(
            upstream_config=UpstreamConfig(upstreams=[FakeUpstream("8.8.8.8:53")]),
            private_rdns_upstream_config=UpstreamConfig(upstreams=[private]),
        )
    )
    dctx = resolver.new_context(Proto.UDP, ptr_query("192.168.1.10"))
    dctx.addr = ("192.168.1.5", 4000)

    assert resolver.select_upstreams(dctx) == [private]


def test_private_ptr_from_external_client_has_no_upstreams():
    resolver = Resolver(
        ProxyConfig(
            upstream_config=UpstreamConfig(upstreams=[FakeUpstream("8.8.8.8:53")]),
            private_rdns_upstream_config=UpstreamConfig(upstreams=[FakeUpstream()]),
        )
    )
    dctx = resolver.new_context(Proto.UDP, ptr_query("192.168.1.10"))
    dctx.addr = ("8.8.4.4", 4000)

    assert resolver.select_upstreams(dctx) is None
    with pytest.raises(NoUpstreamsError):
        resolver.resolve(dctx)
    assert dctx.res is None


def test_private_ptr_without_private_config():
    resolver = make_resolver()
    dctx = resolver.new_context(Proto.UDP, ptr_query("10.0.0.1"))
    dctx.addr = ("10.0.0.2", 4000)
    assert resolver.select_upstreams(dctx) is None


def test_public_ptr_uses_default_upstreams():
    default = FakeUpstream("8.8.8.8:53")
    resolver = make_resolver(default)
    dctx = resolver.new_context(Proto.UDP, ptr_query("8.8.8.8"))
    dctx.addr = ("8.8.4.4", 4000)
    assert resolver.select_upstreams(dctx) == [default]


def test_gen_with_rcode_copies_request():
    req = host_query("example.org")
    resp = gen_with_rcode(req, dns.rcode.NXDOMAIN)

    assert resp.id == req.id
    assert resp.rcode() == dns.rcode.NXDOMAIN
    assert resp.flags & dns.flags.QR
    assert resp.flags & dns.flags.RA
    assert resp.flags & dns.flags.RD
    assert resp.question == req.question
    assert resp.edns == -1


def test_gen_server_failure():
    assert gen_server_failure(host_query("a.b")).rcode() == dns.rcode.SERVFAIL


def test_gen_not_impl_has_edns():
    resp = gen_not_impl(host_query("a.b"))
    assert resp.rcode() == dns.rcode.NOTIMP
    assert resp.edns == 0
    assert resp.payload == 1452
    assert not resp.ednsflags & dns.flags.DO


def test_add_do_without_edns():
    msg = host_query("example.org")
    add_do(msg)
    assert msg.edns == 0
    assert msg.payload == 2048
    assert msg.ednsflags & dns.flags.DO


def test_add_do_keeps_existing_edns():
    msg = dns.message.make_query("example.org.", "A", use_edns=0, payload=1000)
    add_do(msg)
    assert msg.payload == 1000
    assert msg.ednsflags & dns.flags.DO


def test_new_context_ids_increase():
    resolver = make_resolver()
    first = resolver.new_context(Proto.UDP, host_query("a.b"))
    second = resolver.new_context(Proto.TCP, host_query("a.b"))
    assert (first.request_id, second.request_id) == (1, 2)
    assert second.proto is Proto.TCP
    assert isinstance(first, DNSContext) and first.res is None


def test_bad_trusted_proxies():
    with pytest.raises(ValueError, match="proxies verifying"):
        Resolver(ProxyConfig(trusted_proxies=["not-a-subnet"]))


def test_trusted_proxies_parsed():
    resolver = Resolver(ProxyConfig(trusted_proxies=["0.0.0.0/0", "::0/0"]))
    assert [str(n) for n in resolver.trusted_proxies] == ["0.0.0.0/0", "::/0"]