import threading
import time

import dns.exception
import dns.resolver
import pytest

from conftest import FakeLookup
from resolver_middleware import (
    Classification,
    DNSError,
    DnsLookup,
    DomainTask,
    ResolverPool,
    normalize_hostname,
)

INPUT = ["noneexists.zzz", "medium.com", "ford.com"]


def test_classify_cdn_non_cdn_and_failure(cdn_ranges, fake_lookup):
    pool = ResolverPool(lookup=fake_lookup)
    results = {c.hostname: c for c in pool.run(INPUT, 4, cdn_ranges)}
    assert results["medium.com"] == Classification("medium.com", "104.16.120.127", True, None)
    assert results["ford.com"] == Classification("ford.com", "19.12.80.1", False, None)
    failed = results["noneexists.zzz"]
    assert failed.error and "NXDOMAIN" in failed.error
    assert failed.is_cdn is False and failed.address is None
    assert not failed.resolved


def test_ip_literal_skips_lookup(cdn_ranges, fake_lookup):
    pool = ResolverPool(lookup=fake_lookup)
    out = list(pool.run(["104.16.0.1", "8.8.8.8"], 2, cdn_ranges))
    assert {(c.hostname, c.is_cdn) for c in out} == {("104.16.0.1", True), ("8.8.8.8", False)}
    assert fake_lookup.calls == []


def test_hostname_is_normalized_before_lookup(cdn_ranges, fake_lookup):
    pool = ResolverPool(lookup=fake_lookup)
    (c,) = pool.run(["  Medium.COM. "], 1, cdn_ranges)
    assert fake_lookup.calls == ["medium.com"]
    assert c.is_cdn
    assert c.hostname == "  Medium.COM. "


def test_normalize_hostname():
    assert normalize_hostname("Example.org.") == "example.org"
    assert normalize_hostname("  ") == ""


def test_empty_hostname_is_an_error(cdn_ranges, fake_lookup):
    c = ResolverPool(lookup=fake_lookup).classify(DomainTask("   "), cdn_ranges)
    assert c.error == "empty hostname"


def test_unexpected_lookup_exception_does_not_crash_pool(cdn_ranges):
    def lookup(host):
        if host == "bad.example":
            raise UnicodeError("label empty or too long")
        return "19.12.80.1"

    out = list(ResolverPool(lookup=lookup).run(["bad.example", "ok.example"], 2, cdn_ranges))
    by_host = {c.hostname: c for c in out}
    assert "UnicodeError" in by_host["bad.example"].error
    assert by_host["ok.example"].resolved


@pytest.mark.parametrize("bad", [0, -3])
def test_concurrency_must_be_positive(cdn_ranges, fake_lookup, bad):
    with pytest.raises(ValueError):
        list(ResolverPool(lookup=fake_lookup).run(INPUT, bad, cdn_ranges))


def test_same_result_set_for_any_concurrency(cdn_ranges):
    table = {f"h{i}.example": f"104.16.{i % 250}.{i % 200}" if i % 3 else f"19.1.{i % 250}.1" for i in range(300)}
    domains = list(table) + [f"missing{i}.example" for i in range(50)]
    pool = ResolverPool(lookup=FakeLookup(table))
    one = set(pool.run(domains, 1, cdn_ranges))
    many = set(pool.run(domains, 100, cdn_ranges))
    assert one == many
    assert len(one) == 350


def test_in_flight_work_never_exceeds_concurrency(cdn_ranges):
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def lookup(host):
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.005)
        with lock:
            state["active"] -= 1
        return "19.12.80.1"

    out = list(ResolverPool(lookup=lookup).run((f"d{i}.example" for i in range(60)), 5, cdn_ranges))
    assert len(out) == 60
    assert 1 <= state["peak"] <= 5


def test_input_is_consumed_lazily(cdn_ranges, fake_lookup):
    pulled = []

    def domains():
        for i in range(1000):
            pulled.append(i)
            yield f"h{i}.example"

    gen = ResolverPool(lookup=fake_lookup).run(domains(), 3, cdn_ranges)
    next(gen)
    # a slot opens after the first result; only a bounded prefix has been read
    assert len(pulled) <= 3 + 1
    gen.close()


class _FakeA:
    def __init__(self, address):
        self.address = address


class _FakeResolver:
    def __init__(self, answer=None, exc=None):
        self.answer = answer
        self.exc = exc
        self.queries = []

    def resolve(self, name, rtype):
        self.queries.append((name, rtype))
        if self.exc:
            raise self.exc
        return self.answer


def _lookup_with(resolver):
    lookup = DnsLookup(timeout=1, lifetime=2)
    lookup._local.resolver = resolver
    return lookup


def test_dns_lookup_first_a_record_wins():
    r = _FakeResolver(answer=[_FakeA("104.16.1.1"), _FakeA("104.16.1.2")])
    assert _lookup_with(r)("medium.com") == "104.16.1.1"
    assert r.queries == [("medium.com.", "A")]


@pytest.mark.parametrize("exc,text", [
    (dns.resolver.NXDOMAIN(), "NXDOMAIN"),
    (dns.resolver.NoAnswer(), "no A record"),
    (dns.resolver.NoNameservers(), "SERVFAIL"),
    (dns.exception.Timeout(), "timeout"),
])
def test_dns_lookup_failures_map_to_dns_error(exc, text):
    with pytest.raises(DNSError, match=text):
        _lookup_with(_FakeResolver(exc=exc))("gone.example")


def test_dns_lookup_empty_answer_is_dns_error():
    with pytest.raises(DNSError, match="no A record"):
        _lookup_with(_FakeResolver(answer=[]))("empty.example")


def test_closing_early_abandons_slow_lookups(cdn_ranges):
    release = threading.Event()

    def lookup(host):
        if host != "fast.example":
            release.wait(2)
        return "19.12.80.1"

    domains = ["fast.example"] + [f"slow{i}.example" for i in range(4)]
    gen = ResolverPool(lookup=lookup).run(domains, 5, cdn_ranges)
    try:
        first = next(gen)
        assert first.hostname == "fast.example"
        started = time.monotonic()
        gen.close()
        assert time.monotonic() - started < 0.5
    finally:
        release.set()


def test_dns_lookup_check_reports_missing_resolver_config(monkeypatch):
    def no_config(*args, **kwargs):
        raise dns.resolver.NoResolverConfiguration("no nameservers")

    monkeypatch.setattr(dns.resolver, "Resolver", no_config)
    with pytest.raises(DNSError, match="no usable resolver configuration"):
        DnsLookup().check()


def test_dns_lookup_check_builds_resolver_once():
    r = _FakeResolver()
    lookup = _lookup_with(r)
    lookup.check()
    assert lookup._resolver() is r
