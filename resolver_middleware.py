import ipaddress
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, Set

import dns.exception
import dns.name
import dns.resolver

from config_middleware import Config
from range_middleware import RangeSet

log = logging.getLogger(__name__)


class DNSError(Exception):
    """Per-domain resolution failure (NXDOMAIN, no A record, timeout, bad name)."""


@dataclass(frozen=True)
class DomainTask:
    hostname: str


@dataclass(frozen=True)
class Classification:
    hostname: str
    address: Optional[str] = None
    is_cdn: bool = False
    error: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.error is None and self.address is not None


# =============================
# DNS A lookup
# =============================
class DnsLookup:
    """
    Callable hostname -> first IPv4 address, raising DNSError.
    One dnspython resolver per worker thread, built from the system config.
    """

    def __init__(self, timeout: float = 3.0, lifetime: float = 5.0):
        self.timeout = timeout
        self.lifetime = lifetime
        self._local = threading.local()

    def _resolver(self) -> dns.resolver.Resolver:
        r = getattr(self._local, "resolver", None)
        if r is None:
            r = dns.resolver.Resolver(configure=True)
            r.timeout = self.timeout
            r.lifetime = self.lifetime
            self._local.resolver = r
        return r

    def check(self):
        """Build this thread's resolver now; DNSError if the system has no usable config."""
        try:
            self._resolver()
        except dns.exception.DNSException as e:
            raise DNSError(f"no usable resolver configuration: {e}") from e

    def __call__(self, hostname: str) -> str:
        try:
            ans = self._resolver().resolve(hostname + ".", "A")
        except dns.resolver.NXDOMAIN as e:
            raise DNSError(f"NXDOMAIN: {hostname}") from e
        except dns.resolver.NoAnswer as e:
            raise DNSError(f"no A record: {hostname}") from e
        except dns.resolver.NoNameservers as e:
            raise DNSError(f"SERVFAIL/no nameservers: {hostname}") from e
        except dns.exception.Timeout as e:
            raise DNSError(f"timeout: {hostname}") from e
        except (dns.name.EmptyLabel, dns.name.LabelTooLong, dns.name.NameTooLong) as e:
            raise DNSError(f"malformed name: {hostname}") from e
        except dns.exception.DNSException as e:
            raise DNSError(f"{type(e).__name__}: {hostname}") from e
        for rdata in ans:
            return rdata.address
        raise DNSError(f"no A record: {hostname}")


def normalize_hostname(raw: str) -> str:
    host = (raw or "").strip().lower()
    if host.endswith("."):
        host = host[:-1]
    return host


def _ipv4_literal(host: str) -> Optional[str]:
    try:
        return str(ipaddress.IPv4Address(host))
    except ValueError:
        return None


# =============================
# Worker pool
# =============================
class ResolverPool:
    def __init__(self, config: Optional[Config] = None, lookup: Optional[Callable[[str], str]] = None):
        config = config or Config()
        self.lookup = lookup or DnsLookup(timeout=config.dns_timeout, lifetime=config.dns_lifetime)

    def classify(self, task: DomainTask, range_set: RangeSet) -> Classification:
        host = normalize_hostname(task.hostname)
        if not host:
            return Classification(task.hostname, error="empty hostname")
        try:
            address = _ipv4_literal(host) or self.lookup(host)
        except DNSError as e:
            return Classification(task.hostname, error=str(e))
        except Exception as e:
            log.debug("Unexpected lookup failure for %s: %r", host, e)
            return Classification(task.hostname, error=f"{type(e).__name__}: {e}")
        return Classification(task.hostname, address=address, is_cdn=range_set.contains(address))

    def run(self, domains: Iterable[str], concurrency: int, range_set: RangeSet) -> Iterator[Classification]:
        """
        Classify domains with exactly `concurrency` workers. The input is pulled
        lazily, never more than `concurrency` tasks in flight; results are
        yielded in completion order.
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        pending: Set[Future] = set()
        pool = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="resolver")
        try:
            for domain in domains:
                while len(pending) >= concurrency:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    for f in done:
                        yield f.result()
                pending.add(pool.submit(self.classify, DomainTask(domain), range_set))

            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for f in done:
                    yield f.result()
        finally:
            # on interrupt or early close, queued tasks are dropped and running lookups abandoned
            pool.shutdown(wait=False, cancel_futures=True)
