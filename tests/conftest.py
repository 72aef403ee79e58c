import logging

import pytest

from range_middleware import CIDRBlock, RangeSet
from resolver_middleware import DNSError

# medium.com sits behind Cloudflare-style space, ford.com does not
DNS_TABLE = {
    "medium.com": "104.16.120.127",
    "ford.com": "19.12.80.1",
}

CDN_BLOCKS = ["104.16.0.0/13", "172.64.0.0/13", "151.101.0.0/16"]


class FakeLookup:
    def __init__(self, table=None):
        self.table = dict(DNS_TABLE if table is None else table)
        self.calls = []

    def __call__(self, hostname):
        self.calls.append(hostname)
        try:
            return self.table[hostname]
        except KeyError:
            raise DNSError(f"NXDOMAIN: {hostname}")


class FakeResponse:
    def __init__(self, text="", status_code=200):
        self.text = text
        self.status_code = status_code

    @property
    def ok(self):
        return self.status_code < 400


class FakeSession:
    """url -> FakeResponse or exception instance."""

    def __init__(self, routes):
        self.routes = routes
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append((url, timeout))
        got = self.routes[url]
        if isinstance(got, Exception):
            raise got
        return got


@pytest.fixture
def cdn_ranges():
    return RangeSet.build(CIDRBlock.parse(c) for c in CDN_BLOCKS)


@pytest.fixture
def fake_lookup():
    return FakeLookup()


@pytest.fixture(autouse=True)
def _isolate_logging():
    yield
    root = logging.getLogger()
    for h in list(root.handlers):
        if h.__class__.__name__ == "TqdmHandler" or isinstance(h, logging.FileHandler):
            root.removeHandler(h)
            h.close()
