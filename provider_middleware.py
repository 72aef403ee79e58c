import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from range_middleware import CIDRBlock

log = logging.getLogger(__name__)

USER_AGENT = "cdnx/1.0 (+range fetcher)"

# IPv4 with optional /prefix; no match inside longer dotted runs or bad prefixes
_IPV4_RX = re.compile(
    r"(?<![\d.])"
    r"((?:(?:25[0-5]|2[0-4]\d|1\d{2}|[1-9]?\d)\.){3}(?:25[0-5]|2[0-4]\d|1\d{2}|[1-9]?\d))"
    r"(/(?:3[0-2]|[12]?\d))?"
    r"(?!/|[\d.]*\d)"
)


class FetchError(Exception):
    """A single provider could not be fetched or parsed."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


# =============================
# Provider sources
# =============================
class ParseStrategy(Enum):
    PLAIN_TEXT = "plain-text"
    JSON_ARRAY = "json-array"
    JSON_NESTED = "json-nested"
    EMBEDDED_TEXT = "embedded-text"

    @classmethod
    def infer(cls, url: str) -> "ParseStrategy":
        path = urlparse(url).path.lower()
        if path.endswith(".json"):
            return cls.JSON_NESTED
        if path.endswith(".txt") or path.endswith("-v4"):
            return cls.PLAIN_TEXT
        return cls.EMBEDDED_TEXT


@dataclass(frozen=True)
class ProviderSource:
    url: str
    format: ParseStrategy = ParseStrategy.EMBEDDED_TEXT


# =============================
# Parsers (pure, one per strategy)
# =============================
def _collect(entries: Iterable[str]) -> Tuple[List[CIDRBlock], int]:
    blocks: List[CIDRBlock] = []
    skipped = 0
    for entry in entries:
        try:
            blocks.append(CIDRBlock.parse(entry))
        except ValueError:
            skipped += 1
    return blocks, skipped


def parse_plain_text(body: str) -> Tuple[List[CIDRBlock], int]:
    lines = []
    for line in body.splitlines():
        s = line.split("#", 1)[0].strip()
        if s:
            lines.append(s)
    return _collect(lines)


def parse_json_array(body: str) -> Tuple[List[CIDRBlock], int]:
    data = json.loads(body)
    if not isinstance(data, list):
        raise ValueError("expected a top-level JSON array")
    blocks, skipped = _collect(x for x in data if isinstance(x, str))
    return blocks, skipped + sum(1 for x in data if not isinstance(x, str))


def _walk_strings(node: Any):
    if isinstance(node, str):
        yield node
    elif isinstance(node, dict):
        for v in node.values():
            yield from _walk_strings(v)
    elif isinstance(node, list):
        for v in node:
            yield from _walk_strings(v)


def parse_json_nested(body: str) -> Tuple[List[CIDRBlock], int]:
    data = json.loads(body)
    # free-form strings (region names, timestamps) are expected here and not counted
    candidates = [s for s in _walk_strings(data) if _IPV4_RX.fullmatch(s.strip())]
    return _collect(candidates)


def parse_embedded_text(body: str) -> Tuple[List[CIDRBlock], int]:
    return _collect(m.group(0) for m in _IPV4_RX.finditer(body))


PARSERS: Dict[ParseStrategy, Callable[[str], Tuple[List[CIDRBlock], int]]] = {
    ParseStrategy.PLAIN_TEXT: parse_plain_text,
    ParseStrategy.JSON_ARRAY: parse_json_array,
    ParseStrategy.JSON_NESTED: parse_json_nested,
    ParseStrategy.EMBEDDED_TEXT: parse_embedded_text,
}


def parse_body(body: str, strategy: ParseStrategy) -> Tuple[List[CIDRBlock], int]:
    """Return (blocks, skipped_entries). Raises ValueError on an unparsable body."""
    return PARSERS[strategy](body)


# =============================
# HTTP fetch
# =============================
def make_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    return session


def fetch(source: ProviderSource, timeout: float, session: Optional[requests.Session] = None) -> List[CIDRBlock]:
    """
    Download one provider list and parse it per its format.
    Any network, HTTP or parse failure surfaces as FetchError.
    """
    http = session or make_session()
    try:
        resp = http.get(source.url, timeout=timeout)
    except requests.Timeout as e:
        raise FetchError(source.url, f"timeout after {timeout}s") from e
    except requests.RequestException as e:
        raise FetchError(source.url, f"request failed: {e}") from e

    if not resp.ok:
        raise FetchError(source.url, f"HTTP {resp.status_code}")

    try:
        blocks, skipped = parse_body(resp.text, source.format)
    except ValueError as e:
        # json.JSONDecodeError is a ValueError
        raise FetchError(source.url, f"unparsable {source.format.value} body: {e}") from e

    if skipped:
        log.debug("%s: skipped %d malformed entries", source.url, skipped)
    if not blocks:
        raise FetchError(source.url, f"no IPv4 ranges in {source.format.value} body")

    log.debug("%s: %d ranges", source.url, len(blocks))
    return blocks
