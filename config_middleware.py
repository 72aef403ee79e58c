import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import yaml

from provider_middleware import ParseStrategy, ProviderSource

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 172800  # 2 days
DEFAULT_THREADS = 100

DEFAULT_CONFIG = """\
Providers:
    - url: https://api.fastly.com/public-ip-list
      format: json-nested
    - url: https://www.cloudflare.com/ips-v4
      format: plain-text
    - url: https://d7uri8nf7uskq.cloudfront.net/tools/list-cloudfront-ips
      format: json-nested
    - url: https://support.maxcdn.com/hc/en-us/article_attachments/360051920551/maxcdn_ips.txt
      format: plain-text
    - url: https://cachefly.cachefly.net/ips/rproxy.txt
      format: plain-text
    - url: https://docs-be.imperva.com/api/bundle/z-kb-articles-km/page/c85245b7.html
      format: embedded-text
    - url: http://edge.sotoon.ir/ip-list.json
      format: json-nested
    - url: https://docs.oracle.com/en-us/iaas/tools/public_ip_ranges.json
      format: json-nested
    - url: https://raw.githubusercontent.com/m333rl1n/cdnx/main/static-CIDRs.txt
      format: plain-text
    - url: https://my.incapsula.com/api/integration/v1/ips
      format: json-nested

# seconds between provider refreshes (default: 2 days)
Interval: 172800
"""


def default_home() -> Path:
    env = os.environ.get("CDNX_HOME")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".config" / "cdnx"


@dataclass
class Config:
    providers: List[ProviderSource] = field(default_factory=list)
    interval: int = DEFAULT_INTERVAL
    config_path: Optional[Path] = None
    cache_path: Path = field(default_factory=lambda: default_home() / "cidr.json")
    fetch_timeout: float = 10.0
    fetch_concurrency: int = 16
    dns_timeout: float = 3.0
    dns_lifetime: float = 5.0


def _parse_source(entry: Any) -> Optional[ProviderSource]:
    if isinstance(entry, str) and entry.strip():
        url = entry.strip()
        return ProviderSource(url, ParseStrategy.infer(url))
    if isinstance(entry, dict) and entry.get("url"):
        url = str(entry["url"]).strip()
        fmt = entry.get("format")
        if fmt is None:
            return ProviderSource(url, ParseStrategy.infer(url))
        try:
            return ProviderSource(url, ParseStrategy(str(fmt).strip().lower()))
        except ValueError:
            log.warning("Unknown format %r for %s; inferring from URL", fmt, url)
            return ProviderSource(url, ParseStrategy.infer(url))
    log.warning("Ignoring malformed provider entry: %r", entry)
    return None


def _parse_interval(value: Any) -> int:
    try:
        interval = int(value)
    except (TypeError, ValueError):
        log.warning("Invalid Interval %r; using default %ds", value, DEFAULT_INTERVAL)
        return DEFAULT_INTERVAL
    if interval < 0:
        log.warning("Negative Interval %r; using default %ds", value, DEFAULT_INTERVAL)
        return DEFAULT_INTERVAL
    return interval


def parse_config(data: Any) -> tuple:
    """
    YAML document -> (providers, interval):
      Providers:
        - https://www.cloudflare.com/ips-v4          # format inferred
        - {url: https://..., format: json-nested}
      Interval: 172800
    """
    if not isinstance(data, dict):
        raise ValueError("config root must be a mapping")
    raw = data.get("Providers") or []
    if not isinstance(raw, list):
        raise ValueError("Providers must be a list")
    providers = [s for s in (_parse_source(e) for e in raw) if s is not None]
    interval = _parse_interval(data.get("Interval", DEFAULT_INTERVAL))
    return providers, interval


def _defaults() -> tuple:
    return parse_config(yaml.safe_load(DEFAULT_CONFIG))


def load_config(path: Optional[Path] = None, home: Optional[Path] = None) -> Config:
    """
    Read config.yaml (creating it with defaults on first run).
    Read failures warn and fall back to the built-in provider list.
    """
    home = home or default_home()
    path = Path(path) if path else home / "config.yaml"

    if not path.exists():
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(DEFAULT_CONFIG, encoding="utf-8")
            log.info("Wrote default config to %s", path)
        except OSError as e:
            log.warning("Could not write default config %s: %s", path, e)
        providers, interval = _defaults()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
            providers, interval = parse_config(data)
            if not providers:
                log.warning("%s lists no providers; falling back to built-in provider list.", path)
                providers, _ = _defaults()
        except (OSError, yaml.YAMLError, ValueError) as e:
            log.warning("Failed to read config %s: %s; falling back to built-in provider list.", path, e)
            providers, interval = _defaults()

    return Config(
        providers=providers,
        interval=interval,
        config_path=path,
        cache_path=home / "cidr.json",
        fetch_timeout=float(os.environ.get("CDNX_FETCH_TIMEOUT", 10.0)),
        dns_timeout=float(os.environ.get("DNS_TIMEOUT", 3.0)),
        dns_lifetime=float(os.environ.get("DNS_LIFETIME", 5.0)),
    )
