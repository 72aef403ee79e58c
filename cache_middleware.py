import json
import logging
import os
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from config_middleware import Config
from provider_middleware import FetchError, ProviderSource, fetch, make_session
from range_middleware import CIDRBlock, RangeSet

log = logging.getLogger(__name__)


class CacheReadError(Exception):
    """Cache file is missing, unreadable or corrupt."""


class TotalRefreshFailure(RuntimeError):
    """No provider could be fetched and there is no cache to fall back to."""


@dataclass(frozen=True)
class CacheRecord:
    ranges: Tuple[CIDRBlock, ...]
    fetched_at: float

    def to_json(self) -> dict:
        return {"fetched_at": self.fetched_at, "ranges": [str(b) for b in self.ranges]}

    @classmethod
    def from_json(cls, data) -> "CacheRecord":
        if not isinstance(data, dict):
            raise CacheReadError("cache root is not an object")
        try:
            fetched_at = float(data["fetched_at"])
            raw = data["ranges"]
        except (KeyError, TypeError, ValueError) as e:
            raise CacheReadError(f"cache record incomplete: {e}") from e
        if not isinstance(raw, list):
            raise CacheReadError("cache ranges is not a list")
        try:
            ranges = tuple(CIDRBlock.parse(x) for x in raw)
        except (TypeError, ValueError) as e:
            raise CacheReadError(f"bad range in cache: {e}") from e
        if not ranges:
            raise CacheReadError("cache holds no ranges")
        return cls(ranges, fetched_at)


def read_record(path: Path) -> CacheRecord:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise CacheReadError(f"no cache at {path}") from e
    except (OSError, ValueError) as e:
        raise CacheReadError(f"unreadable cache {path}: {e}") from e
    return CacheRecord.from_json(data)


def write_record(path: Path, record: CacheRecord):
    """Write via temp file + rename so readers never see a half-written cache."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".cidr-", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(record.to_json(), f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class RangeCache:
    def __init__(
        self,
        config: Config,
        fetcher: Optional[Callable[[ProviderSource, float], List[CIDRBlock]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._clock = clock
        if fetcher is None:
            session = make_session()
            fetcher = lambda src, timeout: fetch(src, timeout, session=session)
        self._fetch = fetcher

    def load_or_refresh(
        self,
        sources: Sequence[ProviderSource],
        interval: float,
        cache_path: Path,
        force: bool = False,
    ) -> RangeSet:
        cache_path = Path(cache_path)
        previous: Optional[CacheRecord] = None
        try:
            previous = read_record(cache_path)
        except CacheReadError as e:
            log.debug("Cache miss: %s", e)

        now = self._clock()
        # a record stamped in the future (clock stepped back, copied file) is stale
        if previous is not None and not force and 0 <= now - previous.fetched_at < interval:
            log.debug("Using cached ranges from %s (age %ds)", cache_path, int(now - previous.fetched_at))
            return RangeSet.build(previous.ranges)

        log.info("Updating ...")
        blocks, ok = self._fetch_all(sources)

        if ok == 0:
            if previous is not None:
                log.warning("Every provider failed; using stale cache from %s", cache_path)
                return RangeSet.build(previous.ranges)
            raise TotalRefreshFailure(
                f"Couldn't fetch any CIDR from {len(sources)} provider(s) and no cache exists at {cache_path}"
            )

        range_set = RangeSet.build(blocks)
        try:
            write_record(cache_path, CacheRecord(range_set.blocks, self._clock()))
        except OSError as e:
            log.warning("Could not persist cache %s: %s", cache_path, e)
        log.info("Updated successfully (%d/%d providers, %d ranges)", ok, len(sources), len(range_set))
        return range_set

    def _fetch_all(self, sources: Sequence[ProviderSource]) -> Tuple[List[CIDRBlock], int]:
        if not sources:
            return [], 0
        blocks: List[CIDRBlock] = []
        ok = 0
        workers = max(1, min(len(sources), self.config.fetch_concurrency))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futs = {pool.submit(self._fetch, src, self.config.fetch_timeout): src for src in sources}
            for f in as_completed(futs):
                src = futs[f]
                try:
                    got = f.result()
                except FetchError as e:
                    log.warning("Failed to fetch %s", e)
                    continue
                except Exception as e:
                    log.warning("Failed to fetch %s: unexpected %s: %s", src.url, type(e).__name__, e)
                    continue
                ok += 1
                blocks.extend(got)
                log.info("%s DONE", src.url)
        return blocks, ok
