"""Crawl bookkeeping: one Resource per normalized URL, the pending queue, and URL status."""

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from speculum.storage import normalize_url

if TYPE_CHECKING:
    from speculum.resource import Resource

UrlFilter = Callable[..., bool]


@dataclass
class UrlRecord:
    """Admission verdict for one URL and how often it was asked for."""

    url: str
    allowed: bool
    asked: int = 0


@dataclass
class CrawlStats:
    allowed: int = 0
    denied: int = 0
    downloaded_bytes: int = 0
    downloads: int = 0
    speed_aggregate: float = 0.0

    def add_download(self, nbytes: int, bps: float) -> None:
        self.downloaded_bytes += nbytes
        self.speed_aggregate += bps
        self.downloads += 1


class CrawlRegistry:
    """
    Source of truth for URL identity. A URL is in at most one of queued,
    downloaded and skipped; the last two are terminal. Not locked: the
    Orchestrator serializes access.
    """

    def __init__(self, url_filter: UrlFilter) -> None:
        self._filter = url_filter
        self._resources: dict[str, "Resource"] = {}
        self._queue: deque["Resource"] = deque()
        self.queued: set[str] = set()
        self.downloaded: set[str] = set()
        self.skipped: set[str] = set()
        self._records: dict[str, UrlRecord] = {}
        self._claims: dict[Path, str] = {}
        self.stats = CrawlStats()

    def __len__(self) -> int:
        return len(self._resources)

    def lookup(self, url: str) -> "Resource | None":
        return self._resources.get(normalize_url(url))

    def get_or_create(self, url: str, factory: Callable[[str], "Resource"]) -> "Resource":
        """The Resource for url, created on first reference."""
        key = normalize_url(url)
        res = self._resources.get(key)
        if res is None:
            res = factory(url)
            self._resources[key] = res
        return res

    def register_alias(self, url: str, res: "Resource") -> bool:
        """Fold an alias URL into res so it is never fetched on its own. False if already known."""
        key = normalize_url(url)
        if key in self._resources:
            return False
        self._resources[key] = res
        self.queued.add(key)
        return True

    # queue

    def enqueue(self, res: "Resource") -> None:
        self._queue.append(res)
        self.queued.add(normalize_url(res.linked_url))

    def dequeue(self) -> "Resource | None":
        return self._queue.popleft() if self._queue else None

    @property
    def pending(self) -> int:
        return len(self._queue)

    # status

    def is_queued(self, url: str) -> bool:
        return normalize_url(url) in self.queued

    def is_processed(self, url: str) -> bool:
        key = normalize_url(url)
        return key in self.downloaded or key in self.skipped

    def mark_finished(self, res: "Resource", ok: bool) -> None:
        """Move every URL owned by res from queued to downloaded or skipped."""
        target = self.downloaded if ok else self.skipped
        for url in res.urls:
            key = normalize_url(url)
            if self._resources.get(key) is not res:
                continue
            self.queued.discard(key)
            target.add(key)

    # admission filter

    def query_filter(self, url: str) -> bool:
        """Ask the admission filter once per URL; later calls reuse the verdict."""
        key = normalize_url(url)
        record = self._records.get(key)
        if record is None:
            allowed = bool(self._filter(urlsplit(url)))
            record = self._records[key] = UrlRecord(url=url, allowed=allowed)
            if allowed:
                self.stats.allowed += 1
            else:
                self.stats.denied += 1
        record.asked += 1
        return record.allowed

    def claim_path(self, path: Path, url: str) -> bool:
        """Reserve a local path for url. False if another URL already holds it."""
        key = normalize_url(url)
        owner = self._claims.setdefault(path, key)
        return owner == key

    # reporting

    def url_stats(self) -> dict[str, int]:
        s = self.stats
        return {
            "allowed": s.allowed,
            "denied": s.denied,
            "queued": len(self.queued),
            "downloaded": len(self.downloaded),
            "skipped": len(self.skipped),
            "bytes": s.downloaded_bytes,
            "speed": int(s.speed_aggregate / s.downloads) if s.downloads else 0,
        }

    def filter_analysis(self) -> dict[str, list[tuple[str, int]]]:
        """Allowed and denied URLs with their ask counts, most asked first. Walks every record."""
        allowed: list[tuple[str, int]] = []
        denied: list[tuple[str, int]] = []
        for record in self._records.values():
            if record.asked == 0:
                continue
            (allowed if record.allowed else denied).append((record.url, record.asked))
        allowed.sort(key=lambda item: item[1], reverse=True)
        denied.sort(key=lambda item: item[1], reverse=True)
        return {"allowed": allowed, "denied": denied}
