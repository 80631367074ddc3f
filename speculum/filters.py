"""Admission filters: predicates over a urlsplit() result deciding whether a URL is mirrored."""

import logging
import re
import threading
from collections.abc import Callable
from urllib.parse import SplitResult, urlsplit, urlunsplit
from urllib.robotparser import RobotFileParser

import httpx

from speculum.config import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

UrlFilter = Callable[[SplitResult], bool]

ROBOTS_TIMEOUT = 10.0


def http_only(parsed: SplitResult) -> bool:
    return parsed.scheme in ("http", "https")


def same_host(entry_url: str) -> UrlFilter:
    """Admit only URLs on the entry URL's host (any scheme or port)."""
    host = (urlsplit(entry_url).hostname or "").lower()

    def check(parsed: SplitResult) -> bool:
        return http_only(parsed) and (parsed.hostname or "").lower() == host

    return check


def matching(include: str | None = None, exclude: str | None = None) -> UrlFilter:
    """Admit URLs matching include (if given) and not matching exclude (if given)."""
    inc = re.compile(include) if include else None
    exc = re.compile(exclude) if exclude else None

    def check(parsed: SplitResult) -> bool:
        url = urlunsplit(parsed)
        if inc and not inc.search(url):
            return False
        return not (exc and exc.search(url))

    return check


def all_of(*filters: UrlFilter) -> UrlFilter:
    def check(parsed: SplitResult) -> bool:
        return all(f(parsed) for f in filters)

    return check


class RobotsFilter:
    """
    robots.txt gate, one parser per scheme+host fetched on first use.
    Hosts whose robots.txt cannot be fetched are allowed.
    """

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, client: httpx.Client | None = None) -> None:
        self.user_agent = user_agent
        self._client = client
        # RobotFileParser on success, None when fetch failed (treat as allow-all)
        self._cache: dict[tuple[str, str], RobotFileParser | None] = {}
        self._lock = threading.Lock()

    def _load(self, scheme: str, netloc: str) -> RobotFileParser | None:
        robots_url = f"{scheme}://{netloc}/robots.txt"
        client = self._client or httpx.Client(follow_redirects=True, timeout=ROBOTS_TIMEOUT)
        try:
            resp = client.get(robots_url, headers={"User-Agent": self.user_agent})
        except httpx.HTTPError as e:
            logger.debug("robots.txt unreachable for %s: %s", netloc, e)
            return None
        finally:
            if self._client is None:
                client.close()
        rp = RobotFileParser(robots_url)
        if resp.status_code in (401, 403):
            rp.disallow_all = True
        elif resp.status_code >= 400:
            rp.allow_all = True
        else:
            rp.parse(resp.text.splitlines())
        return rp

    def _get_parser(self, parsed: SplitResult) -> RobotFileParser | None:
        key = (parsed.scheme or "https", parsed.netloc.lower())
        with self._lock:
            if key not in self._cache:
                self._cache[key] = self._load(*key)
            return self._cache[key]

    def __call__(self, parsed: SplitResult) -> bool:
        if not http_only(parsed):
            return False
        parser = self._get_parser(parsed)
        if parser is None:
            return True
        return parser.can_fetch(self.user_agent, urlunsplit(parsed))
