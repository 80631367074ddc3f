from collections import Counter
from pathlib import Path

import httpx
import pytest

from speculum.config import MirrorConfig
from speculum.fetcher import Fetcher
from speculum.orchestrator import Orchestrator


def page(body: str | bytes = "", content_type: str = "text/html", status: int = 200, headers: dict | None = None):
    if isinstance(body, str):
        body = body.encode("utf-8")
    hdrs = {"content-type": content_type} if content_type else {}
    hdrs.update(headers or {})
    return status, hdrs, body


class Site:
    """Fake web server for httpx.MockTransport: full URL -> (status, headers, body)."""

    def __init__(self, pages: dict[str, tuple] | None = None) -> None:
        self.pages = dict(pages or {})
        self.hits: Counter[str] = Counter()

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.hits[url] += 1
        entry = self.pages.get(url)
        if entry is None:
            return httpx.Response(404, headers={"content-type": "text/html"}, content=b"not found")
        if callable(entry):
            return entry(request)
        status, headers, body = entry
        return httpx.Response(status, headers=headers, content=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def mirror_root(tmp_path: Path) -> Path:
    return tmp_path / "mirror"


@pytest.fixture
def make_crawl(tmp_path: Path, mirror_root: Path):
    def make(
        site: Site,
        entry: str = "http://example.com/",
        url_filter=None,
        on_finish=None,
        on_resource=None,
        **options,
    ) -> Orchestrator:
        config = MirrorConfig(
            entry_url=entry,
            local_root=mirror_root,
            staging_dir=tmp_path / "staging",
            **options,
        )
        fetcher = Fetcher(
            header_timeout=config.header_timeout,
            body_timeout=config.body_timeout,
            transport=site.transport(),
        )
        return Orchestrator(config, url_filter, fetcher=fetcher, on_finish=on_finish, on_resource=on_resource)

    return make