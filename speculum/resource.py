"""
One unit of crawl work: fetch a URL, rewrite its links while storing it,
publish it atomically and hand discovered references back to the crawl.

States run Queued -> HeaderFetch -> Transferring -> [Evaluating] -> Publishing
-> Done. Any exception leaves the resource Skipped with its staging file
removed; the Orchestrator records the failure and moves on.
"""

import logging
import re
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple
from urllib.parse import urldefrag, urljoin, urlsplit

from speculum.errors import HttpStatusError, PublishError
from speculum.fetcher import FetchMeta, FetchStream, Fetcher
from speculum.mime import charset_of, guess_from_url, resolve_mime, strip_params
from speculum.storage import (
    create_symlink,
    discard,
    file_digest,
    href_for,
    local_path_for_url,
    normalize_url,
    publish,
    relativize,
)
from speculum.transform import (
    DROP,
    CssRewriter,
    HtmlRewriter,
    Keep,
    PassThrough,
    TagResult,
    rewrite_css,
)

if TYPE_CHECKING:
    from speculum.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

HTML_TYPES = frozenset({"text/html", "application/xhtml+xml"})
CSS_TYPE = "text/css"
JS_TYPE = "application/javascript"

# <meta http-equiv="refresh" content="5; url=/next">
META_REFRESH_RE = re.compile(r"^\s*(\d+)\s*;\s*url\s*=\s*(['\"]?)(.+?)\2\s*$", re.IGNORECASE)


class ResourceState(Enum):
    QUEUED = "queued"
    HEADER_FETCH = "header-fetch"
    TRANSFERRING = "transferring"
    EVALUATING = "evaluating"
    PUBLISHING = "publishing"
    DONE = "done"
    SKIPPED = "skipped"


class ChildRef(NamedTuple):
    """A reference found in content: absolute URL, where it will be stored, type hint."""

    url: str
    local_path: Path
    mime: str | None


class Resource:
    """A URL being mirrored, with its redirect and canonical aliases."""

    def __init__(self, url: str, crawl: "Orchestrator") -> None:
        self.crawl = crawl
        self.linked_url = url
        self.redirect_url = ""
        self.canonical_url = ""
        self.base_override = ""
        self.expected_mime: str | None = None
        self.expected_local_path: Path | None = None
        self.mime: str | None = None
        self.temp_file: Path | None = None
        # insertion-ordered set
        self.parsed_resources: dict[ChildRef, None] = {}
        self.remote_headers = None
        self.retries = 0
        self.state = ResourceState.QUEUED
        self._local_path: Path | None = None

    def __repr__(self) -> str:
        return f"<Resource {self.linked_url} {self.state.value}>"

    # aliases

    @property
    def open_url(self) -> str:
        """The URL actually opened; relative links resolve against it."""
        return self.redirect_url or self.linked_url

    @property
    def base_url(self) -> str:
        return self.base_override or self.open_url

    @property
    def official_url(self) -> str:
        return self.canonical_url or self.redirect_url or self.linked_url

    @property
    def urls(self) -> list[str]:
        urls = [self.linked_url]
        if self.redirect_url:
            urls.append(self.redirect_url)
        if self.canonical_url:
            urls.append(self.canonical_url)
        return urls

    def set_redirect_url(self, url: str) -> None:
        self.redirect_url = url
        if self.crawl.config.link_redirects:
            self.crawl.register_alias(url, self)

    def set_canonical_url(self, url: str) -> None:
        self.canonical_url = url
        if self.crawl.config.link_redirects:
            self.crawl.register_alias(url, self)

    # type and location

    def guess_mime(self) -> str | None:
        if self.mime:
            return self.mime
        content_type = self.remote_headers.get("content-type") if self.remote_headers else None
        return resolve_mime(self.expected_mime, self.linked_url, content_type)

    def calculate_local_path(self, url: str, mime: str | None) -> Path:
        config = self.crawl.config
        return local_path_for_url(config.local_root, url, mime, config.default_index)

    @property
    def local_path(self) -> Path:
        """Where this resource is stored; fixed on first use."""
        if self._local_path is None:
            self._local_path = self.expected_local_path or self.calculate_local_path(
                self.linked_url, self.guess_mime()
            )
        return self._local_path

    # pipeline

    def process(self, fetcher: Fetcher) -> None:
        """Run the pipeline to Done. On any error the resource is left Skipped and the error re-raised."""
        try:
            self._enter(ResourceState.HEADER_FETCH)
            with self._fetch_headers(fetcher) as stream:
                self._enter(ResourceState.TRANSFERRING)
                self._transfer(stream)
            changed = True
            if self.crawl.config.skip_existing and self.local_path.is_file():
                self._enter(ResourceState.EVALUATING)
                changed = self._evaluate()
            self._enter(ResourceState.PUBLISHING)
            self._publish(changed)
            self.crawl.admit(self.parsed_resources)
            self._enter(ResourceState.DONE)
        except Exception:
            self._abandon()
            raise

    def reset_for_retry(self) -> None:
        """Back to Queued for another attempt; keeps the local path already handed out to links."""
        discard(self.temp_file)
        self.temp_file = None
        self.parsed_resources.clear()
        self.remote_headers = None
        self.mime = None
        self.canonical_url = ""
        self.base_override = ""
        self.retries += 1
        self.state = ResourceState.QUEUED

    def _enter(self, state: ResourceState) -> None:
        logger.debug("%s: %s -> %s", self.linked_url, self.state.value, state.value)
        self.state = state

    def _abandon(self) -> None:
        discard(self.temp_file)
        self.temp_file = None
        self.state = ResourceState.SKIPPED

    def _fetch_headers(self, fetcher: Fetcher) -> FetchStream:
        stream = fetcher.open(self.linked_url)
        meta = stream.meta
        self.remote_headers = meta.headers
        if normalize_url(meta.final_url) != normalize_url(self.linked_url):
            self.set_redirect_url(meta.final_url)
        if meta.status >= 400:
            stream.abort()
            raise HttpStatusError(self.linked_url, meta.status, meta.retry_after)
        return stream

    def _select_transform(self, meta: FetchMeta) -> HtmlRewriter | CssRewriter | PassThrough:
        served = strip_params(meta.content_type)
        # a declared binary type is never run through a rewriter, whatever the link implied
        if served and served != self.mime and not served.startswith("text/") and served not in HTML_TYPES:
            return PassThrough()
        if self.mime in HTML_TYPES:
            return HtmlRewriter(
                self.update_html_attributes,
                on_style=self._rewrite_inline_css,
                encoding=charset_of(meta.content_type),
            )
        if self.mime == CSS_TYPE:
            return CssRewriter(on_url=self._css_url, on_import=self._css_import)
        return PassThrough()

    def _transfer(self, stream: FetchStream) -> None:
        if self.temp_file is None:
            self.temp_file = self.crawl.allocate_temp_name()
        self.mime = self.guess_mime()
        logger.debug("%s: mime %s -> %s", self.linked_url, self.mime, self.local_path)
        transformer = self._select_transform(stream.meta)
        try:
            out = open(self.temp_file, "wb")
        except OSError as e:
            raise PublishError(f"cannot create staging file {self.temp_file}: {e}") from e
        with out:
            for chunk in stream.iter_bytes():
                out.write(transformer.feed(chunk))
            out.write(transformer.close())
        self.crawl.record_download(stream.bytes_read, stream.elapsed)

    def _evaluate(self) -> bool:
        """True if the new content differs from the copy already on disk."""
        if file_digest(self.local_path) != file_digest(self.temp_file):
            return True
        logger.info("Unchanged: %s", self.local_path)
        discard(self.temp_file)
        self.temp_file = None
        return False

    def _publish(self, changed: bool) -> None:
        if self.crawl.config.link_redirects:
            primary = normalize_url(self.linked_url)
            for alias in (self.canonical_url, self.redirect_url):
                if not alias or normalize_url(alias) == primary:
                    continue
                alias_path = self.calculate_local_path(alias, self.mime)
                if alias_path != self.local_path and create_symlink(alias_path, self.local_path):
                    logger.debug("linked %s -> %s", alias_path, self.local_path)
        if changed:
            publish(self.temp_file, self.local_path)
            self.temp_file = None

    # link rewriting

    def make_url_absolute(self, url: str) -> str:
        return urljoin(self.base_url, url)

    def process_resource_link(self, url: str, mime: str | None) -> str:
        """
        Rewrite one reference found in content. Admitted URLs become a link
        relative to this resource's file and are recorded as children; others
        become absolute. Non-http references are returned untouched.
        """
        ref = url.strip()
        if not ref:
            return url
        try:
            absolute = self.make_url_absolute(ref)
            parts = urlsplit(absolute)
        except ValueError:
            logger.debug("%s: malformed reference %r", self.linked_url, url)
            return url
        if parts.scheme not in ("http", "https"):
            return url
        if not self.crawl.query_filter(absolute):
            return absolute
        link_file = self.calculate_local_path(absolute, mime)
        local = href_for(relativize(link_file, self.local_path, parts.query, parts.fragment))
        target = urldefrag(absolute).url
        if not self.crawl.skip_file(link_file, target):
            self.parsed_resources[ChildRef(target, link_file, mime)] = None
        return local

    def update_html_attributes(self, tag: str, attributes: dict[str, str]) -> TagResult:
        """Rewrite the link-bearing attributes of one element, or drop it."""
        href = attributes.get("href")
        if tag == "a" and href:
            attributes["href"] = self.process_resource_link(href, "text/html")
        elif tag == "link" and href:
            rels = attributes.get("rel", "").lower().split()
            if "canonical" in rels:
                self.set_canonical_url(self.make_url_absolute(href.strip()))
                return DROP
            if "stylesheet" in rels:
                attributes["href"] = self.process_resource_link(href, CSS_TYPE)
            elif "icon" in rels:
                attributes["href"] = self.process_resource_link(href, guess_from_url(href))
        elif tag == "img" and attributes.get("src"):
            attributes["src"] = self.process_resource_link(attributes["src"], guess_from_url(attributes["src"]))
        elif tag == "script" and attributes.get("src"):
            attributes["src"] = self.process_resource_link(attributes["src"], JS_TYPE)
        elif tag == "base" and href:
            self.base_override = urljoin(self.open_url, href.strip())
            return DROP
        elif tag == "form" and attributes.get("action"):
            attributes["action"] = self.process_resource_link(attributes["action"], "text/html")
        elif tag == "button" and attributes.get("formaction"):
            attributes["formaction"] = self.process_resource_link(attributes["formaction"], "text/html")
        elif tag == "meta" and attributes.get("http-equiv", "").lower() == "refresh":
            attributes["content"] = self._rewrite_refresh(attributes.get("content", ""))
        if attributes.get("style"):
            attributes["style"] = self._rewrite_inline_css(attributes["style"])
        return Keep(attributes)

    def _rewrite_refresh(self, content: str) -> str:
        m = META_REFRESH_RE.match(content)
        if not m:
            return content
        delay, _, target = m.groups()
        return f"{delay};url={self.process_resource_link(target, 'text/html')}"

    def _css_url(self, url: str) -> str:
        return self.process_resource_link(url, guess_from_url(url))

    def _css_import(self, url: str) -> str:
        return self.process_resource_link(url, CSS_TYPE)

    def _rewrite_inline_css(self, text: str) -> str:
        return rewrite_css(text, self._css_url, self._css_import)
