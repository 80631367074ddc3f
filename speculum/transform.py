"""
Rewrite transformers between the response body and the staging file.

Each transformer takes bytes with feed() and returns the bytes to write so far;
close() returns the rest. CSS is rewritten rule by rule as it arrives; HTML
needs the whole document, so it is held until close(). Link handling lives in
the callbacks, not here.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass

from bs4 import BeautifulSoup
from bs4.element import Tag

from speculum.errors import TransformError


@dataclass(frozen=True)
class Keep:
    """Keep the element with these (possibly rewritten) attributes."""

    attributes: dict[str, str]


class Drop:
    """Remove the element from the output."""

    def __repr__(self) -> str:
        return "DROP"


DROP = Drop()

TagResult = Keep | Drop
OnTag = Callable[[str, dict[str, str]], TagResult]
OnRef = Callable[[str], str]

# @import url("x.css") | @import "x.css" | url(x.png)
CSS_REF_RE = re.compile(
    r"@import\s+(?:url\(\s*(?P<iq>[\"']?)(?P<iu>[^)\"']+)(?P=iq)\s*\)"
    r"|(?P<sq>[\"'])(?P<su>[^\"']+)(?P=sq))"
    r"|url\(\s*(?P<q>[\"']?)(?P<u>[^)\"']+)(?P=q)\s*\)",
    re.IGNORECASE,
)


def rewrite_css(text: str, on_url: OnRef, on_import: OnRef) -> str:
    """Replace every url(...) and @import target in a stylesheet via the callbacks."""

    def repl(m: re.Match) -> str:
        if m.group("iu") is not None:
            q = m.group("iq")
            return f"@import url({q}{on_import(m.group('iu').strip())}{q})"
        if m.group("su") is not None:
            q = m.group("sq")
            return f"@import {q}{on_import(m.group('su').strip())}{q}"
        q = m.group("q")
        return f"url({q}{on_url(m.group('u').strip())}{q})"

    return CSS_REF_RE.sub(repl, text)


class PassThrough:
    """Copy bytes unchanged."""

    def feed(self, data: bytes) -> bytes:
        return data

    def close(self) -> bytes:
        return b""


class CssRewriter:
    """
    Rewrite url() and @import references of a stylesheet. Output is flushed up
    to the last complete rule of each chunk; references never span a '}'.
    """

    def __init__(self, on_url: OnRef, on_import: OnRef | None = None) -> None:
        self._on_url = on_url
        self._on_import = on_import or on_url
        self._buf = bytearray()

    def feed(self, data: bytes) -> bytes:
        self._buf += data
        end = self._buf.rfind(b"}") + 1
        if not end:
            return b""
        ready = bytes(self._buf[:end])
        del self._buf[:end]
        return self._rewrite(ready)

    def close(self) -> bytes:
        rest = bytes(self._buf)
        self._buf.clear()
        return self._rewrite(rest)

    def _rewrite(self, data: bytes) -> bytes:
        # surrogateescape round-trips bytes that are not valid UTF-8
        text = data.decode("utf-8", errors="surrogateescape")
        try:
            out = rewrite_css(text, self._on_url, self._on_import)
        except re.error as e:
            raise TransformError(f"css rewrite failed: {e}") from e
        return out.encode("utf-8", errors="surrogateescape")


class HtmlRewriter:
    """
    Visit every element of an HTML document in document order. on_tag(name, attrs)
    returns Keep(attrs) to keep the element with the returned attributes or DROP to
    delete it. on_style(text) rewrites the text of <style> elements.

    The whole document is parsed at close(). `encoding` is the charset the server
    declared; it wins over any in-document declaration. Output is UTF-8 and the
    document's <meta charset> is updated, or added when it had none.
    """

    def __init__(self, on_tag: OnTag, on_style: OnRef | None = None, encoding: str | None = None) -> None:
        self._on_tag = on_tag
        self._on_style = on_style
        self._encoding = encoding
        self._buf = bytearray()

    def feed(self, data: bytes) -> bytes:
        self._buf += data
        return b""

    def close(self) -> bytes:
        markup = bytes(self._buf)
        self._buf = bytearray()
        try:
            soup = BeautifulSoup(
                markup, "lxml", from_encoding=self._encoding, multi_valued_attributes=None
            )
        except Exception as e:  # parser failures surface as many exception types
            raise TransformError(f"html parse failed: {e}") from e
        for tag in soup.find_all(True):
            if tag.decomposed:
                continue
            self._visit(tag)
        _declare_charset(soup)
        return soup.encode("utf-8")

    def _visit(self, tag: Tag) -> None:
        result = self._on_tag(tag.name, dict(tag.attrs))
        if isinstance(result, Drop):
            tag.decompose()
            return
        tag.attrs = dict(result.attributes)
        if tag.name == "style" and self._on_style and tag.string:
            tag.string.replace_with(self._on_style(str(tag.string)))


def _declare_charset(soup: BeautifulSoup) -> None:
    """Add <meta charset="utf-8"> to a document that declares no charset."""
    for meta in soup.find_all("meta"):
        if meta.get("charset") or meta.get("http-equiv", "").lower() == "content-type":
            return
    if soup.html is None:
        return
    head = soup.head
    if head is None:
        head = soup.new_tag("head")
        soup.html.insert(0, head)
    head.insert(0, soup.new_tag("meta", attrs={"charset": "utf-8"}))
