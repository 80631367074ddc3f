"""Mime lookups: guess from a URL, pick a file extension, resolve a resource's type."""

import codecs
import mimetypes
import re
from urllib.parse import urlsplit

# Stable choices where mimetypes would return a platform-dependent or unusual extension
PREFERRED_EXTENSIONS = {
    "text/html": "html",
    "application/xhtml+xml": "html",
    "text/css": "css",
    "application/javascript": "js",
    "text/javascript": "js",
    "application/json": "json",
    "text/plain": "txt",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "image/x-icon": "ico",
    "image/vnd.microsoft.icon": "ico",
    "application/pdf": "pdf",
    "font/woff": "woff",
    "font/woff2": "woff2",
}


def strip_params(content_type: str | None) -> str | None:
    """'text/html; charset=utf-8' -> 'text/html'."""
    if not content_type:
        return None
    value = content_type.split(";", 1)[0].strip().lower()
    return value or None


def charset_of(content_type: str | None) -> str | None:
    """Charset parameter of a Content-Type header, or None when absent or not a known codec."""
    if not content_type:
        return None
    for param in content_type.split(";")[1:]:
        name, _, value = param.partition("=")
        if name.strip().lower() != "charset":
            continue
        value = value.strip().strip("\"'")
        try:
            codecs.lookup(value)
        except LookupError:
            return None
        return value.lower()
    return None

def guess_from_url(url: str) -> str | None:
    """Mime type from the URL path's extension, or None."""
    path = urlsplit(url).path
    if not path:
        return None
    guessed, _ = mimetypes.guess_type(path, strict=False)
    return guessed


def extension_for(mime: str | None) -> str | None:
    """File extension (no dot) for a mime type, or None when unknown."""
    mime = strip_params(mime)
    if not mime:
        return None
    if mime in PREFERRED_EXTENSIONS:
        return PREFERRED_EXTENSIONS[mime]
    ext = mimetypes.guess_extension(mime, strict=False)
    return ext.lstrip(".") if ext else None


def resolve_mime(expected: str | None, url: str, content_type: str | None) -> str | None:
    """
    Type of a fetched resource. An expected type from the parent link wins unless the URL
    guess or the served type agrees with it, in which case the more specific value is used.
    Without an expectation the served type wins over the URL guess.
    """
    from_url = guess_from_url(url)
    served = strip_params(content_type)
    if expected:
        pattern = re.compile(re.escape(expected), re.IGNORECASE)
        if from_url and pattern.search(from_url):
            return from_url
        if served and pattern.search(served):
            return served
        return expected
    return served or from_url
