"""HTTP transport: pooled connections, streamed bodies, header and body timeouts."""

import logging
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass
from email.utils import parsedate_to_datetime

import httpx

from speculum.config import (
    DEFAULT_BODY_TIMEOUT,
    DEFAULT_HEADER_TIMEOUT,
    DEFAULT_USER_AGENT,
    KEEPALIVE_EXPIRY,
    MAX_CONNECTIONS,
    MAX_KEEPALIVE,
)
from speculum.errors import BodyTimeout, FetchError, HeaderTimeout

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


def parse_retry_after(value: str | None) -> float | None:
    """Parse Retry-After header; return seconds to wait, or None."""
    if not value or not value.strip():
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    diff = dt.timestamp() - time.time()
    return max(1.0, diff) if diff > 0 else None


def _set_read_timeout(response: httpx.Response, seconds: float) -> None:
    """Change the read timeout of a streamed response before its body is read."""
    # httpcore reads the "timeout" request extension when the body stream starts
    timeout = response.request.extensions.get("timeout")
    if isinstance(timeout, dict):
        timeout["read"] = seconds


@dataclass(frozen=True)
class FetchMeta:
    """What is known once response headers arrive, before any body byte."""

    final_url: str
    status: int
    headers: httpx.Headers

    @property
    def content_type(self) -> str | None:
        return self.headers.get("content-type")

    @property
    def retry_after(self) -> float | None:
        return parse_retry_after(self.headers.get("retry-after"))


class FetchStream:
    """
    One response in two phases: `meta` is available as soon as the stream is
    opened, `iter_bytes()` then yields the body until it completes, errors, or
    the body deadline passes. `abort()` tears the transfer down.
    """

    def __init__(self, url: str, response: httpx.Response, body_timeout: float) -> None:
        self.url = url
        self._response = response
        self._body_timeout = body_timeout
        self.meta = FetchMeta(
            final_url=str(response.url),
            status=response.status_code,
            headers=response.headers,
        )
        self.bytes_read = 0
        self.elapsed = 0.0
        self._expired = threading.Event()
        self._close_lock = threading.Lock()

    def iter_bytes(self) -> Iterator[bytes]:
        started = time.monotonic()
        deadline = started + self._body_timeout
        # reads after the headers are bounded by the body timeout, not the header timeout
        _set_read_timeout(self._response, self._body_timeout)
        watchdog = threading.Timer(self._body_timeout, self._expire)
        watchdog.daemon = True
        watchdog.start()
        try:
            for chunk in self._response.iter_bytes():
                if self._expired.is_set() or time.monotonic() > deadline:
                    raise self._timeout()
                self.bytes_read += len(chunk)
                yield chunk
            if self._expired.is_set():
                raise self._timeout()
        except httpx.TimeoutException as e:
            raise BodyTimeout(self.url, f"read timed out ({e})") from e
        except (httpx.RequestError, httpx.StreamError) as e:
            if self._expired.is_set():
                raise self._timeout() from e
            raise FetchError(self.url, f"transfer failed ({e})") from e
        finally:
            watchdog.cancel()
            self.elapsed = time.monotonic() - started
            self.abort()

    def _timeout(self) -> BodyTimeout:
        return BodyTimeout(self.url, f"body not complete after {self._body_timeout:.1f}s")

    def _expire(self) -> None:
        self._expired.set()
        self.abort()

    def abort(self) -> None:
        with self._close_lock:
            if not self._response.is_closed:
                self._response.close()

    def __enter__(self) -> "FetchStream":
        return self

    def __exit__(self, *args: object) -> None:
        self.abort()


class Fetcher:
    """HTTP fetcher with connection pooling. Reuse for every resource of a crawl; thread-safe."""

    def __init__(
        self,
        *,
        header_timeout: float = DEFAULT_HEADER_TIMEOUT,
        body_timeout: float = DEFAULT_BODY_TIMEOUT,
        headers: dict[str, str] | None = None,
        max_connections: int = MAX_CONNECTIONS,
        max_keepalive: int = MAX_KEEPALIVE,
        keepalive_expiry: float = KEEPALIVE_EXPIRY,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.header_timeout = header_timeout
        self.body_timeout = body_timeout
        self._headers = {**DEFAULT_HEADERS, **(headers or {})}
        self._limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive,
            keepalive_expiry=keepalive_expiry,
        )
        self._transport = transport
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                follow_redirects=True,
                headers=self._headers,
                limits=self._limits,
                transport=self._transport,
            )
        return self._client

    def open(self, url: str) -> FetchStream:
        """
        Send GET and wait for response headers (redirects followed). Raises
        HeaderTimeout if they take longer than header_timeout, FetchError on
        transport failure. The body is not read yet.
        """
        client = self._get_client()
        started = time.monotonic()
        try:
            request = client.build_request("GET", url, timeout=httpx.Timeout(self.header_timeout))
            response = client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise HeaderTimeout(url, f"no response headers ({e})") from e
        except httpx.RequestError as e:
            raise FetchError(url, f"request failed ({e})") from e
        waited = time.monotonic() - started
        if waited > self.header_timeout:
            response.close()
            raise HeaderTimeout(url, f"no response headers after {self.header_timeout:.1f}s")
        logger.debug("headers for %s after %.2fs: %s", url, waited, response.status_code)
        return FetchStream(url, response, self.body_timeout)

    def close(self) -> None:
        if self._client and not self._client.is_closed:
            self._client.close()

    def __enter__(self) -> "Fetcher":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
