"""Exceptions raised while mirroring. Everything but StartupError is per-resource."""


class MirrorError(Exception):
    """Base class for mirroring errors."""


class StartupError(MirrorError):
    """Mirror root or staging directory could not be prepared; the crawl does not begin."""


class FetchError(MirrorError):
    """Transport failure: connection refused or reset, broken response."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{message} for url '{url}'")
        self.url = url


class FetchTimeout(FetchError):
    pass


class HeaderTimeout(FetchTimeout):
    """No response headers within the header timeout."""


class BodyTimeout(FetchTimeout):
    """Body did not finish within the body timeout."""


class HttpStatusError(FetchError):
    """Response status >= 400."""

    def __init__(self, url: str, status: int, retry_after: float | None = None) -> None:
        super().__init__(url, f"HTTP {status}")
        self.status = status
        self.retry_after = retry_after


class TransformError(MirrorError):
    """Content could not be rewritten."""


class PublishError(MirrorError):
    """Staging file could not be written, linked or moved into place."""
