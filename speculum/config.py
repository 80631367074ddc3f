"""Settings for one mirror run."""

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

DEFAULT_INDEX = "index.html"
DEFAULT_HEADER_TIMEOUT = 30.0
DEFAULT_BODY_TIMEOUT = 120.0
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

# Connection pool: sized well above one in-flight resource so more workers need no transport changes
MAX_CONNECTIONS = 1000
MAX_KEEPALIVE = 256
KEEPALIVE_EXPIRY = 3.0

RETRY_BACKOFF = 2.0
MAX_RETRY_WAIT = 60.0


def default_staging_dir() -> Path:
    return Path(tempfile.gettempdir()) / "speculum"


@dataclass
class MirrorConfig:
    """Everything a crawl needs besides the admission filter."""

    entry_url: str
    local_root: Path
    staging_dir: Path = field(default_factory=default_staging_dir)
    clean_local: bool = False
    skip_existing: bool = False
    link_redirects: bool = False  # symlink redirect/canonical paths to the primary file
    default_index: str = DEFAULT_INDEX
    header_timeout: float = DEFAULT_HEADER_TIMEOUT
    body_timeout: float = DEFAULT_BODY_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT
    workers: int = 1
    max_retries: int = 0
    retry_backoff: float = RETRY_BACKOFF
    max_connections: int = MAX_CONNECTIONS
    max_keepalive: int = MAX_KEEPALIVE
    keepalive_expiry: float = KEEPALIVE_EXPIRY

    def __post_init__(self) -> None:
        self.local_root = Path(self.local_root)
        self.staging_dir = Path(self.staging_dir)
        if urlsplit(self.entry_url).scheme not in ("http", "https"):
            raise ValueError(f"entry url must be http(s): {self.entry_url!r}")
        if not self.default_index or "/" in self.default_index:
            raise ValueError(f"invalid default index: {self.default_index!r}")
        if self.header_timeout <= 0 or self.body_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
