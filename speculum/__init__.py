"""Website mirroring: fetch, rewrite links for offline browsing, crawl."""

from importlib.metadata import PackageNotFoundError, version

from speculum.config import MirrorConfig
from speculum.errors import MirrorError, StartupError
from speculum.orchestrator import Orchestrator

try:
    __version__ = version("speculum")
except PackageNotFoundError:
    __version__ = "0.0.0+dev"

__all__ = ["MirrorConfig", "MirrorError", "Orchestrator", "StartupError", "__version__"]
