"""Local layout of the mirror: URL identity, URL -> path mapping, relative links, publishing."""

import base64
import errno
import hashlib
import os
import posixpath
import shutil
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

from speculum.config import DEFAULT_INDEX
from speculum.errors import PublishError, StartupError
from speculum.mime import extension_for

DEFAULT_EXTENSION = "html"
DIGEST_CHUNK = 65536


def normalize_url(url: str) -> str:
    """
    Identity of a URL in the registry: protocol and fragment removed.
    Must stay in tune with local_path_for_url, which also ignores both.
    """
    parts = urlsplit(url)
    return urlunsplit(("", parts.netloc.lower(), parts.path or "/", parts.query, ""))


def encode_query(query: str) -> str:
    """Base64 of '?query', filename-safe alphabet so it never adds a path separator."""
    if not query:
        return ""
    return base64.urlsafe_b64encode(f"?{query}".encode("utf-8")).decode("ascii")


def local_path_for_url(
    root: Path, url: str, mime: str | None, default_index: str = DEFAULT_INDEX
) -> Path:
    """
    Deterministic local path for an absolute URL of a given type:
    <root>/<hostname>/<path without extension><base64 query>.<ext for mime>.
    Links are rewritten against this path before the target is fetched, so
    identical input must always give identical output.
    """
    parts = urlsplit(url)
    suffix = encode_query(parts.query)
    ext = extension_for(mime) or DEFAULT_EXTENSION
    path = parts.path if len(parts.path) > 1 else "/"
    if path.endswith("/"):
        path += default_index
    stem, _ = posixpath.splitext(path)
    path = f"{stem}{suffix}.{ext}"
    # never escape <root>/<hostname>
    segments = [s for s in path.split("/") if s not in ("", ".", "..")]
    return Path(root, parts.hostname or "unknown", *segments)


def relativize(target: Path, page: Path, query: str = "", fragment: str = "") -> str:
    """Link from the directory of page to target, with query and fragment reattached."""
    rel_dir = os.path.relpath(Path(target).parent, Path(page).parent)
    rel = posixpath.normpath(posixpath.join(Path(rel_dir).as_posix(), Path(target).name))
    if query:
        rel += f"?{query}"
    if fragment:
        rel += f"#{fragment}"
    return rel


def href_for(rel: str) -> str:
    """Percent-encode a relative link so a browser resolves it to the literal filename."""
    path, sep, rest = rel.partition("?")
    if not sep:
        path, sep, rest = rel.partition("#")
    return quote(path, safe="/=-_.~") + sep + rest


def prepare_directories(*dirs: Path) -> None:
    """Create each directory; an existing one is fine, anything else is fatal."""
    for d in dirs:
        try:
            Path(d).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StartupError(f"cannot create directory {d}: {e}") from e


def clean_directory(path: Path) -> None:
    """Remove a previous mirror tree."""
    path = Path(path)
    if path.resolve() == Path(path.resolve().anchor):
        raise StartupError(f"refusing to clean filesystem root {path}")
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as e:
        raise StartupError(f"cannot clean {path}: {e}") from e


def file_digest(path: Path) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(DIGEST_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def discard(path: Path | None) -> None:
    if path is not None:
        Path(path).unlink(missing_ok=True)


def publish(staging: Path, dest: Path) -> None:
    """
    Move a staging file into place with an atomic rename. Parent directories are
    created if missing. Across filesystems the file is copied next to dest first.
    """
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(staging, dest)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            sibling = dest.with_name(f".{dest.name}.{staging.name}")
            shutil.copyfile(staging, sibling)
            os.replace(sibling, dest)
            staging.unlink()
    except OSError as e:
        raise PublishError(f"cannot publish {dest}: {e}") from e


def create_symlink(link: Path, target: Path) -> bool:
    """
    Point link at target with a relative symlink. An existing symlink is replaced,
    a regular file is left alone. Returns True if the link was created.
    """
    if link == target:
        return False
    try:
        if link.is_symlink():
            link.unlink()
        elif link.exists():
            return False
        link.parent.mkdir(parents=True, exist_ok=True)
        link.symlink_to(os.path.relpath(target, link.parent))
    except OSError as e:
        raise PublishError(f"cannot link {link} -> {target}: {e}") from e
    return True
