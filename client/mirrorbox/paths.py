"""Remote path helpers. Remote paths use forward slashes and start at '/'."""

import posixpath
from pathlib import Path


def normalize(path: str) -> str:
    """Return path with a leading slash, forward slashes and no trailing slash."""
    parts = [p for p in (path or "").replace("\\", "/").split("/") if p]
    return "/" + "/".join(parts)


def path_join(parent: str, *names: str) -> str:
    return normalize(posixpath.join(normalize(parent), *(n.strip("/") for n in names)))


def parent_path(path: str) -> str:
    """Parent directory of a remote path. The parent of '/' is '/'."""
    return normalize(posixpath.dirname(normalize(path)))


def basename(path: str) -> str:
    return posixpath.basename(normalize(path))


def to_local(root: Path, path: str) -> Path:
    """Map a remote path under a local root. Rejects '.' and '..' segments."""
    parts = [p for p in normalize(path).split("/") if p]
    for part in parts:
        if part in (".", ".."):
            raise ValueError(f"Unsafe path segment: {part!r}")
    return root.joinpath(*parts)
