"""Stable local directory names for remote libraries.

Layout under the media dir::

    <media dir>/
        foo@example.com (cloud.example.com)/
            Photos/
            Photos (1)/      <- another library also named "Photos"
        foo@corp.com (files.corp.com)/
            Documents/

The (repo id -> dir name) mapping lives in the persistent index and is never
reassigned once created.
"""

import logging
from pathlib import Path
from typing import Optional

from mirrorbox.cache.state import CacheState
from mirrorbox.config import get_media_dir
from mirrorbox.db.index import PersistentIndex
from mirrorbox.errors import StorageFault
from mirrorbox.models import Account
from mirrorbox.paths import to_local

log = logging.getLogger(__name__)


def _candidate(display_name: str, i: int) -> str:
    return display_name if i == 0 else f"{display_name} ({i})"


def _mkdirs(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageFault(f"Could not create directory {path}: {e}", path=path) from e
    if not path.is_dir():
        raise StorageFault(f"Could not create directory {path}", path=path)


class RepoDirectoryResolver:
    """Maps repo ids of one account to collision-free directories."""

    def __init__(
        self,
        account: Account,
        index: PersistentIndex,
        state: CacheState,
        media_dir: Optional[Path] = None,
    ) -> None:
        self._account = account
        self._index = index
        self._lock = state.locks.get(("repo-dirs", account.signature))
        self._media_dir = media_dir

    def account_dir(self) -> Path:
        """Root directory of this account."""
        return (self._media_dir or get_media_dir()) / self._account.account_dir_name

    def existing(self, repo_id: str) -> Optional[Path]:
        """Mapped directory of repo_id, or None. Never creates anything."""
        dir_name = self._index.get_repo_dir(self._account.signature, repo_id)
        return self.account_dir() / dir_name if dir_name is not None else None

    def resolve(self, repo_id: str, display_name: str) -> Path:
        """
        Return the local directory of repo_id, creating it and its mapping on
        first use. Idempotent. Raises StorageFault when the directory cannot
        be created.
        """
        sig = self._account.signature
        with self._lock:
            existing = self._index.get_repo_dir(sig, repo_id)
            if existing is not None:
                repo_dir = self.account_dir() / existing
                if not repo_dir.is_dir():
                    log.info("Library dir %s missing on disk; recreating", repo_dir)
                    _mkdirs(repo_dir)
                return repo_dir

            name = (display_name or "").strip().replace("/", "_") or repo_id
            account_dir = self.account_dir()
            i = 0
            while True:
                unique = _candidate(name, i)
                repo_dir = account_dir / unique
                if not repo_dir.exists() and not self._index.repo_dir_exists(sig, unique):
                    break
                i += 1

            _mkdirs(repo_dir)
            self._index.save_repo_dir_mapping(sig, repo_id, unique)
            log.debug("Mapped library %s to %s", repo_id, repo_dir)
            return repo_dir

    def local_repo_file(self, repo_name: str, repo_id: str, path: str) -> Path:
        """Local path of a file inside the library dir; parent directories are created."""
        try:
            local = to_local(self.resolve(repo_id, repo_name), path)
        except ValueError as e:
            raise StorageFault(str(e), path=path) from e
        _mkdirs(local.parent)
        return local
