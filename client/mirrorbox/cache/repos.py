"""Repo list and starred files caches."""

import hashlib
import logging
import os
import threading
from pathlib import Path
from typing import List, Optional

from mirrorbox.api.client import RemoteClient
from mirrorbox.cache.state import CacheState
from mirrorbox.config import get_json_cache_dir
from mirrorbox.db.index import PersistentIndex
from mirrorbox.errors import CorruptCache, NetworkUnavailable, RemoteOperationFailed
from mirrorbox.models import Account, Repo, StarredFile, parse_repos, parse_starred_files
from mirrorbox.network import NetworkCheck

log = logging.getLogger(__name__)

REPOS_BLOB_PREFIX = "repos-"


def repos_blob_name(account: Account) -> str:
    """One repo-list snapshot per (server, account)."""
    digest = hashlib.sha256(f"{account.server}{account.email}".encode("utf-8")).hexdigest()[:16]
    return f"{REPOS_BLOB_PREFIX}{digest}.dat"


class RepoListCache:
    """Repo list of one account, in memory and as a blob in the JSON cache dir."""

    def __init__(
        self,
        account: Account,
        state: CacheState,
        remote: RemoteClient,
        network_check: NetworkCheck = lambda: True,
        cache_dir: Optional[Path] = None,
    ) -> None:
        self._account = account
        self._gate = state.refresh.for_account(account.signature)
        self._remote = remote
        self._network_check = network_check
        self._cache_dir = cache_dir
        self._repos: Optional[List[Repo]] = None
        self._lock = threading.Lock()

    @property
    def blob(self) -> Path:
        return (self._cache_dir or get_json_cache_dir()) / repos_blob_name(self._account)

    def get_cached(self) -> Optional[List[Repo]]:
        """Repos from memory or disk; None when nothing usable is cached."""
        with self._lock:
            if self._repos is not None:
                return self._repos
        try:
            raw = self.blob.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Could not read repo cache %s: %s", self.blob.name, e)
            return None
        try:
            repos = parse_repos(raw)
        except CorruptCache as e:
            log.warning("Repo cache %s unusable, treating as miss: %s", self.blob.name, e)
            return None
        with self._lock:
            self._repos = repos
        return repos

    def get_by_id(self, repo_id: str) -> Optional[Repo]:
        for repo in self.get_cached() or []:
            if repo.id == repo_id:
                return repo
        return None

    def fetch(self) -> Optional[List[Repo]]:
        """Fetch the repo list from the server and cache it. None if the server sent nothing."""
        if not self._network_check():
            raise NetworkUnavailable("list repos: no connectivity")
        raw = self._remote.list_repos()
        if raw is None:
            return None
        try:
            repos = parse_repos(raw)
        except CorruptCache as e:
            raise RemoteOperationFailed(f"list repos: corrupt payload: {e}") from e
        with self._lock:
            self._repos = repos
        blob = self.blob
        tmp = blob.with_name(blob.name + ".tmp")
        try:
            tmp.write_text(raw, encoding="utf-8")
            os.replace(tmp, blob)
        except OSError as e:
            log.error("Could not write repo cache to disk: %s", e)
        self._gate.mark_repos_refreshed()
        return repos


class StarredFilesCache:
    """Starred files of one account; the raw payload lives in the persistent index."""

    def __init__(
        self,
        account: Account,
        index: PersistentIndex,
        state: CacheState,
        remote: RemoteClient,
        network_check: NetworkCheck = lambda: True,
    ) -> None:
        self._account = account
        self._index = index
        self._gate = state.refresh.for_account(account.signature)
        self._remote = remote
        self._network_check = network_check

    def get_cached(self) -> Optional[List[StarredFile]]:
        raw = self._index.get_starred_files(self._account.signature)
        if raw is None:
            return None
        try:
            return parse_starred_files(raw)
        except CorruptCache as e:
            log.warning("Cached starred files unusable, treating as miss: %s", e)
            return None

    def fetch(self) -> Optional[List[StarredFile]]:
        if not self._network_check():
            raise NetworkUnavailable("starred files: no connectivity")
        raw = self._remote.starred_files()
        if raw is None:
            return None
        try:
            starred = parse_starred_files(raw)
        except CorruptCache as e:
            raise RemoteOperationFailed(f"starred files: corrupt payload: {e}") from e
        self._index.save_starred_files(self._account.signature, raw)
        self._gate.mark_starred_refreshed()
        return starred
