"""Per-account engine: wires the caches around one remote client.

Reads consult the refresh gate first. A fresh scope is served from the cache;
a stale scope (or a miss) goes to the server with the last known version
token, and the answer is folded back into the caches.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional, TypeVar
from urllib.parse import quote

from mirrorbox.api.client import RemoteClient
from mirrorbox.cache.dirents import DirentCache
from mirrorbox.cache.files import FileChangedCallback, FileVersionCache
from mirrorbox.cache.repo_dirs import RepoDirectoryResolver
from mirrorbox.cache.repos import RepoListCache, StarredFilesCache
from mirrorbox.cache.state import CacheState
from mirrorbox.config import CacheSettings, get_settings
from mirrorbox.db.index import PersistentIndex
from mirrorbox.errors import CorruptCache, NetworkUnavailable, RemoteOperationFailed
from mirrorbox.models import (
    Account,
    AccountInfo,
    Activities,
    Dirent,
    Repo,
    SearchedFile,
    ServerInfo,
    StarredFile,
    parse_account_info,
    parse_activities,
    parse_search_results,
    parse_server_info,
)
from mirrorbox.network import NetworkCheck, network_check_for
from mirrorbox.paths import normalize, to_local
from mirrorbox.sync.coordinator import SyncCoordinator

log = logging.getLogger(__name__)

T = TypeVar("T")


def _decode_remote(what: str, parse: Callable[[Optional[str]], T], raw: Optional[str]) -> T:
    try:
        return parse(raw)
    except CorruptCache as e:
        raise RemoteOperationFailed(f"{what}: corrupt payload: {e}") from e


class MirrorEngine:
    """
    Cache-consistent access to one account. Build one per account with the
    process-wide CacheState; engines of different accounts share the state.
    """

    def __init__(
        self,
        account: Account,
        state: CacheState,
        index: Optional[PersistentIndex] = None,
        remote: Optional[RemoteClient] = None,
        network_check: Optional[NetworkCheck] = None,
        media_dir: Optional[Path] = None,
        cache_dir: Optional[Path] = None,
        on_file_changed: Optional[FileChangedCallback] = None,
        settings: Optional[CacheSettings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.account = account
        self.state = state
        self.gate = state.refresh.for_account(account.signature)
        self.index = index or PersistentIndex()
        self.remote = remote or RemoteClient(account.server, account.token, timeout=settings.http_timeout)
        self._network_check = network_check or network_check_for(account.server)

        self.resolver = RepoDirectoryResolver(account, self.index, state, media_dir=media_dir)
        self.dirents = DirentCache(account, self.index, state, self.remote, self._network_check, cache_dir=cache_dir)
        self.files = FileVersionCache(
            account, self.index, self.resolver, self.remote, self._network_check, on_file_changed=on_file_changed
        )
        self.repos = RepoListCache(account, state, self.remote, self._network_check, cache_dir=cache_dir)
        self.starred = StarredFilesCache(account, self.index, state, self.remote, self._network_check)
        self.coordinator = SyncCoordinator(
            self.remote, self.dirents, self.files, self.resolver, self.gate, self._network_check
        )

    def is_network_on(self) -> bool:
        return self._network_check()

    def _require_network(self, what: str) -> None:
        if not self._network_check():
            raise NetworkUnavailable(f"{what}: no connectivity")

    # --- Gated reads ---

    def get_repos(self, force: bool = False) -> Optional[List[Repo]]:
        """Repo list; served from cache while the repo-list scope is fresh."""
        if not force and not self.gate.is_repos_stale():
            cached = self.repos.get_cached()
            if cached is not None:
                return cached
        return self.repos.fetch()

    def get_dirents(self, repo_id: str, path: str, force: bool = False) -> List[Dirent]:
        """Listing of (repo, path); served from cache while its scope is fresh."""
        path = normalize(path)
        if not force and not self.gate.is_dirents_stale(repo_id, path):
            cached = self.dirents.lookup(repo_id, path)
            if cached is not None:
                return cached.dirents
        return self.dirents.fetch_or_validate(repo_id, path).dirents

    def get_cached_dirents(self, repo_id: str, path: str) -> Optional[List[Dirent]]:
        snapshot = self.dirents.lookup(repo_id, path)
        return snapshot.dirents if snapshot else None

    def get_starred_files(self, force: bool = False) -> Optional[List[StarredFile]]:
        if not force and not self.gate.is_starred_stale():
            cached = self.starred.get_cached()
            if cached is not None:
                return cached
        return self.starred.fetch()

    # --- Files ---

    def get_file(self, repo_name: str, repo_id: str, path: str) -> Path:
        return self.files.download(repo_name, repo_id, path)

    def local_repo_file(self, repo_name: str, repo_id: str, path: str) -> Path:
        return self.resolver.local_repo_file(repo_name, repo_id, path)

    def thumbnail_link(self, repo_id: str, path: str, size: int) -> Optional[str]:
        """file:// URL of a local copy, else the server thumbnail URL. None for encrypted or unknown repos."""
        repo = self.repos.get_by_id(repo_id)
        if repo is None or repo.encrypted:
            return None
        repo_dir = self.resolver.existing(repo_id)
        if repo_dir is not None:
            try:
                local = to_local(repo_dir, path)
            except ValueError:
                local = None
            if local is not None and local.is_file():
                return local.resolve().as_uri()
        return (
            f"{self.remote.base_url}/api2/repos/{repo_id}/thumbnail/"
            f"?p={quote(normalize(path), safe='')}&size={size}"
        )

    # --- Library passwords ---

    def set_password(self, repo_id: str, password: str) -> None:
        """Unlock an encrypted library on the server and remember the password for this session."""
        self._require_network("set password")
        self.remote.set_password(repo_id, password)
        self.state.passwords.set(repo_id, password)

    def is_password_set(self, repo_id: str) -> bool:
        return self.state.passwords.is_password_set(repo_id)

    # --- Pass-through ---

    def get_account_info(self) -> AccountInfo:
        self._require_network("account info")
        return _decode_remote("account info", parse_account_info, self.remote.get_account_info())

    def get_server_info(self) -> ServerInfo:
        self._require_network("server info")
        return _decode_remote("server info", parse_server_info, self.remote.get_server_info())

    def get_events(self, start: int = 0) -> Activities:
        self._require_network("events")
        return _decode_remote("events", parse_activities, self.remote.get_events(start))

    def search(self, query: str, page: int = 0) -> List[SearchedFile]:
        """Search libraries; page 0 disables paging."""
        self._require_network("search")
        return _decode_remote("search", parse_search_results, self.remote.search(query, page))

    def star(self, repo_id: str, path: str) -> None:
        self._require_network("star")
        self.remote.star(repo_id, path)
        self.gate.invalidate_starred()

    def unstar(self, repo_id: str, path: str) -> None:
        self._require_network("unstar")
        self.remote.unstar(repo_id, path)
        self.gate.invalidate_starred()
