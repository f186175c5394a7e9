"""Per-file version cache: trust a local copy without a round trip when possible."""

import logging
from pathlib import Path
from typing import Callable, List, Optional

from mirrorbox.api.client import RemoteClient
from mirrorbox.cache.repo_dirs import RepoDirectoryResolver
from mirrorbox.db.index import PersistentIndex
from mirrorbox.db.models import FileCacheRow
from mirrorbox.errors import NetworkUnavailable
from mirrorbox.models import Account, CachedFile
from mirrorbox.network import NetworkCheck
from mirrorbox.paths import normalize, to_local

log = logging.getLogger(__name__)

# Called with the local path whenever a cached file changes (e.g. media indexers)
FileChangedCallback = Callable[[Path], None]


class FileVersionCache:
    """Last-synced file id of each local copy of one account."""

    def __init__(
        self,
        account: Account,
        index: PersistentIndex,
        resolver: RepoDirectoryResolver,
        remote: RemoteClient,
        network_check: NetworkCheck = lambda: True,
        on_file_changed: Optional[FileChangedCallback] = None,
    ) -> None:
        self._account = account
        self._index = index
        self._resolver = resolver
        self._remote = remote
        self._network_check = network_check
        self._on_file_changed = on_file_changed

    def _to_entry(self, row: FileCacheRow) -> Optional[CachedFile]:
        repo_dir = self._resolver.existing(row.repo_id)
        if repo_dir is None:
            return None
        try:
            local = to_local(repo_dir, row.path)
        except ValueError:
            return None
        return CachedFile(
            repo_id=row.repo_id,
            repo_name=row.repo_name,
            path=row.path,
            file_id=row.file_id,
            local_file=local,
            account_signature=row.account,
        )

    def get(self, repo_id: str, path: str) -> Optional[CachedFile]:
        row = self._index.get_file_cache_item(self._account.signature, repo_id, normalize(path))
        return self._to_entry(row) if row else None

    def list_cached(self) -> List[CachedFile]:
        rows = self._index.list_file_cache_items(self._account.signature)
        return [e for e in (self._to_entry(r) for r in rows) if e is not None]

    def _local_path(self, repo_id: str, path: str) -> Optional[Path]:
        repo_dir = self._resolver.existing(repo_id)
        if repo_dir is None:
            return None
        try:
            return to_local(repo_dir, path)
        except ValueError:
            return None

    def is_local_copy_fresh(self, repo_id: str, path: str, known_remote_file_id: Optional[str]) -> bool:
        """
        False without a local file. Offline, any local file is trusted. Online,
        fresh iff the cached file id equals known_remote_file_id.
        """
        local = self._local_path(repo_id, path)
        if local is None or not local.is_file():
            return False
        if not self._network_check():
            return True
        entry = self.get(repo_id, path)
        return entry is not None and known_remote_file_id is not None and entry.file_id == known_remote_file_id

    def local_cached_file(self, repo_id: str, path: str, file_id: Optional[str]) -> Optional[Path]:
        """The local copy when it can be shown as is, else None."""
        if self.is_local_copy_fresh(repo_id, path, file_id):
            return self._local_path(repo_id, path)
        return None

    def _record(self, repo_name: str, repo_id: str, path: str, file_id: str, local_file: Path) -> None:
        # local_file does not always live inside the library dir (e.g. uploads from elsewhere)
        if local_file.exists() and self._on_file_changed:
            try:
                self._on_file_changed(local_file)
            except Exception:
                log.exception("File change listener failed for %s", local_file)
        self._index.save_file_cache_item(self._account.signature, repo_id, repo_name, normalize(path), file_id)

    def record_download(self, repo_name: str, repo_id: str, path: str, file_id: str, local_file: Path) -> None:
        log.debug("Downloaded %s:%s as %s", repo_id, path, file_id)
        self._record(repo_name, repo_id, path, file_id, local_file)

    def record_upload(self, repo_name: str, repo_id: str, path: str, file_id: str, local_file: Path) -> None:
        log.debug("Uploaded %s:%s as %s", repo_id, path, file_id)
        self._record(repo_name, repo_id, path, file_id, local_file)

    def evict(self, entry: CachedFile) -> None:
        """Delete the local copy and its entry. The entry goes even if the delete fails."""
        try:
            entry.local_file.unlink(missing_ok=True)
        except OSError as e:
            log.warning("Could not delete cached file %s: %s", entry.local_file, e)
        self._index.delete_file_cache_item(entry.account_signature, entry.repo_id, entry.path)

    def download(self, repo_name: str, repo_id: str, path: str) -> Path:
        """
        Fetch a file, passing the cached file id as a validation token when a
        local copy exists. Returns the local file.
        """
        if not self._network_check():
            raise NetworkUnavailable(f"download {repo_id}:{path}: no connectivity")
        local = self._resolver.local_repo_file(repo_name, repo_id, path)
        entry = self.get(repo_id, path)
        known = entry.file_id if entry and local.is_file() else None
        file_id, file = self._remote.get_file(repo_id, normalize(path), local, known)
        if known is not None and file_id == known:
            return local
        self.record_download(repo_name, repo_id, path, file_id, file)
        return file
