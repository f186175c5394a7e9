"""Mutating operations that keep the caches consistent with server post-state.

Every operation follows one pattern: check connectivity, invoke the remote
call, then fold the returned listing into the dirent cache instead of fetching
it again. A failing remote call raises before any cache is touched.

Copy refetches the destination listing. Move refetches the destination and
the source, since the source listing cannot be rebuilt from any payload.
"""

import logging
import shutil
from pathlib import Path
from typing import List, Optional, Sequence, Union

from mirrorbox.api.client import ListingResult, RemoteClient
from mirrorbox.cache.dirents import DirentCache
from mirrorbox.cache.files import FileVersionCache
from mirrorbox.cache.repo_dirs import RepoDirectoryResolver
from mirrorbox.cache.state import AccountRefreshGate
from mirrorbox.errors import NetworkUnavailable, RemoteOperationFailed, StorageFault
from mirrorbox.models import DirentSnapshot
from mirrorbox.network import NetworkCheck
from mirrorbox.paths import basename, normalize, parent_path, path_join

log = logging.getLogger(__name__)


def _names(names: Union[str, Sequence[str]]) -> List[str]:
    return [names] if isinstance(names, str) else list(names)


class SyncCoordinator:
    """Create, rename, delete, move, copy and upload with cache fold-back."""

    def __init__(
        self,
        remote: RemoteClient,
        dirents: DirentCache,
        files: FileVersionCache,
        resolver: RepoDirectoryResolver,
        gate: AccountRefreshGate,
        network_check: NetworkCheck = lambda: True,
    ) -> None:
        self._remote = remote
        self._dirents = dirents
        self._files = files
        self._resolver = resolver
        self._gate = gate
        self._network_check = network_check

    def _require_network(self, what: str) -> None:
        if not self._network_check():
            raise NetworkUnavailable(f"{what}: no connectivity")

    def _fold(self, repo_id: str, parent: str, result: Optional[ListingResult]) -> Optional[DirentSnapshot]:
        if result is None:
            # No listing in the response: the next read must go to the server
            self._gate.invalidate_dirents(repo_id, parent)
            return None
        content_id, content = result
        return self._dirents.apply_post_mutation_state(repo_id, parent, content_id, content)

    def _refresh(self, repo_id: str, path: str) -> Optional[DirentSnapshot]:
        """Refetch after a successful mutation. Failure only marks the listing stale."""
        try:
            return self._dirents.fetch_or_validate(repo_id, path)
        except (NetworkUnavailable, RemoteOperationFailed) as e:
            log.warning("Could not refresh %s:%s after mutation: %s", repo_id, path, e)
            self._gate.invalidate_dirents(repo_id, path)
            return None

    def create_dir(self, repo_id: str, parent_dir: str, name: str) -> Optional[DirentSnapshot]:
        """Create parent_dir/name. Returns the new listing of parent_dir when the server sent it."""
        self._require_network("create dir")
        result = self._remote.create_dir(repo_id, parent_dir, name)
        return self._fold(repo_id, normalize(parent_dir), result)

    def create_file(self, repo_id: str, parent_dir: str, name: str) -> Optional[DirentSnapshot]:
        self._require_network("create file")
        result = self._remote.create_file(repo_id, parent_dir, name)
        return self._fold(repo_id, normalize(parent_dir), result)

    def rename(self, repo_id: str, path: str, new_name: str, is_dir: bool) -> Optional[DirentSnapshot]:
        self._require_network("rename")
        result = self._remote.rename(repo_id, path, new_name, is_dir)
        return self._fold(repo_id, parent_path(path), result)

    def delete(self, repo_id: str, path: str, is_dir: bool) -> Optional[DirentSnapshot]:
        """Delete path. Also drops the cached listing (dir) or local copy (file) of path."""
        self._require_network("delete")
        result = self._remote.delete(repo_id, path, is_dir)
        snapshot = self._fold(repo_id, parent_path(path), result)
        if is_dir:
            self._dirents.forget(repo_id, path)
        else:
            entry = self._files.get(repo_id, path)
            if entry is not None:
                self._files.evict(entry)
        return snapshot

    def copy(
        self,
        src_repo: str,
        src_dir: str,
        names: Union[str, Sequence[str]],
        dst_repo: str,
        dst_dir: str,
    ) -> Optional[DirentSnapshot]:
        """Copy names from src_dir into dst_dir, then refresh dst_dir."""
        self._require_network("copy")
        self._remote.copy(src_repo, src_dir, _names(names), dst_repo, dst_dir)
        return self._refresh(dst_repo, normalize(dst_dir))

    def move(
        self,
        src_repo: str,
        src_dir: str,
        names: Union[str, Sequence[str]],
        dst_repo: str,
        dst_dir: str,
        batch: bool = False,
    ) -> Optional[DirentSnapshot]:
        """
        Move names from src_dir into dst_dir. A single move may return the
        destination listing, which is folded before both sides are refreshed.
        Returns the destination listing.
        """
        self._require_network("move")
        src_dir, dst_dir = normalize(src_dir), normalize(dst_dir)
        result = None
        if batch:
            self._remote.move_batch(src_repo, src_dir, _names(names), dst_repo, dst_dir)
        else:
            (name,) = _names(names)
            result = self._remote.move(src_repo, path_join(src_dir, name), dst_repo, dst_dir)
        if result is not None:
            self._fold(dst_repo, dst_dir, result)
        snapshot = self._refresh(dst_repo, dst_dir)
        self._refresh(src_repo, src_dir)
        return snapshot

    def upload_file(
        self,
        repo_name: str,
        repo_id: str,
        parent_dir: str,
        file_path: Path,
        update: bool = False,
        copy_to_local: bool = False,
    ) -> Optional[str]:
        """
        Upload (or update) a local file into parent_dir and record its new file
        id. With copy_to_local a new upload is also copied into the library dir.
        Returns the new file id, or None when the server did not report one.
        """
        self._require_network("upload")
        file_path = Path(file_path)
        new_file_id = self._remote.upload_file(repo_id, parent_dir, file_path, update=update)
        if not new_file_id:
            return None
        path = path_join(parent_dir, file_path.name)
        local = self._resolver.local_repo_file(repo_name, repo_id, path)
        if copy_to_local and not update:
            try:
                shutil.copy2(file_path, local)
            except OSError as e:
                raise StorageFault(f"Could not copy {file_path} to {local}: {e}", path=local) from e
        self._files.record_upload(repo_name, repo_id, path, new_file_id, local)
        self._gate.invalidate_dirents(repo_id, normalize(parent_dir))
        log.info("Uploaded %s to %s:%s (%s)", basename(path), repo_id, parent_dir, new_file_id)
        return new_file_id
