"""Content-addressed cache of directory listings.

Each (repo, path) of an account points at a content id in the persistent index;
the listing itself is a blob ``dirent-<content id>.dat`` in the JSON cache dir.
Identical listings share one blob. A blob exists on disk while at least one
index entry references it.

Persisting a new listing is one critical section under a process-wide lock:

1. repoint the (repo, path) entry at the new content id;
2. count the remaining references of the old content id (after the repoint);
3. delete the old blob if that count is zero;
4. write the new blob unless an identical one already exists.

No other writer can repoint, evict or write blobs in between, so a blob is
never deleted while an entry references it. Counting after the repoint means
the entry being changed is never counted as a reference to the old id.
"""

import logging
import os
import re
from pathlib import Path
from typing import List, Optional

from mirrorbox.api.client import RemoteClient
from mirrorbox.cache.state import CacheState
from mirrorbox.config import get_json_cache_dir
from mirrorbox.db.index import PersistentIndex
from mirrorbox.errors import CacheWriteFailed, CorruptCache, NetworkUnavailable, RemoteOperationFailed
from mirrorbox.models import Account, DirentSnapshot, parse_dirents
from mirrorbox.network import NetworkCheck
from mirrorbox.paths import normalize

log = logging.getLogger(__name__)

BLOB_PREFIX = "dirent-"
BLOB_SUFFIX = ".dat"

_CONTENT_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

# Guards the persist sequence across accounts, since blobs share one directory
_PERSIST_LOCK_KEY = ("dirents", "persist")


def blob_path(cache_dir: Path, content_id: str) -> Path:
    return cache_dir / f"{BLOB_PREFIX}{content_id}{BLOB_SUFFIX}"


def list_blob_files(cache_dir: Path) -> List[Path]:
    """All dirent snapshot blobs in cache_dir."""
    try:
        return sorted(cache_dir.glob(f"{BLOB_PREFIX}*{BLOB_SUFFIX}"))
    except OSError:
        return []


class DirentCache:
    """Directory listing snapshots of one account, deduplicated by content id."""

    def __init__(
        self,
        account: Account,
        index: PersistentIndex,
        state: CacheState,
        remote: RemoteClient,
        network_check: NetworkCheck = lambda: True,
        cache_dir: Optional[Path] = None,
    ) -> None:
        self._account = account
        self._index = index
        self._state = state
        self._remote = remote
        self._network_check = network_check
        self._cache_dir = cache_dir
        self._persist_lock = state.locks.get(_PERSIST_LOCK_KEY)
        self._gate = state.refresh.for_account(account.signature)

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir or get_json_cache_dir()

    def _key_lock(self, repo_id: str, path: str):
        return self._state.locks.get(("dirents", self._account.signature, repo_id, path))

    # --- Reads ---

    def lookup(self, repo_id: str, path: str) -> Optional[DirentSnapshot]:
        """
        Cached snapshot of (repo, path), or None on a miss. A missing index
        entry, a missing blob and an unparsable blob are all misses; an empty
        directory is a snapshot with no dirents.
        """
        path = normalize(path)
        content_id = self._index.get_dirent_id(self._account.signature, repo_id, path)
        if content_id is None:
            return None
        try:
            return self._load(content_id)
        except CorruptCache as e:
            log.warning("Cached listing %s:%s unusable, treating as miss: %s", repo_id, path, e)
            return None

    def _load(self, content_id: str) -> DirentSnapshot:
        if not _CONTENT_ID.match(content_id):
            raise CorruptCache(f"invalid content id {content_id!r}")
        blob = blob_path(self.cache_dir, content_id)
        try:
            raw = blob.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise CorruptCache(f"blob {blob.name} missing") from e
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptCache(f"blob {blob.name} unreadable: {e}") from e
        return DirentSnapshot(content_id=content_id, raw_content=raw, dirents=parse_dirents(raw))

    # --- Server round trips ---

    def fetch_or_validate(self, repo_id: str, path: str) -> DirentSnapshot:
        """
        Ask the server for (repo, path), passing the cached content id as a
        validation token. An "unchanged" answer returns the cached snapshot
        without touching disk; new content is persisted and returned.
        """
        path = normalize(path)
        with self._key_lock(repo_id, path):
            if not self._network_check():
                raise NetworkUnavailable(f"list {repo_id}:{path}: no connectivity")
            cached = self.lookup(repo_id, path)
            known = cached.content_id if cached else None
            token, payload = self._remote.list_dirents(repo_id, path, known)
            if payload is None:
                if cached is None:
                    raise RemoteOperationFailed(f"list {repo_id}:{path}: unchanged answer without a cached copy")
                log.debug("Listing %s:%s unchanged (%s)", repo_id, path, known)
                snapshot = cached
            else:
                snapshot = self._persist(repo_id, path, token, payload)
            self._gate.mark_dirents_refreshed(repo_id, path)
            return snapshot

    def apply_post_mutation_state(
        self, repo_id: str, parent_path: str, new_content_id: str, new_content: str
    ) -> DirentSnapshot:
        """Fold a listing returned by a mutating call into the cache (no refetch)."""
        parent_path = normalize(parent_path)
        with self._key_lock(repo_id, parent_path):
            snapshot = self._persist(repo_id, parent_path, new_content_id, new_content)
            self._gate.mark_dirents_refreshed(repo_id, parent_path)
            return snapshot

    # --- Persist and evict ---

    def _persist(self, repo_id: str, path: str, content_id: str, raw: str) -> DirentSnapshot:
        if not content_id or not _CONTENT_ID.match(content_id):
            raise RemoteOperationFailed(f"list {repo_id}:{path}: corrupt payload (content id {content_id!r})")
        try:
            dirents = parse_dirents(raw)
        except CorruptCache as e:
            raise RemoteOperationFailed(f"list {repo_id}:{path}: corrupt payload: {e}") from e

        sig = self._account.signature
        with self._persist_lock:
            with self._index.transaction() as session:
                old = self._index.save_dirent_id(sig, repo_id, path, content_id, session=session)
                evict = (
                    old is not None
                    and old != content_id
                    and self._index.dirent_usage(old, session=session) == 0
                )
            if evict:
                self._delete_blob(old)
            try:
                self._write_blob(content_id, raw)
            except CacheWriteFailed as e:
                log.error("%s", e)
        return DirentSnapshot(content_id=content_id, raw_content=raw, dirents=dirents)

    def _write_blob(self, content_id: str, raw: str) -> None:
        blob = blob_path(self.cache_dir, content_id)
        try:
            if blob.read_text(encoding="utf-8") == raw:
                return
            log.warning("Dirent blob %s differs from server content; rewriting", blob.name)
        except FileNotFoundError:
            pass
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Dirent blob %s unreadable, rewriting: %s", blob.name, e)
        tmp = blob.with_name(blob.name + ".tmp")
        try:
            tmp.write_text(raw, encoding="utf-8")
            os.replace(tmp, blob)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise CacheWriteFailed(f"Could not write dirent cache {blob.name}: {e}") from e

    def _delete_blob(self, content_id: str) -> None:
        blob = blob_path(self.cache_dir, content_id)
        try:
            blob.unlink(missing_ok=True)
            log.debug("Evicted dirent blob %s", content_id)
        except OSError as e:
            log.warning("Could not delete dirent cache %s: %s", blob.name, e)

    def forget(self, repo_id: str, path: str) -> None:
        """Drop the entry of (repo, path), evicting its blob if it was the last reference."""
        path = normalize(path)
        with self._key_lock(repo_id, path), self._persist_lock:
            with self._index.transaction() as session:
                old = self._index.remove_dirent_id(self._account.signature, repo_id, path, session=session)
                evict = old is not None and self._index.dirent_usage(old, session=session) == 0
            if evict:
                self._delete_blob(old)
        self._gate.invalidate_dirents(repo_id, path)

    def clear(self) -> int:
        """Drop every entry of this account and the blobs nobody else references."""
        sig = self._account.signature
        with self._persist_lock:
            with self._index.transaction() as session:
                ids = self._index.list_dirent_ids(sig, session=session)
                removed = self._index.clear_dirents(sig, session=session)
                orphans = [i for i in ids if self._index.dirent_usage(i, session=session) == 0]
            for content_id in orphans:
                self._delete_blob(content_id)
        log.info("Cleared %d cached listings (%d blobs) for %s", removed, len(orphans), self._account.email)
        return removed
