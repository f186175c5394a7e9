"""Persistent index: repo dir mappings, dirent pointers, file versions, starred blobs.

Each method runs in its own transaction unless a session from ``transaction()``
is passed in, so read-then-write sequences (dirent repointing plus reference
counting) can commit atomically.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from mirrorbox.db.models import DirentIndexRow, FileCacheRow, RepoDirRow, StarredFilesRow
from mirrorbox.db.session import create_index_engine, create_session_factory, session_scope

log = logging.getLogger(__name__)


class PersistentIndex:
    """Transactional lookup/update interface over the SQLite index."""

    def __init__(self, engine: Optional[Engine] = None, db_path: Optional[Union[str, Path]] = None) -> None:
        self._engine = engine or create_index_engine(db_path)
        self._factory = create_session_factory(self._engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session committed on exit, rolled back on error."""
        with session_scope(self._factory) as session:
            yield session

    @contextmanager
    def _scope(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with self.transaction() as own:
            yield own

    # --- Repo dir mappings ---

    def get_repo_dir(self, account: str, repo_id: str, session: Optional[Session] = None) -> Optional[str]:
        """Return the mapped dir name for (account, repo), or None."""
        with self._scope(session) as s:
            row = s.get(RepoDirRow, (account, repo_id))
            return row.dir_name if row else None

    def repo_dir_exists(self, account: str, dir_name: str, session: Optional[Session] = None) -> bool:
        """True if any repo of the account is already mapped to dir_name."""
        with self._scope(session) as s:
            result = s.execute(
                select(RepoDirRow.repo_id).where(
                    RepoDirRow.account == account,
                    RepoDirRow.dir_name == dir_name,
                )
            )
            return result.first() is not None

    def save_repo_dir_mapping(self, account: str, repo_id: str, dir_name: str, session: Optional[Session] = None) -> None:
        """Record a new mapping. Existing mappings are never overwritten."""
        with self._scope(session) as s:
            if s.get(RepoDirRow, (account, repo_id)) is not None:
                log.warning("Repo dir mapping for %s already exists; keeping it", repo_id)
                return
            s.add(RepoDirRow(account=account, repo_id=repo_id, dir_name=dir_name))

    # --- Dirent index ---

    def get_dirent_id(self, account: str, repo_id: str, path: str, session: Optional[Session] = None) -> Optional[str]:
        """Content id cached for (repo, path), or None."""
        with self._scope(session) as s:
            row = s.get(DirentIndexRow, (account, repo_id, path))
            return row.dir_id if row else None

    def dirent_usage(self, dir_id: str, session: Optional[Session] = None) -> int:
        """
        Reference count: number of index entries pointing at dir_id. Counted
        across accounts because snapshot blobs share one cache directory.
        """
        with self._scope(session) as s:
            result = s.execute(
                select(func.count()).select_from(DirentIndexRow).where(DirentIndexRow.dir_id == dir_id)
            )
            return int(result.scalar_one())

    def save_dirent_id(self, account: str, repo_id: str, path: str, dir_id: str, session: Optional[Session] = None) -> Optional[str]:
        """Point (repo, path) at dir_id. Returns the previous content id, if any."""
        with self._scope(session) as s:
            row = s.get(DirentIndexRow, (account, repo_id, path))
            if row:
                previous = row.dir_id
                row.dir_id = dir_id
            else:
                previous = None
                s.add(DirentIndexRow(account=account, repo_id=repo_id, path=path, dir_id=dir_id))
            s.flush()
            return previous

    def remove_dirent_id(self, account: str, repo_id: str, path: str, session: Optional[Session] = None) -> Optional[str]:
        """Remove the entry for (repo, path). Returns the removed content id, if any."""
        with self._scope(session) as s:
            row = s.get(DirentIndexRow, (account, repo_id, path))
            if not row:
                return None
            previous = row.dir_id
            s.delete(row)
            s.flush()
            return previous

    def list_dirent_ids(self, account: str, session: Optional[Session] = None) -> List[str]:
        """Distinct content ids referenced by the account."""
        with self._scope(session) as s:
            result = s.execute(
                select(DirentIndexRow.dir_id).where(DirentIndexRow.account == account).distinct()
            )
            return [r[0] for r in result.all()]

    def count_dirent_entries(self, account: Optional[str] = None, session: Optional[Session] = None) -> int:
        with self._scope(session) as s:
            stmt = select(func.count()).select_from(DirentIndexRow)
            if account is not None:
                stmt = stmt.where(DirentIndexRow.account == account)
            return int(s.execute(stmt).scalar_one())

    def clear_dirents(self, account: Optional[str] = None, session: Optional[Session] = None) -> int:
        """Remove dirent entries (all accounts when account is None). Returns rows removed."""
        with self._scope(session) as s:
            stmt = delete(DirentIndexRow)
            if account is not None:
                stmt = stmt.where(DirentIndexRow.account == account)
            return s.execute(stmt).rowcount or 0

    # --- File version cache ---

    def get_file_cache_item(self, account: str, repo_id: str, path: str, session: Optional[Session] = None) -> Optional[FileCacheRow]:
        with self._scope(session) as s:
            return s.get(FileCacheRow, (account, repo_id, path))

    def list_file_cache_items(self, account: str, session: Optional[Session] = None) -> List[FileCacheRow]:
        with self._scope(session) as s:
            result = s.execute(
                select(FileCacheRow).where(FileCacheRow.account == account).order_by(
                    FileCacheRow.repo_id, FileCacheRow.path
                )
            )
            return list(result.scalars().all())

    def save_file_cache_item(
        self,
        account: str,
        repo_id: str,
        repo_name: str,
        path: str,
        file_id: str,
        session: Optional[Session] = None,
    ) -> None:
        """Store or update the file id of (repo, path)."""
        with self._scope(session) as s:
            row = s.get(FileCacheRow, (account, repo_id, path))
            if row:
                row.file_id = file_id
                row.repo_name = repo_name
            else:
                s.add(FileCacheRow(account=account, repo_id=repo_id, path=path, repo_name=repo_name, file_id=file_id))

    def delete_file_cache_item(self, account: str, repo_id: str, path: str, session: Optional[Session] = None) -> None:
        with self._scope(session) as s:
            row = s.get(FileCacheRow, (account, repo_id, path))
            if row:
                s.delete(row)

    # --- Starred files ---

    def save_starred_files(self, account: str, content: str, session: Optional[Session] = None) -> None:
        with self._scope(session) as s:
            row = s.get(StarredFilesRow, account)
            if row:
                row.content = content
            else:
                s.add(StarredFilesRow(account=account, content=content))

    def get_starred_files(self, account: str, session: Optional[Session] = None) -> Optional[str]:
        with self._scope(session) as s:
            row = s.get(StarredFilesRow, account)
            return row.content if row else None

    def clear_starred_files(self, account: Optional[str] = None, session: Optional[Session] = None) -> int:
        with self._scope(session) as s:
            stmt = delete(StarredFilesRow)
            if account is not None:
                stmt = stmt.where(StarredFilesRow.account == account)
            return s.execute(stmt).rowcount or 0
