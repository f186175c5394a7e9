"""SQLAlchemy models of the persistent index. Every row is keyed by account signature."""

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mirrorbox.db.session import Base


class RepoDirRow(Base):
    """(account, repo) -> unique local directory name. Never reassigned once created."""

    __tablename__ = "repo_dirs"
    __table_args__ = (Index("ix_repo_dirs_account_dir", "account", "dir_name", unique=True),)

    account: Mapped[str] = mapped_column(String(64), primary_key=True)
    repo_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    dir_name: Mapped[str] = mapped_column(String(1024), nullable=False)


class DirentIndexRow(Base):
    """(account, repo, path) -> content id of the cached listing."""

    __tablename__ = "dirents_cache"
    __table_args__ = (Index("ix_dirents_cache_dir_id", "dir_id"),)

    account: Mapped[str] = mapped_column(String(64), primary_key=True)
    repo_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    path: Mapped[str] = mapped_column(String(4096), primary_key=True)
    dir_id: Mapped[str] = mapped_column(String(64), nullable=False)


class FileCacheRow(Base):
    """Last-synced file id of a local copy."""

    __tablename__ = "file_cache"

    account: Mapped[str] = mapped_column(String(64), primary_key=True)
    repo_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    path: Mapped[str] = mapped_column(String(4096), primary_key=True)
    repo_name: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_id: Mapped[str] = mapped_column(String(64), nullable=False)


class StarredFilesRow(Base):
    """Raw starred-files payload of an account."""

    __tablename__ = "starred_files"

    account: Mapped[str] = mapped_column(String(64), primary_key=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
