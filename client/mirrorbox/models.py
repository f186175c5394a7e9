"""Pydantic models for accounts, repos, dirents and the pass-through payloads.

JSON decoding lives here so the caches operate on structured snapshots. Every
``parse_*`` helper raises CorruptCache when the payload does not decode; callers
map that to a cache miss (local blobs) or RemoteOperationFailed (server data).
"""

import hashlib
import re
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from mirrorbox.config import get_server_url
from mirrorbox.errors import CorruptCache

# Characters allowed in the per-account directory name; others become "_"
_ACCOUNT_DIR_UNSAFE = re.compile(r"[^\w.@() ]")


class Account(BaseModel):
    """A server + user pair. The server defaults to the configured URL; the token is optional until login."""

    model_config = ConfigDict(frozen=True)

    server: str = Field(default_factory=get_server_url)
    email: str
    token: Optional[str] = None

    @property
    def signature(self) -> str:
        """Stable id of this account, used to key every persisted row."""
        return hashlib.sha256(f"{self.server}{self.email}".encode("utf-8")).hexdigest()[:32]

    @property
    def server_host(self) -> str:
        """Server host without scheme, port or slashes."""
        parsed = urlparse(self.server if "://" in self.server else f"//{self.server}")
        return parsed.hostname or self.server.strip("/")

    @property
    def account_dir_name(self) -> str:
        """Directory name for this account, e.g. 'foo@x.com (cloud.example.com)'."""
        return _ACCOUNT_DIR_UNSAFE.sub("_", f"{self.email} ({self.server_host})")


class Repo(BaseModel):
    """A library on the server. Immutable snapshot of the repo list entry."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    encrypted: bool = False
    owner: Optional[str] = None
    size: int = 0
    mtime: int = 0
    permission: str = "rw"
    type: Optional[str] = None
    desc: Optional[str] = None


class Dirent(BaseModel):
    """One entry of a directory listing."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    name: str
    size: int = 0
    mtime: int = 0
    permission: str = "rw"

    @property
    def is_dir(self) -> bool:
        return self.type == "dir"


class StarredFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    repo: str
    path: str
    size: int = 0
    mtime: int = 0
    dir: bool = False
    repo_name: Optional[str] = None


class SearchedFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    repo_id: str
    name: str
    fullpath: str
    oid: Optional[str] = None
    size: int = 0
    last_modified: int = 0
    is_dir: bool = False


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    repo_id: str
    repo_name: Optional[str] = None
    author: Optional[str] = None
    nick: Optional[str] = None
    etype: Optional[str] = None
    commit_id: Optional[str] = None
    desc: Optional[str] = None
    time: int = 0


class Activities(BaseModel):
    """A page of account events."""

    events: List[Event] = Field(default_factory=list)
    more: bool = False
    more_offset: int = 0


class AccountInfo(BaseModel):
    email: str
    usage: int = 0
    total: int = 0


class ServerInfo(BaseModel):
    version: Optional[str] = None
    features: List[str] = Field(default_factory=list)

    @property
    def is_pro(self) -> bool:
        return "seafile-pro" in self.features


class DirentSnapshot(BaseModel):
    """A directory listing snapshot. Equal content always has equal content_id."""

    model_config = ConfigDict(frozen=True)

    content_id: str
    raw_content: str
    dirents: List[Dirent] = Field(default_factory=list)


class CachedFile(BaseModel):
    """Last-synced version of a local file copy."""

    model_config = ConfigDict(frozen=True)

    repo_id: str
    repo_name: str
    path: str
    file_id: str
    local_file: Path
    account_signature: str


class _SearchResults(BaseModel):
    results: List[SearchedFile] = Field(default_factory=list)


_repos_adapter = TypeAdapter(List[Repo])
_dirents_adapter = TypeAdapter(List[Dirent])
_starred_adapter = TypeAdapter(List[StarredFile])


def _decode(adapter, raw: Optional[str], what: str):
    if raw is None:
        raise CorruptCache(f"{what}: empty payload")
    try:
        return adapter.validate_json(raw)
    except ValidationError as e:
        raise CorruptCache(f"{what}: {e.error_count()} decode error(s)") from e


def parse_repos(raw: Optional[str]) -> List[Repo]:
    return _decode(_repos_adapter, raw, "repo list")


def parse_dirents(raw: Optional[str]) -> List[Dirent]:
    return _decode(_dirents_adapter, raw, "dirent list")


def parse_starred_files(raw: Optional[str]) -> List[StarredFile]:
    return _decode(_starred_adapter, raw, "starred files")


def parse_activities(raw: Optional[str]) -> Activities:
    return _decode(TypeAdapter(Activities), raw, "events")


def parse_search_results(raw: Optional[str]) -> List[SearchedFile]:
    return _decode(TypeAdapter(_SearchResults), raw, "search results").results


def parse_account_info(raw: Optional[str]) -> AccountInfo:
    return _decode(TypeAdapter(AccountInfo), raw, "account info")


def parse_server_info(raw: Optional[str]) -> ServerInfo:
    return _decode(TypeAdapter(ServerInfo), raw, "server info")
