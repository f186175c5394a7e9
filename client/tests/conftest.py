"""Shared fixtures: isolated config dir, index, account, cache state, mocked remote."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from mirrorbox.api.client import RemoteClient
from mirrorbox.cache.state import CacheState
from mirrorbox.db.index import PersistentIndex
from mirrorbox.models import Account


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def listing(*names: str, dirs: tuple = ()) -> str:
    """Dirent payload as the server sends it."""
    items = [{"id": f"id-{n}", "type": "file", "name": n, "size": 1, "mtime": 1} for n in names]
    items += [{"id": f"id-{d}", "type": "dir", "name": d, "mtime": 1} for d in dirs]
    return json.dumps(items)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path: Path) -> Path:
    """Point the config dir (and keyring namespace) at tmp_path."""
    config_dir = tmp_path / "config"
    monkeypatch.setenv("MIRRORBOX_CONFIG_DIR", str(config_dir))
    for var in ("MIRRORBOX_MEDIA_DIR", "MIRRORBOX_CACHE_DIR", "MIRRORBOX_DB_PATH"):
        monkeypatch.delenv(var, raising=False)
    return config_dir


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state(clock: FakeClock) -> CacheState:
    return CacheState(refresh_ttl=600, password_ttl=3540, clock=clock)


@pytest.fixture
def index(tmp_path: Path) -> PersistentIndex:
    return PersistentIndex(db_path=tmp_path / "index.db")


@pytest.fixture
def account() -> Account:
    return Account(server="https://cloud.example.com", email="foo@example.com", token="tok")


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
    d = tmp_path / "media"
    d.mkdir()
    return d


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    d = tmp_path / "json"
    d.mkdir()
    return d


@pytest.fixture
def remote() -> MagicMock:
    mock = MagicMock(spec=RemoteClient)
    mock.base_url = "https://cloud.example.com"
    return mock


@pytest.fixture
def gate(state: CacheState, account: Account):
    """Refresh scopes of the default account."""
    return state.refresh.for_account(account.signature)
