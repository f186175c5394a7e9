"""Tests for RepoDirectoryResolver: stable, collision-free library dirs."""

import threading
from pathlib import Path

import pytest

from mirrorbox.cache.repo_dirs import RepoDirectoryResolver
from mirrorbox.errors import StorageFault
from mirrorbox.models import Account


@pytest.fixture
def resolver(account, index, state, media_dir) -> RepoDirectoryResolver:
    return RepoDirectoryResolver(account, index, state, media_dir=media_dir)


def test_account_dir_name(resolver, media_dir) -> None:
    """Account dir is '<email> (<host>)' under the media dir."""
    assert resolver.account_dir() == media_dir / "foo@example.com (cloud.example.com)"


def test_resolve_creates_dir_and_is_idempotent(resolver, index, account) -> None:
    """First call creates dir and mapping; later calls return the same dir."""
    first = resolver.resolve("repo1", "Photos")
    assert first.is_dir()
    assert first.name == "Photos"
    assert index.get_repo_dir(account.signature, "repo1") == "Photos"
    assert resolver.resolve("repo1", "Renamed on server") == first


def test_same_display_name_gets_suffix(resolver) -> None:
    """Two libraries with one name get 'Photos' and 'Photos (1)'."""
    a = resolver.resolve("repo1", "Photos")
    b = resolver.resolve("repo2", "Photos")
    c = resolver.resolve("repo3", "Photos")
    assert a.name == "Photos"
    assert b.name == "Photos (1)"
    assert c.name == "Photos (2)"


def test_unmapped_dir_on_disk_is_skipped(resolver) -> None:
    """A directory that exists on disk but is not mapped is never reused."""
    (resolver.account_dir() / "Photos").mkdir(parents=True)
    assert resolver.resolve("repo1", "Photos").name == "Photos (1)"


def test_missing_dir_is_recreated_under_same_name(resolver) -> None:
    repo_dir = resolver.resolve("repo1", "Photos")
    repo_dir.rmdir()
    assert resolver.resolve("repo1", "Photos") == repo_dir
    assert repo_dir.is_dir()


def test_existing_does_not_create(resolver) -> None:
    assert resolver.existing("repo1") is None
    repo_dir = resolver.resolve("repo1", "Docs")
    assert resolver.existing("repo1") == repo_dir


def test_unsafe_names_are_sanitized(resolver) -> None:
    assert resolver.resolve("repo1", "a/b").name == "a_b"
    assert resolver.resolve("repo2", "   ").name == "repo2"


def test_storage_fault_leaves_no_mapping(account, index, state, tmp_path: Path) -> None:
    """Directory creation failure raises StorageFault and records nothing."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a dir")
    resolver = RepoDirectoryResolver(account, index, state, media_dir=blocker)
    with pytest.raises(StorageFault):
        resolver.resolve("repo1", "Photos")
    assert index.get_repo_dir(account.signature, "repo1") is None


def test_accounts_are_separate(index, state, media_dir) -> None:
    """Each account has its own dir and its own name space."""
    a = Account(server="https://a.example.com", email="x@example.com")
    b = Account(server="https://b.example.com", email="x@example.com")
    dir_a = RepoDirectoryResolver(a, index, state, media_dir=media_dir).resolve("repo1", "Photos")
    dir_b = RepoDirectoryResolver(b, index, state, media_dir=media_dir).resolve("repo9", "Photos")
    assert dir_a.name == dir_b.name == "Photos"
    assert dir_a != dir_b


def test_local_repo_file_creates_parents(resolver) -> None:
    local = resolver.local_repo_file("Docs", "repo1", "/a/b/c.txt")
    assert local.parent.is_dir()
    assert local == resolver.existing("repo1") / "a" / "b" / "c.txt"


def test_local_repo_file_rejects_parent_segments(resolver) -> None:
    with pytest.raises(StorageFault):
        resolver.local_repo_file("Docs", "repo1", "/a/../../etc/passwd")


def test_concurrent_resolve_assigns_one_dir_per_repo(account, index, state, media_dir) -> None:
    """Racing resolvers agree on one dir per library and never share a name."""
    n = 8
    barrier = threading.Barrier(n)
    results = {"r1": set(), "r2": set()}
    errors = []

    def worker(repo_id: str) -> None:
        resolver = RepoDirectoryResolver(account, index, state, media_dir=media_dir)
        barrier.wait()
        try:
            results[repo_id].add(resolver.resolve(repo_id, "Docs"))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=("r1" if i % 2 else "r2",)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(results["r1"]) == 1
    assert len(results["r2"]) == 1
    names = {p.name for paths in results.values() for p in paths}
    assert names == {"Docs", "Docs (1)"}
    account_dir = media_dir / account.account_dir_name
    assert sorted(p.name for p in account_dir.iterdir() if p.is_dir()) == ["Docs", "Docs (1)"]
    assert index.get_repo_dir(account.signature, "r1") in names
    assert index.get_repo_dir(account.signature, "r2") in names
