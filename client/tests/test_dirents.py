"""Tests for the content-addressed dirent cache."""

import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import listing
from mirrorbox.cache import dirents as dirents_module
from mirrorbox.cache.dirents import DirentCache, blob_path, list_blob_files
from mirrorbox.errors import NetworkUnavailable, RemoteOperationFailed
from mirrorbox.models import Account


@pytest.fixture
def cache(account, index, state, remote, cache_dir) -> DirentCache:
    return DirentCache(account, index, state, remote, lambda: True, cache_dir=cache_dir)


def test_identical_listings_share_one_blob(cache, index, remote, cache_dir) -> None:
    """Two paths with the same content id reference one blob."""
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    cache.fetch_or_validate("repo1", "/a")
    cache.fetch_or_validate("repo1", "/b")

    assert list_blob_files(cache_dir) == [blob_path(cache_dir, "oid1")]
    assert index.dirent_usage("oid1") == 2
    assert cache.lookup("repo1", "/a").content_id == "oid1"
    assert cache.lookup("repo1", "/b").content_id == "oid1"


def test_repoint_evicts_unreferenced_blob(cache, remote, cache_dir) -> None:
    """When the last reference moves away, the old blob is deleted."""
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    cache.fetch_or_validate("repo1", "/a")
    remote.list_dirents.return_value = ("oid2", listing("a.txt", "b.txt"))
    snapshot = cache.fetch_or_validate("repo1", "/a")

    assert snapshot.content_id == "oid2"
    assert [d.name for d in snapshot.dirents] == ["a.txt", "b.txt"]
    assert not blob_path(cache_dir, "oid1").exists()
    assert blob_path(cache_dir, "oid2").exists()


def test_repoint_keeps_blob_still_referenced(cache, index, remote, cache_dir) -> None:
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    cache.fetch_or_validate("repo1", "/a")
    cache.fetch_or_validate("repo1", "/b")
    remote.list_dirents.return_value = ("oid2", listing("c.txt"))
    cache.fetch_or_validate("repo1", "/a")

    assert blob_path(cache_dir, "oid1").exists()
    assert index.dirent_usage("oid1") == 1
    assert cache.lookup("repo1", "/b").content_id == "oid1"


def test_blob_shared_across_accounts_is_kept(index, state, remote, cache_dir) -> None:
    """References from another account keep a blob alive."""
    a = Account(server="https://a.example.com", email="x@example.com")
    b = Account(server="https://b.example.com", email="y@example.com")
    cache_a = DirentCache(a, index, state, remote, cache_dir=cache_dir)
    cache_b = DirentCache(b, index, state, remote, cache_dir=cache_dir)
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    cache_a.fetch_or_validate("repo1", "/")
    cache_b.fetch_or_validate("repo1", "/")
    remote.list_dirents.return_value = ("oid2", listing("b.txt"))
    cache_a.fetch_or_validate("repo1", "/")

    assert blob_path(cache_dir, "oid1").exists()
    assert cache_b.lookup("repo1", "/").content_id == "oid1"


def test_unchanged_answer_does_not_write(cache, remote, cache_dir, monkeypatch) -> None:
    """A matching token returns the cached snapshot and leaves the blob alone."""
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    first = cache.fetch_or_validate("repo1", "/a")
    before = blob_path(cache_dir, "oid1").read_bytes()

    write = MagicMock()
    monkeypatch.setattr(cache, "_write_blob", write)
    remote.list_dirents.return_value = ("oid1", None)
    second = cache.fetch_or_validate("repo1", "/a")

    assert second == first
    assert remote.list_dirents.call_args[0] == ("repo1", "/a", "oid1")
    write.assert_not_called()
    assert blob_path(cache_dir, "oid1").read_bytes() == before


def test_first_fetch_sends_no_token(cache, remote) -> None:
    remote.list_dirents.return_value = ("oid1", listing())
    cache.fetch_or_validate("repo1", "a/")
    remote.list_dirents.assert_called_once_with("repo1", "/a", None)


def test_unchanged_answer_without_cache_fails(cache, remote) -> None:
    remote.list_dirents.return_value = ("oid1", None)
    with pytest.raises(RemoteOperationFailed):
        cache.fetch_or_validate("repo1", "/a")


def test_corrupt_payload_leaves_cache_untouched(cache, index, account, remote, cache_dir) -> None:
    """A payload that does not decode fails the fetch; the old snapshot stays."""
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    cache.fetch_or_validate("repo1", "/a")
    remote.list_dirents.return_value = ("oid2", "{not json")

    with pytest.raises(RemoteOperationFailed):
        cache.fetch_or_validate("repo1", "/a")

    assert index.get_dirent_id(account.signature, "repo1", "/a") == "oid1"
    assert list_blob_files(cache_dir) == [blob_path(cache_dir, "oid1")]


def test_invalid_content_id_is_rejected(cache, remote, cache_dir) -> None:
    remote.list_dirents.return_value = ("../evil", listing("a.txt"))
    with pytest.raises(RemoteOperationFailed):
        cache.fetch_or_validate("repo1", "/a")
    assert list_blob_files(cache_dir) == []


def test_network_off_raises_before_remote_call(account, index, state, remote, cache_dir) -> None:
    cache = DirentCache(account, index, state, remote, lambda: False, cache_dir=cache_dir)
    with pytest.raises(NetworkUnavailable):
        cache.fetch_or_validate("repo1", "/a")
    remote.list_dirents.assert_not_called()


def test_fetch_marks_scope_refreshed(cache, remote, gate) -> None:
    remote.list_dirents.return_value = ("oid1", listing())
    assert gate.is_dirents_stale("repo1", "/a") is True
    cache.fetch_or_validate("repo1", "/a")
    assert gate.is_dirents_stale("repo1", "/a") is False


def test_lookup_miss_without_entry(cache) -> None:
    assert cache.lookup("repo1", "/nothing") is None


def test_missing_blob_is_a_miss(cache, remote, cache_dir) -> None:
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    cache.fetch_or_validate("repo1", "/a")
    blob_path(cache_dir, "oid1").unlink()
    assert cache.lookup("repo1", "/a") is None


def test_corrupt_blob_is_a_miss(cache, remote, cache_dir) -> None:
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    cache.fetch_or_validate("repo1", "/a")
    blob_path(cache_dir, "oid1").write_text("garbage", encoding="utf-8")
    assert cache.lookup("repo1", "/a") is None


def test_empty_directory_is_not_a_miss(cache, remote) -> None:
    """An empty listing is a snapshot with no entries, not None."""
    remote.list_dirents.return_value = ("oid-empty", "[]")
    cache.fetch_or_validate("repo1", "/empty")
    snapshot = cache.lookup("repo1", "/empty")
    assert snapshot is not None
    assert snapshot.dirents == []


def test_corrupt_blob_with_same_id_is_rewritten(cache, remote, cache_dir) -> None:
    """Persisting a content id whose blob is damaged restores the blob."""
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    cache.fetch_or_validate("repo1", "/a")
    blob_path(cache_dir, "oid1").write_text("garbage", encoding="utf-8")
    cache.fetch_or_validate("repo1", "/b")
    assert blob_path(cache_dir, "oid1").read_text(encoding="utf-8") == listing("a.txt")
    assert cache.lookup("repo1", "/a") is not None


def test_blob_write_failure_is_not_fatal(cache, index, account, remote, cache_dir, monkeypatch) -> None:
    """A failed blob write still returns the snapshot; the next lookup is a miss."""

    def failing_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(dirents_module.os, "replace", failing_replace)
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    snapshot = cache.fetch_or_validate("repo1", "/a")

    assert [d.name for d in snapshot.dirents] == ["a.txt"]
    assert index.get_dirent_id(account.signature, "repo1", "/a") == "oid1"
    assert cache.lookup("repo1", "/a") is None
    assert list(cache_dir.iterdir()) == []


def test_apply_post_mutation_state(cache, remote, gate, cache_dir) -> None:
    """A listing from a mutating call is persisted without a fetch."""
    snapshot = cache.apply_post_mutation_state("repo1", "/docs/", "oid9", listing(dirs=("New",)))
    assert snapshot.dirents[0].is_dir
    assert cache.lookup("repo1", "/docs").content_id == "oid9"
    assert gate.is_dirents_stale("repo1", "/docs") is False
    remote.list_dirents.assert_not_called()


def test_forget_evicts_last_reference(cache, remote, gate, cache_dir) -> None:
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    cache.fetch_or_validate("repo1", "/a")
    cache.forget("repo1", "/a")
    assert cache.lookup("repo1", "/a") is None
    assert not blob_path(cache_dir, "oid1").exists()
    assert gate.is_dirents_stale("repo1", "/a") is True


def test_clear_drops_account_entries(cache, index, remote, cache_dir) -> None:
    remote.list_dirents.return_value = ("oid1", listing("a.txt"))
    cache.fetch_or_validate("repo1", "/a")
    cache.fetch_or_validate("repo1", "/b")
    assert cache.clear() == 2
    assert index.count_dirent_entries() == 0
    assert list_blob_files(cache_dir) == []


def test_concurrent_repoints_keep_referenced_blobs(cache, index, account, remote, cache_dir) -> None:
    """Every content id still referenced after concurrent updates has its blob."""
    payloads = {"oidA": listing("a.txt"), "oidB": listing("b.txt"), "oidC": listing("c.txt")}

    def worker(path: str, ids) -> None:
        for content_id in ids:
            cache.apply_post_mutation_state("repo1", path, content_id, payloads[content_id])

    threads = [
        threading.Thread(target=worker, args=(f"/p{i}", ["oidA", "oidB", "oidC"][i % 3:] * 5))
        for i in range(4)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    referenced = {index.get_dirent_id(account.signature, "repo1", f"/p{i}") for i in range(4)}
    on_disk = {p.name for p in list_blob_files(cache_dir)}
    assert on_disk == {blob_path(Path(""), c).name for c in referenced}
