"""Process-wide cache state: refresh timestamps and library passwords.

One CacheState is built at client startup and injected into every component
that needs it. Both maps are guarded by their own lock; no check-then-write
on either map happens outside that lock.
"""

import logging
import threading
import time
from typing import Callable, Dict, Hashable, Optional, Tuple

from mirrorbox.config import DEFAULT_PASSWORD_TTL, DEFAULT_REFRESH_TTL, CacheSettings
from mirrorbox.paths import path_join

log = logging.getLogger(__name__)

Clock = Callable[[], float]

REPO_LIST_SCOPE = "repo list"
STARRED_FILES_SCOPE = "starred files"


def dirents_scope(repo_id: str, path: str) -> str:
    """Scope key of one directory listing."""
    return path_join(repo_id, path)


class RefreshGate:
    """
    TTL tracker deciding whether a cached result is fresh enough to skip a
    server check. Purely advisory: cache correctness never depends on it.
    """

    def __init__(self, ttl: float = DEFAULT_REFRESH_TTL, clock: Clock = time.time) -> None:
        self._ttl = ttl
        self._clock = clock
        self._stamps: Dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def is_stale(self, scope: str) -> bool:
        """True if never refreshed, or now >= last refresh + TTL."""
        with self._lock:
            stamp = self._stamps.get(scope)
        if stamp is None:
            return True
        return self._clock() >= stamp + self._ttl

    def mark_refreshed(self, scope: str) -> None:
        self.record(scope, self._clock())

    def record(self, scope: str, instant: float) -> None:
        """Store an explicit refresh instant (pull-to-refresh bookkeeping)."""
        with self._lock:
            self._stamps[scope] = instant

    def last_refreshed(self, scope: str) -> Optional[float]:
        with self._lock:
            return self._stamps.get(scope)

    def invalidate(self, scope: str) -> None:
        with self._lock:
            self._stamps.pop(scope, None)

    def for_account(self, signature: str) -> "AccountRefreshGate":
        """View of this gate whose scopes belong to one account."""
        return AccountRefreshGate(self, signature)


class AccountRefreshGate:
    """
    One account's scopes on a shared RefreshGate. Every key is prefixed with
    the account signature, so refreshing one account never freshens another.
    """

    def __init__(self, gate: RefreshGate, signature: str) -> None:
        self._gate = gate
        self._signature = signature

    def _key(self, scope: str) -> str:
        return f"{self._signature}:{scope}"

    def is_stale(self, scope: str) -> bool:
        return self._gate.is_stale(self._key(scope))

    def mark_refreshed(self, scope: str) -> None:
        self._gate.mark_refreshed(self._key(scope))

    def record(self, scope: str, instant: float) -> None:
        self._gate.record(self._key(scope), instant)

    def last_refreshed(self, scope: str) -> Optional[float]:
        return self._gate.last_refreshed(self._key(scope))

    def invalidate(self, scope: str) -> None:
        self._gate.invalidate(self._key(scope))

    def is_repos_stale(self) -> bool:
        return self.is_stale(REPO_LIST_SCOPE)

    def mark_repos_refreshed(self) -> None:
        self.mark_refreshed(REPO_LIST_SCOPE)

    def is_dirents_stale(self, repo_id: str, path: str) -> bool:
        return self.is_stale(dirents_scope(repo_id, path))

    def mark_dirents_refreshed(self, repo_id: str, path: str) -> None:
        self.mark_refreshed(dirents_scope(repo_id, path))

    def invalidate_dirents(self, repo_id: str, path: str) -> None:
        self.invalidate(dirents_scope(repo_id, path))

    def is_starred_stale(self) -> bool:
        return self.is_stale(STARRED_FILES_SCOPE)

    def mark_starred_refreshed(self) -> None:
        self.mark_refreshed(STARRED_FILES_SCOPE)

    def invalidate_starred(self) -> None:
        self.invalidate(STARRED_FILES_SCOPE)


class CredentialCache:
    """In-memory library passwords, valid for a short window. Never persisted."""

    def __init__(self, ttl: float = DEFAULT_PASSWORD_TTL, clock: Clock = time.time) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def set(self, repo_id: str, password: str) -> None:
        with self._lock:
            self._entries[repo_id] = (password, self._clock())

    def get(self, repo_id: str) -> Optional[str]:
        """Password of repo_id, or None when unknown or expired."""
        with self._lock:
            entry = self._entries.get(repo_id)
        if entry is None:
            return None
        password, stamp = entry
        if self._clock() >= stamp + self._ttl:
            return None
        return password

    def is_password_set(self, repo_id: str) -> bool:
        return self.get(repo_id) is not None

    def forget(self, repo_id: str) -> None:
        with self._lock:
            self._entries.pop(repo_id, None)


class KeyedLocks:
    """One reentrant lock per key, created on first use and kept for the process."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


class CacheState:
    """Shared refresh, password and lock state of one client process."""

    def __init__(
        self,
        refresh_ttl: float = DEFAULT_REFRESH_TTL,
        password_ttl: float = DEFAULT_PASSWORD_TTL,
        clock: Clock = time.time,
    ) -> None:
        self.refresh = RefreshGate(refresh_ttl, clock)
        self.passwords = CredentialCache(password_ttl, clock)
        # Critical sections over the persistent index, shared by every component
        # of the process so two engines on one account still serialize.
        self.locks = KeyedLocks()

    @classmethod
    def from_settings(cls, settings: CacheSettings, clock: Clock = time.time) -> "CacheState":
        log.debug(
            "Cache state: refresh ttl=%ss, password ttl=%ss",
            settings.refresh_ttl_seconds,
            settings.password_ttl_seconds,
        )
        return cls(settings.refresh_ttl_seconds, settings.password_ttl_seconds, clock)
