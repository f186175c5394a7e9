"""Error taxonomy for cache and remote operations.

Network and storage faults propagate to callers as typed failures. Corrupt
cached data is recovered locally as a cache miss, and best-effort cache
writes never fail the surrounding operation.
"""

from pathlib import Path
from typing import Optional, Union


class MirrorBoxError(Exception):
    """Base exception for mirrorbox errors."""


class NetworkUnavailable(MirrorBoxError):
    """No connectivity to the remote service. Not retried internally."""


class RemoteOperationFailed(MirrorBoxError):
    """Remote call failed or returned malformed data. Caches are left untouched."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageFault(MirrorBoxError):
    """Local directory or file creation failed; the caller must not use the path."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None) -> None:
        super().__init__(message)
        self.path = path


class CorruptCache(MirrorBoxError):
    """A locally cached payload failed to parse. Treated as a cache miss."""


class CacheWriteFailed(MirrorBoxError):
    """A best-effort cache blob write failed. Logged, never fatal."""
