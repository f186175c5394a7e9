"""Connectivity check against the remote service."""

import logging
from typing import Callable

import httpx

log = logging.getLogger(__name__)

# Short timeout for reachability check (avoid blocking)
REACH_TIMEOUT = 2.0

NetworkCheck = Callable[[], bool]


def is_network_on(base_url: str, timeout: float = REACH_TIMEOUT) -> bool:
    """True if the server answers its ping endpoint (any status below 500)."""
    url = f"{base_url.rstrip('/')}/api2/ping/"
    try:
        with httpx.Client(timeout=timeout) as client:
            r = client.get(url)
            if r.status_code < 500:
                return True
            log.debug("Ping %s: server error %s", url, r.status_code)
    except (httpx.ConnectError, httpx.TimeoutException, OSError) as e:
        log.debug("Ping %s failed: %s", url, e)
    return False


def network_check_for(base_url: str) -> NetworkCheck:
    """Bind is_network_on to one server, for injection into caches."""
    return lambda: is_network_on(base_url)
