"""HTTP client for the remote file service (api2 REST surface).

Returns raw payload strings and version tokens; decoding is left to the caches.
Transport failures raise NetworkUnavailable, HTTP error statuses raise
RemoteOperationFailed. Nothing is retried here; callers own retry policy.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from mirrorbox.errors import NetworkUnavailable, RemoteOperationFailed, StorageFault
from mirrorbox.paths import normalize, path_join

log = logging.getLogger(__name__)

# (new content token, listing payload) returned by mutating calls with reloaddir
ListingResult = Tuple[str, str]

# Body the server sends instead of a listing when the supplied oid is current
UPTODATE_BODY = '"uptodate"'


def _unquote(text: str) -> str:
    return text.strip().strip('"')


class RemoteClient:
    """
    Client for one account on the remote service: auth, repos, dirents,
    files, mutations and pass-through queries.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = (base_url or "").rstrip("/")
        self._token = token
        self._timeout = timeout
        log.debug("Remote client base_url=%s", self._base_url)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _headers(self) -> Dict[str, str]:
        out = {"Accept": "application/json"}
        if self._token:
            out["Authorization"] = f"Token {self._token}"
        return out

    def set_token(self, token: Optional[str]) -> None:
        """Set or clear the auth token."""
        self._token = token

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        url = endpoint if endpoint.startswith("http") else f"{self._base_url}/{endpoint.lstrip('/')}"
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            with httpx.Client(timeout=kwargs.pop("timeout", self._timeout)) as client:
                r = client.request(method, url, headers=headers, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            log.warning("%s %s: unreachable: %s", method, endpoint, e)
            raise NetworkUnavailable(f"{method} {endpoint}: {e}") from e
        except httpx.HTTPError as e:
            log.error("%s %s: %s", method, endpoint, e)
            raise RemoteOperationFailed(f"{method} {endpoint}: {e}") from e
        if r.status_code >= 400:
            log.warning("%s %s: %s %s", method, endpoint, r.status_code, r.reason_phrase)
            raise RemoteOperationFailed(
                f"{method} {endpoint}: {r.status_code} {r.reason_phrase}",
                status_code=r.status_code,
            )
        return r

    @staticmethod
    def _listing(r: httpx.Response) -> Optional[ListingResult]:
        """(oid header, body) for responses carrying a reloaded listing, else None."""
        oid = r.headers.get("oid")
        if not oid or not r.text:
            return None
        return oid, r.text

    # --- Auth ---

    def login(self, email: str, password: str) -> str:
        """POST api2/auth-token/. Stores and returns the token."""
        r = self._request("POST", "api2/auth-token/", data={"username": email, "password": password})
        try:
            token = r.json()["token"]
        except (ValueError, KeyError, TypeError) as e:
            raise RemoteOperationFailed(f"login: malformed response: {e}") from e
        self._token = token
        return token

    # --- Repos and dirents ---

    def list_repos(self) -> Optional[str]:
        """GET api2/repos/. Raw repo-list payload."""
        log.debug("GET api2/repos/")
        r = self._request("GET", "api2/repos/")
        return r.text or None

    def list_dirents(self, repo_id: str, path: str, known_token: Optional[str]) -> Tuple[str, Optional[str]]:
        """
        GET api2/repos/<id>/dir/?p=path[&oid=known]. Returns (token, payload), where
        payload is None when the server confirms known_token is still current.
        """
        params = {"p": normalize(path)}
        if known_token:
            params["oid"] = known_token
        log.debug("list_dirents repo=%s path=%s known=%s", repo_id, path, known_token)
        r = self._request("GET", f"api2/repos/{repo_id}/dir/", params=params)
        oid = r.headers.get("oid")
        if known_token and (oid == known_token or r.text.strip() == UPTODATE_BODY):
            return known_token, None
        if not oid:
            raise RemoteOperationFailed(f"list_dirents {repo_id}:{path}: response without oid")
        return oid, r.text

    def get_file(
        self,
        repo_id: str,
        path: str,
        dest_path: Path,
        known_file_id: Optional[str],
    ) -> Tuple[str, Path]:
        """
        Resolve the download link of a file; download into dest_path unless the
        server's file id equals known_file_id. Returns (file_id, local file).
        """
        r = self._request("GET", f"api2/repos/{repo_id}/file/", params={"p": normalize(path), "reuse": "1"})
        file_id = r.headers.get("oid")
        if not file_id:
            raise RemoteOperationFailed(f"get_file {repo_id}:{path}: response without oid")
        if known_file_id and file_id == known_file_id:
            log.debug("get_file %s:%s: cached file id %s is current", repo_id, path, file_id)
            return file_id, dest_path
        link = _unquote(r.text)
        tmp = dest_path.with_name(dest_path.name + ".part")
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with httpx.Client(timeout=self._timeout) as client:
                with client.stream("GET", link, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        raise RemoteOperationFailed(
                            f"download {repo_id}:{path}: {resp.status_code}", status_code=resp.status_code
                        )
                    with open(tmp, "wb") as fh:
                        for chunk in resp.iter_bytes():
                            fh.write(chunk)
            os.replace(tmp, dest_path)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            tmp.unlink(missing_ok=True)
            raise NetworkUnavailable(f"download {repo_id}:{path}: {e}") from e
        except httpx.HTTPError as e:
            tmp.unlink(missing_ok=True)
            log.error("download %s:%s: %s", repo_id, path, e)
            raise RemoteOperationFailed(f"download {repo_id}:{path}: {e}") from e
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageFault(f"Could not write {dest_path}: {e}", path=dest_path) from e
        return file_id, dest_path

    # --- Mutations (reloaddir=true returns the parent listing) ---

    def create_dir(self, repo_id: str, parent_dir: str, name: str) -> Optional[ListingResult]:
        r = self._request(
            "POST",
            f"api2/repos/{repo_id}/dir/",
            params={"p": path_join(parent_dir, name), "reloaddir": "true"},
            data={"operation": "mkdir"},
        )
        return self._listing(r)

    def create_file(self, repo_id: str, parent_dir: str, name: str) -> Optional[ListingResult]:
        r = self._request(
            "POST",
            f"api2/repos/{repo_id}/file/",
            params={"p": path_join(parent_dir, name), "reloaddir": "true"},
            data={"operation": "create"},
        )
        return self._listing(r)

    def rename(self, repo_id: str, path: str, new_name: str, is_dir: bool) -> Optional[ListingResult]:
        kind = "dir" if is_dir else "file"
        r = self._request(
            "POST",
            f"api2/repos/{repo_id}/{kind}/",
            params={"p": normalize(path), "reloaddir": "true"},
            data={"operation": "rename", "newname": new_name},
        )
        return self._listing(r)

    def delete(self, repo_id: str, path: str, is_dir: bool) -> Optional[ListingResult]:
        kind = "dir" if is_dir else "file"
        r = self._request(
            "DELETE",
            f"api2/repos/{repo_id}/{kind}/",
            params={"p": normalize(path), "reloaddir": "true"},
        )
        return self._listing(r)

    def move(self, src_repo: str, src_path: str, dst_repo: str, dst_dir: str) -> Optional[ListingResult]:
        """Move one file or dir. Returns the destination listing when the server sends it."""
        r = self._request(
            "POST",
            f"api2/repos/{src_repo}/file/",
            params={"p": normalize(src_path), "reloaddir": "true"},
            data={"operation": "move", "dst_repo": dst_repo, "dst_dir": normalize(dst_dir)},
        )
        return self._listing(r)

    def move_batch(self, src_repo: str, src_dir: str, names: List[str], dst_repo: str, dst_dir: str) -> None:
        self._request(
            "POST",
            f"api2/repos/{src_repo}/fileops/move/",
            params={"p": normalize(src_dir)},
            data={"file_names": ":".join(names), "dst_repo": dst_repo, "dst_dir": normalize(dst_dir)},
        )

    def copy(self, src_repo: str, src_dir: str, names: List[str], dst_repo: str, dst_dir: str) -> None:
        self._request(
            "POST",
            f"api2/repos/{src_repo}/fileops/copy/",
            params={"p": normalize(src_dir)},
            data={"file_names": ":".join(names), "dst_repo": dst_repo, "dst_dir": normalize(dst_dir)},
        )

    def upload_file(self, repo_id: str, parent_dir: str, file_path: Path, update: bool = False) -> Optional[str]:
        """Upload (or update in place) a local file. Returns the new file id."""
        link_kind = "update-link" if update else "upload-link"
        link = _unquote(self._request("GET", f"api2/repos/{repo_id}/{link_kind}/").text)
        name = file_path.name
        if update:
            data = {"target_file": path_join(parent_dir, name)}
        else:
            data = {"parent_dir": normalize(parent_dir)}
        try:
            body = file_path.read_bytes()
        except OSError as e:
            raise StorageFault(f"Could not read {file_path}: {e}", path=file_path) from e
        log.debug("upload_file repo=%s dir=%s name=%s size=%d update=%s", repo_id, parent_dir, name, len(body), update)
        r = self._request(
            "POST",
            link if update else f"{link}?ret-json=1",
            data=data,
            files={"file": (name, body)},
            timeout=600.0,
        )
        if update:
            return _unquote(r.text) or None
        try:
            items = r.json()
            return items[0]["id"] if items else None
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise RemoteOperationFailed(f"upload {repo_id}:{name}: malformed response: {e}") from e

    # --- Pass-through ---

    def set_password(self, repo_id: str, password: str) -> None:
        """POST api2/repos/<id>/ with the library password (decrypts it server-side)."""
        self._request("POST", f"api2/repos/{repo_id}/", data={"password": password})

    def get_account_info(self) -> str:
        return self._request("GET", "api2/account/info/").text

    def get_server_info(self) -> str:
        return self._request("GET", "api2/server-info/").text

    def get_events(self, start: int) -> str:
        return self._request("GET", "api2/events/", params={"start": start}).text

    def search(self, query: str, page: int) -> str:
        params: Dict[str, Any] = {"q": query}
        if page > 0:
            params["page"] = page
        return self._request("GET", "api2/search/", params=params).text

    def starred_files(self) -> Optional[str]:
        return self._request("GET", "api2/starredfiles/").text or None

    def star(self, repo_id: str, path: str) -> None:
        self._request("POST", "api2/starredfiles/", data={"repo_id": repo_id, "p": normalize(path)})

    def unstar(self, repo_id: str, path: str) -> None:
        self._request("DELETE", "api2/starredfiles/", params={"repo_id": repo_id, "p": normalize(path)})
