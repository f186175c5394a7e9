"""Client configuration: config dir, cache layout, TTLs, server URL."""

import json
import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SERVER_URL = "https://cloud.seafile.com"

# Refresh gate and password cache windows (seconds)
DEFAULT_REFRESH_TTL = 10 * 60
DEFAULT_PASSWORD_TTL = 59 * 60


def _config_dir() -> Path:
    """Platform-specific config directory (no admin). MIRRORBOX_CONFIG_DIR overrides."""
    override = os.environ.get("MIRRORBOX_CONFIG_DIR", "").strip()
    if override:
        return Path(override)
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~"))
        return Path(base) / "MirrorBox"
    if os.environ.get("XDG_CONFIG_HOME"):
        return Path(os.environ["XDG_CONFIG_HOME"]) / "mirrorbox"
    return Path.home() / ".config" / "mirrorbox"


class CacheSettings(BaseSettings):
    """Cache settings from env (MIRRORBOX_*). Empty paths fall back to the config dir."""

    model_config = SettingsConfigDict(env_prefix="MIRRORBOX_", extra="ignore")

    # Storage
    media_dir: Optional[Path] = None
    cache_dir: Optional[Path] = None
    db_path: Optional[Path] = None

    # TTLs
    refresh_ttl_seconds: float = DEFAULT_REFRESH_TTL
    password_ttl_seconds: float = DEFAULT_PASSWORD_TTL

    # HTTP
    http_timeout: float = 30.0

    # Logging (empty log_file = <config dir>/mirrorbox.log; level DEBUG|INFO|WARNING|ERROR)
    log_level: str = "INFO"
    log_file: str = ""


def get_settings() -> CacheSettings:
    """Return cache settings."""
    return CacheSettings()


def get_config_path() -> Path:
    """Path to config file (config.json)."""
    d = _config_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / "config.json"


def get_media_dir() -> Path:
    """Root holding one directory per account, each with one directory per repo."""
    d = get_settings().media_dir or (_config_dir() / "media")
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_json_cache_dir() -> Path:
    """Side cache area: repo-list snapshots and dirent snapshot blobs."""
    d = get_settings().cache_dir or (_config_dir() / "cache" / "json")
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_index_db_path() -> Path:
    """SQLite file backing the persistent index."""
    path = get_settings().db_path or (_config_dir() / "index.db")
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def get_server_url() -> str:
    """Return configured server URL, or the default when none set."""
    path = get_config_path()
    if not path.exists():
        return DEFAULT_SERVER_URL
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return (data.get("server_url") or "").strip() or DEFAULT_SERVER_URL
    except (json.JSONDecodeError, OSError):
        return DEFAULT_SERVER_URL


def set_server_url(url: str) -> None:
    """Persist server URL."""
    path = get_config_path()
    data = {}
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            pass
    data["server_url"] = (url or "").strip()
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
