"""Operator tooling: inspect and clear the local caches, show or set the default server."""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from mirrorbox.cache.dirents import list_blob_files
from mirrorbox.cache.repos import REPOS_BLOB_PREFIX
from mirrorbox.config import get_config_path, get_json_cache_dir, get_server_url, get_settings, set_server_url
from mirrorbox.db.index import PersistentIndex

log = logging.getLogger("mirrorbox.main")


def setup_logging() -> None:
    """Configure logging to a file in the config dir and to stderr."""
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    log_file = Path(settings.log_file) if settings.log_file.strip() else get_config_path().parent / "mirrorbox.log"
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger("mirrorbox")
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    try:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        root.addHandler(fh)
    except OSError as e:
        print(f"Could not open log file {log_file}: {e}", file=sys.stderr)
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(level)
    ch.setFormatter(fmt)
    root.addHandler(ch)
    root.debug("Logging to %s", log_file)


def _repo_blobs(cache_dir: Path) -> List[Path]:
    return sorted(cache_dir.glob(f"{REPOS_BLOB_PREFIX}*.dat"))


def cmd_stats(index: PersistentIndex, cache_dir: Path) -> int:
    print(f"Cache dir:          {cache_dir}")
    print(f"Dirent blobs:       {len(list_blob_files(cache_dir))}")
    print(f"Repo list blobs:    {len(_repo_blobs(cache_dir))}")
    print(f"Dirent index rows:  {index.count_dirent_entries()}")
    return 0


def cmd_clear(index: PersistentIndex, cache_dir: Path) -> int:
    """Drop every cached listing, repo list and starred list. Local file copies stay."""
    with index.transaction() as session:
        rows = index.clear_dirents(session=session)
        index.clear_starred_files(session=session)
    removed = 0
    for blob in list_blob_files(cache_dir) + _repo_blobs(cache_dir):
        try:
            blob.unlink()
            removed += 1
        except OSError as e:
            log.warning("Could not delete %s: %s", blob, e)
    log.info("Cleared %d index rows and %d cache files", rows, removed)
    print(f"Removed {rows} index rows and {removed} cache files.")
    return 0


def cmd_server(url: Optional[str]) -> int:
    """Print the default server of new accounts, or persist a new one."""
    if url is not None:
        if not url.strip():
            print("Server URL must not be empty.", file=sys.stderr)
            return 2
        set_server_url(url)
        log.info("Default server set to %s", url.strip())
    print(get_server_url())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="mirrorbox", description="Inspect or clear the mirrorbox caches.")
    parser.add_argument("--db", type=Path, default=None, help="Index database (default: from settings)")
    parser.add_argument("--cache-dir", type=Path, default=None, help="JSON cache dir (default: from settings)")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("stats", help="Show cache counts")
    sub.add_parser("clear", help="Remove cached listings and repo lists")
    server = sub.add_parser("server", help="Show or set the default server URL")
    server.add_argument("url", nargs="?", default=None, help="New default server URL")
    args = parser.parse_args(argv)

    setup_logging()
    if args.command == "server":
        return cmd_server(args.url)
    index = PersistentIndex(db_path=args.db)
    cache_dir = args.cache_dir or get_json_cache_dir()
    if args.command == "stats":
        return cmd_stats(index, cache_dir)
    return cmd_clear(index, cache_dir)


if __name__ == "__main__":
    sys.exit(main())
