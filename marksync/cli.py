from __future__ import annotations

import argparse
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

from . import __version__
from .chromium_store import ChromiumStore, resolve_bookmarks_path
from .config import Settings, load_settings
from .log import LogConfig, get_logger, setup_logging
from .model import Folder, count_nodes, flatten
from .places_store import PlacesStore, resolve_places_path
from .reconcile import RestoreMode
from .store import BookmarkStore, MemoryStore, StoreError
from .sync import check_connection, delete_backup, list_backups, run_backup, run_restore
from .transport import DirectoryTransport, SnapshotTransport, TransportError
from .webdav import WebDAVTransport

log = get_logger(__name__)


def main(argv: List[str] | None = None) -> int:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--firefox-profile", default=None, help="Firefox profile dir or places.sqlite (local store).")
    common.add_argument("--chromium-bookmarks", default=None, help="Chrome/Edge profile dir or Bookmarks file (local store).")
    common.add_argument("--remote-dir", default=None, help="Keep snapshots in this local directory instead of WebDAV.")
    common.add_argument("--log-level", default=None, help="DEBUG/INFO/WARN/ERROR (overrides env/config).")
    common.add_argument("--no-color", action="store_true", help="Disable colored logging.")

    p = argparse.ArgumentParser(
        prog="marksync",
        description="Back up and restore browser bookmark trees as WebDAV snapshots.",
    )
    p.add_argument("-V", "--version", action="version", version=f"marksync {__version__}")
    p.add_argument("--config", default=None, help="YAML config file (optional). Env vars override defaults.")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("backup", parents=[common], help="Upload the local bookmark tree as a new snapshot.")

    rst = sub.add_parser("restore", parents=[common], help="Merge a snapshot into the local bookmark tree.")
    rst.add_argument("--file", default=None, help="Snapshot file name (default: newest).")
    rst.add_argument("--mode", choices=[m.value for m in RestoreMode], default=None, help="incremental (default) or overwrite.")
    rst.add_argument("--dry-run", action="store_true", help="Restore into an in-memory copy; the local store is not modified.")
    rst.add_argument("--backup-local", default=None, help="Copy the local bookmark file into this dir before restoring.")

    sub.add_parser("list", parents=[common], help="List remote snapshots, newest first.")

    dele = sub.add_parser("delete", parents=[common], help="Delete one remote snapshot.")
    dele.add_argument("name", help="Snapshot file name.")

    sub.add_parser("test", parents=[common], help="Check that the remote store is reachable.")
    st = sub.add_parser("stats", parents=[common], help="Count local folders and bookmarks.")
    st.add_argument("--flat", action="store_true", help="Also print every bookmark as path, title and url.")

    args = p.parse_args(argv)
    cfg = load_settings(args.config)
    _apply_overrides(cfg, args)
    setup_logging(LogConfig(level=cfg.log_level, no_color=cfg.no_color))

    try:
        if args.cmd == "backup":
            return _cmd_backup(cfg)
        if args.cmd == "restore":
            return _cmd_restore(args, cfg)
        if args.cmd == "list":
            return _cmd_list(cfg)
        if args.cmd == "delete":
            return _cmd_delete(args, cfg)
        if args.cmd == "test":
            return _cmd_test(cfg)
        if args.cmd == "stats":
            return _cmd_stats(args, cfg)
    except (ValueError, FileNotFoundError) as e:
        log.error("%s", e)
        return 2
    return 2


def _apply_overrides(cfg: Settings, args: argparse.Namespace) -> None:
    if args.firefox_profile:
        cfg.firefox_profile = args.firefox_profile
        cfg.chromium_bookmarks = ""
    if args.chromium_bookmarks:
        cfg.chromium_bookmarks = args.chromium_bookmarks
        if not args.firefox_profile:
            cfg.firefox_profile = ""
    if args.remote_dir:
        cfg.remote_dir = args.remote_dir
    if args.log_level:
        cfg.log_level = args.log_level
    if args.no_color:
        cfg.no_color = True
    if getattr(args, "mode", None):
        cfg.restore_mode = args.mode


def _cmd_backup(cfg: Settings) -> int:
    transport = _make_transport(cfg)
    with _open_store(cfg, readonly=True) as store:
        res = run_backup(store, transport, sync_dir=cfg.sync_dir, keep=int(cfg.keep_backups))
    if not res.success:
        return 1
    print(res.file_name)
    return 0


def _cmd_restore(args, cfg: Settings) -> int:
    t0 = time.time()
    mode = RestoreMode(cfg.restore_mode)
    transport = _make_transport(cfg)
    if args.backup_local and not args.dry_run:
        _backup_local_file(_local_store_path(cfg), Path(args.backup_local))

    with _open_store(cfg, readonly=args.dry_run) as local:
        store: BookmarkStore = local
        if args.dry_run:
            store = MemoryStore.from_tree(local.get_tree())
            log.info("Dry run: restoring into an in-memory copy of the local tree.")
        res = run_restore(store, transport, sync_dir=cfg.sync_dir, file_name=args.file, mode=mode)
        if res.success and not args.dry_run and isinstance(local, PlacesStore):
            try:
                local.validate_integrity()
            except StoreError as e:
                log.error("Restore left places.sqlite in a bad state: %s", e)
                return 1

    if not res.success:
        return 1
    for err in res.node_errors:
        log.warning("Not restored (%s): %s: %s", err.action, err.path, err.message)
    print(f"added={res.added_count} removed={res.removed_count} errors={len(res.node_errors)}")
    log.info("Done in %d ms.", int((time.time() - t0) * 1000))
    return 0


def _cmd_list(cfg: Settings) -> int:
    transport = _make_transport(cfg)
    try:
        records = list_backups(transport, sync_dir=cfg.sync_dir)
    except TransportError as e:
        log.error("Failed to list backups: %s", e)
        return 1
    for r in records:
        print(f"{r.name}\t{r.last_modified.isoformat(timespec='seconds')}\t{r.size_bytes}")
    log.info("%d backup(s) in %s", len(records), cfg.sync_dir)
    return 0


def _cmd_delete(args, cfg: Settings) -> int:
    transport = _make_transport(cfg)
    try:
        delete_backup(transport, sync_dir=cfg.sync_dir, file_name=args.name)
    except TransportError as e:
        log.error("Failed to delete %s: %s", args.name, e)
        return 1
    return 0


def _cmd_test(cfg: Settings) -> int:
    ok = check_connection(_make_transport(cfg))
    print("ok" if ok else "failed")
    return 0 if ok else 1


def _cmd_stats(args, cfg: Settings) -> int:
    with _open_store(cfg, readonly=True) as store:
        forest = store.get_tree()
    if args.flat:
        for e in flatten(forest):
            print(f"{e.folder_path}\t{e.title}\t{e.url}")
    for root in forest:
        if isinstance(root, Folder):
            folders, bookmarks = count_nodes(root.children)
            print(f"{root.title}\tfolders={folders}\tbookmarks={bookmarks}")
    folders, bookmarks = count_nodes([c for r in forest if isinstance(r, Folder) for c in r.children])
    print(f"total\tfolders={folders}\tbookmarks={bookmarks}")
    return 0


def _make_transport(cfg: Settings) -> SnapshotTransport:
    if cfg.remote_dir:
        return DirectoryTransport(cfg.remote_dir)
    if not cfg.webdav_url:
        raise ValueError("No remote configured: set MARKSYNC_WEBDAV_URL (or webdav_url) or use --remote-dir.")
    return WebDAVTransport(cfg.webdav_config())


@contextmanager
def _open_store(cfg: Settings, *, readonly: bool) -> Iterator[BookmarkStore]:
    try:
        if cfg.firefox_profile:
            with PlacesStore(cfg.firefox_profile, readonly=readonly) as store:
                yield store
        elif cfg.chromium_bookmarks:
            with ChromiumStore(cfg.chromium_bookmarks) as cstore:
                yield cstore
        else:
            raise ValueError("No local bookmark store: use --firefox-profile or --chromium-bookmarks.")
    except StoreError as e:
        raise ValueError(f"Local bookmark store unavailable: {e}") from e


def _local_store_path(cfg: Settings) -> Path:
    if cfg.firefox_profile:
        return resolve_places_path(cfg.firefox_profile)
    if cfg.chromium_bookmarks:
        return resolve_bookmarks_path(cfg.chromium_bookmarks)
    raise ValueError("No local bookmark store: use --firefox-profile or --chromium-bookmarks.")


def _backup_local_file(path: Path, state_dir: Path) -> None:
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        dest = state_dir / f"{path.name}.bak.{int(time.time())}"
        dest.write_bytes(path.read_bytes())
        log.info("Backed up %s -> %s", path, dest)
    except OSError as e:
        log.warning("Local backup failed: %s", e)
