from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

from .log import get_logger
from .model import (
    BackupRecord,
    Snapshot,
    count_nodes,
    decode_snapshot,
    encode_snapshot,
    is_snapshot_file_name,
    snapshot_file_name,
    snapshot_sort_key,
)
from .reconcile import NodeError, ReconcileResult, RestoreMode, reconcile
from .store import BookmarkStore, StoreError
from .transport import SnapshotTransport, TransportError, join_path

log = get_logger(__name__)


@dataclass
class SyncResult:
    success: bool
    added_count: int = 0
    removed_count: int = 0
    file_name: Optional[str] = None
    error_message: Optional[str] = None
    node_errors: List[NodeError] = field(default_factory=list)


def backup(
    store: BookmarkStore,
    transport: SnapshotTransport,
    *,
    sync_dir: str,
    keep: int = 0,
    now: Optional[datetime] = None,
) -> str:
    """Write the whole local tree as a new snapshot file and return its name.

    Transport errors propagate. Existing snapshots are never replaced; with
    ``keep > 0`` the oldest snapshots beyond that count are deleted afterwards.
    """
    now = now or datetime.now()
    forest = store.get_tree()
    folders, bookmarks = count_nodes(forest)
    log.info("Backing up %d root(s): %d folder(s), %d bookmark(s)", len(forest), folders, bookmarks)

    transport.ensure_directory(sync_dir)
    existing = {r.name for r in transport.list(sync_dir)}
    file_name = _unique_name(snapshot_file_name(now), existing)

    snapshot = Snapshot(tree=forest, captured_at=int(now.timestamp() * 1000), snapshot_name=file_name)
    transport.write(join_path(sync_dir, file_name), encode_snapshot(snapshot))
    log.info("Backup written: %s", file_name)

    if keep > 0:
        prune_backups(transport, sync_dir=sync_dir, keep=keep)
    return file_name


def list_backups(transport: SnapshotTransport, *, sync_dir: str) -> List[BackupRecord]:
    records = [r for r in transport.list(sync_dir) if is_snapshot_file_name(r.name)]
    records.sort(key=_record_key, reverse=True)
    log.debug("Found %d backup(s) in %s", len(records), sync_dir)
    return records


def latest_backup(records: List[BackupRecord]) -> Optional[BackupRecord]:
    if not records:
        return None
    return max(records, key=_record_key)


def load_snapshot(
    transport: SnapshotTransport,
    *,
    sync_dir: str,
    file_name: Optional[str] = None,
) -> Optional[Snapshot]:
    """Fetch and decode a snapshot; the newest one when no name is given.

    Returns None when there is nothing to restore.
    """
    if not file_name:
        latest = latest_backup(list_backups(transport, sync_dir=sync_dir))
        if latest is None:
            log.info("No backups found in %s", sync_dir)
            return None
        file_name = latest.name
    log.info("Downloading %s", file_name)
    return decode_snapshot(transport.read(join_path(sync_dir, file_name)), name=file_name)


def restore(
    store: BookmarkStore,
    transport: SnapshotTransport,
    *,
    sync_dir: str,
    file_name: Optional[str] = None,
    mode: Union[RestoreMode, str] = RestoreMode.INCREMENTAL,
) -> ReconcileResult:
    mode = RestoreMode(mode)
    log.info("Restoring %s (mode=%s)", file_name or "latest backup", mode.value)
    snapshot = load_snapshot(transport, sync_dir=sync_dir, file_name=file_name)
    if snapshot is None:
        return ReconcileResult()
    if snapshot.problem:
        log.warning("Not restoring %s: %s", snapshot.snapshot_name, snapshot.problem)
        return ReconcileResult()
    if not snapshot.tree:
        log.info("Snapshot %s is empty, nothing to restore.", snapshot.snapshot_name)
        return ReconcileResult()

    result = reconcile(snapshot.tree, store, mode)
    log.info("Restore done: %d added, %d removed", result.added, result.removed)
    return result


def delete_backup(transport: SnapshotTransport, *, sync_dir: str, file_name: str) -> None:
    if not is_snapshot_file_name(file_name):
        raise ValueError(f"not a snapshot file name: {file_name}")
    transport.remove(join_path(sync_dir, file_name))
    log.info("Deleted backup %s", file_name)


def prune_backups(transport: SnapshotTransport, *, sync_dir: str, keep: int) -> int:
    removed = 0
    try:
        records = list_backups(transport, sync_dir=sync_dir)
    except TransportError as e:
        log.warning("Could not list backups for pruning: %s", e)
        return 0
    for r in records[keep:]:
        try:
            transport.remove(r.path)
        except TransportError as e:
            log.warning("Failed to prune %s: %s", r.name, e)
            continue
        removed += 1
    if removed:
        log.info("Pruned %d old backup(s), keeping %d", removed, keep)
    return removed


def check_connection(transport: SnapshotTransport) -> bool:
    try:
        transport.ping()
    except TransportError as e:
        log.warning("Connection test failed: %s", e)
        return False
    return True


def run_backup(
    store: BookmarkStore,
    transport: SnapshotTransport,
    *,
    sync_dir: str,
    keep: int = 0,
) -> SyncResult:
    t0 = time.time()
    try:
        name = backup(store, transport, sync_dir=sync_dir, keep=keep)
    except (TransportError, StoreError, OSError) as e:
        log.error("Backup failed: %s", e)
        return SyncResult(success=False, error_message=str(e))
    log.debug("Backup took %.2fs", time.time() - t0)
    return SyncResult(success=True, file_name=name)


def run_restore(
    store: BookmarkStore,
    transport: SnapshotTransport,
    *,
    sync_dir: str,
    file_name: Optional[str] = None,
    mode: Union[RestoreMode, str] = RestoreMode.INCREMENTAL,
) -> SyncResult:
    t0 = time.time()
    try:
        result = restore(store, transport, sync_dir=sync_dir, file_name=file_name, mode=mode)
    except (TransportError, StoreError, OSError) as e:
        log.error("Restore failed: %s", e)
        return SyncResult(success=False, file_name=file_name, error_message=str(e))
    log.debug("Restore took %.2fs", time.time() - t0)
    return SyncResult(
        success=True,
        added_count=result.added,
        removed_count=result.removed,
        file_name=file_name,
        node_errors=list(result.errors),
    )


def _unique_name(name: str, existing: set) -> str:
    if name not in existing:
        return name
    stem, dot, ext = name.rpartition(".")
    n = 1
    while f"{stem}-{n}{dot}{ext}" in existing:
        n += 1
    return f"{stem}-{n}{dot}{ext}"


def _record_key(r: BackupRecord):
    # WebDAV mtimes have one-second resolution; same-second backups differ only by counter.
    return r.last_modified, snapshot_sort_key(r.name)
