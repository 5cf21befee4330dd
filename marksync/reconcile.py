from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Sequence, Tuple, Union

from .aliases import canonical_role, resolve_top_folder
from .log import get_logger
from .model import Bookmark, Folder, Node
from .store import BookmarkStore, StoreError, StoreNode

log = get_logger(__name__)

Key = Tuple[str, ...]


class RestoreMode(str, Enum):
    INCREMENTAL = "incremental"
    OVERWRITE = "overwrite"


@dataclass
class NodeError:
    path: str
    action: str
    message: str


@dataclass
class ReconcileResult:
    added: int = 0
    removed: int = 0
    skipped_roots: List[str] = field(default_factory=list)
    errors: List[NodeError] = field(default_factory=list)


@dataclass(frozen=True)
class Matched:
    node: Node
    handle: str


@dataclass(frozen=True)
class CreateLeaf:
    node: Bookmark


@dataclass(frozen=True)
class CreateSubtree:
    node: Folder


Step = Union[Matched, CreateLeaf, CreateSubtree]


def node_key(node: Node) -> Key:
    if isinstance(node, Bookmark):
        return ("bookmark", node.title, node.url)
    return ("folder", node.title)


def store_key(node: StoreNode) -> Key:
    if node.is_folder:
        return ("folder", node.title)
    return ("bookmark", node.title, node.url or "")


def plan_level(snapshot_children: Sequence[Node], existing: Sequence[StoreNode]) -> List[Step]:
    """Decide, for one parent, which snapshot children already exist.

    Snapshot children are visited in ascending ``index``. A child matches an
    existing node only by kind plus title (plus url for bookmarks); ids and
    positions play no part. When several existing nodes share a key the last
    one wins.
    """
    lookup: Dict[Key, str] = {store_key(e): e.id for e in existing}
    steps: List[Step] = []
    for node in sorted(snapshot_children, key=lambda n: n.index):
        handle = lookup.get(node_key(node))
        if handle is not None:
            steps.append(Matched(node=node, handle=handle))
        elif isinstance(node, Bookmark):
            steps.append(CreateLeaf(node=node))
        else:
            steps.append(CreateSubtree(node=node))
    return steps


def reconcile(
    forest: Sequence[Node],
    store: BookmarkStore,
    mode: Union[RestoreMode, str] = RestoreMode.INCREMENTAL,
) -> ReconcileResult:
    """Merge a snapshot forest into ``store``.

    Each snapshot root is mapped onto a local top-level folder (see
    ``aliases``); roots without a match are skipped. In overwrite mode the
    matched folder's direct children are removed first. Missing nodes are then
    created one at a time, existing ones are left untouched.

    Store failures on a single node are recorded in ``errors`` and do not stop
    the run, so a partially applied tree is possible.
    """
    mode = RestoreMode(mode)
    result = ReconcileResult()

    top: Dict[str, str] = {n.title: n.id for n in store.top_level() if n.is_folder}
    log.info("Local top-level folders: %s (mode=%s)", ", ".join(top) or "-", mode.value)

    for root in forest:
        if isinstance(root, Bookmark):
            log.info("Skipping top-level bookmark %r: only folders are restored at the top level.", root.title)
            result.skipped_roots.append(root.title)
            continue
        handle = resolve_top_folder(root.title, top)
        if handle is None:
            log.info("No local top-level folder matches %r, skipped.", root.title)
            result.skipped_roots.append(root.title)
            continue
        log.info("Top-level folder %r (%s) -> %s", root.title, canonical_role(root.title) or "custom", handle)

        try:
            if mode is RestoreMode.OVERWRITE:
                removed = _clear_folder(store, handle, root.title, result)
                result.removed += removed
                log.info("Cleared %d item(s) from %r (phase=overwrite)", removed, root.title)

            if root.children:
                result.added += _merge_level(store, root.children, handle, root.title, result)
        except StoreError as e:
            log.warning("Failed to merge %s: %s", root.title, e)
            result.errors.append(NodeError(path=root.title, action="merge", message=str(e)))

    if result.errors:
        log.warning("Restore finished with %d node error(s).", len(result.errors))
    return result


def _clear_folder(store: BookmarkStore, folder_id: str, path: str, result: ReconcileResult) -> int:
    removed = 0
    for child in store.get_children(folder_id):
        try:
            if child.is_folder:
                store.remove_subtree(child.id)
            else:
                store.remove(child.id)
        except StoreError as e:
            child_path = _join(path, child.title)
            log.warning("Failed to remove %s: %s", child_path, e)
            result.errors.append(NodeError(path=child_path, action="remove", message=str(e)))
            continue
        removed += 1
    return removed


def _merge_level(
    store: BookmarkStore,
    nodes: Sequence[Node],
    parent_id: str,
    path: str,
    result: ReconcileResult,
) -> int:
    added = 0
    existing = store.get_children(parent_id)
    for step in plan_level(nodes, existing):
        node = step.node
        node_path = _join(path, node.title)
        try:
            if isinstance(step, Matched):
                if isinstance(node, Folder) and node.children:
                    added += _merge_level(store, node.children, step.handle, node_path, result)
            elif isinstance(step, CreateLeaf):
                store.create(parent_id, step.node.title, step.node.url)
                added += 1
                log.debug("Created bookmark %s", node_path)
            else:
                created = store.create(parent_id, step.node.title)
                added += 1
                log.debug("Created folder %s -> %s", node_path, created.id)
                if step.node.children:
                    added += _merge_level(store, step.node.children, created.id, node_path, result)
        except StoreError as e:
            action = "merge" if isinstance(step, Matched) else "create"
            log.warning("Failed to %s %s: %s", action, node_path, e)
            result.errors.append(NodeError(path=node_path, action=action, message=str(e)))
    return added


def _join(path: str, title: str) -> str:
    return f"{path}/{title}" if path else title
