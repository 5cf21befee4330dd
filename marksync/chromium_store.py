from __future__ import annotations

import json
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .log import get_logger
from .model import Bookmark, Folder, Node
from .store import StoreError, StoreNode

log = get_logger(__name__)

# Root keys in on-screen order. Edge and Brave share the layout.
_ROOT_KEYS = ("bookmark_bar", "other", "synced")

# WebKit timestamps count microseconds from 1601-01-01.
_WEBKIT_EPOCH_OFFSET_US = 11_644_473_600 * 1_000_000


def resolve_bookmarks_path(profile_or_file: Path | str) -> Path:
    p = Path(profile_or_file)
    if p.is_file():
        return p
    candidate = p / "Bookmarks"
    if candidate.exists():
        return candidate
    raise FileNotFoundError(f"Bookmarks file not found in {p}")


class ChromiumStore:
    """Bookmark store on a Chromium-family ``Bookmarks`` JSON file.

    Changes are kept in memory until ``save()``; leaving the context manager
    without an exception saves when anything changed. The browser must be
    closed, otherwise it overwrites the file on exit.
    """

    def __init__(self, profile_or_file: Path | str):
        self.path = resolve_bookmarks_path(profile_or_file)
        self.data: Dict[str, Any] = {}
        self.dirty = False
        self._nodes: Dict[str, Dict[str, Any]] = {}
        self._parents: Dict[str, Dict[str, Any]] = {}
        self._max_id = 0

    def __enter__(self) -> "ChromiumStore":
        self.load()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None and self.dirty:
            self.save()

    def load(self) -> None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreError(f"cannot read {self.path}: {e}") from e
        roots = data.get("roots") if isinstance(data, dict) else None
        if not isinstance(roots, dict) or not any(k in roots for k in _ROOT_KEYS):
            raise StoreError(f"{self.path} has no bookmark roots")
        self.data = data
        self.dirty = False
        self._nodes.clear()
        self._parents.clear()
        self._max_id = 0
        for key in _ROOT_KEYS:
            root = roots.get(key)
            if isinstance(root, dict):
                self._index(root, None)

    def save(self) -> None:
        # The checksum no longer matches once edited; Chromium recomputes it.
        self.data.pop("checksum", None)
        tmp = self.path.with_name(self.path.name + ".marksync-tmp")
        try:
            shutil.copy2(self.path, self.path.with_name(self.path.name + ".bak"))
            tmp.write_text(json.dumps(self.data, ensure_ascii=False, indent=3), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreError(f"cannot write {self.path}: {e}") from e
        self.dirty = False
        log.info("Saved Chromium bookmarks: %s", self.path)

    def top_level(self) -> List[StoreNode]:
        roots = self.data.get("roots", {})
        out: List[StoreNode] = []
        for key in _ROOT_KEYS:
            root = roots.get(key)
            if isinstance(root, dict):
                out.append(StoreNode(id=str(root.get("id", "")), title=root.get("name", "") or "", index=len(out)))
        return out

    def get_tree(self) -> List[Node]:
        forest: List[Node] = []
        for top in self.top_level():
            forest.append(self._to_node(self._nodes[top.id], top.index))
        return forest

    def get_children(self, node_id: str) -> List[StoreNode]:
        folder = self._require_folder(node_id)
        return [self._store_node(c, i) for i, c in enumerate(folder.get("children", []))]

    def create(self, parent_id: str, title: str, url: Optional[str] = None) -> StoreNode:
        parent = self._require_folder(parent_id)
        self._max_id += 1
        now = _webkit_now()
        node: Dict[str, Any] = {
            "date_added": now,
            "guid": str(uuid.uuid4()),
            "id": str(self._max_id),
            "name": title,
        }
        if url is not None:
            node["type"] = "url"
            node["url"] = url
        else:
            node["children"] = []
            node["date_modified"] = now
            node["type"] = "folder"
        children = parent.setdefault("children", [])
        children.append(node)
        parent["date_modified"] = now
        self._nodes[node["id"]] = node
        self._parents[node["id"]] = parent
        self.dirty = True
        return self._store_node(node, len(children) - 1)

    def update(self, node_id: str, *, title: Optional[str] = None, url: Optional[str] = None) -> None:
        node = self._require(node_id)
        if url is not None:
            if node.get("type") != "url":
                raise StoreError(f"cannot set a url on folder {node_id}")
            node["url"] = url
        if title is not None:
            node["name"] = title
        self.dirty = True

    def remove(self, node_id: str) -> None:
        node, parent = self._require_removable(node_id)
        if node.get("children"):
            raise StoreError(f"folder is not empty: {node_id}")
        self._detach(node, parent)

    def remove_subtree(self, node_id: str) -> None:
        node, parent = self._require_removable(node_id)
        self._detach(node, parent)

    def _index(self, node: Dict[str, Any], parent: Optional[Dict[str, Any]]) -> None:
        nid = str(node.get("id", ""))
        self._nodes[nid] = node
        if parent is not None:
            self._parents[nid] = parent
        if nid.isdigit():
            self._max_id = max(self._max_id, int(nid))
        for child in node.get("children", []) or []:
            self._index(child, node)

    def _detach(self, node: Dict[str, Any], parent: Dict[str, Any]) -> None:
        parent["children"] = [c for c in parent.get("children", []) if c is not node]
        parent["date_modified"] = _webkit_now()
        stack = [node]
        while stack:
            cur = stack.pop()
            nid = str(cur.get("id", ""))
            self._nodes.pop(nid, None)
            self._parents.pop(nid, None)
            stack.extend(cur.get("children", []) or [])
        self.dirty = True

    def _to_node(self, raw: Dict[str, Any], index: int) -> Node:
        added = _webkit_to_ms(raw.get("date_added"))
        modified = _webkit_to_ms(raw.get("date_modified")) or added
        if raw.get("type") == "url":
            return Bookmark(
                title=raw.get("name", "") or "",
                url=raw.get("url", "") or "",
                id=str(raw.get("id", "")),
                index=index,
                date_added=added,
                date_modified=modified,
            )
        return Folder(
            title=raw.get("name", "") or "",
            children=[self._to_node(c, i) for i, c in enumerate(raw.get("children", []) or [])],
            id=str(raw.get("id", "")),
            index=index,
            date_added=added,
            date_modified=modified,
        )

    def _store_node(self, raw: Dict[str, Any], index: int) -> StoreNode:
        url = raw.get("url", "") if raw.get("type") == "url" else None
        return StoreNode(id=str(raw.get("id", "")), title=raw.get("name", "") or "", url=url, index=index)

    def _require(self, node_id: str) -> Dict[str, Any]:
        node = self._nodes.get(str(node_id))
        if node is None:
            raise StoreError(f"bookmark id not found: {node_id}")
        return node

    def _require_folder(self, node_id: str) -> Dict[str, Any]:
        node = self._require(node_id)
        if node.get("type") == "url":
            raise StoreError(f"id is not a folder: {node_id}")
        return node

    def _require_removable(self, node_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        node = self._require(node_id)
        parent = self._parents.get(str(node_id))
        if parent is None:
            raise StoreError(f"cannot remove root folder {node_id}")
        return node, parent


def _webkit_now() -> str:
    return str(int(time.time() * 1_000_000) + _WEBKIT_EPOCH_OFFSET_US)


def _webkit_to_ms(value: Any) -> Optional[int]:
    try:
        iv = int(value)
    except (TypeError, ValueError):
        return None
    if iv <= _WEBKIT_EPOCH_OFFSET_US:
        return None
    return (iv - _WEBKIT_EPOCH_OFFSET_US) // 1000
