from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from .model import Bookmark, Folder, Node


class StoreError(Exception):
    """A local bookmark store rejected or failed a read or mutation."""


@dataclass
class StoreNode:
    id: str
    title: str
    url: Optional[str] = None
    index: int = 0

    @property
    def is_folder(self) -> bool:
        return self.url is None


class BookmarkStore(Protocol):
    def top_level(self) -> List[StoreNode]: ...

    def get_tree(self) -> List[Node]: ...

    def get_children(self, node_id: str) -> List[StoreNode]: ...

    def create(self, parent_id: str, title: str, url: Optional[str] = None) -> StoreNode: ...

    def update(self, node_id: str, *, title: Optional[str] = None, url: Optional[str] = None) -> None: ...

    def remove(self, node_id: str) -> None: ...

    def remove_subtree(self, node_id: str) -> None: ...


DEFAULT_ROOTS = ("Bookmarks bar", "Other bookmarks", "Mobile bookmarks")


@dataclass
class _Entry:
    id: str
    parent_id: str
    title: str
    url: Optional[str] = None
    children: List[str] = field(default_factory=list)


class MemoryStore:
    """In-memory bookmark store.

    Every mutation is appended to ``ops`` as a tuple, so callers can check
    what was done and in which order.
    """

    ROOT_ID = "0"

    def __init__(self, roots: Iterable[str] = DEFAULT_ROOTS):
        self._ids = itertools.count(1)
        self._entries: Dict[str, _Entry] = {self.ROOT_ID: _Entry(id=self.ROOT_ID, parent_id="", title="")}
        self.ops: List[Tuple[str, ...]] = []
        for title in roots:
            self._insert(self.ROOT_ID, title, None)

    @classmethod
    def from_tree(cls, forest: List[Node]) -> "MemoryStore":
        store = cls(roots=())
        for root in sorted(forest, key=lambda x: x.index):
            store._load(cls.ROOT_ID, root)
        return store

    def top_level(self) -> List[StoreNode]:
        return self.get_children(self.ROOT_ID)

    def get_tree(self) -> List[Node]:
        return [self._to_node(cid, i) for i, cid in enumerate(self._entries[self.ROOT_ID].children)]

    def get_children(self, node_id: str) -> List[StoreNode]:
        e = self._require(node_id)
        out = []
        for i, cid in enumerate(e.children):
            c = self._entries[cid]
            out.append(StoreNode(id=c.id, title=c.title, url=c.url, index=i))
        return out

    def create(self, parent_id: str, title: str, url: Optional[str] = None) -> StoreNode:
        parent = self._require(parent_id)
        if parent.url is not None:
            raise StoreError(f"parent is not a folder: {parent_id}")
        e = self._insert(parent_id, title, url)
        self.ops.append(("create", parent_id, title, url or ""))
        return StoreNode(id=e.id, title=e.title, url=e.url, index=len(parent.children) - 1)

    def update(self, node_id: str, *, title: Optional[str] = None, url: Optional[str] = None) -> None:
        e = self._require(node_id)
        if url is not None and e.url is None:
            raise StoreError(f"cannot set a url on folder {node_id}")
        if title is not None:
            e.title = title
        if url is not None:
            e.url = url
        self.ops.append(("update", node_id))

    def remove(self, node_id: str) -> None:
        e = self._require_removable(node_id)
        if e.children:
            raise StoreError(f"folder is not empty: {node_id}")
        self._detach(e)
        self.ops.append(("remove", node_id))

    def remove_subtree(self, node_id: str) -> None:
        e = self._require_removable(node_id)
        self._detach(e)
        stack = [e.id]
        while stack:
            cur = self._entries.pop(stack.pop())
            stack.extend(cur.children)
        self.ops.append(("remove_subtree", node_id))

    def _insert(self, parent_id: str, title: str, url: Optional[str]) -> _Entry:
        e = _Entry(id=str(next(self._ids)), parent_id=parent_id, title=title, url=url)
        self._entries[e.id] = e
        self._entries[parent_id].children.append(e.id)
        return e

    def _load(self, parent_id: str, node: Node) -> None:
        if isinstance(node, Bookmark):
            self._insert(parent_id, node.title, node.url)
            return
        e = self._insert(parent_id, node.title, None)
        for child in sorted(node.children, key=lambda x: x.index):
            self._load(e.id, child)

    def _to_node(self, node_id: str, index: int) -> Node:
        e = self._entries[node_id]
        if e.url is not None:
            return Bookmark(title=e.title, url=e.url, id=e.id, index=index)
        return Folder(
            title=e.title,
            children=[self._to_node(cid, i) for i, cid in enumerate(e.children)],
            id=e.id,
            index=index,
        )

    def _detach(self, e: _Entry) -> None:
        self._entries[e.parent_id].children.remove(e.id)

    def _require(self, node_id: str) -> _Entry:
        e = self._entries.get(node_id)
        if e is None:
            raise StoreError(f"node not found: {node_id}")
        return e

    def _require_removable(self, node_id: str) -> _Entry:
        e = self._require(node_id)
        if e.parent_id in ("", self.ROOT_ID):
            raise StoreError(f"cannot remove a root folder: {node_id}")
        return e
