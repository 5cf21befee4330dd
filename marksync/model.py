from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

FORMAT_VERSION = 2
SNAPSHOT_PREFIX = "bookmarks_"
SNAPSHOT_SUFFIX = ".json"


@dataclass
class Bookmark:
    title: str
    url: str
    id: str = ""
    index: int = 0
    date_added: Optional[int] = None
    date_modified: Optional[int] = None


@dataclass
class Folder:
    title: str
    children: List["Node"] = field(default_factory=list)
    id: str = ""
    index: int = 0
    date_added: Optional[int] = None
    date_modified: Optional[int] = None


Node = Union[Bookmark, Folder]


@dataclass
class Snapshot:
    tree: List[Node]
    captured_at: int
    snapshot_name: str
    format_version: int = FORMAT_VERSION
    # Set when the payload could not be used; tree is then empty.
    problem: Optional[str] = None


@dataclass
class BackupRecord:
    name: str
    path: str
    last_modified: datetime
    size_bytes: int = 0


@dataclass
class FlatEntry:
    id: str
    title: str
    url: Optional[str]
    folder_path: str
    date_added: Optional[int] = None
    date_modified: Optional[int] = None
    is_folder: bool = False
    index: int = 0


class WireNode(BaseModel):
    """One node of the ``bookmarkTree`` array, in its on-disk shape."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    title: str = ""
    url: Optional[str] = None
    dateAdded: int = 0
    dateModified: int = 0
    index: int = 0
    children: Optional[List["WireNode"]] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("title", mode="before")
    @classmethod
    def _title_as_text(cls, v: Any) -> str:
        return "" if v is None else str(v)


class WireSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: int
    bookmarkTree: List[WireNode]
    lastSync: int = 0
    fileName: str = ""


WireNode.model_rebuild()


def node_from_wire(w: WireNode) -> Node:
    # The only place where "has a url" decides the node kind.
    if w.url is not None:
        return Bookmark(
            title=w.title,
            url=w.url,
            id=w.id,
            index=w.index,
            date_added=w.dateAdded or None,
            date_modified=w.dateModified or None,
        )
    return Folder(
        title=w.title,
        children=[node_from_wire(c) for c in (w.children or [])],
        id=w.id,
        index=w.index,
        date_added=w.dateAdded or None,
        date_modified=w.dateModified or None,
    )


def node_to_wire(node: Node, *, now_ms: int) -> Dict[str, Any]:
    added = node.date_added or now_ms
    out: Dict[str, Any] = {
        "id": node.id,
        "title": node.title or "",
        "dateAdded": added,
        "dateModified": node.date_modified or added,
        "index": node.index,
    }
    if isinstance(node, Bookmark):
        out["url"] = node.url
    elif node.children:
        out["children"] = [node_to_wire(c, now_ms=now_ms) for c in node.children]
    return out


def snapshot_file_name(now: datetime) -> str:
    return now.strftime(f"{SNAPSHOT_PREFIX}%Y-%m-%d_%H%M%S{SNAPSHOT_SUFFIX}")


def is_snapshot_file_name(name: str) -> bool:
    return name.startswith(SNAPSHOT_PREFIX) and name.endswith(SNAPSHOT_SUFFIX)


def snapshot_sort_key(name: str) -> Tuple[str, int]:
    """Order snapshot names by capture time, then by collision counter.

    ``bookmarks_<ts>-2.json`` was written after ``bookmarks_<ts>.json`` and
    ``bookmarks_<ts>-10.json`` after ``bookmarks_<ts>-9.json``.
    """
    stem = name[: -len(SNAPSHOT_SUFFIX)] if name.endswith(SNAPSHOT_SUFFIX) else name
    base, _, counter = stem.rpartition("-")
    if base and counter.isdigit():
        return base, int(counter)
    return stem, 0


def encode_snapshot(snapshot: Snapshot) -> bytes:
    payload = {
        "version": snapshot.format_version,
        "bookmarkTree": [node_to_wire(n, now_ms=snapshot.captured_at) for n in snapshot.tree],
        "lastSync": snapshot.captured_at,
        "fileName": snapshot.snapshot_name,
    }
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def decode_snapshot(data: Union[bytes, str], *, name: str = "") -> Snapshot:
    """Parse a snapshot file.

    Never raises: an unusable payload (bad JSON, a version other than 2, the
    legacy flat ``bookmarks`` shape, a missing or malformed ``bookmarkTree``)
    comes back as an empty snapshot whose ``problem`` says why.
    """
    try:
        raw = json.loads(data)
    except (ValueError, UnicodeDecodeError) as e:
        return _unusable(name, f"invalid JSON: {e}")
    if not isinstance(raw, dict):
        return _unusable(name, "snapshot is not a JSON object")

    version = raw.get("version")
    if version != FORMAT_VERSION:
        if "bookmarks" in raw:
            return _unusable(name, "legacy flat snapshot format; create a new backup", version)
        return _unusable(name, f"unsupported snapshot version {version!r}", version)
    if not isinstance(raw.get("bookmarkTree"), list):
        return _unusable(name, "snapshot has no bookmarkTree", version)

    try:
        env = WireSnapshot.model_validate(raw)
    except ValidationError as e:
        return _unusable(name, f"malformed bookmarkTree ({e.error_count()} error(s))", version)
    return Snapshot(
        tree=[node_from_wire(w) for w in env.bookmarkTree],
        captured_at=env.lastSync,
        snapshot_name=env.fileName or name,
        format_version=env.version,
    )


def _unusable(name: str, problem: str, version: Any = None) -> Snapshot:
    fv = version if isinstance(version, int) else 0
    return Snapshot(tree=[], captured_at=0, snapshot_name=name, format_version=fv, problem=problem)


def flatten(forest: List[Node], *, include_folders: bool = False) -> List[FlatEntry]:
    out: List[FlatEntry] = []

    def _walk(nodes: List[Node], path: str) -> None:
        for n in sorted(nodes, key=lambda x: x.index):
            if isinstance(n, Bookmark):
                out.append(
                    FlatEntry(
                        id=n.id,
                        title=n.title,
                        url=n.url,
                        folder_path=path,
                        date_added=n.date_added,
                        date_modified=n.date_modified,
                        index=n.index,
                    )
                )
                continue
            if include_folders:
                out.append(
                    FlatEntry(
                        id=n.id,
                        title=n.title,
                        url=None,
                        folder_path=path,
                        date_added=n.date_added,
                        date_modified=n.date_modified,
                        is_folder=True,
                        index=n.index,
                    )
                )
            _walk(n.children, f"{path}/{n.title}" if path else n.title)

    _walk(forest, "")
    return out


def unflatten(entries: List[FlatEntry]) -> List[Node]:
    """Rebuild a forest from flat entries.

    Folders are keyed by their slash-joined path, so sibling folders sharing a
    title collapse into one.
    """
    roots: List[Node] = []
    folders: Dict[str, Folder] = {}

    def _container(path: str) -> List[Node]:
        if not path:
            return roots
        return _folder(path).children

    def _folder(path: str) -> Folder:
        f = folders.get(path)
        if f is None:
            parent_path, _, title = path.rpartition("/")
            siblings = _container(parent_path)
            f = Folder(title=title, index=len(siblings))
            siblings.append(f)
            folders[path] = f
        return f

    for e in entries:
        if e.is_folder:
            f = _folder(f"{e.folder_path}/{e.title}" if e.folder_path else e.title)
            f.id = e.id
            f.index = e.index
            f.date_added = e.date_added
            f.date_modified = e.date_modified
            continue
        _container(e.folder_path).append(
            Bookmark(
                title=e.title,
                url=e.url or "",
                id=e.id,
                index=e.index,
                date_added=e.date_added,
                date_modified=e.date_modified,
            )
        )

    _sort_by_index(roots)
    return roots


def _sort_by_index(nodes: List[Node]) -> None:
    nodes.sort(key=lambda x: x.index)
    for n in nodes:
        if isinstance(n, Folder):
            _sort_by_index(n.children)


def count_nodes(forest: List[Node]) -> Tuple[int, int]:
    folders = 0
    bookmarks = 0
    stack = list(forest)
    while stack:
        n = stack.pop()
        if isinstance(n, Bookmark):
            bookmarks += 1
        else:
            folders += 1
            stack.extend(n.children)
    return folders, bookmarks
