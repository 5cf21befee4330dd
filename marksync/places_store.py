from __future__ import annotations

import base64
import os
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set

from .log import get_logger
from .model import Bookmark, Folder, Node
from .store import StoreError, StoreNode

log = get_logger(__name__)

TYPE_BOOKMARK = 1
TYPE_FOLDER = 2

_ROOT_LABELS = {
    "toolbar": "Bookmarks Toolbar",
    "menu": "Bookmarks Menu",
    "unfiled": "Other Bookmarks",
    "mobile": "Mobile Bookmarks",
    "tags": "Tags",
}

_ROOT_GUID_TO_NAME = {
    "menu________": "menu",
    "toolbar_____": "toolbar",
    "tags________": "tags",
    "unfiled_____": "unfiled",
    "mobile______": "mobile",
}

# Roots offered as top-level folders; "tags" holds tag references, not bookmarks.
_VISIBLE_ROOTS = ("toolbar", "menu", "unfiled", "mobile")


def resolve_places_path(profile_or_db_path: Path | str) -> Path:
    p = Path(profile_or_db_path)
    if p.is_file():
        return p
    db = p / "places.sqlite"
    if db.exists():
        return db
    raise FileNotFoundError(f"places.sqlite not found in {p}")


class PlacesStore:
    """Bookmark store on a Firefox ``places.sqlite`` database.

    Firefox must be closed while writing; a locked database surfaces as a
    ``StoreError``.
    """

    def __init__(self, profile_or_db_path: Path | str, *, readonly: bool = False, busy_timeout_ms: int = 5000):
        self.db_path = resolve_places_path(profile_or_db_path)
        self.readonly = readonly
        self.busy_timeout_ms = max(0, int(busy_timeout_ms))
        self.conn: sqlite3.Connection | None = None
        self._has_guid = False
        self._has_foreign_count = False
        self.root_ids: Dict[str, int] = {}

    def __enter__(self) -> "PlacesStore":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        mode = "ro" if self.readonly else "rw"
        uri = f"file:{self.db_path.as_posix()}?mode={mode}"
        timeout_s = max(0.1, self.busy_timeout_ms / 1000.0)
        try:
            self.conn = sqlite3.connect(uri, uri=True, timeout=timeout_s)
            self.conn.row_factory = sqlite3.Row
            if self.busy_timeout_ms > 0:
                self.conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            self._has_guid = self._has_column("moz_bookmarks", "guid")
            self._has_foreign_count = self._has_column("moz_places", "foreign_count")
            self.root_ids = self._discover_root_ids()
        except sqlite3.Error as e:
            self.close()
            raise _store_error(e, self.db_path) from e
        if not any(name in self.root_ids for name in _VISIBLE_ROOTS):
            self.close()
            raise StoreError(f"no Firefox bookmark roots found in {self.db_path}")

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def top_level(self) -> List[StoreNode]:
        out: List[StoreNode] = []
        with self._reading() as c:
            for name in _VISIBLE_ROOTS:
                rid = self.root_ids.get(name)
                if rid is None:
                    continue
                row = c.execute("SELECT position FROM moz_bookmarks WHERE id = ?", (rid,)).fetchone()
                out.append(StoreNode(id=str(rid), title=_ROOT_LABELS[name], index=int(row["position"] or 0) if row else 0))
        out.sort(key=lambda n: n.index)
        return out

    def get_children(self, node_id: str) -> List[StoreNode]:
        fid = self._require_folder(node_id)
        with self._reading() as c:
            rows = c.execute(
                """
                SELECT b.id, b.type, b.title, b.position, p.url
                FROM moz_bookmarks b
                LEFT JOIN moz_places p ON p.id = b.fk
                WHERE b.parent = ? AND b.type IN (1, 2)
                ORDER BY b.position, b.id
                """,
                (fid,),
            ).fetchall()
        out: List[StoreNode] = []
        for r in rows:
            if int(r["type"]) == TYPE_BOOKMARK:
                url = r["url"] or ""
                if url.startswith("place:"):
                    continue
                out.append(StoreNode(id=str(r["id"]), title=r["title"] or "", url=url, index=int(r["position"] or 0)))
            else:
                out.append(StoreNode(id=str(r["id"]), title=r["title"] or "", index=int(r["position"] or 0)))
        return out

    def get_tree(self) -> List[Node]:
        with self._reading() as c:
            rows = c.execute(
                """
                SELECT b.id, b.type, b.parent, b.title, b.position, b.dateAdded, b.lastModified, p.url
                FROM moz_bookmarks b
                LEFT JOIN moz_places p ON p.id = b.fk
                WHERE b.type IN (1, 2)
                ORDER BY b.parent, b.position, b.id
                """
            ).fetchall()
        children_of: Dict[int, List[sqlite3.Row]] = {}
        by_id: Dict[int, sqlite3.Row] = {}
        for r in rows:
            by_id[int(r["id"])] = r
            children_of.setdefault(int(r["parent"] or 0), []).append(r)

        def _build(r: sqlite3.Row, title: str, index: int) -> Optional[Node]:
            added = _moz_time_to_ms(r["dateAdded"])
            modified = _moz_time_to_ms(r["lastModified"])
            if int(r["type"]) == TYPE_BOOKMARK:
                url = r["url"] or ""
                if url.startswith("place:"):
                    return None
                return Bookmark(title=title, url=url, id=str(r["id"]), index=index, date_added=added, date_modified=modified)
            kids: List[Node] = []
            for child in children_of.get(int(r["id"]), []):
                node = _build(child, child["title"] or "", len(kids))
                if node is not None:
                    kids.append(node)
            return Folder(title=title, children=kids, id=str(r["id"]), index=index, date_added=added, date_modified=modified)

        forest: List[Node] = []
        for root in self.top_level():
            row = by_id.get(int(root.id))
            if row is None:
                continue
            node = _build(row, root.title, len(forest))
            if node is not None:
                forest.append(node)
        return forest

    def create(self, parent_id: str, title: str, url: Optional[str] = None) -> StoreNode:
        pid = self._require_folder(parent_id)
        with self._writing() as c:
            fk = self._ensure_place(c, url, title) if url is not None else None
            pos = self._next_position(c, pid)
            new_id = self._insert_bookmark(
                c,
                btype=TYPE_BOOKMARK if url is not None else TYPE_FOLDER,
                fk=fk,
                parent_id=pid,
                position=pos,
                title=title,
            )
        return StoreNode(id=str(new_id), title=title, url=url, index=pos)

    def update(self, node_id: str, *, title: Optional[str] = None, url: Optional[str] = None) -> None:
        bid = self._require_node(node_id)
        with self._writing() as c:
            row = c.execute("SELECT type, fk FROM moz_bookmarks WHERE id = ?", (bid,)).fetchone()
            if url is not None:
                if int(row["type"]) != TYPE_BOOKMARK:
                    raise StoreError(f"cannot set a url on folder {node_id}")
                fk = self._ensure_place(c, url, title or "")
                c.execute("UPDATE moz_bookmarks SET fk = ? WHERE id = ?", (fk, bid))
                self._refresh_foreign_count(c, {int(row["fk"] or 0), fk})
            if title is not None:
                c.execute("UPDATE moz_bookmarks SET title = ? WHERE id = ?", (title, bid))
            c.execute("UPDATE moz_bookmarks SET lastModified = ? WHERE id = ?", (self._now_us(), bid))

    def remove(self, node_id: str) -> None:
        bid = self._require_removable(node_id)
        with self._writing() as c:
            has_children = c.execute("SELECT 1 FROM moz_bookmarks WHERE parent = ? LIMIT 1", (bid,)).fetchone()
            if has_children:
                raise StoreError(f"folder is not empty: {node_id}")
            self._delete_rows(c, bid, [bid])

    def remove_subtree(self, node_id: str) -> None:
        bid = self._require_removable(node_id)
        with self._writing() as c:
            ids = [bid]
            frontier = [bid]
            while frontier:
                marks = ", ".join("?" * len(frontier))
                rows = c.execute(f"SELECT id FROM moz_bookmarks WHERE parent IN ({marks})", frontier).fetchall()
                frontier = [int(r["id"]) for r in rows]
                ids.extend(frontier)
            self._delete_rows(c, bid, ids)

    def validate_integrity(self) -> None:
        with self._reading() as c:
            row = c.execute("PRAGMA integrity_check").fetchone()
        status = str(row[0]) if row is not None else ""
        if status.lower() != "ok":
            raise StoreError(f"sqlite integrity_check failed: {status or '<empty>'}")

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Cursor]:
        c = self._cursor()
        try:
            yield c
        except sqlite3.Error as e:
            raise _store_error(e, self.db_path) from e

    @contextmanager
    def _writing(self) -> Iterator[sqlite3.Cursor]:
        if self.readonly:
            raise StoreError("database opened in readonly mode")
        c = self._cursor()
        try:
            yield c
            self.conn.commit()
        except StoreError:
            self.conn.rollback()
            raise
        except sqlite3.Error as e:
            self.conn.rollback()
            raise _store_error(e, self.db_path) from e

    def _delete_rows(self, c: sqlite3.Cursor, top_id: int, ids: List[int]) -> None:
        row = c.execute("SELECT parent, position FROM moz_bookmarks WHERE id = ?", (top_id,)).fetchone()
        parent_id = int(row["parent"] or 0)
        position = int(row["position"] or 0)
        fks: Set[int] = set()
        for i in range(0, len(ids), 500):
            chunk = ids[i : i + 500]
            marks = ", ".join("?" * len(chunk))
            fks.update(
                int(r["fk"])
                for r in c.execute(f"SELECT fk FROM moz_bookmarks WHERE id IN ({marks}) AND fk IS NOT NULL", chunk)
            )
            c.execute(f"DELETE FROM moz_bookmarks WHERE id IN ({marks})", chunk)
        c.execute(
            "UPDATE moz_bookmarks SET position = position - 1 WHERE parent = ? AND position > ?",
            (parent_id, position),
        )
        self._refresh_foreign_count(c, fks)
        self._touch_folder(c, parent_id)

    def _refresh_foreign_count(self, c: sqlite3.Cursor, fks: Set[int]) -> None:
        if not self._has_foreign_count:
            return
        for fk in fks:
            if fk <= 0:
                continue
            c.execute(
                """
                UPDATE moz_places
                SET foreign_count = (SELECT COUNT(*) FROM moz_bookmarks b WHERE b.fk = moz_places.id)
                WHERE id = ?
                """,
                (fk,),
            )

    def _ensure_place(self, c: sqlite3.Cursor, url: str, title: str) -> int:
        # URLs are stored verbatim: restores match bookmarks on the exact url.
        row = c.execute("SELECT id, title FROM moz_places WHERE url = ? LIMIT 1", (url,)).fetchone()
        if row:
            pid = int(row["id"])
            if title and not (row["title"] or ""):
                c.execute("UPDATE moz_places SET title = ? WHERE id = ?", (title, pid))
            return pid
        cols = ["url", "title"]
        vals: List[object] = [url, title]
        if self._has_column("moz_places", "guid"):
            cols.append("guid")
            vals.append(self._new_guid())
        placeholders = ", ".join(["?"] * len(vals))
        c.execute(f"INSERT INTO moz_places ({', '.join(cols)}) VALUES ({placeholders})", vals)
        return int(c.lastrowid)

    def _insert_bookmark(
        self,
        c: sqlite3.Cursor,
        *,
        btype: int,
        fk: Optional[int],
        parent_id: int,
        position: int,
        title: str,
    ) -> int:
        now = self._now_us()
        cols = ["type", "fk", "parent", "position", "title", "dateAdded", "lastModified"]
        vals: List[object] = [btype, fk, parent_id, position, title, now, now]
        if self._has_guid:
            cols.append("guid")
            vals.append(self._new_guid())
        placeholders = ", ".join(["?"] * len(vals))
        c.execute(f"INSERT INTO moz_bookmarks ({', '.join(cols)}) VALUES ({placeholders})", vals)
        row_id = int(c.lastrowid)
        if fk is not None and self._has_foreign_count:
            c.execute("UPDATE moz_places SET foreign_count = foreign_count + 1 WHERE id = ?", (fk,))
        self._touch_folder(c, parent_id)
        return row_id

    def _next_position(self, c: sqlite3.Cursor, parent_id: int) -> int:
        row = c.execute("SELECT COALESCE(MAX(position), -1) AS p FROM moz_bookmarks WHERE parent = ?", (parent_id,)).fetchone()
        return int(row["p"]) + 1

    def _touch_folder(self, c: sqlite3.Cursor, folder_id: int) -> None:
        if folder_id:
            c.execute("UPDATE moz_bookmarks SET lastModified = ? WHERE id = ?", (self._now_us(), folder_id))

    def _discover_root_ids(self) -> Dict[str, int]:
        c = self._cursor()
        out: Dict[str, int] = {}
        if self._has_table("moz_bookmarks_roots"):
            for r in c.execute("SELECT root_name, folder_id FROM moz_bookmarks_roots").fetchall():
                out[str(r["root_name"])] = int(r["folder_id"])
        if not out and self._has_guid:
            rows = c.execute(
                "SELECT id, guid FROM moz_bookmarks WHERE guid IN (?, ?, ?, ?, ?)",
                tuple(_ROOT_GUID_TO_NAME.keys()),
            ).fetchall()
            for r in rows:
                out[_ROOT_GUID_TO_NAME[str(r["guid"])]] = int(r["id"])
        return out

    def _require_node(self, node_id: str) -> int:
        try:
            bid = int(node_id)
        except (TypeError, ValueError):
            raise StoreError(f"invalid bookmark id: {node_id!r}") from None
        row = self._cursor().execute("SELECT type FROM moz_bookmarks WHERE id = ?", (bid,)).fetchone()
        if not row:
            raise StoreError(f"bookmark id not found: {node_id}")
        return bid

    def _require_folder(self, node_id: str) -> int:
        bid = self._require_node(node_id)
        row = self._cursor().execute("SELECT type FROM moz_bookmarks WHERE id = ?", (bid,)).fetchone()
        if int(row["type"] or 0) != TYPE_FOLDER:
            raise StoreError(f"id is not a folder: {node_id}")
        return bid

    def _require_removable(self, node_id: str) -> int:
        bid = self._require_node(node_id)
        if bid in self.root_ids.values():
            raise StoreError(f"cannot remove Firefox root folder {node_id}")
        return bid

    def _has_table(self, name: str) -> bool:
        row = self._cursor().execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=? LIMIT 1",
            (name,),
        ).fetchone()
        return row is not None

    def _has_column(self, table_name: str, column_name: str) -> bool:
        rows = self._cursor().execute(f"PRAGMA table_info({table_name})").fetchall()
        return any(str(r[1]) == column_name for r in rows)

    def _cursor(self) -> sqlite3.Cursor:
        if self.conn is None:
            raise StoreError("database is not open")
        return self.conn.cursor()

    def _now_us(self) -> int:
        return int(time.time() * 1_000_000)

    def _new_guid(self) -> str:
        # Firefox GUIDs are 12-char URL-safe strings.
        return base64.urlsafe_b64encode(os.urandom(9)).decode("ascii")


def _store_error(e: sqlite3.Error, db_path: Path) -> StoreError:
    msg = str(e).strip()
    if isinstance(e, sqlite3.OperationalError) and ("locked" in msg.lower() or "busy" in msg.lower()):
        return StoreError(f"Firefox database is locked ({db_path}). Close Firefox and rerun.")
    return StoreError(f"places.sqlite error: {msg}")


def _moz_time_to_ms(value) -> Optional[int]:
    if value is None:
        return None
    try:
        iv = int(value)
    except (TypeError, ValueError):
        return None
    if iv <= 0:
        return None
    # PRTime is microseconds since the Unix epoch.
    return iv // 1000
