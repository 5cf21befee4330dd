import sqlite3
from pathlib import Path

import pytest

from marksync.model import Bookmark, Folder
from marksync.places_store import PlacesStore, resolve_places_path
from marksync.reconcile import reconcile
from marksync.store import MemoryStore, StoreError


def _mk_places_db(path: Path, *, with_roots_table: bool = True) -> None:
    conn = sqlite3.connect(path)
    try:
        conn.executescript(
            """
            CREATE TABLE moz_places (
              id INTEGER PRIMARY KEY,
              url TEXT,
              title TEXT,
              hidden INTEGER DEFAULT 0,
              guid TEXT,
              foreign_count INTEGER DEFAULT 0
            );
            CREATE TABLE moz_bookmarks (
              id INTEGER PRIMARY KEY,
              type INTEGER,
              fk INTEGER DEFAULT NULL,
              parent INTEGER,
              position INTEGER,
              title TEXT,
              keyword_id INTEGER,
              folder_type TEXT,
              dateAdded INTEGER,
              lastModified INTEGER,
              guid TEXT,
              syncStatus INTEGER NOT NULL DEFAULT 0,
              syncChangeCounter INTEGER NOT NULL DEFAULT 1
            );
            """
        )
        if with_roots_table:
            conn.execute("CREATE TABLE moz_bookmarks_roots (root_name TEXT PRIMARY KEY, folder_id INTEGER)")
            conn.executemany(
                "INSERT INTO moz_bookmarks_roots(root_name, folder_id) VALUES(?, ?)",
                [("toolbar", 3), ("menu", 2), ("tags", 4), ("unfiled", 5), ("mobile", 6)],
            )
        conn.executemany(
            "INSERT INTO moz_bookmarks(id,type,fk,parent,position,title,dateAdded,lastModified,guid) VALUES(?,?,?,?,?,?,?,?,?)",
            [
                (1, 2, None, 0, 0, "root", 0, 0, "root________"),
                (2, 2, None, 1, 0, "menu", 0, 0, "menu________"),
                (3, 2, None, 1, 1, "toolbar", 0, 0, "toolbar_____"),
                (4, 2, None, 1, 2, "tags", 0, 0, "tags________"),
                (5, 2, None, 1, 3, "unfiled", 0, 0, "unfiled_____"),
                (6, 2, None, 1, 4, "mobile", 0, 0, "mobile______"),
                (10, 2, None, 3, 0, "Shopping", 1_700_000_000_000_000, 1_700_000_000_000_000, "folder-shop"),
                (11, 2, None, 10, 0, "Camera", 0, 0, "folder-cam"),
                (30, 2, None, 4, 0, "video", 0, 0, "tag-video"),
            ],
        )
        conn.executemany(
            "INSERT INTO moz_places(id,url,title,hidden,guid,foreign_count) VALUES(?,?,?,?,?,?)",
            [
                (100, "https://fstoppers.com/camera", "fstoppers", 0, "p100", 2),
                (101, "https://www.mozilla.org/", "mozilla", 0, "p101", 1),
                (102, "place:sort=8&maxResults=10", "Recent Tags", 0, "p102", 1),
            ],
        )
        conn.executemany(
            "INSERT INTO moz_bookmarks(id,type,fk,parent,position,title,dateAdded,lastModified,guid) VALUES(?,?,?,?,?,?,?,?,?)",
            [
                (20, 1, 100, 11, 0, "Fstoppers Camera", 0, 0, "l20"),
                (21, 1, 101, 2, 0, "Mozilla", 0, 0, "l21"),
                (22, 1, 102, 3, 1, "Recent Tags", 0, 0, "l22"),
                (31, 1, 100, 30, 0, "Fstoppers Camera [tag]", 0, 0, "l31"),
            ],
        )
        conn.commit()
    finally:
        conn.close()


def _db(tmp_path: Path, **kw) -> Path:
    db_path = tmp_path / "places.sqlite"
    _mk_places_db(db_path, **kw)
    return db_path


def test_resolve_places_path_accepts_profile_dir(tmp_path: Path):
    db_path = _db(tmp_path)
    assert resolve_places_path(tmp_path) == db_path
    with pytest.raises(FileNotFoundError):
        resolve_places_path(tmp_path / "missing")


def test_top_level_hides_tags_and_uses_labels(tmp_path: Path):
    with PlacesStore(_db(tmp_path), readonly=True) as store:
        top = store.top_level()
    assert [n.title for n in top] == ["Bookmarks Menu", "Bookmarks Toolbar", "Other Bookmarks", "Mobile Bookmarks"]
    assert all(n.is_folder for n in top)


def test_roots_found_by_guid_without_roots_table(tmp_path: Path):
    with PlacesStore(_db(tmp_path, with_roots_table=False), readonly=True) as store:
        assert "Bookmarks Toolbar" in [n.title for n in store.top_level()]


def test_get_children_skips_place_queries(tmp_path: Path):
    with PlacesStore(_db(tmp_path), readonly=True) as store:
        kids = store.get_children("3")
    assert [(k.title, k.url) for k in kids] == [("Shopping", None)]


def test_get_tree_builds_nested_folders(tmp_path: Path):
    with PlacesStore(_db(tmp_path), readonly=True) as store:
        forest = store.get_tree()
    toolbar = forest[1]
    assert isinstance(toolbar, Folder) and toolbar.title == "Bookmarks Toolbar"
    shopping = toolbar.children[0]
    assert shopping.title == "Shopping"
    assert shopping.date_added == 1_700_000_000_000
    camera = shopping.children[0]
    assert isinstance(camera.children[0], Bookmark)
    assert camera.children[0].url == "https://fstoppers.com/camera"
    assert "Tags" not in [r.title for r in forest]


def test_create_appends_and_reuses_places(tmp_path: Path):
    db_path = _db(tmp_path)
    with PlacesStore(db_path) as store:
        folder = store.create("3", "News")
        assert folder.index == 2
        bm = store.create(folder.id, "Moz again", "https://www.mozilla.org/")
        assert bm.index == 0
        store.create(folder.id, "New site", "https://new.example/")

    conn = sqlite3.connect(db_path)
    try:
        fc = conn.execute("SELECT foreign_count FROM moz_places WHERE id = 101").fetchone()[0]
        assert fc == 2
        n = conn.execute("SELECT COUNT(*) FROM moz_places WHERE url = 'https://new.example/'").fetchone()[0]
        assert n == 1
        guid = conn.execute("SELECT guid FROM moz_bookmarks WHERE title = 'News'").fetchone()[0]
        assert len(guid) == 12
    finally:
        conn.close()


def test_remove_requires_empty_folder_and_shifts_positions(tmp_path: Path):
    db_path = _db(tmp_path)
    with PlacesStore(db_path) as store:
        a = store.create("5", "A", "https://a.example/")
        b = store.create("5", "B", "https://b.example/")
        with pytest.raises(StoreError):
            store.remove("10")
        store.remove(a.id)
        kids = store.get_children("5")
        assert [(k.id, k.index) for k in kids] == [(b.id, 0)]


def test_remove_subtree_drops_descendants_and_refreshes_counts(tmp_path: Path):
    db_path = _db(tmp_path)
    with PlacesStore(db_path) as store:
        store.remove_subtree("10")
        assert [k.title for k in store.get_children("3")] == []
        with pytest.raises(StoreError):
            store.remove_subtree("3")

    conn = sqlite3.connect(db_path)
    try:
        assert conn.execute("SELECT COUNT(*) FROM moz_bookmarks WHERE id IN (10, 11, 20)").fetchone()[0] == 0
        # the tag entry still references the place
        assert conn.execute("SELECT foreign_count FROM moz_places WHERE id = 100").fetchone()[0] == 1
        pos = conn.execute("SELECT position FROM moz_bookmarks WHERE id = 22").fetchone()[0]
        assert pos == 0
    finally:
        conn.close()


def test_readonly_store_rejects_writes(tmp_path: Path):
    with PlacesStore(_db(tmp_path), readonly=True) as store:
        with pytest.raises(StoreError):
            store.create("3", "Nope")


def test_unknown_ids_raise_store_error(tmp_path: Path):
    with PlacesStore(_db(tmp_path), readonly=True) as store:
        with pytest.raises(StoreError):
            store.get_children("999")
        with pytest.raises(StoreError):
            store.get_children("20")
        with pytest.raises(StoreError):
            store.get_children("abc")


def test_restore_chrome_tree_into_firefox_is_idempotent(tmp_path: Path):
    src = MemoryStore()
    bar = src.top_level()[0].id
    dev = src.create(bar, "Dev")
    src.create(dev.id, "Python", "https://python.org/")
    src.create(src.top_level()[1].id, "Mozilla", "https://www.mozilla.org/")
    forest = src.get_tree()

    with PlacesStore(_db(tmp_path)) as store:
        first = reconcile(forest, store)
        assert first.added == 3
        assert first.skipped_roots == []
        toolbar = [k.title for k in store.get_children("3")]
        assert toolbar == ["Shopping", "Dev"]
        assert [k.url for k in store.get_children("5")] == ["https://www.mozilla.org/"]

        second = reconcile(forest, store)
        assert second.added == 0
        assert second.errors == []


def test_cli_restore_into_firefox_profile(tmp_path: Path, capsys):
    from marksync.cli import main
    from marksync.sync import backup
    from marksync.transport import DirectoryTransport

    src = MemoryStore()
    src.create(src.top_level()[0].id, "Docs", "https://docs.example/")
    remote = tmp_path / "remote"
    backup(src, DirectoryTransport(remote), sync_dir="bookmark-sync")

    profile = tmp_path / "profile"
    profile.mkdir()
    _mk_places_db(profile / "places.sqlite")
    assert main(["restore", "--remote-dir", str(remote), "--firefox-profile", str(profile)]) == 0
    assert capsys.readouterr().out.strip() == "added=1 removed=0 errors=0"

    with PlacesStore(profile, readonly=True) as store:
        store.validate_integrity()
        assert [k.title for k in store.get_children("3")] == ["Shopping", "Docs"]


def test_bookmark_without_url_is_restored_once(tmp_path: Path):
    forest = [Folder(title="Other Bookmarks", children=[Bookmark(title="Blank", url="")])]
    with PlacesStore(_db(tmp_path)) as store:
        assert reconcile(forest, store).added == 1
        assert [(k.title, k.url) for k in store.get_children("5")] == [("Blank", "")]
        assert reconcile(forest, store).added == 0
        assert len(store.get_children("5")) == 1
