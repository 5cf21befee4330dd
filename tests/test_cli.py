import json
from pathlib import Path
from typing import List, Optional

from marksync.cli import main


def _folder(fid: str, name: str, children: Optional[list] = None) -> dict:
    return {"children": children or [], "date_added": "0", "guid": f"g{fid}", "id": fid, "name": name, "type": "folder"}


def _url(fid: str, name: str, url: str) -> dict:
    return {"date_added": "0", "guid": f"g{fid}", "id": fid, "name": name, "type": "url", "url": url}


def _mk_chrome(path: Path, roots: List[str], bar_children: Optional[list] = None) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    data = {
        "roots": {
            "bookmark_bar": _folder("1", roots[0], bar_children),
            "other": _folder("2", roots[1]),
            "synced": _folder("3", roots[2]),
        },
        "version": 1,
    }
    f = path / "Bookmarks"
    f.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
    return f


def _source(tmp_path: Path) -> Path:
    return _mk_chrome(
        tmp_path / "src",
        ["书签栏", "其他书签", "移动设备书签"],
        [_folder("10", "Dev", [_url("11", "Python", "https://python.org/")]), _url("12", "News", "https://news.example/")],
    )


def _dest(tmp_path: Path) -> Path:
    return _mk_chrome(tmp_path / "dest", ["Bookmarks bar", "Other bookmarks", "Mobile bookmarks"])


def test_backup_list_restore_stats(tmp_path: Path, capsys):
    remote = tmp_path / "remote"
    remote.mkdir()
    src = _source(tmp_path)
    dest = _dest(tmp_path)

    assert main(["backup", "--remote-dir", str(remote), "--chromium-bookmarks", str(src)]) == 0
    name = capsys.readouterr().out.strip()
    assert name.startswith("bookmarks_") and name.endswith(".json")
    assert (remote / "bookmark-sync" / name).exists()

    assert main(["list", "--remote-dir", str(remote)]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 1 and lines[0].split("\t")[0] == name

    assert main(["restore", "--remote-dir", str(remote), "--chromium-bookmarks", str(dest)]) == 0
    assert capsys.readouterr().out.strip() == "added=3 removed=0 errors=0"

    assert main(["stats", "--chromium-bookmarks", str(dest)]) == 0
    out = capsys.readouterr().out.strip().splitlines()
    assert out[0] == "Bookmarks bar\tfolders=1\tbookmarks=2"
    assert out[-1] == "total\tfolders=1\tbookmarks=2"

    assert main(["restore", "--remote-dir", str(remote), "--chromium-bookmarks", str(dest)]) == 0
    assert capsys.readouterr().out.strip() == "added=0 removed=0 errors=0"


def test_dry_run_leaves_local_file_alone(tmp_path: Path, capsys):
    remote = tmp_path / "remote"
    remote.mkdir()
    assert main(["backup", "--remote-dir", str(remote), "--chromium-bookmarks", str(_source(tmp_path))]) == 0
    capsys.readouterr()

    dest = _dest(tmp_path)
    before = dest.read_text(encoding="utf-8")
    assert main(["restore", "--dry-run", "--remote-dir", str(remote), "--chromium-bookmarks", str(dest)]) == 0
    assert capsys.readouterr().out.strip() == "added=3 removed=0 errors=0"
    assert dest.read_text(encoding="utf-8") == before


def test_overwrite_mode_and_local_copy(tmp_path: Path, capsys):
    remote = tmp_path / "remote"
    remote.mkdir()
    assert main(["backup", "--remote-dir", str(remote), "--chromium-bookmarks", str(_source(tmp_path))]) == 0
    capsys.readouterr()

    dest = _mk_chrome(
        tmp_path / "dest",
        ["Bookmarks bar", "Other bookmarks", "Mobile bookmarks"],
        [_url("20", "Stale", "https://stale.example/")],
    )
    state = tmp_path / "state"
    rc = main(
        [
            "restore",
            "--mode",
            "overwrite",
            "--backup-local",
            str(state),
            "--remote-dir",
            str(remote),
            "--chromium-bookmarks",
            str(dest),
        ]
    )
    assert rc == 0
    assert capsys.readouterr().out.strip() == "added=3 removed=1 errors=0"
    assert len(list(state.glob("Bookmarks.bak.*"))) == 1
    names = [c["name"] for c in json.loads(dest.read_text(encoding="utf-8"))["roots"]["bookmark_bar"]["children"]]
    assert names == ["Dev", "News"]


def test_delete_and_connection_test(tmp_path: Path, capsys):
    remote = tmp_path / "remote"
    remote.mkdir()
    assert main(["backup", "--remote-dir", str(remote), "--chromium-bookmarks", str(_source(tmp_path))]) == 0
    name = capsys.readouterr().out.strip()

    assert main(["delete", "notes.txt", "--remote-dir", str(remote)]) == 2
    assert main(["delete", name, "--remote-dir", str(remote)]) == 0
    assert main(["list", "--remote-dir", str(remote)]) == 0
    assert capsys.readouterr().out.strip() == ""

    assert main(["test", "--remote-dir", str(remote)]) == 0
    assert capsys.readouterr().out.strip() == "ok"
    assert main(["test", "--remote-dir", str(tmp_path / "missing")]) == 1
    assert capsys.readouterr().out.strip() == "failed"


def test_missing_remote_or_store_is_a_usage_error(tmp_path: Path):
    assert main(["list"]) == 2
    assert main(["backup", "--remote-dir", str(tmp_path)]) == 2
    assert main(["restore", "--remote-dir", str(tmp_path), "--chromium-bookmarks", str(tmp_path / "nope")]) == 2


def test_restore_with_no_backups_adds_nothing(tmp_path: Path, capsys):
    assert main(["restore", "--remote-dir", str(tmp_path), "--chromium-bookmarks", str(_dest(tmp_path))]) == 0
    assert capsys.readouterr().out.strip() == "added=0 removed=0 errors=0"


def test_stats_flat_lists_every_bookmark(tmp_path: Path, capsys):
    assert main(["stats", "--flat", "--chromium-bookmarks", str(_source(tmp_path))]) == 0
    out = capsys.readouterr().out.strip().splitlines()
    assert out[:2] == [
        "书签栏/Dev\tPython\thttps://python.org/",
        "书签栏\tNews\thttps://news.example/",
    ]
    assert out[-1] == "total\tfolders=1\tbookmarks=2"
