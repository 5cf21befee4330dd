from pathlib import Path

from marksync.config import Settings, load_settings


def test_defaults_without_env():
    s = Settings.from_env()
    assert s.sync_dir == "bookmark-sync"
    assert s.restore_mode == "incremental"
    assert s.keep_backups == 0
    assert s.webdav_url == ""


def test_env_overrides_defaults(monkeypatch):
    monkeypatch.setenv("MARKSYNC_WEBDAV_URL", "https://dav.example.com/dav/")
    monkeypatch.setenv("MARKSYNC_KEEP_BACKUPS", "5")
    monkeypatch.setenv("MARKSYNC_NO_COLOR", "yes")
    s = Settings.from_env()
    assert s.webdav_url == "https://dav.example.com/dav/"
    assert s.keep_backups == 5
    assert s.no_color is True


def test_invalid_int_env_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("MARKSYNC_HTTP_TIMEOUT_S", "soon")
    assert Settings.from_env().http_timeout_s == 30


def test_yaml_file_wins_over_env_and_ignores_unknown_keys(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("MARKSYNC_SYNC_DIR", "from-env")
    cfg = tmp_path / "marksync.yaml"
    cfg.write_text("sync_dir: from-file\nrestore_mode: overwrite\nbogus: 1\n", encoding="utf-8")
    s = load_settings(str(cfg))
    assert s.sync_dir == "from-file"
    assert s.restore_mode == "overwrite"
    assert not hasattr(s, "bogus")


def test_webdav_config_is_built_from_settings(monkeypatch):
    monkeypatch.setenv("MARKSYNC_WEBDAV_URL", "https://dav.example.com/dav/")
    monkeypatch.setenv("MARKSYNC_WEBDAV_USERNAME", "me")
    monkeypatch.setenv("MARKSYNC_WEBDAV_PASSWORD", "secret")
    wc = Settings.from_env().webdav_config()
    assert wc.url == "https://dav.example.com/dav/"
    assert (wc.username, wc.password) == ("me", "secret")
    assert wc.sync_dir == "bookmark-sync"
    assert wc.timeout_s == 30.0
