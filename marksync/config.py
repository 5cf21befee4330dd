from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .transport import WebDAVConfig


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return default if v is None else v


@dataclass
class Settings:
    # Remote (WebDAV)
    webdav_url: str = ""
    webdav_username: str = ""
    webdav_password: str = ""
    sync_dir: str = "bookmark-sync"
    http_timeout_s: int = 30
    # Local directory used instead of WebDAV when set.
    remote_dir: str = ""

    # Backups / restore
    restore_mode: str = "incremental"  # incremental | overwrite
    keep_backups: int = 0  # 0 keeps every snapshot

    # Local store
    firefox_profile: str = ""
    chromium_bookmarks: str = ""

    # Logging / UX
    log_level: str = "INFO"
    no_color: bool = False

    @staticmethod
    def from_env() -> "Settings":
        s = Settings()
        s.webdav_url = _env_str("MARKSYNC_WEBDAV_URL", s.webdav_url)
        s.webdav_username = _env_str("MARKSYNC_WEBDAV_USERNAME", s.webdav_username)
        s.webdav_password = _env_str("MARKSYNC_WEBDAV_PASSWORD", s.webdav_password)
        s.sync_dir = _env_str("MARKSYNC_SYNC_DIR", s.sync_dir)
        s.http_timeout_s = _env_int("MARKSYNC_HTTP_TIMEOUT_S", s.http_timeout_s)
        s.remote_dir = _env_str("MARKSYNC_REMOTE_DIR", s.remote_dir)

        s.restore_mode = _env_str("MARKSYNC_RESTORE_MODE", s.restore_mode)
        s.keep_backups = _env_int("MARKSYNC_KEEP_BACKUPS", s.keep_backups)

        s.firefox_profile = _env_str("MARKSYNC_FIREFOX_PROFILE", s.firefox_profile)
        s.chromium_bookmarks = _env_str("MARKSYNC_CHROMIUM_BOOKMARKS", s.chromium_bookmarks)

        s.log_level = _env_str("MARKSYNC_LOG_LEVEL", s.log_level)
        s.no_color = _env_bool("MARKSYNC_NO_COLOR", s.no_color)
        return s

    @staticmethod
    def from_file(path: Path) -> "Settings":
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        s = Settings.from_env()
        for k, v in data.items():
            if hasattr(s, k):
                setattr(s, k, v)
        return s

    def webdav_config(self) -> WebDAVConfig:
        return WebDAVConfig(
            url=self.webdav_url,
            username=self.webdav_username,
            password=self.webdav_password,
            sync_dir=self.sync_dir,
            timeout_s=float(self.http_timeout_s),
        )


def load_settings(config_path: Optional[str]) -> Settings:
    if config_path:
        return Settings.from_file(Path(config_path))
    return Settings.from_env()
