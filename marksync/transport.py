from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol

from .log import get_logger
from .model import BackupRecord

log = get_logger(__name__)


class TransportError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SnapshotTransport(Protocol):
    def ensure_directory(self, path: str) -> None: ...

    def write(self, path: str, data: bytes) -> None: ...

    def list(self, directory: str) -> List[BackupRecord]: ...

    def read(self, path: str) -> bytes: ...

    def remove(self, path: str) -> None: ...

    def ping(self) -> None: ...


@dataclass(frozen=True)
class WebDAVConfig:
    url: str
    username: str = ""
    password: str = ""
    sync_dir: str = "bookmark-sync"
    timeout_s: float = 30.0


def join_path(directory: str, name: str) -> str:
    d = directory.strip("/")
    return f"{d}/{name}" if d else name


class DirectoryTransport:
    """Snapshot transport backed by a local directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def ensure_directory(self, path: str) -> None:
        try:
            self._resolve(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TransportError(f"cannot create directory {path}: {e}") from e

    def write(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        try:
            # "x" refuses to replace an existing snapshot.
            with target.open("xb") as f:
                f.write(data)
        except FileExistsError as e:
            raise TransportError(f"refusing to overwrite {path}", status=412) from e
        except OSError as e:
            raise TransportError(f"write failed for {path}: {e}") from e

    def list(self, directory: str) -> List[BackupRecord]:
        d = self._resolve(directory)
        if not d.is_dir():
            return []
        out: List[BackupRecord] = []
        for p in sorted(d.iterdir()):
            if not p.is_file():
                continue
            st = p.stat()
            out.append(
                BackupRecord(
                    name=p.name,
                    path=join_path(directory, p.name),
                    last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                    size_bytes=st.st_size,
                )
            )
        return out

    def read(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except FileNotFoundError as e:
            raise TransportError(f"not found: {path}", status=404) from e
        except OSError as e:
            raise TransportError(f"read failed for {path}: {e}") from e

    def remove(self, path: str) -> None:
        try:
            self._resolve(path).unlink()
        except FileNotFoundError as e:
            raise TransportError(f"not found: {path}", status=404) from e
        except OSError as e:
            raise TransportError(f"delete failed for {path}: {e}") from e

    def ping(self) -> None:
        if not self.root.is_dir():
            raise TransportError(f"not a directory: {self.root}", status=404)

    def _resolve(self, path: str) -> Path:
        rel = Path(path.strip("/"))
        if rel.is_absolute() or ".." in rel.parts:
            raise TransportError(f"path escapes the backup directory: {path}")
        return self.root / rel
