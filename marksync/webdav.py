from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Iterable, List, Optional
from urllib.parse import quote, unquote, urlparse

import httpx
from bs4 import BeautifulSoup  # type: ignore

from . import __version__
from .log import get_logger
from .model import BackupRecord
from .transport import TransportError, WebDAVConfig, join_path

log = get_logger(__name__)

_PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:resourcetype/><d:getcontentlength/><d:getlastmodified/>"
    "</d:prop></d:propfind>"
)


class WebDAVTransport:
    """Snapshot transport over WebDAV.

    Holds only the immutable ``WebDAVConfig``; every operation opens and
    closes its own HTTP client.
    """

    def __init__(self, config: WebDAVConfig, *, http_transport: Optional[httpx.BaseTransport] = None):
        if not config.url:
            raise ValueError("WebDAV url is not configured")
        self.config = config
        self._http_transport = http_transport

    def ensure_directory(self, path: str) -> None:
        r = self._request("MKCOL", path)
        if r.status_code in (200, 201):
            log.debug("Created remote directory %s", path)
            return
        # Many servers (Jianguoyun among them) answer 405 for an existing collection.
        if r.status_code == 405:
            log.debug("Remote directory %s already exists", path)
            return
        raise _status_error("MKCOL", path, r)

    def write(self, path: str, data: bytes) -> None:
        r = self._request(
            "PUT",
            path,
            content=data,
            headers={"Content-Type": "application/json; charset=utf-8", "If-None-Match": "*"},
        )
        if r.status_code in (200, 201, 204):
            return
        if r.status_code == 412:
            raise TransportError(f"refusing to overwrite {path}", status=412)
        raise _status_error("PUT", path, r)

    def list(self, directory: str) -> List[BackupRecord]:
        r = self._request(
            "PROPFIND",
            directory.rstrip("/") + "/",
            content=_PROPFIND_BODY.encode("utf-8"),
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
        )
        if r.status_code == 404:
            return []
        if r.status_code not in (200, 207):
            raise _status_error("PROPFIND", directory, r)
        return parse_multistatus(r.content, directory)

    def read(self, path: str) -> bytes:
        r = self._request("GET", path)
        if r.status_code != 200:
            raise _status_error("GET", path, r)
        return r.content

    def remove(self, path: str) -> None:
        r = self._request("DELETE", path)
        if r.status_code not in (200, 202, 204):
            raise _status_error("DELETE", path, r)

    def ping(self) -> None:
        r = self._request("PROPFIND", "", headers={"Depth": "0"})
        if r.status_code not in (200, 207):
            raise _status_error("PROPFIND", "/", r)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        cfg = self.config
        auth = (cfg.username, cfg.password) if cfg.username else None
        try:
            with httpx.Client(
                base_url=cfg.url,
                auth=auth,
                timeout=httpx.Timeout(cfg.timeout_s, connect=cfg.timeout_s),
                headers={"User-Agent": f"marksync/{__version__}"},
                transport=self._http_transport,
            ) as client:
                return client.request(method, quote(path.lstrip("/"), safe="/"), **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path or '/'} failed: {e}") from e


def parse_multistatus(body: bytes, directory: str) -> List[BackupRecord]:
    """Extract the plain files of a ``207 Multi-Status`` PROPFIND answer."""
    soup = BeautifulSoup(body, "xml")
    out: List[BackupRecord] = []
    for resp in _find_all(soup, "response"):
        href = _text(_find(resp, "href"))
        if not href:
            continue
        resource_type = _find(resp, "resourcetype")
        if resource_type is not None and _find(resource_type, "collection") is not None:
            continue
        name = unquote(urlparse(href).path.rstrip("/").rsplit("/", 1)[-1])
        if not name:
            continue
        out.append(
            BackupRecord(
                name=name,
                path=join_path(directory, name),
                last_modified=_parse_http_date(_text(_find(resp, "getlastmodified"))),
                size_bytes=_parse_int(_text(_find(resp, "getcontentlength"))),
            )
        )
    return out


def _local_name(name: Optional[str]) -> str:
    return (name or "").rsplit(":", 1)[-1].lower()


def _find_all(node, local: str) -> Iterable:
    return node.find_all(lambda t: _local_name(t.name) == local)


def _find(node, local: str):
    return node.find(lambda t: _local_name(t.name) == local)


def _text(node) -> str:
    return node.get_text(strip=True) if node is not None else ""


def _parse_http_date(value: str) -> datetime:
    if value:
        try:
            dt = parsedate_to_datetime(value)
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
        except (TypeError, ValueError):
            log.debug("Unparseable getlastmodified: %r", value)
    return datetime.fromtimestamp(0, tz=timezone.utc)


def _parse_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def _status_error(method: str, path: str, r: httpx.Response) -> TransportError:
    return TransportError(
        f"{method} {path or '/'} failed: HTTP {r.status_code} {r.reason_phrase}".rstrip(),
        status=r.status_code,
    )
