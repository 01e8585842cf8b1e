from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from ._version import __version__
from .config import DEFAULT_TIMEOUT_S
from .errors import FetchFailed

logger = logging.getLogger(__name__)

_CHUNK = 64 * 1024


@dataclass(frozen=True)
class Download:
    path: Path
    sha256: str
    size_bytes: int


class ArchiveFetcher(Protocol):
    def download(self, url: str, dest_file: Path) -> Download:
        ...


class HttpDownloader:
    """Streams archives to disk; a failed or timed-out download never leaves a partial file behind."""

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        headers = {"User-Agent": f"skillpm/{__version__}"}
        headers.update(default_headers or {})
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True, headers=headers, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "HttpDownloader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def download(self, url: str, dest_file: Path) -> Download:
        dest_file.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha256()
        size = 0
        logger.info("downloading %s", url)
        try:
            with self._http.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    raise FetchFailed(url, f"HTTP {resp.status_code}: {resp.reason_phrase}", status_code=resp.status_code)
                with dest_file.open("wb") as out:
                    for chunk in resp.iter_bytes(_CHUNK):
                        out.write(chunk)
                        digest.update(chunk)
                        size += len(chunk)
        except FetchFailed:
            dest_file.unlink(missing_ok=True)
            raise
        except httpx.TimeoutException as e:
            dest_file.unlink(missing_ok=True)
            raise FetchFailed(url, f"timed out after {self.timeout_s}s", cause=e) from e
        except (httpx.HTTPError, OSError) as e:
            dest_file.unlink(missing_ok=True)
            raise FetchFailed(url, f"Request failed: {e}", cause=e) from e

        if size == 0:
            dest_file.unlink(missing_ok=True)
            raise FetchFailed(url, "response body is empty")
        return Download(path=dest_file, sha256=digest.hexdigest(), size_bytes=size)
