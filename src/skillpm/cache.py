from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .archive import ARCHIVE_EXTENSIONS, extract_archive
from .download import ArchiveFetcher
from .errors import SkillpmError, SubPathNotFound
from .git import GitFetcher, redact_url
from .refs import SourceKind, SourceRef, VersionKind
from .resolver import ResolvedVersion

logger = logging.getLogger(__name__)

ENTRY_FILENAME = "entry.json"
CONTENT_DIRNAME = "content"


def _safe_segment(raw: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in raw)
    if cleaned in ("", ".", ".."):
        return "_" + cleaned.replace(".", "_")
    return cleaned


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class CacheEntry:
    key: tuple[str, ...]
    local_path: Path
    fetched_at: str
    commit: str | None = None
    digest: str | None = None  # sha256 of the downloaded archive
    cached: bool = False


def _single_root(directory: Path) -> Path:
    children = list(directory.iterdir())
    if len(children) == 1 and children[0].is_dir() and not children[0].is_symlink():
        return children[0]
    return directory


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists() or path.is_symlink():
        path.unlink(missing_ok=True)


def _clone_ref(resolved: ResolvedVersion) -> str | None:
    if resolved.kind is VersionKind.COMMIT or resolved.display_ref == "HEAD":
        return None
    return resolved.display_ref


class ContentCache:
    """
    Local store of fetched sources, one directory per (source, commit).

    Layout: <root>/<registry>/<owner>/<repo>/<commit-or-version>/{content/, entry.json}.
    Entries are populated in a temporary sibling directory and renamed into
    place, so a reader either sees a complete entry or none. Entries are never
    rewritten; a different commit is a different entry.
    """

    def __init__(self, root: Path, *, git: GitFetcher, downloader: ArchiveFetcher) -> None:
        self.root = Path(root).expanduser()
        self.git = git
        self.downloader = downloader

    def key_for(self, ref: SourceRef, resolved: ResolvedVersion) -> tuple[str, ...]:
        version = resolved.commit if ref.kind is SourceKind.GIT and resolved.commit else resolved.display_ref
        return (*ref.identity, version)

    def entry_dir(self, ref: SourceRef, resolved: ResolvedVersion) -> Path:
        return self.root.joinpath(*(_safe_segment(part) for part in self.key_for(ref, resolved)))

    def get(self, ref: SourceRef, resolved: ResolvedVersion) -> CacheEntry | None:
        entry_dir = self.entry_dir(ref, resolved)
        return self._read_entry(entry_dir, self.key_for(ref, resolved))

    def has(self, ref: SourceRef, resolved: ResolvedVersion) -> bool:
        return self.get(ref, resolved) is not None

    def _read_entry(self, entry_dir: Path, key: tuple[str, ...]) -> CacheEntry | None:
        meta_path = entry_dir / ENTRY_FILENAME
        content = entry_dir / CONTENT_DIRNAME
        if not meta_path.is_file() or not content.is_dir():
            return None
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(meta, dict):
            return None
        return CacheEntry(
            key=key,
            local_path=content,
            fetched_at=str(meta.get("fetchedAt") or ""),
            commit=meta.get("commit") if isinstance(meta.get("commit"), str) else None,
            digest=meta.get("digest") if isinstance(meta.get("digest"), str) else None,
        )

    def fetch(self, ref: SourceRef, resolved: ResolvedVersion) -> CacheEntry:
        key = self.key_for(ref, resolved)
        final = self.entry_dir(ref, resolved)
        existing = self._read_entry(final, key)
        if existing is not None:
            logger.debug("cache hit for %s@%s", ref.source, resolved.display_ref)
            return replace(existing, cached=True)

        final.parent.mkdir(parents=True, exist_ok=True)
        tmp = Path(tempfile.mkdtemp(prefix=f".{final.name}.tmp-", dir=final.parent))
        try:
            self._populate(ref, resolved, tmp, key)
            if not self._publish(tmp, final):
                winner = self._read_entry(final, key)
                if winner is None:
                    raise SkillpmError(f"Cache entry {final} could not be created")
                logger.debug("another process populated %s first", final)
                return replace(winner, cached=True)
        finally:
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)

        entry = self._read_entry(final, key)
        if entry is None:
            raise SkillpmError(f"Cache entry {final} is incomplete")
        return entry

    def _publish(self, tmp: Path, final: Path) -> bool:
        """Move a populated temp dir into place. False when another writer got there first."""
        for _ in range(2):
            try:
                os.rename(tmp, final)
                return True
            except OSError:
                if not final.exists():
                    raise
                if (final / ENTRY_FILENAME).is_file():
                    return False
                # Leftover without metadata (interrupted cleanup); it was never a valid entry.
                shutil.rmtree(final, ignore_errors=True)
        return False

    def _populate(self, ref: SourceRef, resolved: ResolvedVersion, tmp: Path, key: tuple[str, ...]) -> None:
        content = tmp / CONTENT_DIRNAME
        digest: str | None = None
        if ref.kind is SourceKind.GIT:
            logger.info("cloning %s at %s", redact_url(ref.canonical_url), resolved.display_ref)
            commit: str | None = self.git.clone(
                ref.canonical_url,
                content,
                ref=_clone_ref(resolved),
                commit=resolved.commit,
            )
            shutil.rmtree(content / ".git", ignore_errors=True)
        elif ref.kind is SourceKind.ARCHIVE:
            fmt = ref.archive_format or "tar.gz"
            archive_file = tmp / f"download{ARCHIVE_EXTENSIONS.get(fmt, '')}"
            download = self.downloader.download(ref.canonical_url, archive_file)
            extracted = tmp / "extracted"
            extract_archive(archive_file, extracted, fmt)
            archive_file.unlink(missing_ok=True)
            os.rename(_single_root(extracted), content)
            shutil.rmtree(extracted, ignore_errors=True)
            commit = None
            digest = f"sha256:{download.sha256}"
        else:
            raise AssertionError("unreachable")

        meta: dict[str, Any] = {
            "key": list(key),
            "source": ref.source,
            "url": redact_url(ref.canonical_url),
            "version": resolved.display_ref,
            "commit": commit,
            "digest": digest,
            "fetchedAt": _timestamp(),
        }
        (tmp / ENTRY_FILENAME).write_text(json.dumps(meta, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    def copy_into(self, ref: SourceRef, resolved: ResolvedVersion, dest: Path) -> CacheEntry:
        """Copy the fetched content (or only `ref.sub_path`) to `dest`, replacing what is there."""
        entry = self.fetch(ref, resolved)
        src = entry.local_path
        if ref.sub_path:
            base = entry.local_path.resolve()
            src = (entry.local_path / ref.sub_path).resolve()
            if base not in src.parents or not src.is_dir():
                raise SubPathNotFound(ref.source, ref.sub_path, resolved.display_ref)

        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        staging_root = Path(tempfile.mkdtemp(prefix=f".{dest.name}.tmp-", dir=dest.parent))
        backup = dest.with_name(dest.name + ".skillpm-backup")
        try:
            staged = staging_root / CONTENT_DIRNAME
            shutil.copytree(src, staged, symlinks=True)

            had_existing = dest.exists() or dest.is_symlink()
            _remove_path(backup)
            if had_existing:
                dest.rename(backup)
            try:
                staged.rename(dest)
            except OSError:
                if had_existing and backup.exists() and not dest.exists():
                    backup.rename(dest)
                raise
        finally:
            shutil.rmtree(staging_root, ignore_errors=True)
            _remove_path(backup)
        return entry

    def remove(self, ref: SourceRef, resolved: ResolvedVersion) -> bool:
        entry_dir = self.entry_dir(ref, resolved)
        if not entry_dir.exists():
            return False
        shutil.rmtree(entry_dir, ignore_errors=True)
        return True

    def clean(self) -> int:
        return clean_cache(self.root)


def clean_cache(root: Path) -> int:
    """Delete every cache entry under `root`. Returns the number of top-level entries removed."""
    root = Path(root).expanduser()
    if not root.exists():
        return 0
    removed = 0
    for child in root.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child, ignore_errors=True)
        else:
            child.unlink(missing_ok=True)
        removed += 1
    return removed
