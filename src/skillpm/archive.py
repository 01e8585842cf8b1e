from __future__ import annotations

import io
import logging
import os
import posixpath
import shutil
import stat
import tarfile
import tempfile
import zipfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path, PureWindowsPath
from typing import BinaryIO, Iterator

from .errors import ExtractionFailed, PathTraversalRejected, UnknownArchiveFormat

logger = logging.getLogger(__name__)

# Order matters: ".tar.gz" must be checked before ".tar".
ARCHIVE_EXTENSIONS: dict[str, str] = {
    "tar.gz": ".tar.gz",
    "tgz": ".tgz",
    "zip": ".zip",
    "tar": ".tar",
}

_COPY_CHUNK = 1024 * 1024


@dataclass
class ExtractionReport:
    files: list[str] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Entry:
    name: str
    kind: str  # "file" | "dir" | "other"
    mode: int | None


def detect_archive_format(name: str) -> str | None:
    lower = name.lower()
    for fmt, ext in ARCHIVE_EXTENSIONS.items():
        if lower.endswith(ext) and len(lower) > len(ext):
            return fmt
    return None


def is_path_safe(dest_dir: Path, entry_name: str) -> bool:
    """
    Return True when `entry_name` lands strictly inside `dest_dir`.

    Rejects empty names, absolute paths (POSIX or Windows), names that
    normalize to ".", and any name with a ".." segment, even one that would
    resolve back inside the directory (e.g. "skill/../other/file").
    """
    if not entry_name or not entry_name.strip():
        return False
    unified = entry_name.replace("\\", "/")
    if unified.startswith("/"):
        return False
    win = PureWindowsPath(entry_name)
    if win.drive or win.is_absolute():
        return False
    if any(part == ".." for part in unified.split("/")):
        return False
    normalized = posixpath.normpath(unified)
    if normalized == ".":
        return False

    root = Path(dest_dir).resolve()
    target = (root / normalized).resolve()
    return target != root and root in target.parents


def assert_path_safe(dest_dir: Path, entry_name: str) -> Path:
    if not is_path_safe(dest_dir, entry_name):
        raise PathTraversalRejected(entry_name)
    return Path(dest_dir).resolve() / posixpath.normpath(entry_name.replace("\\", "/"))


def extract_archive(
    source: bytes | BinaryIO | Path,
    dest_dir: Path,
    fmt: str | None = None,
    *,
    filename: str | None = None,
) -> ExtractionReport:
    """
    Extract a tar, tar.gz or zip archive into `dest_dir`.

    `source` may be raw bytes, a binary file object or a path. The format is
    taken from `fmt`, else detected from `filename` (or the path name).
    Unsafe entries and unsupported entry kinds (symlinks, devices) are
    skipped; the rest of the archive is still extracted. Files keep the
    permission bits the archive declares; entries declaring none get the
    process default.
    """
    if fmt is None:
        name = filename or (source.name if isinstance(source, Path) else None)
        fmt = detect_archive_format(name) if name else None
        if fmt is None:
            raise UnknownArchiveFormat(name or "<stream>")
    if fmt not in ARCHIVE_EXTENSIONS:
        raise UnknownArchiveFormat(fmt)

    dest = Path(dest_dir)
    dest.mkdir(parents=True, exist_ok=True)
    report = ExtractionReport()

    # zipfile raises RuntimeError for encrypted members and NotImplementedError for unknown compression.
    try:
        with _open_source(source) as stream:
            if fmt == "zip":
                _extract_zip(stream, dest, report)
            else:
                _extract_tar(stream, dest, report, gzipped=fmt in ("tar.gz", "tgz"))
    except (tarfile.TarError, zipfile.BadZipFile, zlib.error, EOFError, OSError, RuntimeError, NotImplementedError) as e:
        raise ExtractionFailed(f"Failed to extract {fmt} archive: {e}") from e

    logger.debug(
        "extracted %d files into %s (%d entries skipped)", len(report.files), dest, len(report.skipped)
    )
    return report


@contextmanager
def _open_source(source: bytes | BinaryIO | Path) -> Iterator[BinaryIO]:
    if isinstance(source, (bytes, bytearray)):
        with io.BytesIO(source) as buf:
            yield buf
    elif isinstance(source, Path):
        with source.open("rb") as fh:
            yield fh
    else:
        yield source


def _write_entry(dest: Path, entry: _Entry, src: BinaryIO | None, report: ExtractionReport) -> None:
    if not is_path_safe(dest, entry.name):
        logger.debug("skipping unsafe archive entry %r", entry.name)
        report.skipped.append(entry.name)
        return

    rel = posixpath.normpath(entry.name.replace("\\", "/"))
    target = dest.resolve() / rel

    if entry.kind == "dir":
        target.mkdir(parents=True, exist_ok=True)
        report.directories.append(rel)
        return

    if entry.kind != "file" or src is None:
        logger.debug("skipping unsupported archive entry %r", entry.name)
        report.skipped.append(entry.name)
        return

    if target.is_dir():
        logger.debug("skipping file entry %r that collides with a directory", entry.name)
        report.skipped.append(entry.name)
        return

    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("wb") as out:
        shutil.copyfileobj(src, out, _COPY_CHUNK)
    if entry.mode is not None and entry.mode & 0o777:
        try:
            os.chmod(target, entry.mode & 0o777)
        except OSError as e:
            logger.debug("could not apply mode %o to %s: %s", entry.mode & 0o777, target, e)
    report.files.append(rel)


def _extract_tar(stream: BinaryIO, dest: Path, report: ExtractionReport, *, gzipped: bool) -> None:
    mode = "r|gz" if gzipped else "r|"
    with tarfile.open(fileobj=stream, mode=mode) as tf:
        for member in tf:
            if member.isdir():
                _write_entry(dest, _Entry(member.name, "dir", member.mode), None, report)
                continue
            if member.isfile():
                src = tf.extractfile(member)
                try:
                    _write_entry(dest, _Entry(member.name, "file", member.mode), src, report)
                finally:
                    if src is not None:
                        src.close()
                continue
            _write_entry(dest, _Entry(member.name, "other", None), None, report)


def _zip_entries(zf: zipfile.ZipFile) -> Iterator[tuple[zipfile.ZipInfo, _Entry]]:
    for info in zf.infolist():
        unix_mode = (info.external_attr >> 16) & 0xFFFF
        if info.is_dir():
            yield info, _Entry(info.filename, "dir", unix_mode or None)
        elif stat.S_IFMT(unix_mode) and not stat.S_ISREG(unix_mode):
            yield info, _Entry(info.filename, "other", None)
        else:
            yield info, _Entry(info.filename, "file", unix_mode or None)


def _extract_zip(stream: BinaryIO, dest: Path, report: ExtractionReport) -> None:
    seekable = getattr(stream, "seekable", None)
    if seekable is not None and seekable():
        _extract_zip_seekable(stream, dest, report)
        return
    # zip needs random access to its central directory.
    with tempfile.TemporaryFile() as spool:
        shutil.copyfileobj(stream, spool, _COPY_CHUNK)
        spool.seek(0)
        _extract_zip_seekable(spool, dest, report)


def _extract_zip_seekable(stream: BinaryIO, dest: Path, report: ExtractionReport) -> None:
    with zipfile.ZipFile(stream, "r") as zf:
        for info, entry in _zip_entries(zf):
            if entry.kind != "file":
                _write_entry(dest, entry, None, report)
                continue
            with zf.open(info, "r") as src:
                _write_entry(dest, entry, src, report)
