from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LOCK_FILENAME = "skills.lock"
LOCKFILE_VERSION = 1


@dataclass(frozen=True)
class LockEntry:
    source: str
    requested_version: str
    version: str
    resolved: str
    commit: str | None = None
    installed_at: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "requestedVersion": self.requested_version,
            "version": self.version,
            "resolved": self.resolved,
            "commit": self.commit,
            "installedAt": self.installed_at,
        }

    @classmethod
    def from_json(cls, obj: Any) -> "LockEntry | None":
        if not isinstance(obj, dict):
            return None
        source = obj.get("source")
        version = obj.get("version")
        if not isinstance(source, str) or not isinstance(version, str):
            return None
        requested = obj.get("requestedVersion")
        resolved = obj.get("resolved")
        commit = obj.get("commit")
        installed_at = obj.get("installedAt")
        return cls(
            source=source,
            requested_version=requested if isinstance(requested, str) else "latest",
            version=version,
            resolved=resolved if isinstance(resolved, str) else "",
            commit=commit if isinstance(commit, str) else None,
            installed_at=installed_at if isinstance(installed_at, str) else None,
        )


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Unique temp name so concurrent writers never share a temp file.
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(json.dumps(data, indent=2, sort_keys=True) + "\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class LockLedger:
    """
    The `skills.lock` file: one entry per installed skill name.

    The file is read once on construction. Every mutation rewrites the whole
    file through a temp file and `os.replace`, so readers never see a torn write.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._entries: dict[str, LockEntry] = self._load()

    def _load(self) -> dict[str, LockEntry]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("ignoring unreadable lock file %s: %s", self.path, e)
            return {}
        skills = raw.get("skills") if isinstance(raw, dict) else None
        if not isinstance(skills, dict):
            logger.warning("ignoring malformed lock file %s", self.path)
            return {}
        entries: dict[str, LockEntry] = {}
        for name, obj in skills.items():
            entry = LockEntry.from_json(obj)
            if not isinstance(name, str) or entry is None:
                logger.warning("skipping malformed lock entry %r in %s", name, self.path)
                continue
            entries[name] = entry
        return entries

    def get(self, name: str) -> LockEntry | None:
        with self._lock:
            return self._entries.get(name)

    def all(self) -> dict[str, LockEntry]:
        with self._lock:
            return dict(sorted(self._entries.items()))

    def set(self, name: str, entry: LockEntry) -> None:
        with self._lock:
            self._entries[name] = entry
            self._save()

    def remove(self, name: str) -> bool:
        with self._lock:
            if name not in self._entries:
                return False
            del self._entries[name]
            self._save()
            return True

    def _save(self) -> None:
        payload = {
            "lockfileVersion": LOCKFILE_VERSION,
            "skills": {name: self._entries[name].to_json() for name in sorted(self._entries)},
        }
        _write_json_atomic(self.path, payload)
