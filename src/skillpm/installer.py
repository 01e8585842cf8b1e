from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .cache import ContentCache
from .config import Config, resolve_cache_dir
from .download import HttpDownloader
from .errors import SkillpmError
from .git import GitCli, redact_url
from .lockfile import LOCK_FILENAME, LockEntry, LockLedger
from .manifest import MANIFEST_FILENAME, Manifest, load_manifest, save_manifest
from .refs import SourceRef, parse_ref, parse_version_spec
from .resolver import ResolvedVersion, VersionResolver

logger = logging.getLogger(__name__)

INSTALLED = "installed"
UPDATED = "updated"
UNCHANGED = "unchanged"


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class InstallResult:
    name: str
    ref: SourceRef
    resolved: ResolvedVersion
    path: Path
    status: str
    cached: bool = False

    @property
    def changed(self) -> bool:
        return self.status != UNCHANGED


@dataclass(frozen=True)
class BatchResult:
    results: tuple[InstallResult, ...] = ()
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class OutdatedItem:
    name: str
    current: str | None
    wanted: str | None
    latest: str | None
    update_available: bool
    error: str | None = None


@dataclass(frozen=True)
class SkillInfo:
    name: str
    declared: str | None
    path: Path
    installed: bool
    lock: LockEntry | None = None


def _same_commit(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a.startswith(b) or b.startswith(a)


class SkillInstaller:
    """
    Installs skills declared in a project's `skills.json` into its install dir.

    Per name the pipeline is parse, resolve, fetch-or-reuse, copy, lock write.
    Different names are independent: one failing never rolls back another.
    """

    def __init__(
        self,
        project_root: Path,
        *,
        cache: ContentCache,
        resolver: VersionResolver,
        config: Config | None = None,
        ledger: LockLedger | None = None,
    ) -> None:
        self.project_root = Path(project_root).expanduser().resolve()
        self.cache = cache
        self.resolver = resolver
        self.config = config or Config()
        self.manifest_path = self.project_root / MANIFEST_FILENAME
        self.ledger = ledger or LockLedger(self.project_root / LOCK_FILENAME)
        self._manifest_lock = threading.Lock()
        self._closers: list[Callable[[], None]] = []

    @classmethod
    def from_config(cls, project_root: Path, cfg: Config) -> "SkillInstaller":
        git = GitCli(timeout_s=cfg.timeout_s)
        downloader = HttpDownloader(timeout_s=cfg.timeout_s)
        cache = ContentCache(resolve_cache_dir(cfg), git=git, downloader=downloader)
        resolver = VersionResolver(git, strict_latest=cfg.strict_latest)
        installer = cls(project_root, cache=cache, resolver=resolver, config=cfg)
        installer._closers.append(downloader.close)
        return installer

    def close(self) -> None:
        while self._closers:
            self._closers.pop()()

    def __enter__(self) -> "SkillInstaller":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def load_manifest(self) -> Manifest:
        return load_manifest(self.manifest_path)

    def default_registry(self, manifest: Manifest | None = None) -> str:
        manifest = manifest or self.load_manifest()
        return manifest.registry or self.config.default_registry

    def skills_dir(self, manifest: Manifest | None = None) -> Path:
        manifest = manifest or self.load_manifest()
        return self.project_root / manifest.install_dir

    def skill_path(self, name: str, manifest: Manifest | None = None) -> Path:
        cleaned = name.strip()
        if not cleaned or cleaned in (".", "..") or "/" in cleaned or "\\" in cleaned:
            raise SkillpmError(f"Invalid skill name {name!r}")
        return self.skills_dir(manifest) / cleaned

    def parse(self, raw: str, manifest: Manifest | None = None) -> SourceRef:
        return parse_ref(raw, default_registry=self.default_registry(manifest), registries=self.config.registries)

    def install(self, raw_ref: str, *, name: str | None = None, force: bool = False, save: bool = True) -> InstallResult:
        manifest = self.load_manifest()
        ref = self.parse(raw_ref, manifest)
        skill_name = (name or ref.skill_name).strip()
        result = self._install_ref(skill_name, ref, manifest=manifest, force=force)
        if save:
            with self._manifest_lock:
                current = self.load_manifest()
                if current.skills.get(skill_name) != ref.raw:
                    save_manifest(self.manifest_path, current.with_skill(skill_name, ref.raw))
        return result

    def _install_ref(self, name: str, ref: SourceRef, *, manifest: Manifest, force: bool = False) -> InstallResult:
        dest = self.skill_path(name, manifest)
        resolved = self.resolver.resolve(ref)
        requested = ref.raw_version or "latest"
        resolved_url = redact_url(ref.canonical_url)
        current = self.ledger.get(name)

        if not force and current is not None and dest.is_dir() and self._lock_matches(current, ref, resolved):
            logger.debug("%s is up to date at %s", name, resolved.display_ref)
            if current.requested_version != requested:
                self.ledger.set(name, replace(current, requested_version=requested))
            return InstallResult(name=name, ref=ref, resolved=resolved, path=dest, status=UNCHANGED, cached=True)

        logger.info("installing %s from %s@%s", name, ref.source, resolved.display_ref)
        entry = self.cache.copy_into(ref, resolved, dest)
        self.ledger.set(
            name,
            LockEntry(
                source=ref.source,
                requested_version=requested,
                version=resolved.display_ref,
                resolved=resolved_url,
                commit=entry.commit or resolved.commit or entry.digest,
                installed_at=_timestamp(),
            ),
        )
        status = UPDATED if current is not None else INSTALLED
        return InstallResult(name=name, ref=ref, resolved=resolved, path=dest, status=status, cached=entry.cached)

    def _lock_matches(self, current: LockEntry, ref: SourceRef, resolved: ResolvedVersion) -> bool:
        if current.source != ref.source:
            return False
        if resolved.commit:
            return _same_commit(current.commit, resolved.commit)
        return current.version == resolved.display_ref and current.resolved == redact_url(ref.canonical_url)

    def _run_many(self, names: list[str], manifest: Manifest, jobs: int | None, *, force: bool = False) -> BatchResult:
        workers = max(1, int(jobs or self.config.jobs or 1))
        results: dict[str, InstallResult] = {}
        failures: dict[str, str] = {}

        def one(name: str) -> InstallResult:
            ref = self.parse(manifest.skills[name], manifest)
            return self._install_ref(name, ref, manifest=manifest, force=force)

        def record(name: str, call: Callable[[], InstallResult]) -> None:
            try:
                results[name] = call()
            except (SkillpmError, OSError) as e:
                logger.warning("failed to install %s: %s", name, e)
                failures[name] = str(e)

        if workers == 1 or len(names) <= 1:
            for name in names:
                record(name, lambda n=name: one(n))
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {name: pool.submit(one, name) for name in names}
                for name, future in futures.items():
                    record(name, future.result)

        return BatchResult(
            results=tuple(results[n] for n in sorted(results)),
            failures={n: failures[n] for n in sorted(failures)},
        )

    def install_all(self, *, jobs: int | None = None, force: bool = False) -> BatchResult:
        manifest = self.load_manifest()
        return self._run_many(sorted(manifest.skills), manifest, jobs, force=force)

    def update(self, name: str | None = None, *, jobs: int | None = None) -> BatchResult:
        manifest = self.load_manifest()
        if name is not None and name not in manifest.skills:
            raise SkillpmError(f"Skill {name!r} is not declared in {self.manifest_path.name}")
        self.resolver.clear()
        names = [name] if name is not None else sorted(manifest.skills)
        return self._run_many(names, manifest, jobs)

    def uninstall(self, name: str) -> bool:
        manifest = self.load_manifest()
        dest = self.skill_path(name, manifest)
        removed = False
        if dest.is_symlink():
            dest.unlink()
            removed = True
        elif dest.exists():
            shutil.rmtree(dest)
            removed = True
        if self.ledger.remove(name):
            removed = True
        with self._manifest_lock:
            current = self.load_manifest()
            if name in current.skills:
                save_manifest(self.manifest_path, current.without_skill(name))
                removed = True
        if removed:
            logger.info("uninstalled %s", name)
        return removed

    def outdated(self) -> list[OutdatedItem]:
        manifest = self.load_manifest()
        latest_spec = parse_version_spec("latest")
        items: list[OutdatedItem] = []
        for name in sorted(manifest.skills):
            lock = self.ledger.get(name)
            current = lock.version if lock else None
            try:
                ref = self.parse(manifest.skills[name], manifest)
                wanted = self.resolver.resolve(ref)
                latest = wanted if ref.is_archive else self.resolver.resolve(ref, latest_spec)
            except SkillpmError as e:
                items.append(OutdatedItem(name, current, None, None, False, error=str(e)))
                continue
            available = lock is None or not self._lock_matches(lock, ref, latest)
            items.append(OutdatedItem(name, current, wanted.display_ref, latest.display_ref, available))
        return items

    def info(self, name: str) -> SkillInfo:
        manifest = self.load_manifest()
        declared = manifest.skills.get(name)
        lock = self.ledger.get(name)
        if declared is None and lock is None:
            raise SkillpmError(f"Skill {name!r} is not declared or installed")
        path = self.skill_path(name, manifest)
        return SkillInfo(name=name, declared=declared, path=path, installed=path.is_dir(), lock=lock)

    def list_installed(self) -> list[SkillInfo]:
        manifest = self.load_manifest()
        names = set(manifest.skills) | set(self.ledger.all())
        out: list[SkillInfo] = []
        for name in sorted(names):
            path = self.skill_path(name, manifest)
            out.append(
                SkillInfo(
                    name=name,
                    declared=manifest.skills.get(name),
                    path=path,
                    installed=path.is_dir(),
                    lock=self.ledger.get(name),
                )
            )
        return out
