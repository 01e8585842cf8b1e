from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cmp_to_key

from .errors import NoMatchingVersion, VersionNotFound
from .git import RemoteRefLister, RemoteRefs, RemoteTag
from .refs import SourceKind, SourceRef, VersionKind, VersionSpec
from .versions import compare_versions, is_exact_version, parse_version, version_satisfies

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResolvedVersion:
    display_ref: str
    commit: str | None
    kind: VersionKind
    resolved_at: datetime = field(default_factory=_utcnow, compare=False)

    @property
    def is_branch(self) -> bool:
        return self.kind is VersionKind.BRANCH


@dataclass(frozen=True)
class _Candidate:
    version: str
    tag: RemoteTag


def _compare_candidates(a: _Candidate, b: _Candidate) -> int:
    cmp = compare_versions(a.version, b.version)
    if cmp:
        return cmp
    # Same normalized version under two tag names ("1.0.0" and "v1.0.0"): later commit wins.
    ta = a.tag.timestamp if a.tag.timestamp is not None else float("-inf")
    tb = b.tag.timestamp if b.tag.timestamp is not None else float("-inf")
    if ta != tb:
        return -1 if ta < tb else 1
    if a.tag.name == b.tag.name:
        return 0
    return -1 if a.tag.name < b.tag.name else 1


def semver_candidates(refs: RemoteRefs) -> list[_Candidate]:
    """Tags that parse as semantic versions; anything else is ignored."""
    out: list[_Candidate] = []
    for tag in refs.tags:
        version = parse_version(tag.name)
        if version is None:
            continue
        out.append(_Candidate(version=version, tag=tag))
    return out


class VersionResolver:
    def __init__(self, lister: RemoteRefLister, *, strict_latest: bool = False) -> None:
        self.lister = lister
        self.strict_latest = strict_latest
        self._refs_cache: dict[str, RemoteRefs] = {}
        self._lock = threading.Lock()

    def clear(self) -> None:
        with self._lock:
            self._refs_cache.clear()

    def _refs(self, url: str) -> RemoteRefs:
        with self._lock:
            cached = self._refs_cache.get(url)
        if cached is not None:
            return cached
        refs = self.lister.list_refs(url)
        with self._lock:
            self._refs_cache[url] = refs
        return refs

    def resolve(self, ref: SourceRef, spec: VersionSpec | None = None) -> ResolvedVersion:
        spec = spec or ref.version_spec

        if ref.kind is SourceKind.ARCHIVE:
            # The URL already names the content; there is nothing to list.
            value = spec.value if spec.kind is not VersionKind.LATEST else "latest"
            return ResolvedVersion(display_ref=value, commit=None, kind=VersionKind.EXACT)

        if ref.kind is SourceKind.GIT:
            if spec.kind is VersionKind.COMMIT:
                return self._resolve_commit(ref, spec)
            if spec.kind is VersionKind.BRANCH:
                return self._resolve_branch(ref, spec.value)
            if spec.kind is VersionKind.EXACT:
                return self._resolve_exact(ref, spec.value)
            if spec.kind is VersionKind.RANGE:
                return self._resolve_range(ref, spec.value)
            if spec.kind is VersionKind.LATEST:
                return self._resolve_latest(ref)
        raise AssertionError("unreachable")

    def _resolve_commit(self, ref: SourceRef, spec: VersionSpec) -> ResolvedVersion:
        exists = self.lister.commit_exists(ref.canonical_url, spec.value)
        if exists is False:
            raise VersionNotFound(ref.source, str(spec))
        return ResolvedVersion(display_ref=spec.value, commit=spec.value, kind=VersionKind.COMMIT)

    def _resolve_branch(self, ref: SourceRef, name: str) -> ResolvedVersion:
        refs = self._refs(ref.canonical_url)
        commit = refs.branches.get(name)
        if commit is None:
            raise VersionNotFound(ref.source, f"branch:{name}")
        return ResolvedVersion(display_ref=name, commit=commit, kind=VersionKind.BRANCH)

    def _resolve_exact(self, ref: SourceRef, value: str) -> ResolvedVersion:
        refs = self._refs(ref.canonical_url)
        names = [value]
        if is_exact_version(value):
            names.append(value[1:] if value[:1] in ("v", "V") else f"v{value}")
        for name in names:
            tag = refs.tag(name)
            if tag is not None:
                return ResolvedVersion(display_ref=tag.name, commit=tag.commit, kind=VersionKind.EXACT)
        if not is_exact_version(value) and value in refs.branches:
            # A bare non-version token that names no tag may still name a branch ("main").
            return ResolvedVersion(display_ref=value, commit=refs.branches[value], kind=VersionKind.BRANCH)
        raise VersionNotFound(ref.source, value)

    def _resolve_range(self, ref: SourceRef, value: str) -> ResolvedVersion:
        refs = self._refs(ref.canonical_url)
        candidates = semver_candidates(refs)
        matched = [c for c in candidates if version_satisfies(c.version, value)]
        if not matched:
            raise NoMatchingVersion(ref.source, value, detail=f"{len(candidates)} semver tag(s) on remote")
        best = max(matched, key=cmp_to_key(_compare_candidates))
        logger.debug("resolved %s@%s to %s", ref.source, value, best.tag.name)
        return ResolvedVersion(display_ref=best.tag.name, commit=best.tag.commit, kind=VersionKind.RANGE)

    def _resolve_latest(self, ref: SourceRef) -> ResolvedVersion:
        refs = self._refs(ref.canonical_url)
        candidates = semver_candidates(refs)
        if candidates:
            best = max(candidates, key=cmp_to_key(_compare_candidates))
            return ResolvedVersion(display_ref=best.tag.name, commit=best.tag.commit, kind=VersionKind.LATEST)

        if self.strict_latest:
            raise NoMatchingVersion(ref.source, "latest", detail="no semver tags and strict_latest is enabled")
        branch = refs.default_branch
        commit = refs.branches.get(branch) if branch else None
        commit = commit or refs.head
        if commit is None:
            raise NoMatchingVersion(ref.source, "latest", detail="no semver tags and no default branch")
        display = branch or "HEAD"
        logger.debug("no semver tags on %s; using default branch %s", ref.source, display)
        return ResolvedVersion(display_ref=display, commit=commit, kind=VersionKind.BRANCH)
