from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Protocol
from urllib.parse import urlsplit, urlunsplit

from .errors import GitError
from .versions import parse_version

logger = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT_S = 60.0


@dataclass(frozen=True)
class RemoteTag:
    name: str
    commit: str
    timestamp: float | None = None  # commit time, when the lister can provide it


@dataclass(frozen=True)
class RemoteRefs:
    tags: tuple[RemoteTag, ...] = ()
    branches: Mapping[str, str] = field(default_factory=dict)
    default_branch: str | None = None
    head: str | None = None

    def tag(self, name: str) -> RemoteTag | None:
        for tag in self.tags:
            if tag.name == name:
                return tag
        return None

    def ref_tips(self) -> set[str]:
        tips = {t.commit for t in self.tags} | set(self.branches.values())
        if self.head:
            tips.add(self.head)
        return tips


class RemoteRefLister(Protocol):
    def list_refs(self, url: str) -> RemoteRefs:
        ...

    def commit_exists(self, url: str, commit: str) -> bool | None:
        """True/False when known, None when the remote cannot answer without a fetch."""
        ...


class GitFetcher(Protocol):
    def clone(self, url: str, dest: Path, *, ref: str | None, commit: str | None) -> str:
        """Materialize `url` at `ref`/`commit` into `dest` and return the checked-out commit."""
        ...


def redact_url(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.password and not (parts.username and parts.scheme in ("http", "https")):
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))


def parse_ls_remote(output: str) -> RemoteRefs:
    """
    Parse `git ls-remote --symref` output.

    Annotated tags are listed twice (`refs/tags/v1` and `refs/tags/v1^{}`);
    the peeled line carries the commit and wins.
    """
    tags: dict[str, str] = {}
    peeled: dict[str, str] = {}
    branches: dict[str, str] = {}
    default_branch: str | None = None
    head: str | None = None

    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("ref:"):
            target, _, name = line[len("ref:") :].strip().partition("\t")
            if name.strip() == "HEAD" and target.startswith("refs/heads/"):
                default_branch = target[len("refs/heads/") :]
            continue
        sha, _, ref = line.partition("\t")
        sha = sha.strip()
        ref = ref.strip()
        if not sha or not ref:
            continue
        if ref == "HEAD":
            head = sha
        elif ref.startswith("refs/heads/"):
            branches[ref[len("refs/heads/") :]] = sha
        elif ref.startswith("refs/tags/"):
            name = ref[len("refs/tags/") :]
            if name.endswith("^{}"):
                peeled[name[:-3]] = sha
            else:
                tags[name] = sha

    merged = [RemoteTag(name=name, commit=peeled.get(name, sha)) for name, sha in tags.items()]
    for name, sha in peeled.items():
        if name not in tags:
            merged.append(RemoteTag(name=name, commit=sha))
    if default_branch is None and head is not None:
        for name, sha in branches.items():
            if sha == head:
                default_branch = name
                break
    return RemoteRefs(tags=tuple(merged), branches=branches, default_branch=default_branch, head=head)


def tied_tags(tags: tuple[RemoteTag, ...]) -> list[RemoteTag]:
    """Tags whose names normalize to a version another tag also normalizes to."""
    groups: dict[str, list[RemoteTag]] = {}
    for tag in tags:
        version = parse_version(tag.name)
        if version is not None:
            groups.setdefault(version, []).append(tag)
    return [t for group in groups.values() if len(group) > 1 for t in group]


class GitCli:
    """Thin wrapper around the `git` executable; every call is bounded by `timeout_s`."""

    def __init__(self, *, timeout_s: float = DEFAULT_GIT_TIMEOUT_S, git: str = "git") -> None:
        self.timeout_s = timeout_s
        self.git = git

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        return env

    def run(self, args: list[str], *, url: str, cwd: Path | None = None) -> str:
        cmd = [self.git, *args]
        display = " ".join(redact_url(a) for a in cmd)
        logger.debug("running %s", display)
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=max(1.0, float(self.timeout_s)),
                env=self._env(),
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise GitError(redact_url(url), display, f"timed out after {self.timeout_s}s", cause=e) from e
        except FileNotFoundError as e:
            raise GitError(redact_url(url), display, "git executable not found", cause=e) from e
        if result.returncode != 0:
            raise GitError(redact_url(url), display, result.stderr or result.stdout)
        return result.stdout

    def list_refs(self, url: str) -> RemoteRefs:
        refs = parse_ls_remote(self.run(["ls-remote", "--symref", url], url=url))
        tied = tied_tags(refs.tags)
        if not tied:
            return refs
        times = self.commit_times(url, tied)
        tags = tuple(replace(t, timestamp=times.get(t.commit)) if t in tied else t for t in refs.tags)
        return replace(refs, tags=tags)

    def commit_times(self, url: str, tags: list[RemoteTag]) -> dict[str, float]:
        """
        Commit timestamps for `tags`, keyed by commit.

        ls-remote carries no dates, so the tags are shallow-fetched into a
        scratch bare repository and read back with `git log`. Failure leaves
        the tags untimed; ordering then falls back to the tag name.
        """
        refspecs = [f"+refs/tags/{t.name}:refs/tags/{t.name}" for t in tags]
        with tempfile.TemporaryDirectory(prefix="skillpm-tags-") as td:
            repo = Path(td)
            try:
                self.run(["init", "--bare", "--quiet", str(repo)], url=url)
                self.run(["fetch", "--depth", "1", "--no-tags", "--quiet", url, *refspecs], url=url, cwd=repo)
                out = self.run(
                    ["log", "--no-walk=unsorted", "--format=%H %ct", *sorted({t.commit for t in tags})],
                    url=url,
                    cwd=repo,
                )
            except GitError as e:
                logger.warning("could not read tag dates from %s: %s", redact_url(url), e)
                return {}
        times: dict[str, float] = {}
        for line in out.splitlines():
            sha, _, stamp = line.strip().partition(" ")
            if sha and stamp.isdigit():
                times[sha] = float(stamp)
        return times

    def commit_exists(self, url: str, commit: str) -> bool | None:
        refs = parse_ls_remote(self.run(["ls-remote", "--symref", url], url=url))
        if any(tip.startswith(commit) for tip in refs.ref_tips()):
            return True
        # ls-remote only exposes ref tips; older commits need a fetch to verify.
        return None

    def rev_parse(self, repo_dir: Path, rev: str = "HEAD", *, url: str = "") -> str:
        return self.run(["rev-parse", rev], url=url, cwd=repo_dir).strip()

    def clone(self, url: str, dest: Path, *, ref: str | None, commit: str | None) -> str:
        if ref:
            try:
                self.run(
                    ["clone", "--depth", "1", "--branch", ref, "--single-branch", "--quiet", url, str(dest)],
                    url=url,
                )
                head = self.rev_parse(dest, url=url)
                if not commit or head.startswith(commit):
                    return head
                logger.debug("shallow clone of %s at %s is %s, expected %s", redact_url(url), ref, head, commit)
            except GitError:
                if not commit:
                    raise
            shutil.rmtree(dest, ignore_errors=True)

        self.run(["clone", "--no-checkout", "--quiet", url, str(dest)], url=url)
        target = commit or ref or "HEAD"
        self.run(["checkout", "--quiet", "--detach", target], url=url, cwd=dest)
        return self.rev_parse(dest, url=url)
