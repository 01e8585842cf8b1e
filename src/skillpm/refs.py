from __future__ import annotations

import hashlib
import posixpath
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping
from urllib.parse import urlsplit

from .archive import ARCHIVE_EXTENSIONS, detect_archive_format
from .errors import MalformedReference
from .versions import is_exact_version, validate_range

DEFAULT_REGISTRIES: dict[str, str] = {
    "github": "github.com",
    "gitlab": "gitlab.com",
    "bitbucket": "bitbucket.org",
}
ARCHIVE_REGISTRY = "http"

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9_.-]*):(?!//)(.+)$")
_SSH_RE = re.compile(r"^git@([^:/]+):(.+)$")
_COMMIT_RE = re.compile(r"^[0-9a-fA-F]{4,64}$")
_FILENAME_VERSION_RE = re.compile(r"^(.+?)[-_]([vV]?\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?)$")
_WEB_MARKERS = ("tree", "blob", "raw")
_RANGE_PREFIXES = ("^", "~", ">", "<", "=", "*")
_WILDCARD_SEGMENT_RE = re.compile(r"(^|\.)[xX*](\.|$)")


class SourceKind(str, Enum):
    GIT = "git"
    ARCHIVE = "archive"


class VersionKind(str, Enum):
    EXACT = "exact"
    LATEST = "latest"
    RANGE = "range"
    BRANCH = "branch"
    COMMIT = "commit"


@dataclass(frozen=True)
class VersionSpec:
    kind: VersionKind
    value: str
    raw: str | None = None

    def __str__(self) -> str:
        if self.kind is VersionKind.BRANCH:
            return f"branch:{self.value}"
        if self.kind is VersionKind.COMMIT:
            return f"commit:{self.value}"
        return self.value


@dataclass(frozen=True)
class SourceRef:
    kind: SourceKind
    registry: str
    host: str
    owner: str
    repo: str
    canonical_url: str
    sub_path: str | None = None
    raw_version: str | None = None
    archive_format: str | None = None
    raw: str = field(default="", compare=False)

    @property
    def is_archive(self) -> bool:
        return self.kind is SourceKind.ARCHIVE

    @property
    def family(self) -> tuple[str, str, str, str | None]:
        return (self.registry, self.owner, self.repo, self.sub_path)

    @property
    def identity(self) -> tuple[str, ...]:
        """Cache identity: the source without its sub-path."""
        if self.kind is SourceKind.ARCHIVE:
            url_hash = hashlib.sha256(self.canonical_url.encode("utf-8")).hexdigest()[:12]
            return (self.registry, self.owner, f"{self.repo}-{url_hash}")
        return (self.registry, self.owner, self.repo)

    @property
    def version_spec(self) -> VersionSpec:
        if self.kind is SourceKind.ARCHIVE:
            # A static URL cannot be listed, so every archive version is a literal.
            value = (self.raw_version or "").strip() or "latest"
            return VersionSpec(kind=VersionKind.EXACT, value=value, raw=self.raw_version)
        return parse_version_spec(self.raw_version)

    @property
    def skill_name(self) -> str:
        if self.sub_path:
            return posixpath.basename(self.sub_path.rstrip("/"))
        return self.repo

    @property
    def source(self) -> str:
        """Human-readable summary without the version, as stored in the lock file."""
        if self.kind is SourceKind.ARCHIVE:
            return self.canonical_url
        base = f"{self.registry}:{self.owner}/{self.repo}"
        return f"{base}/{self.sub_path}" if self.sub_path else base


def parse_version_spec(raw: str | None) -> VersionSpec:
    token = (raw or "").strip()
    if not token or token.lower() == "latest":
        return VersionSpec(kind=VersionKind.LATEST, value="latest", raw=raw)

    if token.startswith("branch:"):
        name = token[len("branch:") :].strip()
        if not name:
            raise MalformedReference(token, "empty branch name")
        return VersionSpec(kind=VersionKind.BRANCH, value=name, raw=raw)

    if token.startswith("commit:"):
        sha = token[len("commit:") :].strip()
        if not _COMMIT_RE.match(sha):
            raise MalformedReference(token, "commit must be a hexadecimal hash")
        return VersionSpec(kind=VersionKind.COMMIT, value=sha.lower(), raw=raw)

    if is_exact_version(token):
        return VersionSpec(kind=VersionKind.EXACT, value=token, raw=raw)

    if token.startswith(_RANGE_PREFIXES) or "||" in token or " - " in token or _WILDCARD_SEGMENT_RE.search(token):
        try:
            validate_range(token)
        except ValueError as e:
            raise MalformedReference(token, str(e)) from e
        return VersionSpec(kind=VersionKind.RANGE, value=token, raw=raw)

    if any(ch.isspace() for ch in token):
        raise MalformedReference(token, "version must not contain whitespace")
    if "/" in token:
        raise MalformedReference(token, "version must not contain '/' (use branch:<name> for branches)")
    # Any other token names a tag literally (e.g. "stable", "release-2024").
    return VersionSpec(kind=VersionKind.EXACT, value=token, raw=raw)


def is_archive_url(raw: str) -> bool:
    value = raw.strip()
    lower = value.lower()
    if lower.startswith(("oss://", "s3://")):
        return True
    if not lower.startswith(("http://", "https://")):
        return False
    url, _ = _split_url_version(value)
    return detect_archive_format(posixpath.basename(urlsplit(url).path)) is not None


def parse_ref(
    raw: str,
    *,
    default_registry: str = "github",
    registries: Mapping[str, str] | None = None,
) -> SourceRef:
    value = (raw or "").strip()
    if not value:
        raise MalformedReference(raw or "", "empty reference")
    hosts = dict(DEFAULT_REGISTRIES)
    if registries:
        hosts.update({k.lower(): v for k, v in registries.items()})

    m = _SSH_RE.match(value)
    if m:
        return _parse_ssh(value, m.group(1), m.group(2), hosts)

    lower = value.lower()
    if lower.startswith(("oss://", "s3://")):
        return _parse_archive(value)
    if lower.startswith(("http://", "https://")):
        url, version = _split_url_version(value)
        path = urlsplit(url).path
        if detect_archive_format(posixpath.basename(path)) is not None:
            return _parse_archive(value)
        return _parse_web_url(value, url, version, hosts)
    if "://" in value:
        raise MalformedReference(value, "unsupported URL scheme")

    m = _SCHEME_RE.match(value)
    if m:
        scheme = m.group(1).lower()
        if scheme in hosts:
            return _parse_shorthand(value, m.group(2), registry=scheme, host=hosts[scheme])
        if "." in scheme:
            return _parse_shorthand(value, m.group(2), registry=scheme, host=scheme)
        raise MalformedReference(value, f"unknown registry {m.group(1)!r}")

    registry = default_registry.lower()
    host = hosts.get(registry, registry if "." in registry else None)
    if host is None:
        raise MalformedReference(value, f"unknown default registry {default_registry!r}")
    return _parse_shorthand(value, value, registry=registry, host=host)


def format_ref(ref: SourceRef) -> str:
    """Serialize a reference to its canonical string form."""
    if ref.kind is SourceKind.ARCHIVE:
        return f"{ref.canonical_url}@{ref.raw_version}" if ref.raw_version else ref.canonical_url
    if ref.canonical_url != f"https://{ref.host}/{ref.owner}/{ref.repo}.git":
        # SSH, plain http or a non-default port: only the URL form keeps the location.
        out = ref.canonical_url
        if ref.sub_path:
            out += f"/{ref.sub_path}"
    else:
        out = ref.source
    if ref.raw_version:
        out += f"@{ref.raw_version}"
    return out


def _registry_for_host(host: str, hosts: Mapping[str, str]) -> str:
    for name, value in hosts.items():
        if value.lower() == host.lower():
            return name
    return host.lower()


def _split_version_suffix(body: str) -> tuple[str, str | None]:
    at_idx = body.rfind("@")
    if at_idx < 0:
        return body, None
    version = body[at_idx + 1 :].strip()
    return body[:at_idx], version or None


def _split_url_version(value: str) -> tuple[str, str | None]:
    scheme_end = value.find("://")
    path_start = value.find("/", scheme_end + 3 if scheme_end >= 0 else 0)
    at_idx = value.rfind("@")
    if path_start < 0 or at_idx < path_start:
        return value, None
    version = value[at_idx + 1 :].strip()
    if "/" in version and not version.startswith("branch:"):
        # "@" inside the path (e.g. "/npm/pkg@1.0.0/skill.tar.gz") is not a version suffix.
        return value, None
    return value[:at_idx], version or None


def _clean_segments(raw: str, segments: list[str]) -> list[str]:
    cleaned = [s for s in segments if s]
    for segment in cleaned:
        if segment in (".", ".."):
            raise MalformedReference(raw, "path segments must not be '.' or '..'")
    return cleaned


def _git_ref(
    raw: str,
    *,
    registry: str,
    host: str,
    segments: list[str],
    version: str | None,
    canonical_url: str | None = None,
    base_url: str | None = None,
) -> SourceRef:
    segments = _clean_segments(raw, segments)
    if len(segments) < 2:
        raise MalformedReference(raw, "expected <owner>/<repo>")
    owner, repo = segments[0], segments[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if not _NAME_RE.match(owner) or not _NAME_RE.match(repo):
        raise MalformedReference(raw, "owner and repo may only contain letters, digits, '.', '_' and '-'")
    sub_path = "/".join(segments[2:]) or None
    if version is not None:
        parse_version_spec(version)
    return SourceRef(
        kind=SourceKind.GIT,
        registry=registry,
        host=host,
        owner=owner,
        repo=repo,
        canonical_url=canonical_url or f"{base_url or 'https://' + host}/{owner}/{repo}.git",
        sub_path=sub_path,
        raw_version=version,
        raw=raw,
    )


def _parse_shorthand(raw: str, body: str, *, registry: str, host: str) -> SourceRef:
    path, version = _split_version_suffix(body)
    return _git_ref(raw, registry=registry, host=host, segments=path.strip().split("/"), version=version)


def _parse_ssh(raw: str, host: str, rest: str, hosts: Mapping[str, str]) -> SourceRef:
    path, version = _split_version_suffix(rest)
    segments = _clean_segments(raw, path.strip().split("/"))
    if len(segments) < 2:
        raise MalformedReference(raw, "expected git@<host>:<owner>/<repo>.git")
    repo = segments[1][: -len(".git")] if segments[1].endswith(".git") else segments[1]
    return _git_ref(
        raw,
        registry=_registry_for_host(host, hosts),
        host=host,
        segments=segments,
        version=version,
        canonical_url=f"git@{host}:{segments[0]}/{repo}.git",
    )


def _parse_web_url(raw: str, url: str, version: str | None, hosts: Mapping[str, str]) -> SourceRef:
    parts = urlsplit(url)
    host = parts.hostname
    if not host:
        raise MalformedReference(raw, "URL has no host")
    try:
        port = parts.port
    except ValueError as e:
        raise MalformedReference(raw, "invalid port") from e
    # Scheme and port are kept so self-hosted servers stay reachable; credentials are not.
    base_url = f"{parts.scheme.lower()}://{host}:{port}" if port else f"{parts.scheme.lower()}://{host}"
    registry = _registry_for_host(host, hosts)
    segments = [s for s in parts.path.split("/") if s]
    if len(segments) >= 3 and segments[2] == "-":
        segments = segments[:2] + segments[3:]
    if len(segments) >= 4 and segments[2] in _WEB_MARKERS:
        branch_version = f"branch:{segments[3]}"
        return _git_ref(
            raw,
            registry=registry,
            host=host,
            segments=segments[:2] + segments[4:],
            version=version or branch_version,
            base_url=base_url,
        )
    if len(segments) > 2 and segments[1].endswith(".git"):
        # https://host/owner/repo.git/sub/path, the form format_ref emits.
        return _git_ref(raw, registry=registry, host=host, segments=segments, version=version, base_url=base_url)
    if len(segments) != 2:
        raise MalformedReference(raw, "expected https://<host>/<owner>/<repo>")
    return _git_ref(raw, registry=registry, host=host, segments=segments, version=version, base_url=base_url)


def _normalize_object_storage(url: str) -> str:
    lower = url.lower()
    for prefix, suffix in (("oss://", "oss.aliyuncs.com"), ("s3://", "s3.amazonaws.com")):
        if lower.startswith(prefix):
            rest = url[len(prefix) :]
            bucket, _, key = rest.partition("/")
            if not bucket or not key:
                raise MalformedReference(url, f"expected {prefix}<bucket>/<key>")
            return f"https://{bucket}.{suffix}/{key}"
    return url


def _parse_archive(raw: str) -> SourceRef:
    url_part, explicit = _split_url_version(raw)
    url = _normalize_object_storage(url_part)
    parts = urlsplit(url)
    host = parts.hostname
    if not host:
        raise MalformedReference(raw, "URL has no host")
    filename = posixpath.basename(parts.path)
    fmt = detect_archive_format(filename)
    if fmt is None:
        raise MalformedReference(raw, f"archive URL must end with one of {', '.join(ARCHIVE_EXTENSIONS)}")
    stem = filename[: -len(ARCHIVE_EXTENSIONS[fmt])]
    name, embedded = stem, None
    m = _FILENAME_VERSION_RE.match(stem)
    if m:
        name, embedded = m.group(1), m.group(2)
    if not name:
        raise MalformedReference(raw, "archive filename has no skill name")
    return SourceRef(
        kind=SourceKind.ARCHIVE,
        registry=ARCHIVE_REGISTRY,
        host=host,
        owner=host,
        repo=name,
        canonical_url=url,
        raw_version=explicit or embedded,
        archive_format=fmt,
        raw=raw,
    )
