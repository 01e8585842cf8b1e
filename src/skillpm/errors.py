from __future__ import annotations


class SkillpmError(RuntimeError):
    pass


class MalformedReference(SkillpmError):
    def __init__(self, raw: str, reason: str | None = None) -> None:
        self.raw = raw
        self.reason = reason
        message = f"Invalid skill reference {raw!r}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class VersionNotFound(SkillpmError):
    def __init__(self, source: str, version: str) -> None:
        self.source = source
        self.version = version
        super().__init__(f"Version {version!r} not found for {source}")


class NoMatchingVersion(SkillpmError):
    def __init__(self, source: str, requirement: str, detail: str | None = None) -> None:
        self.source = source
        self.requirement = requirement
        message = f"No version of {source} satisfies {requirement!r}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class FetchFailed(SkillpmError):
    def __init__(
        self,
        url: str,
        message: str,
        *,
        status_code: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.url = url
        self.status_code = status_code
        self.cause = cause
        super().__init__(f"Fetch failed for {url}: {message}")


class GitError(FetchFailed):
    def __init__(self, url: str, command: str, stderr: str, *, cause: BaseException | None = None) -> None:
        self.command = command
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "git exited with an error"
        super().__init__(url, f"`{command}` failed: {detail}", cause=cause)


class UnknownArchiveFormat(SkillpmError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unable to detect archive format for: {name}")


class ExtractionFailed(SkillpmError):
    pass


class SubPathNotFound(SkillpmError):
    def __init__(self, source: str, sub_path: str, version: str) -> None:
        self.source = source
        self.sub_path = sub_path
        self.version = version
        super().__init__(f"Path {sub_path!r} not found in {source}@{version}")


class PathTraversalRejected(SkillpmError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Archive entry escapes target directory: {name!r}")
