from __future__ import annotations

import re
from functools import cmp_to_key
from typing import Iterable

_SEMVER_RE = re.compile(
    r"^[vV]?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)
_EXACT_RE = re.compile(r"^[vV]?\d+(?:\.\d+)*(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")
_COMPARATOR_RE = re.compile(r"^(>=|<=|>|<|==|=)?\s*[vV]?([0-9xX*][0-9A-Za-z.\-+*]*)$")
_OPERATORS = (">=", "<=", ">", "<", "==", "=")
_WILDCARDS = ("x", "X", "*")


def parse_version(tag: str) -> str | None:
    """
    Normalize a tag into a semantic version string, or return None.

    A single leading "v" is stripped and build metadata is dropped:
    "v1.2.3+build.5" -> "1.2.3". Anything that is not a full
    MAJOR.MINOR.PATCH version (optionally with a prerelease) is rejected.
    """
    if not isinstance(tag, str):
        return None
    m = _SEMVER_RE.match(tag.strip())
    if not m:
        return None
    core = f"{m.group(1)}.{m.group(2)}.{m.group(3)}"
    if m.group(4):
        return f"{core}-{m.group(4)}"
    return core


def is_exact_version(raw: str) -> bool:
    return bool(_EXACT_RE.match(raw.strip()))


def is_prerelease(version: str) -> bool:
    try:
        return _split_version(version)[1] is not None
    except ValueError:
        return False


def _strip_v(version: str) -> str:
    raw = version.strip()
    if raw[:1] in ("v", "V") and raw[1:2].isdigit():
        return raw[1:]
    return raw


def _split_version(version: str) -> tuple[tuple[int, ...], tuple[str, ...] | None]:
    if not isinstance(version, str):
        raise ValueError("version must be str")
    raw = _strip_v(version)
    if not raw:
        raise ValueError("empty version")
    raw = raw.split("+", 1)[0]  # ignore build metadata
    if "-" in raw:
        main_s, pre_s = raw.split("-", 1)
        pre_parts = tuple(p for p in pre_s.split(".") if p != "")
    else:
        main_s = raw
        pre_parts = None
    main_parts = main_s.split(".")
    if any(not p.isdigit() for p in main_parts):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in main_parts]
    while len(nums) < 3:
        nums.append(0)
    return tuple(nums), pre_parts


def compare_versions(a: str, b: str) -> int:
    try:
        ma, pa = _split_version(a)
        mb, pb = _split_version(b)
    except ValueError:
        if a < b:
            return -1
        if a > b:
            return 1
        return 0
    if ma < mb:
        return -1
    if ma > mb:
        return 1

    if pa is None and pb is None:
        return 0
    if pa is None:
        return 1
    if pb is None:
        return -1

    for i in range(max(len(pa), len(pb))):
        if i >= len(pa):
            return -1
        if i >= len(pb):
            return 1
        x = pa[i]
        y = pb[i]
        x_num = x.isdigit()
        y_num = y.isdigit()
        if x_num and y_num:
            xi = int(x)
            yi = int(y)
            if xi < yi:
                return -1
            if xi > yi:
                return 1
            continue
        if x_num and not y_num:
            return -1
        if not x_num and y_num:
            return 1
        if x < y:
            return -1
        if x > y:
            return 1
    return 0


def sort_versions(versions: Iterable[str], *, reverse: bool = False) -> list[str]:
    return sorted(versions, key=cmp_to_key(compare_versions), reverse=reverse)


def _partial(base: str) -> tuple[list[int], int, str | None]:
    """Parse "1", "1.2", "1.x", "1.2.3-rc.1" into (numbers, given part count, prerelease)."""
    raw = _strip_v(base).split("+", 1)[0]
    pre: str | None = None
    if "-" in raw:
        raw, pre = raw.split("-", 1)
    parts = raw.split(".") if raw else []
    nums: list[int] = []
    for part in parts:
        if part in _WILDCARDS:
            break
        if not part.isdigit():
            raise ValueError(f"Unsupported version format: {base!r}")
        nums.append(int(part))
    given = len(nums)
    if given > 3:
        raise ValueError(f"Unsupported version format: {base!r}")
    while len(nums) < 3:
        nums.append(0)
    return nums, given, pre


def _fmt(nums: list[int], pre: str | None = None) -> str:
    core = f"{nums[0]}.{nums[1]}.{nums[2]}"
    return f"{core}-{pre}" if pre else core


def _expand_caret(spec: str) -> list[str]:
    nums, given, pre = _partial(spec[1:].strip())
    major, minor, patch = nums
    lower = f">={_fmt(nums, pre)}"
    if major > 0 or given <= 1:
        upper = f"<{major + 1}.0.0"
    elif minor > 0 or given == 2:
        upper = f"<0.{minor + 1}.0"
    else:
        upper = f"<0.0.{patch + 1}"
    return [lower, upper]


def _expand_tilde(spec: str) -> list[str]:
    nums, given, pre = _partial(spec[1:].lstrip(">").strip())
    major, minor, _ = nums
    lower = f">={_fmt(nums, pre)}"
    if given <= 1:
        upper = f"<{major + 1}.0.0"
    else:
        upper = f"<{major}.{minor + 1}.0"
    return [lower, upper]


def _expand_partial(op: str, rhs: str) -> list[str]:
    nums, given, pre = _partial(rhs)
    if given == 3 or pre:
        return [f"{op}{_fmt(nums, pre)}"]
    if given == 0:
        return [] if op in ("", "=", "==", ">=", "<=") else ["<0.0.0"]
    major, minor, _ = nums
    upper = [major + 1, 0, 0] if given == 1 else [major, minor + 1, 0]
    if op in ("", "=", "=="):
        return [f">={_fmt(nums)}", f"<{_fmt(upper)}"]
    if op == ">":
        return [f">={_fmt(upper)}"]
    if op == "<=":
        return [f"<{_fmt(upper)}"]
    return [f"{op}{_fmt(nums)}"]


def _tokens(specifier: str) -> list[str]:
    s = specifier.replace(",", " ")
    raw_tokens = [t for t in s.split() if t]
    tokens: list[str] = []
    pending_op = ""
    for token in raw_tokens:
        if token in _OPERATORS or token in ("^", "~"):
            pending_op += token
            continue
        tokens.append(pending_op + token)
        pending_op = ""
    if pending_op:
        tokens.append(pending_op)
    return tokens


def _split_specifier(specifier: str) -> list[str]:
    s = specifier.strip()
    if not s:
        return ["latest"]
    tokens = _tokens(s)
    if not tokens:
        return ["latest"]
    if len(tokens) == 3 and tokens[1] == "-":
        # hyphen range: "1.2.3 - 2.3.4"
        return _expand_partial(">=", tokens[0]) + _expand_partial("<=", tokens[2])
    out: list[str] = []
    for token in tokens:
        if token.lower() in ("latest", "*", "x"):
            continue
        try:
            if token.startswith("^"):
                out.extend(_expand_caret(token))
                continue
            if token.startswith("~"):
                out.extend(_expand_tilde(token))
                continue
        except ValueError as e:
            raise ValueError(f"Invalid version requirement: {token!r}") from e
        m = _COMPARATOR_RE.match(token)
        if not m:
            raise ValueError(f"Invalid version requirement: {token!r}")
        try:
            out.extend(_expand_partial(m.group(1) or "", m.group(2)))
        except ValueError as e:
            raise ValueError(f"Invalid version requirement: {token!r}") from e
    return out


def _satisfies_comparators(version: str, comparators: list[str]) -> bool:
    for token in comparators:
        m = _COMPARATOR_RE.match(token.strip())
        if not m:
            return False

        op = m.group(1) or "="
        rhs = m.group(2)
        cmp = compare_versions(version, rhs)

        if op in ("=", "=="):
            if cmp != 0:
                return False
            continue
        if op == ">":
            if cmp <= 0:
                return False
            continue
        if op == ">=":
            if cmp < 0:
                return False
            continue
        if op == "<":
            if cmp >= 0:
                return False
            continue
        if op == "<=":
            if cmp > 0:
                return False
            continue
        return False
    return True


def _prerelease_allowed(version: str, comparators: list[str]) -> bool:
    # A prerelease only matches when a comparator names a prerelease on the same MAJOR.MINOR.PATCH.
    core = _split_version(version)[0]
    for token in comparators:
        m = _COMPARATOR_RE.match(token.strip())
        if not m:
            continue
        try:
            nums, pre = _split_version(m.group(2))
        except ValueError:
            continue
        if pre is not None and nums == core:
            return True
    return False


def version_satisfies(version: str, specifier: str, *, include_prerelease: bool = False) -> bool:
    try:
        _split_version(version)
    except ValueError:
        return False
    for alternative in specifier.split("||"):
        try:
            comparators = _split_specifier(alternative)
        except ValueError:
            return False
        if is_prerelease(version) and not include_prerelease and not _prerelease_allowed(version, comparators):
            continue
        if _satisfies_comparators(version, comparators):
            return True
    return False


def validate_range(specifier: str) -> None:
    for alternative in specifier.split("||"):
        _split_specifier(alternative)


def max_satisfying(versions: Iterable[str], specifier: str) -> str | None:
    matched = [v for v in versions if version_satisfies(v, specifier)]
    if not matched:
        return None
    return sort_versions(matched, reverse=True)[0]
