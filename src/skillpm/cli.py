from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .cache import clean_cache
from .config import Config, apply_env, config_path, load_config, resolve_cache_dir, save_config
from .errors import SkillpmError
from .installer import BatchResult, InstallResult, SkillInfo, SkillInstaller


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _parse_registry(s: str) -> tuple[str, str]:
    if "=" not in s:
        raise SkillpmError(f"Expected name=host for --registry, got {s!r}")
    name, host = s.split("=", 1)
    name = name.strip().lower()
    host = host.strip()
    if not name or not host:
        raise SkillpmError(f"Expected name=host for --registry, got {s!r}")
    return name, host


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env(base)
    if getattr(args, "cache_dir", None):
        cfg = replace(cfg, cache_dir=args.cache_dir)
    if getattr(args, "timeout_s", None) is not None:
        cfg = replace(cfg, timeout_s=args.timeout_s)
    if getattr(args, "registry", None):
        cfg = replace(cfg, default_registry=args.registry)
    if getattr(args, "jobs", None) is not None:
        cfg = replace(cfg, jobs=args.jobs)
    return cfg


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillpm",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Declarative installer for agent skills hosted in git repositories or archives.",
        epilog=textwrap.dedent(
            """\
            Reference forms:
              github:owner/repo[/path][@version]   owner/repo[/path][@version]
              git@host:owner/repo.git[@version]    https://github.com/owner/repo/tree/<branch>/<path>
              https://host/skill-1.2.0.tar.gz      oss://bucket/key.zip   s3://bucket/key.tgz

            Environment variables:
              SKILLPM_CONFIG_PATH, SKILLPM_CACHE_DIR, SKILLPM_DEFAULT_REGISTRY, SKILLPM_TIMEOUT_S
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser) -> None:
        # Accepted both before and after the subcommand.
        parser.add_argument("-C", "--project-dir", default=argparse.SUPPRESS, help="Project root holding skills.json")
        parser.add_argument("--cache-dir", default=argparse.SUPPRESS, help="Content cache directory")
        parser.add_argument("--timeout-s", type=float, default=argparse.SUPPRESS, help="Network timeout in seconds")
        parser.add_argument("--registry", default=argparse.SUPPRESS, help="Default registry for owner/repo shorthand")
        parser.add_argument("-v", "--verbose", action="count", default=argparse.SUPPRESS, help="More logging (-vv for debug)")

    _add_runtime_overrides(p)
    p.add_argument("--version", action="version", version=f"skillpm {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--cache-dir")
    cfg_set.add_argument("--default-registry")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--jobs", type=int)
    cfg_set.add_argument("--strict-latest", action=argparse.BooleanOptionalAction, default=None)
    cfg_set.add_argument(
        "--add-registry",
        action="append",
        default=[],
        metavar="NAME=HOST",
        help="Register an extra git host, e.g. corp=git.example.com (repeatable)",
    )

    # cache
    cache = sub.add_parser("cache", help="Inspect or clear the content cache")
    cache_sub = cache.add_subparsers(dest="subcmd", required=True)
    _add_runtime_overrides(cache_sub.add_parser("dir", help="Print cache directory"))
    _add_runtime_overrides(cache_sub.add_parser("clean", help="Delete every cached entry"))

    install = sub.add_parser("install", aliases=["i"], help="Install a skill, or every skill in skills.json")
    _add_runtime_overrides(install)
    install.add_argument("ref", nargs="?", help="Skill reference; omit to install everything declared")
    install.add_argument("--name", help="Install under this name (default: last path segment or repo)")
    install.add_argument("--force", action="store_true", help="Reinstall even if the lock already matches")
    install.add_argument("--no-save", action="store_true", help="Do not record the reference in skills.json")
    install.add_argument("-j", "--jobs", type=int, help="Parallel installs when installing everything")
    install.add_argument("--json", action="store_true", help="Output JSON")

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Remove an installed skill")
    _add_runtime_overrides(uninstall)
    uninstall.add_argument("name", help="Installed skill name")
    uninstall.add_argument("--json", action="store_true", help="Output JSON")

    update = sub.add_parser("update", aliases=["up"], help="Re-resolve declared references and reinstall changes")
    _add_runtime_overrides(update)
    update.add_argument("name", nargs="?", help="Only update this skill")
    update.add_argument("-j", "--jobs", type=int, help="Parallel updates")
    update.add_argument("--json", action="store_true", help="Output JSON")

    outdated = sub.add_parser("outdated", help="Show skills with newer versions available")
    _add_runtime_overrides(outdated)
    outdated.add_argument("--json", action="store_true", help="Output JSON")

    ls = sub.add_parser("list", aliases=["ls"], help="List declared and installed skills")
    _add_runtime_overrides(ls)
    ls.add_argument("--json", action="store_true", help="Output JSON")

    info = sub.add_parser("info", help="Show one skill's declaration and lock entry")
    _add_runtime_overrides(info)
    info.add_argument("name", help="Skill name")
    info.add_argument("--json", action="store_true", help="Output JSON")

    return p


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def _make_installer(args: argparse.Namespace) -> SkillInstaller:
    cfg = _merge_cfg(load_config(), args)
    project_dir = Path(getattr(args, "project_dir", None) or ".")
    return SkillInstaller.from_config(project_dir, cfg)


def _result_json(r: InstallResult) -> dict[str, Any]:
    return {
        "name": r.name,
        "source": r.ref.source,
        "version": r.resolved.display_ref,
        "commit": r.resolved.commit,
        "status": r.status,
        "path": str(r.path),
    }


def _info_json(s: SkillInfo) -> dict[str, Any]:
    return {
        "name": s.name,
        "declared": s.declared,
        "path": str(s.path),
        "installed": s.installed,
        "lock": s.lock.to_json() if s.lock else None,
    }


def _print_batch(batch: BatchResult, *, as_json: bool) -> int:
    if as_json:
        payload = {
            "results": [_result_json(r) for r in batch.results],
            "failures": batch.failures,
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0 if batch.ok else 1

    rows = [["NAME", "VERSION", "STATUS"]]
    for r in batch.results:
        rows.append([r.name, r.resolved.display_ref, r.status])
    if len(rows) > 1:
        _print_table(rows)
    for name, reason in batch.failures.items():
        print(f"failed: {name}: {reason}", file=sys.stderr)
    if not batch.results and not batch.failures:
        print("No skills declared in skills.json")
    return 0 if batch.ok else 1


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        print(json.dumps(asdict(cfg), indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        registries = dict(cfg.registries)
        for item in args.add_registry:
            name, host = _parse_registry(item)
            registries[name] = host
        new_cfg = Config(
            cache_dir=args.cache_dir if args.cache_dir is not None else cfg.cache_dir,
            default_registry=args.default_registry or cfg.default_registry,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
            strict_latest=args.strict_latest if args.strict_latest is not None else cfg.strict_latest,
            jobs=args.jobs if args.jobs is not None else cfg.jobs,
            registries=registries,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_cache(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    root = resolve_cache_dir(cfg)
    if args.subcmd == "dir":
        print(str(root))
        return 0
    if args.subcmd == "clean":
        removed = clean_cache(root)
        print(f"Removed {removed} cache director{'y' if removed == 1 else 'ies'} from {root}")
        return 0
    raise AssertionError("unreachable")


def cmd_install(args: argparse.Namespace) -> int:
    with _make_installer(args) as installer:
        if not args.ref:
            return _print_batch(installer.install_all(jobs=args.jobs, force=args.force), as_json=args.json)
        result = installer.install(args.ref, name=args.name, force=args.force, save=not args.no_save)

    if args.json:
        print(json.dumps(_result_json(result), indent=2, sort_keys=True))
        return 0
    if result.changed:
        print(f"{result.status}: {result.name}@{result.resolved.display_ref} -> {result.path}")
    else:
        print(f"unchanged: {result.name}@{result.resolved.display_ref}")
    return 0


def cmd_uninstall(args: argparse.Namespace) -> int:
    with _make_installer(args) as installer:
        removed = installer.uninstall(args.name)
    if args.json:
        print(json.dumps({"name": args.name, "removed": removed}, indent=2, sort_keys=True))
        return 0
    if removed:
        print(f"removed: {args.name}")
    else:
        print(f"warning: {args.name} is not installed", file=sys.stderr)
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    with _make_installer(args) as installer:
        batch = installer.update(args.name, jobs=args.jobs)
    return _print_batch(batch, as_json=args.json)


def cmd_outdated(args: argparse.Namespace) -> int:
    with _make_installer(args) as installer:
        items = installer.outdated()

    if args.json:
        print(json.dumps([asdict(item) for item in items], indent=2, sort_keys=True))
        return 0
    if not items:
        print("No skills declared in skills.json")
        return 0

    rows = [["NAME", "CURRENT", "WANTED", "LATEST", "STATUS"]]
    for item in items:
        if item.error:
            status = f"error: {item.error}"
        else:
            status = "update available" if item.update_available else "up to date"
        rows.append([item.name, item.current or "-", item.wanted or "-", item.latest or "-", status])
    _print_table(rows)
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    with _make_installer(args) as installer:
        skills = installer.list_installed()

    if args.json:
        print(json.dumps([_info_json(s) for s in skills], indent=2, sort_keys=True))
        return 0
    if not skills:
        print("No skills installed")
        return 0

    rows = [["NAME", "VERSION", "SOURCE", "INSTALLED"]]
    for s in skills:
        version = s.lock.version if s.lock else "-"
        source = s.lock.source if s.lock else (s.declared or "-")
        rows.append([s.name, version, source, "yes" if s.installed else "no"])
    _print_table(rows)
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    with _make_installer(args) as installer:
        skill = installer.info(args.name)

    if args.json:
        print(json.dumps(_info_json(skill), indent=2, sort_keys=True))
        return 0

    print(f"name: {skill.name}")
    print(f"declared: {skill.declared or '-'}")
    print(f"path: {skill.path}")
    print(f"installed: {'yes' if skill.installed else 'no'}")
    if skill.lock:
        print(f"source: {skill.lock.source}")
        print(f"requested: {skill.lock.requested_version}")
        print(f"version: {skill.lock.version}")
        print(f"resolved: {skill.lock.resolved}")
        print(f"commit: {skill.lock.commit or '-'}")
        print(f"installed_at: {skill.lock.installed_at or '-'}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(getattr(args, "verbose", 0) or 0)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "cache":
            return cmd_cache(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd in ("update", "up"):
            return cmd_update(args)
        if args.cmd == "outdated":
            return cmd_outdated(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "info":
            return cmd_info(args)
        raise AssertionError("unreachable")
    except SkillpmError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
