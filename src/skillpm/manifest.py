from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .config import DEFAULT_INSTALL_DIR
from .errors import SkillpmError
from .lockfile import _write_json_atomic

MANIFEST_FILENAME = "skills.json"


@dataclass(frozen=True)
class Manifest:
    """Declared skills of a project: name -> reference string."""

    skills: dict[str, str] = field(default_factory=dict)
    registry: str | None = None
    install_dir: str = DEFAULT_INSTALL_DIR

    def with_skill(self, name: str, ref: str) -> "Manifest":
        skills = dict(self.skills)
        skills[name] = ref
        return replace(self, skills=skills)

    def without_skill(self, name: str) -> "Manifest":
        skills = dict(self.skills)
        skills.pop(name, None)
        return replace(self, skills=skills)

    def to_json(self) -> dict[str, Any]:
        defaults: dict[str, Any] = {"installDir": self.install_dir}
        if self.registry:
            defaults["registry"] = self.registry
        return {
            "skills": {k: self.skills[k] for k in sorted(self.skills)},
            "defaults": defaults,
        }


def load_manifest(path: Path) -> Manifest:
    if not path.exists():
        return Manifest()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise SkillpmError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise SkillpmError(f"Invalid manifest {path}: expected a JSON object")

    skills = raw.get("skills")
    if not isinstance(skills, dict):
        skills = {}
    filtered: dict[str, str] = {}
    for key, value in skills.items():
        if not isinstance(key, str) or not isinstance(value, str):
            continue
        filtered[key] = value

    defaults = raw.get("defaults")
    if not isinstance(defaults, dict):
        defaults = {}
    registry = defaults.get("registry")
    install_dir = defaults.get("installDir")
    return Manifest(
        skills=filtered,
        registry=registry if isinstance(registry, str) and registry else None,
        install_dir=install_dir if isinstance(install_dir, str) and install_dir else DEFAULT_INSTALL_DIR,
    )


def save_manifest(path: Path, manifest: Manifest) -> Path:
    _write_json_atomic(path, manifest.to_json())
    return path
