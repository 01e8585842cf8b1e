import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skillpm.config import Config, apply_env, config_path, load_config, resolve_cache_dir, save_config
from skillpm.manifest import Manifest, load_manifest, save_manifest
from skillpm.errors import SkillpmError


class TestConfig(unittest.TestCase):
    def test_env_override_for_path(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "cfg.json"
            with patch.dict(os.environ, {"SKILLPM_CONFIG_PATH": str(path)}):
                self.assertEqual(config_path(), path)
                self.assertEqual(load_config(), Config())

    def test_save_and_load_ignores_unknown_keys(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "cfg.json"
            save_config(Config(cache_dir="/tmp/c", strict_latest=True, registries={"corp": "git.corp"}), path)
            raw = json.loads(path.read_text(encoding="utf-8"))
            raw["unknown"] = 1
            path.write_text(json.dumps(raw), encoding="utf-8")

            cfg = load_config(path)
            self.assertEqual(cfg.cache_dir, "/tmp/c")
            self.assertTrue(cfg.strict_latest)
            self.assertEqual(cfg.registries, {"corp": "git.corp"})
            self.assertFalse(path.with_suffix(".json.tmp").exists())

    def test_apply_env(self) -> None:
        env = {"SKILLPM_DEFAULT_REGISTRY": "gitlab", "SKILLPM_TIMEOUT_S": "12.5"}
        with patch.dict(os.environ, env):
            cfg = apply_env(Config())
        self.assertEqual(cfg.default_registry, "gitlab")
        self.assertEqual(cfg.timeout_s, 12.5)

        with patch.dict(os.environ, {"SKILLPM_TIMEOUT_S": "soon"}):
            self.assertEqual(apply_env(Config(timeout_s=7.0)).timeout_s, 7.0)

    def test_cache_dir_resolution_order(self) -> None:
        with patch.dict(os.environ, {"SKILLPM_CACHE_DIR": "/env/cache"}):
            self.assertEqual(resolve_cache_dir(Config(cache_dir="/explicit")), Path("/explicit"))
            self.assertEqual(resolve_cache_dir(Config()), Path("/env/cache"))
        with patch.dict(os.environ, {}, clear=True):
            self.assertTrue(str(resolve_cache_dir(Config())).endswith("skillpm"))


class TestManifest(unittest.TestCase):
    def test_round_trip(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "skills.json"
            self.assertEqual(load_manifest(path), Manifest())
            save_manifest(path, Manifest(skills={"b": "acme/b", "a": "acme/a@^1.0.0"}, registry="gitlab"))
            raw = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(list(raw["skills"]), ["a", "b"])
            self.assertEqual(raw["defaults"], {"installDir": ".skills", "registry": "gitlab"})
            self.assertEqual(load_manifest(path).registry, "gitlab")

    def test_non_string_entries_are_dropped(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "skills.json"
            path.write_text(json.dumps({"skills": {"ok": "acme/ok", "bad": 3}, "defaults": []}), encoding="utf-8")
            manifest = load_manifest(path)
            self.assertEqual(manifest.skills, {"ok": "acme/ok"})
            self.assertEqual(manifest.install_dir, ".skills")

    def test_invalid_json_raises(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "skills.json"
            path.write_text("{", encoding="utf-8")
            with self.assertRaises(SkillpmError):
                load_manifest(path)


if __name__ == "__main__":
    unittest.main()
