import io
import tarfile
import tempfile
import threading
import time
import unittest
from dataclasses import replace
from pathlib import Path

from skillpm.cache import ContentCache
from skillpm.download import Download
from skillpm.errors import FetchFailed, SubPathNotFound
from skillpm.refs import VersionKind, parse_ref
from skillpm.resolver import ResolvedVersion


class FakeGit:
    def __init__(self, trees: dict[str, dict[str, str | bytes]], *, delay_s: float = 0.0) -> None:
        self.trees = trees
        self.delay_s = delay_s
        self.clones: list[tuple[str, str | None, str | None]] = []
        self._lock = threading.Lock()

    def clone(self, url: str, dest: Path, *, ref: str | None, commit: str | None) -> str:
        with self._lock:
            self.clones.append((url, ref, commit))
        if self.delay_s:
            time.sleep(self.delay_s)
        files = self.trees[commit or ""]
        dest.mkdir(parents=True)
        (dest / ".git").mkdir()
        (dest / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
        for rel, data in files.items():
            target = dest / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data if isinstance(data, bytes) else data.encode("utf-8"))
        return commit or "0" * 40


class FakeDownloader:
    def __init__(self, payload: bytes | None) -> None:
        self.payload = payload
        self.urls: list[str] = []

    def download(self, url: str, dest_file: Path) -> Download:
        self.urls.append(url)
        if self.payload is None:
            raise FetchFailed(url, "HTTP 404: Not Found", status_code=404)
        dest_file.write_bytes(self.payload)
        return Download(path=dest_file, sha256="ab" * 32, size_bytes=len(self.payload))


def _tgz(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


TREE: dict[str, str | bytes] = {
    "formatter/SKILL.md": "# formatter\n",
    "formatter/scripts/fmt.sh": "echo fmt\n",
    "formatter/assets/logo.png": bytes(range(256)) * 4,
    "linter/SKILL.md": "# linter\n",
}


def _tree_bytes(root: Path) -> dict[str, bytes]:
    return {p.relative_to(root).as_posix(): p.read_bytes() for p in root.rglob("*") if p.is_file()}


def _as_bytes(files: dict[str, str | bytes]) -> dict[str, bytes]:
    return {k: v if isinstance(v, bytes) else v.encode("utf-8") for k, v in files.items()}


class TestContentCacheGit(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.git = FakeGit({"c0ffee": TREE})
        self.cache = ContentCache(self.root / "cache", git=self.git, downloader=FakeDownloader(None))
        self.ref = parse_ref("github:acme/skills/formatter@^2.0.0")
        self.resolved = ResolvedVersion(display_ref="v2.1.0", commit="c0ffee", kind=VersionKind.RANGE)

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_fetch_populates_once_and_strips_git_dir(self) -> None:
        first = self.cache.fetch(self.ref, self.resolved)
        self.assertFalse(first.cached)
        self.assertEqual(first.commit, "c0ffee")
        self.assertEqual(first.local_path, self.root / "cache" / "github" / "acme" / "skills" / "c0ffee" / "content")
        self.assertFalse((first.local_path / ".git").exists())
        self.assertEqual(self.git.clones, [("https://github.com/acme/skills.git", "v2.1.0", "c0ffee")])

        second = self.cache.fetch(self.ref, self.resolved)
        self.assertTrue(second.cached)
        self.assertEqual(second.local_path, first.local_path)
        self.assertEqual(len(self.git.clones), 1)
        self.assertTrue(self.cache.has(self.ref, self.resolved))

    def test_copy_into_copies_only_sub_path(self) -> None:
        dest = self.root / "project" / ".skills" / "formatter"
        self.cache.copy_into(self.ref, self.resolved, dest)
        self.assertEqual((dest / "SKILL.md").read_text(encoding="utf-8"), "# formatter\n")
        self.assertEqual((dest / "scripts" / "fmt.sh").read_text(encoding="utf-8"), "echo fmt\n")
        self.assertFalse((dest / "linter").exists())
        leftovers = [p.name for p in dest.parent.iterdir() if p.name != "formatter"]
        self.assertEqual(leftovers, [])

    def test_copy_into_replaces_existing_destination(self) -> None:
        dest = self.root / "out"
        dest.mkdir()
        (dest / "stale.txt").write_text("old", encoding="utf-8")
        self.cache.copy_into(self.ref, self.resolved, dest)
        self.assertFalse((dest / "stale.txt").exists())
        self.assertTrue((dest / "SKILL.md").is_file())

    def test_copy_into_replaces_a_plain_file_without_leftovers(self) -> None:
        out = self.root / "work" / "out"
        out.parent.mkdir()
        out.write_text("not a directory", encoding="utf-8")
        self.cache.copy_into(self.ref, self.resolved, out)
        self.assertTrue((out / "SKILL.md").is_file())
        self.assertEqual([p.name for p in out.parent.iterdir()], ["out"])

    def test_missing_sub_path(self) -> None:
        ref = parse_ref("github:acme/skills/nope@^2.0.0")
        dest = self.root / "out"
        with self.assertRaises(SubPathNotFound):
            self.cache.copy_into(ref, self.resolved, dest)
        self.assertFalse(dest.exists())
        escaping = replace(parse_ref("github:acme/skills/formatter"), sub_path="formatter/../../..")
        with self.assertRaises(SubPathNotFound):
            self.cache.copy_into(escaping, self.resolved, dest)

    def test_whole_repo_copy_without_sub_path(self) -> None:
        ref = parse_ref("github:acme/skills@^2.0.0")
        dest = self.root / "all"
        self.cache.copy_into(ref, self.resolved, dest)
        self.assertEqual(_tree_bytes(dest), _as_bytes(TREE))

        sub = self.root / "formatter"
        self.cache.copy_into(self.ref, self.resolved, sub)
        expected = {k[len("formatter/") :]: v for k, v in _as_bytes(TREE).items() if k.startswith("formatter/")}
        self.assertEqual(_tree_bytes(sub), expected)

    def test_concurrent_fetch_yields_one_entry(self) -> None:
        self.git.delay_s = 0.05
        results = []
        errors = []

        def worker() -> None:
            try:
                results.append(self.cache.fetch(self.ref, self.resolved))
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(len({r.local_path for r in results}), 1)
        parent = self.root / "cache" / "github" / "acme" / "skills"
        self.assertEqual([p.name for p in parent.iterdir()], ["c0ffee"])
        self.assertTrue((results[0].local_path / "formatter" / "SKILL.md").is_file())

    def test_failed_clone_leaves_no_entry(self) -> None:
        resolved = ResolvedVersion(display_ref="v9.0.0", commit="missing", kind=VersionKind.EXACT)
        with self.assertRaises(KeyError):
            self.cache.fetch(self.ref, resolved)
        parent = self.root / "cache" / "github" / "acme" / "skills"
        self.assertEqual(list(parent.iterdir()), [])

    def test_remove_and_clean(self) -> None:
        self.cache.fetch(self.ref, self.resolved)
        self.assertTrue(self.cache.remove(self.ref, self.resolved))
        self.assertFalse(self.cache.has(self.ref, self.resolved))
        self.assertFalse(self.cache.remove(self.ref, self.resolved))
        self.cache.fetch(self.ref, self.resolved)
        self.assertEqual(self.cache.clean(), 1)
        self.assertEqual(list((self.root / "cache").iterdir()), [])


class TestContentCacheArchive(unittest.TestCase):
    def test_archive_single_root_is_unwrapped(self) -> None:
        files = {"SKILL.md": b"# pdf\n", "lib/x.py": b"x\n", "lib/blob.bin": bytes(range(256)) * 8}
        payload = _tgz({f"pdf-1.0.0/{name}": data for name, data in files.items()})
        downloader = FakeDownloader(payload)
        with tempfile.TemporaryDirectory() as td:
            cache = ContentCache(Path(td) / "cache", git=FakeGit({}), downloader=downloader)
            ref = parse_ref("https://cdn.example.com/pdf-1.0.0.tar.gz")
            resolved = ResolvedVersion(display_ref="1.0.0", commit=None, kind=VersionKind.EXACT)

            entry = cache.fetch(ref, resolved)
            self.assertEqual((entry.local_path / "SKILL.md").read_bytes(), b"# pdf\n")
            self.assertEqual(entry.digest, "sha256:" + "ab" * 32)
            self.assertIsNone(entry.commit)
            self.assertEqual(entry.key[-1], "1.0.0")

            dest = Path(td) / "skills" / "pdf"
            cache.copy_into(ref, resolved, dest)
            self.assertEqual(_tree_bytes(dest), files)
            self.assertEqual(downloader.urls, ["https://cdn.example.com/pdf-1.0.0.tar.gz"])

    def test_archive_download_failure_leaves_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "cache"
            cache = ContentCache(root, git=FakeGit({}), downloader=FakeDownloader(None))
            ref = parse_ref("https://cdn.example.com/pdf.zip")
            resolved = ResolvedVersion(display_ref="latest", commit=None, kind=VersionKind.EXACT)
            with self.assertRaises(FetchFailed):
                cache.fetch(ref, resolved)
            self.assertEqual([p for p in root.rglob("*") if p.is_file()], [])


if __name__ == "__main__":
    unittest.main()
