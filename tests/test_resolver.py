import unittest

from skillpm.errors import NoMatchingVersion, VersionNotFound
from skillpm.git import RemoteRefs, RemoteTag
from skillpm.refs import VersionKind, parse_ref, parse_version_spec
from skillpm.resolver import VersionResolver


class FakeLister:
    def __init__(self, refs: RemoteRefs, *, known_commits: set[str] | None = None) -> None:
        self.refs = refs
        self.known_commits = known_commits
        self.list_calls = 0

    def list_refs(self, url: str) -> RemoteRefs:
        self.list_calls += 1
        return self.refs

    def commit_exists(self, url: str, commit: str) -> bool | None:
        if self.known_commits is None:
            return None
        return any(c.startswith(commit) for c in self.known_commits)


def _tags(*names: str) -> tuple[RemoteTag, ...]:
    return tuple(RemoteTag(name=n, commit=f"sha-{n}") for n in names)


class TestVersionResolver(unittest.TestCase):
    def test_caret_picks_highest_stable_match(self) -> None:
        lister = FakeLister(RemoteRefs(tags=_tags("1.0.0", "1.2.0", "2.0.0", "1.3.0-beta")))
        resolved = VersionResolver(lister).resolve(parse_ref("acme/skills@^1.0.0"))
        self.assertEqual(resolved.display_ref, "1.2.0")
        self.assertEqual(resolved.commit, "sha-1.2.0")
        self.assertIs(resolved.kind, VersionKind.RANGE)

    def test_latest_picks_highest_version_overall(self) -> None:
        lister = FakeLister(RemoteRefs(tags=_tags("v0.9.0", "v1.0.0", "v1.1.0-rc.1", "nightly")))
        resolved = VersionResolver(lister).resolve(parse_ref("acme/skills"))
        self.assertEqual(resolved.display_ref, "v1.1.0-rc.1")

    def test_latest_includes_prerelease_above_stable(self) -> None:
        lister = FakeLister(RemoteRefs(tags=_tags("1.0.0", "2.0.0-beta")))
        resolved = VersionResolver(lister).resolve(parse_ref("acme/skills@latest"))
        self.assertEqual(resolved.display_ref, "2.0.0-beta")
        self.assertIs(resolved.kind, VersionKind.LATEST)

        lister = FakeLister(RemoteRefs(tags=_tags("0.9.0", "1.0.0")))
        self.assertEqual(VersionResolver(lister).resolve(parse_ref("acme/skills")).display_ref, "1.0.0")

    def test_latest_uses_prerelease_when_nothing_stable(self) -> None:
        lister = FakeLister(RemoteRefs(tags=_tags("2.0.0-beta.1", "2.0.0-beta.2")))
        resolved = VersionResolver(lister).resolve(parse_ref("acme/skills@latest"))
        self.assertEqual(resolved.display_ref, "2.0.0-beta.2")

    def test_latest_falls_back_to_default_branch(self) -> None:
        refs = RemoteRefs(tags=_tags("nightly"), branches={"main": "abc123", "dev": "def456"}, default_branch="main", head="abc123")
        resolved = VersionResolver(FakeLister(refs)).resolve(parse_ref("acme/skills"))
        self.assertEqual(resolved.display_ref, "main")
        self.assertEqual(resolved.commit, "abc123")
        self.assertTrue(resolved.is_branch)

    def test_strict_latest_refuses_branch_fallback(self) -> None:
        refs = RemoteRefs(branches={"main": "abc123"}, default_branch="main", head="abc123")
        with self.assertRaises(NoMatchingVersion):
            VersionResolver(FakeLister(refs), strict_latest=True).resolve(parse_ref("acme/skills"))

    def test_range_without_semver_tags_fails(self) -> None:
        refs = RemoteRefs(branches={"main": "abc123"}, default_branch="main", head="abc123")
        with self.assertRaises(NoMatchingVersion):
            VersionResolver(FakeLister(refs)).resolve(parse_ref("acme/skills@^1.0.0"))

    def test_exact_tag_with_and_without_v_prefix(self) -> None:
        lister = FakeLister(RemoteRefs(tags=_tags("v1.2.3", "2.0.0")))
        resolver = VersionResolver(lister)
        self.assertEqual(resolver.resolve(parse_ref("acme/skills@1.2.3")).display_ref, "v1.2.3")
        self.assertEqual(resolver.resolve(parse_ref("acme/skills@v2.0.0")).display_ref, "2.0.0")
        with self.assertRaises(VersionNotFound):
            resolver.resolve(parse_ref("acme/skills@3.0.0"))

    def test_exact_is_stable_across_calls(self) -> None:
        resolver = VersionResolver(FakeLister(RemoteRefs(tags=_tags("1.0.0"))))
        ref = parse_ref("acme/skills@1.0.0")
        self.assertEqual(resolver.resolve(ref), resolver.resolve(ref))

    def test_bare_token_falls_back_to_branch(self) -> None:
        refs = RemoteRefs(tags=_tags("stable"), branches={"main": "abc123"})
        resolver = VersionResolver(FakeLister(refs))
        self.assertEqual(resolver.resolve(parse_ref("acme/skills@stable")).commit, "sha-stable")
        main = resolver.resolve(parse_ref("acme/skills@main"))
        self.assertIs(main.kind, VersionKind.BRANCH)
        self.assertEqual(main.commit, "abc123")

    def test_branch(self) -> None:
        refs = RemoteRefs(branches={"dev": "def456"})
        resolver = VersionResolver(FakeLister(refs))
        self.assertEqual(resolver.resolve(parse_ref("acme/skills@branch:dev")).commit, "def456")
        with self.assertRaises(VersionNotFound):
            resolver.resolve(parse_ref("acme/skills@branch:gone"))

    def test_commit_verified_when_lister_knows(self) -> None:
        lister = FakeLister(RemoteRefs(), known_commits={"abcdef0123"})
        resolver = VersionResolver(lister)
        self.assertEqual(resolver.resolve(parse_ref("acme/skills@commit:abcdef0")).commit, "abcdef0")
        with self.assertRaises(VersionNotFound):
            resolver.resolve(parse_ref("acme/skills@commit:1234567"))

    def test_commit_trusted_when_unverifiable(self) -> None:
        resolver = VersionResolver(FakeLister(RemoteRefs()))
        resolved = resolver.resolve(parse_ref("acme/skills@commit:1234567"))
        self.assertIs(resolved.kind, VersionKind.COMMIT)
        self.assertEqual(resolved.display_ref, "1234567")

    def test_tie_break_prefers_later_timestamp_then_name(self) -> None:
        tags = (
            RemoteTag(name="1.0.0", commit="old", timestamp=100.0),
            RemoteTag(name="v1.0.0", commit="new", timestamp=200.0),
        )
        resolver = VersionResolver(FakeLister(RemoteRefs(tags=tags)))
        self.assertEqual(resolver.resolve(parse_ref("acme/skills@^1.0.0")).commit, "new")

        untimed = (RemoteTag(name="v1.0.0", commit="b"), RemoteTag(name="1.0.0", commit="a"))
        resolver = VersionResolver(FakeLister(RemoteRefs(tags=untimed)))
        self.assertEqual(resolver.resolve(parse_ref("acme/skills")).commit, "b")

    def test_listing_is_cached_per_url_until_cleared(self) -> None:
        lister = FakeLister(RemoteRefs(tags=_tags("1.0.0")))
        resolver = VersionResolver(lister)
        resolver.resolve(parse_ref("acme/skills@^1.0.0"))
        resolver.resolve(parse_ref("acme/skills/other@1.0.0"))
        self.assertEqual(lister.list_calls, 1)
        resolver.clear()
        resolver.resolve(parse_ref("acme/skills"))
        self.assertEqual(lister.list_calls, 2)

    def test_spec_override_and_archives(self) -> None:
        lister = FakeLister(RemoteRefs(tags=_tags("1.0.0", "2.0.0")))
        resolver = VersionResolver(lister)
        pinned = parse_ref("acme/skills@1.0.0")
        self.assertEqual(resolver.resolve(pinned, parse_version_spec("latest")).display_ref, "2.0.0")

        archive = resolver.resolve(parse_ref("https://cdn.example.com/pdf-1.4.0.zip"))
        self.assertEqual(archive.display_ref, "1.4.0")
        self.assertIsNone(archive.commit)
        self.assertEqual(resolver.resolve(parse_ref("https://cdn.example.com/pdf.zip")).display_ref, "latest")
        self.assertEqual(lister.list_calls, 1)


if __name__ == "__main__":
    unittest.main()
