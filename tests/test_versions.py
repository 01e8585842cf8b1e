import unittest

from skillpm.versions import (
    compare_versions,
    is_exact_version,
    is_prerelease,
    max_satisfying,
    parse_version,
    sort_versions,
    validate_range,
    version_satisfies,
)


class TestParseVersion(unittest.TestCase):
    def test_strips_v_prefix_and_build_metadata(self) -> None:
        self.assertEqual(parse_version("v1.2.3"), "1.2.3")
        self.assertEqual(parse_version("1.2.3+build.7"), "1.2.3")
        self.assertEqual(parse_version("V2.0.0-rc.1"), "2.0.0-rc.1")

    def test_rejects_non_semver_tags(self) -> None:
        for tag in ("latest", "release-2024", "1.2", "v1", "1.02.3", "", "vv1.0.0"):
            with self.subTest(tag=tag):
                self.assertIsNone(parse_version(tag))

    def test_exact_and_prerelease_helpers(self) -> None:
        self.assertTrue(is_exact_version("v1.0.0"))
        self.assertTrue(is_exact_version("1.2"))
        self.assertFalse(is_exact_version("^1.0.0"))
        self.assertFalse(is_exact_version("main"))
        self.assertTrue(is_prerelease("1.3.0-beta"))
        self.assertFalse(is_prerelease("1.3.0"))


class TestCompareVersions(unittest.TestCase):
    def test_numeric_ordering(self) -> None:
        self.assertEqual(compare_versions("1.10.0", "1.9.0"), 1)
        self.assertEqual(compare_versions("v1.0.0", "1.0.0"), 0)
        self.assertEqual(compare_versions("1.0", "1.0.0"), 0)

    def test_prerelease_ordering(self) -> None:
        ordered = ["1.0.0-alpha", "1.0.0-alpha.1", "1.0.0-alpha.beta", "1.0.0-beta", "1.0.0-beta.2", "1.0.0-rc.1", "1.0.0"]
        self.assertEqual(sort_versions(reversed(ordered)), ordered)


class TestVersionSatisfies(unittest.TestCase):
    def test_caret(self) -> None:
        self.assertTrue(version_satisfies("1.2.0", "^1.0.0"))
        self.assertFalse(version_satisfies("2.0.0", "^1.0.0"))
        self.assertTrue(version_satisfies("0.2.5", "^0.2.1"))
        self.assertFalse(version_satisfies("0.3.0", "^0.2.1"))
        self.assertFalse(version_satisfies("0.0.4", "^0.0.3"))

    def test_tilde(self) -> None:
        self.assertTrue(version_satisfies("1.2.9", "~1.2.0"))
        self.assertFalse(version_satisfies("1.3.0", "~1.2.0"))

    def test_comparators_and_whitespace(self) -> None:
        self.assertTrue(version_satisfies("1.5.0", ">=1.0.0 <2.0.0"))
        self.assertTrue(version_satisfies("1.5.0", ">= 1.0.0, < 2.0.0"))
        self.assertFalse(version_satisfies("2.0.0", ">=1.0.0 <2.0.0"))

    def test_x_ranges_and_alternatives(self) -> None:
        self.assertTrue(version_satisfies("1.4.2", "1.x"))
        self.assertTrue(version_satisfies("1.4.2", "1.4.*"))
        self.assertFalse(version_satisfies("1.5.0", "1.4.x"))
        self.assertTrue(version_satisfies("3.1.0", "^1.0.0 || ^3.0.0"))
        self.assertFalse(version_satisfies("2.1.0", "^1.0.0 || ^3.0.0"))

    def test_hyphen_range(self) -> None:
        self.assertTrue(version_satisfies("2.3.4", "1.2.3 - 2.3.4"))
        self.assertFalse(version_satisfies("2.3.5", "1.2.3 - 2.3.4"))

    def test_prereleases_excluded_unless_named(self) -> None:
        self.assertFalse(version_satisfies("1.3.0-beta", "^1.0.0"))
        self.assertTrue(version_satisfies("1.3.0-beta.2", ">=1.3.0-beta.1 <2.0.0"))
        self.assertFalse(version_satisfies("1.4.0-beta", ">=1.3.0-beta.1 <2.0.0"))
        self.assertTrue(version_satisfies("1.3.0-beta", "^1.0.0", include_prerelease=True))

    def test_max_satisfying_picks_highest_stable(self) -> None:
        versions = ["1.0.0", "1.2.0", "2.0.0", "1.3.0-beta"]
        self.assertEqual(max_satisfying(versions, "^1.0.0"), "1.2.0")
        self.assertIsNone(max_satisfying(versions, "^3.0.0"))

    def test_validate_range_rejects_garbage(self) -> None:
        validate_range("^1.2.3 || >=2.0.0 <3.0.0")
        with self.assertRaises(ValueError):
            validate_range("^banana")
        with self.assertRaises(ValueError):
            validate_range(">=1.0.0 <wat")


if __name__ == "__main__":
    unittest.main()
