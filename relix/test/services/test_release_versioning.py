"""Tests for release versions and v-numbers."""

from __future__ import annotations

import pytest

from relix.services.release.versioning import (
    ReleaseTitle,
    next_release_number,
    normalize_version,
    parse_release_title,
    release_title,
    validate_version,
    versions_match,
)


class TestTitles:
    def test_release_title(self) -> None:
        assert release_title("2.0.0", "develop", 3) == "release:2.0.0 develop v3"

    def test_parse_release_title(self) -> None:
        assert parse_release_title("release:2.0.0 develop v3") == ReleaseTitle("2.0.0", 3)
        assert parse_release_title("Release: 2.0.0 testing 12") == ReleaseTitle("2.0.0", 12)

    def test_legacy_title_counts_as_v1(self) -> None:
        assert parse_release_title("release:1.4.2") == ReleaseTitle("1.4.2", 1)

    def test_other_titles(self) -> None:
        assert parse_release_title("Merge branch 'feat/a'") is None
        assert parse_release_title("") is None


class TestVersions:
    @pytest.mark.parametrize(
        ("raw", "normalized"),
        [("4.05.01", "4.5.1"), ("4.0.0", "4.0.0"), ("010.2", "10.2"), (" 1.2 ", "1.2")],
    )
    def test_normalize(self, raw: str, normalized: str) -> None:
        assert normalize_version(raw) == normalized

    def test_versions_match(self) -> None:
        assert versions_match("4.05.01", "4.5.1")
        assert versions_match("4.5", "4.5.1")
        assert not versions_match("4.1", "4.10")
        assert not versions_match("4.5.1", "4.5.2")
        assert not versions_match("4.6", "4.5.1")

    @pytest.mark.parametrize("version", ["1.2", "4.5.1", "1.2.3.4"])
    def test_valid_versions(self, version: str) -> None:
        assert validate_version(version) is None

    @pytest.mark.parametrize("version", ["", "1", "v1.2", "1.2.3.4.5", "1.2-rc1"])
    def test_invalid_versions(self, version: str) -> None:
        assert validate_version(version) is not None


class TestNextReleaseNumber:
    def test_no_history(self) -> None:
        assert next_release_number([], "2.0.0") == 1

    def test_same_version_continues(self) -> None:
        titles = ["release:2.0.0 develop v2", "release:2.0.0 develop v1"]
        assert next_release_number(titles, "2.0.0") == 3

    def test_leading_zeros_are_the_same_version(self) -> None:
        assert next_release_number(["release:2.00.0 develop v4"], "2.0.0") == 5

    def test_new_version_restarts(self) -> None:
        assert next_release_number(["release:1.9.0 develop v7"], "2.0.0") == 1

    def test_only_the_newest_release_title_decides(self) -> None:
        titles = ["fix: typo", "release:1.9.0 develop v7", "release:2.0.0 develop v2"]
        assert next_release_number(titles, "2.0.0") == 1

    def test_non_release_titles_only(self) -> None:
        assert next_release_number(["fix: typo", "chore: bump"], "2.0.0") == 1
