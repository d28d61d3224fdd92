"""Tests for role path helpers."""

from access_schema.core.paths import ancestor_paths, has_wildcard, path_hash, slugify, split_path


class TestSlugify:
    def test_lowercases_and_hyphenates(self):
        assert slugify("Council Admin") == "council-admin"

    def test_strips_punctuation_runs(self):
        assert slugify("  HST!! (Chicago) ") == "hst-chicago"

    def test_keeps_underscores_and_hyphens(self):
        assert slugify("sub_group-2") == "sub_group-2"

    def test_symbols_only_is_empty(self):
        assert slugify("!!!") == ""


class TestPathHelpers:
    def test_split_skips_blank_segments(self):
        assert split_path("/org//council/ ") == ["org", "council"]

    def test_ancestors_nearest_first(self):
        assert ancestor_paths("org/council/admin") == ["org/council", "org"]

    def test_root_has_no_ancestors(self):
        assert ancestor_paths("org") == []

    def test_has_wildcard(self):
        assert has_wildcard("org/*/admin")
        assert not has_wildcard("org/council/admin")

    def test_path_hash_is_stable(self):
        assert path_hash("org/a") == path_hash("org/a")
        assert path_hash("org/a") != path_hash("org/b")
