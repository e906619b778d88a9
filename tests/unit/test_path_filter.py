from __future__ import annotations

from stager.tools.path_filter import DEFAULT_SKIP_PATHS, PathFilter, normalise_relative


def test_default_filter_excludes_metadata_directories() -> None:
    path_filter = PathFilter()

    assert path_filter.skip_paths == DEFAULT_SKIP_PATHS
    assert path_filter.is_excluded(".git")
    assert path_filter.is_excluded(".git/HEAD")
    assert path_filter.is_excluded("node_modules/left-pad/index.js")
    assert path_filter.is_excluded("dist-electron/main.js")
    assert not path_filter.is_excluded("src/app.ts")


def test_prefix_match_requires_a_path_boundary() -> None:
    path_filter = PathFilter.from_names(["dist"])

    assert path_filter("dist/index.js")
    assert not path_filter("distribution/notes.md")
    assert not path_filter("src/dist/file.js")


def test_from_names_normalises_and_deduplicates() -> None:
    path_filter = PathFilter.from_names(["build/", "./cache", "build", "  "])

    assert path_filter.skip_paths == ("build", "cache")
    assert path_filter.is_excluded("cache/item")


def test_names_are_case_sensitive() -> None:
    path_filter = PathFilter.from_names([".git"])

    assert not path_filter.is_excluded(".GIT/config")


def test_normalise_relative_strips_leading_dot_segments() -> None:
    assert normalise_relative("./././a/b.txt") == "a/b.txt"
    assert normalise_relative("a/b.txt") == "a/b.txt"
