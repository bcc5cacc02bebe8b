"""Tests for result-bundle extraction and Markdown selection."""

import pytest

from conftest import build_bundle, corrupt_bundle
from mdnote.core.errors import ResultFileError, UnsafeArchiveError
from mdnote.parsers.archive import (
    extract_archive,
    find_markdown_file,
    normalize_entry_path,
    select_markdown,
)
from mdnote.parsers.cache import ResultCache
from mdnote.parsers.models import ParseFingerprint


# ── Markdown selection ───────────────────────────────────────────────


def test_markdown_segment_wins():
    assert select_markdown(["b/out.md", "markdown/out.md", "a/out.md"]) == "markdown/out.md"


def test_lexicographic_fallback_is_case_insensitive():
    assert select_markdown(["b/out.md", "A/out.md", "a/zz.md"]) == "A/out.md"
    assert select_markdown(["Full.md", "auto/full.md"]) == "auto/full.md"
    assert select_markdown([]) == ""


def test_markdown_segment_tie_break_ignores_input_order():
    assert select_markdown(["markdown/z.md", "markdown/a.md"]) == "markdown/a.md"
    assert select_markdown(["markdown/a.md", "markdown/z.md"]) == "markdown/a.md"
    assert select_markdown(["markdown/b.md", "markdown/A.md"]) == "markdown/A.md"


def test_find_markdown_file_is_deterministic(tmp_path):
    (tmp_path / "markdown").mkdir()
    for name in ["zeta", "alpha", "mid", "Beta", "omega"]:
        (tmp_path / "markdown" / f"{name}.md").write_text(name)

    assert find_markdown_file(tmp_path) == str(tmp_path / "markdown" / "alpha.md")


def test_find_markdown_file_ignores_root_name(tmp_path):
    root = tmp_path / "markdown-cache"
    (root / "z").mkdir(parents=True)
    (root / "a").mkdir()
    (root / "z" / "full.md").write_text("z")
    (root / "a" / "full.md").write_text("a")

    assert find_markdown_file(root) == str(root / "a" / "full.md")
    assert find_markdown_file(tmp_path / "empty") == ""


# ── Entry paths ──────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "entry",
    ["../evil.md", "a/../../evil.md", "/etc/passwd", "C:/windows/x.md", "a\\..\\..\\x"],
)
def test_unsafe_entry_paths(entry):
    assert normalize_entry_path(entry) == []


def test_safe_entry_paths():
    assert normalize_entry_path("./markdown//full.md") == ["markdown", "full.md"]
    assert normalize_entry_path("images\\fig.png") == ["images", "fig.png"]


# ── Extraction ───────────────────────────────────────────────────────


def test_extract_selects_canonical_markdown(tmp_path, bundle):
    md = extract_archive(bundle, tmp_path / "out")

    assert md == tmp_path / "out" / "markdown" / "full.md"
    assert md.read_text().startswith("Running header")
    assert (tmp_path / "out" / "markdown" / "images" / "fig1.png").is_file()


def test_re_extraction_is_identical(tmp_path, bundle):
    first = extract_archive(bundle, tmp_path / "one")
    second = extract_archive(bundle, tmp_path / "two")

    assert first.relative_to(tmp_path / "one") == second.relative_to(tmp_path / "two")
    assert first.read_bytes() == second.read_bytes()


def test_unsafe_entry_aborts_before_writing(tmp_path):
    data = build_bundle({"markdown/full.md": "# ok\n", "../escape.md": "# bad\n"})
    out = tmp_path / "out"

    with pytest.raises(UnsafeArchiveError):
        extract_archive(data, out)

    assert not out.exists()
    assert not (tmp_path / "escape.md").exists()


def test_corrupt_archive(tmp_path):
    with pytest.raises(ResultFileError):
        extract_archive(b"definitely not a zip", tmp_path / "out")


def test_archive_without_markdown(tmp_path):
    data = build_bundle({"images/a.png": b"png"})
    with pytest.raises(ResultFileError, match="No Markdown"):
        extract_archive(data, tmp_path / "out")


def test_corrupt_entry_leaves_nothing_behind(tmp_path):
    out = tmp_path / "out"

    with pytest.raises(ResultFileError, match="corrupt"):
        extract_archive(corrupt_bundle(), out)

    assert not out.exists()
    assert list(tmp_path.iterdir()) == []


def test_corrupt_entry_is_never_a_cache_hit(tmp_path):
    cache = ResultCache(tmp_path / "cache")
    fp = ParseFingerprint(document_id="DOCKEY", source_file_id="ATTKEY")
    out = cache.create_output_dir("DOCKEY-1700000000000")

    with pytest.raises(ResultFileError):
        extract_archive(corrupt_bundle(), out)

    assert cache.lookup(fp) is None
    assert not (out / "markdown").exists()


def test_extracts_into_empty_existing_dir(tmp_path, bundle):
    out = tmp_path / "out"
    out.mkdir()

    md = extract_archive(bundle, out)

    assert md == out / "markdown" / "full.md"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["out"]
