from __future__ import annotations

from patchy.utils.slug import normalize_subject, ref_path, ref_segment, short_digest


def test_ref_segment_keeps_clean_values() -> None:
    assert ref_segment("feature-1.2_x") == "feature-1.2_x"
    assert ref_segment("Helix", lowercase=True) == "helix"


def test_ref_segment_appends_digest_when_lossy() -> None:
    segment = ref_segment("fix bug")

    assert segment == f"fix-bug-{short_digest('fix bug')}"
    assert segment != ref_segment("fix-bug")
    assert ref_segment("fix~bug") != ref_segment("fix^bug")


def test_ref_segment_never_produces_lock_suffix_or_empty_value() -> None:
    assert not ref_segment("topic.lock").endswith(".lock")
    assert ref_segment("...", fallback="repo").startswith("repo-")


def test_ref_path_normalises_each_part() -> None:
    assert ref_path("feature/deep/branch") == "feature/deep/branch"
    assert ref_path("feature/a b").startswith("feature/a-b-")


def test_normalize_subject() -> None:
    assert normalize_subject("Fix: the  Thing!\n\nBody text") == "fix-_the__thing"
    assert normalize_subject("") == ""
    assert len(normalize_subject("x" * 200)) == 64
