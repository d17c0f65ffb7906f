"""Tests for template field merging."""

from stageci.merge import merge_fields


def test_scalar_override():
    assert merge_fields({"stage": "build"}, {"stage": "test"}) == {"stage": "test"}


def test_mappings_merge_recursively():
    base = {"cache": {"key": {"files": ["Cargo.lock"]}, "paths": ["target/"]}}
    override = {"cache": {"key": {"prefix": "test"}}}

    assert merge_fields(base, override) == {
        "cache": {"key": {"files": ["Cargo.lock"], "prefix": "test"}, "paths": ["target/"]},
    }


def test_lists_replaced():
    assert merge_fields({"script": ["a", "b"]}, {"script": ["c"]}) == {"script": ["c"]}


def test_extend_marker_appends_and_accepts_scalar():
    merged = merge_fields({"script": ["a"]}, {"script+": "b"})

    assert merged == {"script": ["a", "b"]}


def test_extend_marker_without_base():
    assert merge_fields({}, {"before_script+": ["x"]}) == {"before_script": ["x"]}


def test_inputs_not_mutated():
    base = {"variables": {"A": "1"}, "script": ["a"]}
    override = {"variables": {"B": "2"}, "script+": ["b"]}

    merge_fields(base, override)

    assert base == {"variables": {"A": "1"}, "script": ["a"]}
    assert override == {"variables": {"B": "2"}, "script+": ["b"]}


def test_mapping_replaced_by_scalar():
    assert merge_fields({"cache": {"key": {"files": ["x"]}}}, {"cache": {"key": "literal"}}) == {
        "cache": {"key": "literal"},
    }
