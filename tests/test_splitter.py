"""Tests for script splitting."""

from __future__ import annotations

from nzquery.splitter import _split_naive, split_statements


def test_splits_on_top_level_semicolons() -> None:
    script = "SELECT 1;\nSELECT 'a;b' AS x;\n-- trailing; comment\nSELECT \"odd;name\" FROM t;"

    assert split_statements(script) == [
        "SELECT 1",
        "SELECT 'a;b' AS x",
        "-- trailing; comment\nSELECT \"odd;name\" FROM t",
    ]


def test_drops_empty_and_comment_only_segments() -> None:
    assert split_statements("") == []
    assert split_statements("  ;; \n") == []
    assert split_statements("SELECT 1;\n-- done\n") == ["SELECT 1"]


def test_set_directives_attach_to_next_statement() -> None:
    script = "@SET TABLE = users;\nSELECT * FROM ${TABLE} WHERE id = $ID;\nSELECT 2"

    assert split_statements(script) == [
        "@SET TABLE = users\nSELECT * FROM ${TABLE} WHERE id = $ID",
        "SELECT 2",
    ]


def test_placeholders_survive_unchanged() -> None:
    assert split_statements("SELECT $A, ${B_2};") == ["SELECT $A, ${B_2}"]


def test_naive_split_respects_quotes() -> None:
    assert _split_naive("SELECT 'x;y'; SELECT \"a;\" ;;") == ["SELECT 'x;y'", 'SELECT "a;"']
