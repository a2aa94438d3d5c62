"""Tests for fs/utils.py — names, root sentinels, tags, paging, sorting."""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from cabinet.fs.exceptions import ValidationError
from cabinet.fs.utils import (
    as_utc,
    clamp_page,
    drop_tags,
    dump_tags,
    escape_like,
    guess_mime_type,
    merge_tags,
    normalize_parent_id,
    paginate,
    require_valid_color,
    require_valid_name,
    sort_key_for,
    split_extension,
    validate_name,
)

# ---------------------------------------------------------------------------
# Root sentinel
# ---------------------------------------------------------------------------


class TestNormalizeParentId:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            pytest.param(None, None, id="none"),
            pytest.param("", None, id="empty"),
            pytest.param("root", None, id="legacy-root"),
            pytest.param("  root ", None, id="padded-root"),
            pytest.param("abc", "abc", id="id"),
            pytest.param(" abc ", "abc", id="padded-id"),
        ],
    )
    def test_normalize(self, value, expected):
        assert normalize_parent_id(value) == expected


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------


class TestValidateName:
    @pytest.mark.parametrize(
        "name",
        ["report.pdf", "My Folder", "ünïcødé", "a" * 255, ".hidden", "CONSOLE"],
    )
    def test_valid(self, name):
        assert validate_name(name) == (True, "")

    @pytest.mark.parametrize(
        ("name", "message"),
        [
            pytest.param("", "empty", id="empty"),
            pytest.param("   ", "empty", id="blank"),
            pytest.param(" padded", "whitespace", id="leading-space"),
            pytest.param("a" * 256, "too long", id="too-long"),
            pytest.param("a/b", "separators", id="slash"),
            pytest.param("a\\b", "separators", id="backslash"),
            pytest.param("..", "Reserved", id="dotdot"),
            pytest.param("a\x00b", "null", id="null"),
            pytest.param("a\tb", "control", id="control"),
            pytest.param("CON", "Reserved", id="windows-reserved"),
            pytest.param("nul.txt", "Reserved", id="windows-reserved-ext"),
        ],
    )
    def test_invalid(self, name, message):
        valid, error = validate_name(name)
        assert not valid
        assert message in error

    def test_require_valid_name_raises(self):
        with pytest.raises(ValidationError):
            require_valid_name("a/b")

    def test_require_valid_name_returns_name(self):
        assert require_valid_name("ok") == "ok"


class TestColor:
    @pytest.mark.parametrize("color", ["#fff", "#A1B2C3", "#abcdef"])
    def test_valid(self, color):
        assert require_valid_color(color) == color

    @pytest.mark.parametrize("color", ["fff", "#ffff", "#ggg", "red", "#1234567"])
    def test_invalid(self, color):
        with pytest.raises(ValidationError, match="Invalid color"):
            require_valid_color(color)

    def test_none_passes_through(self):
        assert require_valid_color(None) is None


class TestFileNameHelpers:
    def test_split_extension(self):
        assert split_extension("Report.PDF") == "pdf"
        assert split_extension("archive.tar.gz") == "gz"
        assert split_extension("README") == ""

    def test_guess_mime_type(self):
        assert guess_mime_type("notes.txt") == "text/plain"
        assert guess_mime_type("blob") == "application/octet-stream"


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


class TestTags:
    def test_merge_dedupes_case_insensitively(self):
        assert merge_tags(["Work"], ["work", "Home", " home ", "urgent"]) == [
            "Work",
            "Home",
            "urgent",
        ]

    def test_merge_skips_blank(self):
        assert merge_tags([], ["", "  "]) == []

    def test_drop_case_insensitive(self):
        assert drop_tags(["Work", "Home"], ["WORK"]) == ["Home"]

    def test_drop_missing_is_noop(self):
        assert drop_tags(["a"], ["b"]) == ["a"]

    def test_dump(self):
        assert dump_tags(["a", "b"]) == '["a", "b"]'

    def test_dump_keeps_non_ascii(self):
        assert dump_tags(["café"]) == '["café"]'


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestEscapeLike:
    def test_wildcards_escaped(self):
        assert escape_like("50%_off\\") == "50\\%\\_off\\\\"

    def test_plain_text_unchanged(self):
        assert escape_like("report") == "report"


class TestAsUtc:
    def test_naive_becomes_utc(self):
        naive = datetime(2024, 1, 2, 3, 4, 5)
        assert as_utc(naive) == datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)

    def test_aware_unchanged(self):
        aware = datetime(2024, 1, 2, tzinfo=UTC)
        assert as_utc(aware) is aware

    def test_none(self):
        assert as_utc(None) is None


# ---------------------------------------------------------------------------
# Paging / sorting
# ---------------------------------------------------------------------------


class TestClampPage:
    def test_defaults(self):
        assert clamp_page(1, None, 20, 100) == (1, 20)

    def test_clamps_low_values(self):
        assert clamp_page(0, 0, 20, 100) == (1, 1)

    def test_clamps_limit_to_max(self):
        assert clamp_page(3, 1000, 20, 100) == (3, 100)


class TestPaginate:
    def test_first_page(self):
        items, total, pages, has_more = paginate(list(range(5)), 1, 2)
        assert items == [0, 1]
        assert (total, pages, has_more) == (5, 3, True)

    def test_last_page(self):
        items, total, pages, has_more = paginate(list(range(5)), 3, 2)
        assert items == [4]
        assert has_more is False

    def test_past_the_end(self):
        items, total, pages, has_more = paginate(list(range(5)), 9, 2)
        assert items == []
        assert (total, pages, has_more) == (5, 3, False)

    def test_empty(self):
        assert paginate([], 1, 10) == ([], 0, 0, False)


class TestSortKey:
    def test_name_is_case_insensitive(self):
        items = [SimpleNamespace(id="1", name="beta"), SimpleNamespace(id="2", name="Alpha")]
        items.sort(key=sort_key_for("name"))
        assert [i.name for i in items] == ["Alpha", "beta"]

    def test_size(self):
        items = [SimpleNamespace(id="1", size=10), SimpleNamespace(id="2", size=2)]
        items.sort(key=sort_key_for("size"))
        assert [i.size for i in items] == [2, 10]

    def test_dates_mix_naive_and_aware(self):
        items = [
            SimpleNamespace(id="1", created_at=datetime(2024, 5, 1, tzinfo=UTC)),
            SimpleNamespace(id="2", created_at=datetime(2024, 1, 1)),
            SimpleNamespace(id="3", created_at=None),
        ]
        items.sort(key=sort_key_for("created_at"))
        assert [i.id for i in items] == ["3", "2", "1"]

    def test_unknown_field(self):
        with pytest.raises(ValidationError, match="Invalid sort field"):
            sort_key_for("owner")
