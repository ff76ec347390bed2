"""Tests for paging cursors."""

import pytest

from recstore.storage import InvalidArgument
from recstore.storage.cursor import decode_cursor, encode_cursor, next_cursor


def test_empty_cursor_starts_a_scan():
    assert decode_cursor("", 1) is None


def test_cursor_carries_the_sort_key():
    cursor = encode_cursor(["like", "u/1", "é"])
    assert decode_cursor(cursor, 3) == ("like", "u/1", "é")


@pytest.mark.parametrize("cursor", ["%%%", "bm90IGpzb24", encode_cursor(["a"])])
def test_bad_cursors_are_rejected(cursor):
    with pytest.raises(InvalidArgument):
        decode_cursor(cursor, 3)


def test_next_cursor_on_overflow():
    cursor, page = next_cursor(["a", "b", "c"], 2, lambda v: [v])
    assert page == ["a", "b"]
    assert decode_cursor(cursor, 1) == ("b",)


def test_next_cursor_on_last_page():
    assert next_cursor(["a", "b"], 2, lambda v: [v]) == ("", ["a", "b"])
