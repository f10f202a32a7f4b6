from __future__ import annotations

import math

import pytest

from kquote.extract.normalize import clamp_string, clean_cell, is_positive, positive_or_none, to_number


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("10,000원", 10000),
        ("  20,000 ", 20000),
        ("-3,000", -3000),
        ("1.5", 1.5),
        (2, 2),
        (2.0, 2),
        ("₩ 1,234", 1234),
    ],
)
def test_to_number_parses_currency_text(raw, expected) -> None:
    assert to_number(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "abc", "--", "1.2.3", True, float("nan"), float("inf")])
def test_to_number_never_raises_on_junk(raw) -> None:
    assert to_number(raw) is None


def test_integral_values_are_ints() -> None:
    assert isinstance(to_number("20,000"), int)
    assert isinstance(to_number(3.0), int)
    assert isinstance(to_number("2.5"), float)


@pytest.mark.parametrize("raw", ["10,000원", "-2,000", "1.25", None, "x", 7, 7.5])
def test_normalizer_is_idempotent(raw) -> None:
    once = to_number(raw)
    assert to_number(once) == once


def test_clamp_string() -> None:
    assert clamp_string(None) == ""
    assert clamp_string("abc") == "abc"
    assert len(clamp_string("가" * 300)) == 200
    assert clamp_string("abcdef", 3) == "abc"


def test_clean_cell_collapses_whitespace_and_nbsp() -> None:
    assert clean_cell("  키보드\xa0 기계식 \n 블랙 ") == "키보드 기계식 블랙"
    assert clean_cell(None) == ""


def test_positive_or_none() -> None:
    assert positive_or_none(0) is None
    assert positive_or_none(-5) is None
    assert positive_or_none(None) is None
    assert positive_or_none(5.0) == 5
    assert positive_or_none(2.5) == 2.5
    assert not is_positive(math.nan)
    assert not is_positive(True)
