# -*- coding: utf-8 -*-
"""
tests/test_utils.py
地点文本规范化：去符号、合并空白、小写、词干化；空结果为 None。
"""

import pytest

from geohub.utils import get_stemmer, normalize_location


def test_punctuation_and_spacing_do_not_matter():
    assert normalize_location("New York!!") == normalize_location("new   york")
    assert normalize_location("New York!!") == "new york"


def test_commas_and_abbreviations():
    assert normalize_location("New York, NY") == "new york ny"


@pytest.mark.parametrize("raw", [None, "", "   ", "!!!", "123 456", "🇺🇸 ❤"])
def test_empty_results_are_none(raw):
    assert normalize_location(raw) is None


def test_non_latin_letters_are_kept():
    assert normalize_location("Москва!") == "москва"


def test_tokens_are_stemmed():
    stemmer = get_stemmer()
    assert normalize_location("Cities of Lights") == " ".join(
        stemmer.stemWord(w) for w in ("cities", "of", "lights")
    )
    assert normalize_location("Cities") != "cities"


def test_deterministic():
    s = "  Rio de Janeiro -- Brasil\t"
    assert normalize_location(s) == normalize_location(s)
    assert "  " not in normalize_location(s)


def test_stemmer_is_created_once():
    assert get_stemmer() is get_stemmer()
