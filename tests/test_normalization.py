from bookshelf.utils.normalization import (
    book_match_keys,
    clean_isbn,
    is_isbn,
    normalize_text,
    series_names_similar,
    strip_series_suffix,
)


def test_normalize_text_folds_case_diacritics_and_whitespace():
    assert normalize_text("  Les   Misérables ") == "les miserables"
    assert normalize_text("Ender’s Game") == "ender's game"
    assert normalize_text(None) == ""


def test_clean_isbn_strips_prefix_and_separators():
    assert clean_isbn("ISBN: 978-0-306-40615-7") == "9780306406157"
    assert clean_isbn("isbn-10 0 306 40615 2") == "0306406152"
    assert clean_isbn("") == ""


def test_is_isbn_accepts_10_and_13_digit_forms():
    assert is_isbn("0-8044-2957-X")
    assert is_isbn("9780306406157")
    assert not is_isbn("12345")


def test_book_match_keys_share_title_author_key_across_case():
    first = book_match_keys(None, "The Hobbit", "J.R.R. Tolkien")
    second = book_match_keys("", "the  hobbit", "j.r.r. tolkien")
    assert first & second


def test_book_match_keys_isbn_match_ignores_title():
    first = book_match_keys("978-0-306-40615-7", "A", "X")
    second = book_match_keys("9780306406157", "Completely Different", "Y")
    assert first & second


def test_book_match_keys_without_title_only_uses_isbn():
    assert book_match_keys("9780306406157", "", "Someone") == {"isbn:9780306406157"}
    assert book_match_keys(None, None, None) == set()


def test_series_names_similar():
    assert series_names_similar("Harry Potter", "Harry Potter Series")
    assert series_names_similar("The Expanse", "expanse")
    assert series_names_similar("Dune Saga", "DUNE")
    assert not series_names_similar("Dune", "Foundation")
    assert not series_names_similar("", "Dune")


def test_strip_series_suffix():
    assert strip_series_suffix("wheel of time series") == "wheel of time"
    assert strip_series_suffix("earthsea cycle") == "earthsea"
