"""
Canonical matching keys for names, titles and authors.

Everything that decides "are these the same thing" (genre/series uniqueness,
book and wishlist duplicate checks, import reconciliation) goes through here,
so the comparison is case-, diacritic- and whitespace-insensitive everywhere.
"""

import re
import unicodedata
from typing import Optional, Set

_QUOTES = str.maketrans({"‘": "'", "’": "'", "`": "'"})
_WHITESPACE = re.compile(r"\s+")
_ISBN_PREFIX = re.compile(r"^isbn[-:\s]*(10|13)?[-:\s]*", re.IGNORECASE)
_ISBN_SEPARATORS = re.compile(r"[-\s]")
_SERIES_SUFFIXES = ('series', 'saga', 'trilogy', 'cycle', 'chronicles')


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip diacritics, unify quotes, collapse and trim whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.translate(_QUOTES))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WHITESPACE.sub(" ", stripped.lower()).strip()


def normalize_genre_name(name: Optional[str]) -> str:
    return normalize_text(name)


def normalize_series_name(name: Optional[str]) -> str:
    return normalize_text(name)


def strip_series_suffix(normalized: str) -> str:
    """Drop a trailing 'series', 'saga', ... word from an already normalized name."""
    for suffix in _SERIES_SUFFIXES:
        normalized = re.sub(rf"\s*{suffix}\s*$", "", normalized).strip()
    return normalized


def series_names_similar(name1: str, name2: str) -> bool:
    """Loose comparison used to flag likely-duplicate series for the user."""
    n1 = normalize_series_name(name1)
    n2 = normalize_series_name(name2)
    if not n1 or not n2:
        return False
    if n1 == n2:
        return True
    # One contains the other ("Harry Potter" vs "Harry Potter Series")
    if n1 in n2 or n2 in n1:
        return True
    s1 = strip_series_suffix(n1)
    s2 = strip_series_suffix(n2)
    return s1 == s2 and len(s1) > 3


def clean_isbn(value: Optional[str]) -> str:
    """Remove an 'ISBN:' prefix, dashes and spaces."""
    if not value:
        return ""
    return _ISBN_SEPARATORS.sub("", _ISBN_PREFIX.sub("", value.strip())).upper()


def is_isbn(value: Optional[str]) -> bool:
    cleaned = clean_isbn(value)
    return bool(re.fullmatch(r"\d{9}[\dX]|\d{13}", cleaned))


def isbn_key(isbn: Optional[str]) -> Optional[str]:
    cleaned = clean_isbn(isbn)
    return f"isbn:{cleaned}" if cleaned else None


def title_author_key(title: Optional[str], author: Optional[str]) -> Optional[str]:
    normalized_title = normalize_text(title)
    if not normalized_title:
        return None
    return f"title:{normalized_title}|{normalize_text(author)}"


def book_match_keys(isbn: Optional[str], title: Optional[str], author: Optional[str]) -> Set[str]:
    """Keys under which two book-like records count as the same book.

    Two records match when they share any key: the exact ISBN, or the
    normalized title+author pair.
    """
    keys = set()
    for key in (isbn_key(isbn), title_author_key(title, author)):
        if key:
            keys.add(key)
    return keys
