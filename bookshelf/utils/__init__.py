# Utils package for the bookshelf core

# Import functions from the normalization module
from .normalization import (
    normalize_text,
    normalize_genre_name,
    normalize_series_name,
    clean_isbn,
    is_isbn,
    book_match_keys,
)

__all__ = [
    'normalize_text',
    'normalize_genre_name',
    'normalize_series_name',
    'clean_isbn',
    'is_isbn',
    'book_match_keys',
]
