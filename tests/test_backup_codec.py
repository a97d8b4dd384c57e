import json

import pytest

from bookshelf.domain.errors import ValidationError
from bookshelf.domain.models import Book, Genre, Series, WishlistItem, from_millis
from bookshelf.services.backup_codec import backup_filename, decode_backup, dumps, encode_backup

from conftest import START


def _library_snapshot():
    genre = Genre(id="g1", name="Fantasy", color="#ef4444", book_count=1)
    series = Series(id="s1", name="Earthsea", book_count=1)
    active = Book(id="b1", title="A Wizard of Earthsea", author="Le Guin", genres=["g1"], series_id="s1",
                  extra={"_normalizedTitle": "a wizard of earthsea"})
    binned = Book(id="b2", title="Dune", author="Herbert", deleted_at=from_millis(1700000000000))
    wish = WishlistItem(id="w1", title="Emma", author="Austen", priority="low")
    return [genre], [series], [active, binned], [wish]


def test_encode_splits_bin_and_tags_export_ids():
    genres, series, books, wishlist = _library_snapshot()

    document = encode_backup(genres, series, books, wishlist, START)

    assert document["version"] == 2
    assert document["exportedAt"] == START.isoformat()
    assert document["genres"][0]["_exportId"] == "g1"
    assert "id" not in document["genres"][0]
    assert document["series"][0]["_exportId"] == "s1"
    assert [b["title"] for b in document["books"]] == ["A Wizard of Earthsea"]
    assert "_normalizedTitle" not in document["books"][0]
    assert [b["deletedAt"] for b in document["bin"]] == [1700000000000]
    assert "id" not in document["wishlist"][0]


def test_encode_refuses_empty_library():
    with pytest.raises(ValidationError, match="No data to export"):
        encode_backup([], [], [], [], START)


def test_encoded_backup_decodes_back():
    genres, series, books, wishlist = _library_snapshot()
    raw = dumps(encode_backup(genres, series, books, wishlist, START))

    document = decode_backup(raw)

    assert document.counts() == {"genres": 1, "series": 1, "books": 1, "wishlist": 1, "bin": 1}
    assert document.exported_at == START
    assert document.genres[0].export_id == "g1"
    assert document.books[0].genres == ["g1"]
    assert document.bin[0].deleted_at == from_millis(1700000000000)


def test_decode_rejects_malformed_files():
    with pytest.raises(ValidationError, match="Invalid JSON file"):
        decode_backup("{oops")
    with pytest.raises(ValidationError, match="Unrecognized backup format"):
        decode_backup(json.dumps({"version": 3, "books": []}))
    with pytest.raises(ValidationError, match="Unrecognized backup format"):
        decode_backup(json.dumps([1, 2]))


def test_decode_reports_bad_entry_position():
    raw = {"version": 2, "books": [{"title": "Dune"}, {"author": "No title"}]}
    with pytest.raises(ValidationError, match=r"Invalid entry 2 in 'books'"):
        decode_backup(raw)


def test_version_1_ignores_series_and_bin():
    raw = {
        "version": 1,
        "books": [{"title": "Dune"}],
        "series": [{"name": "Dune"}],
        "bin": [{"title": "Emma", "deletedAt": 1}],
    }
    document = decode_backup(raw)
    assert document.series == []
    assert document.bin == []
    assert len(document.books) == 1


def test_backup_filename_is_dated():
    assert backup_filename(START) == "bookshelf-backup-2024-01-15.json"
