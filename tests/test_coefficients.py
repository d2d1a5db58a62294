import copy

import pytest

from bookservice_recommendations.core.coefficients import CoefficientsStorage, author_pair
from bookservice_recommendations.core.models import BookDetails, ReservationHistoryRecord


def _book(*authors: str) -> BookDetails:
    return BookDetails(title="Title", authors=tuple(authors), publisher="Pub", description="", tags=())


def _rec(book_id: int, ts: int) -> ReservationHistoryRecord:
    return ReservationHistoryRecord(book_id=book_id, unreserved_at=ts)


def _state(storage: CoefficientsStorage) -> dict:
    return copy.deepcopy(
        {
            "popularity": storage.popularity_score,
            "match": storage.author_match_score,
            "by_author": storage.author_to_books_sorted_by_popularity,
            "ranking": storage.books_sorted_by_popularity,
            "watermarks": storage.last_processed_timestamp_per_user,
        }
    )


def test_shared_author_scenario() -> None:
    storage = CoefficientsStorage()
    storage.update_storage(
        {1: [_rec(1, 100)], 2: [_rec(2, 50)]},
        {1: _book("X"), 2: _book("X")},
    )

    assert storage.popularity(1) == 1
    assert storage.popularity(2) == 1
    assert storage.author_books("X") == [1, 2]
    assert storage.watermark(1) == 100
    assert storage.watermark(2) == 50


def test_popularity_ranking_most_popular_first_ties_by_id() -> None:
    storage = CoefficientsStorage()
    details = {1: _book("A"), 2: _book("A"), 3: _book("B")}
    storage.update_storage(
        {
            10: [_rec(3, 1), _rec(2, 2)],
            11: [_rec(3, 1)],
            12: [_rec(1, 1)],
        },
        details,
    )

    assert storage.books_sorted_by_popularity == [3, 1, 2]
    assert storage.author_books("A") == [1, 2]


def test_per_author_ranking_is_most_popular_first() -> None:
    storage = CoefficientsStorage()
    details = {1: _book("A"), 2: _book("A")}
    storage.update_storage({10: [_rec(1, 1)], 11: [_rec(2, 1)], 12: [_rec(2, 1)]}, details)

    assert storage.author_books("A") == [2, 1]


def test_author_pairs_are_canonical() -> None:
    storage = CoefficientsStorage()
    storage.update_storage(
        {1: [_rec(1, 5), _rec(2, 6)], 2: [_rec(2, 7), _rec(1, 8)]},
        {1: _book("Zed"), 2: _book("Abe")},
    )

    assert storage.author_match_score == {("Abe", "Zed"): 2}
    assert storage.author_match("Zed", "Abe") == 2
    assert storage.author_match("Abe", "Zed") == 2
    assert author_pair("b", "a") == ("a", "b")


def test_duplicate_book_counted_once_per_ingest() -> None:
    storage = CoefficientsStorage()
    storage.update_storage({1: [_rec(1, 5), _rec(1, 6)]}, {1: _book("A")})

    assert storage.popularity(1) == 1
    assert storage.watermark(1) == 6


def test_second_ingest_with_same_history_is_idempotent() -> None:
    storage = CoefficientsStorage()
    history = {1: [_rec(1, 10), _rec(2, 20)], 2: [_rec(2, 15)]}
    details = {1: _book("A", "B"), 2: _book("C")}

    storage.update_storage(history, details)
    before = _state(storage)
    storage.update_storage(history, details)

    assert _state(storage) == before


def test_only_records_past_watermark_are_counted() -> None:
    storage = CoefficientsStorage()
    details = {1: _book("A"), 2: _book("B"), 3: _book("C")}
    storage.update_storage({1: [_rec(1, 10)]}, details)

    # old record delivered late plus a genuinely new one
    storage.update_storage({1: [_rec(1, 10), _rec(2, 5), _rec(3, 30)]}, details)

    assert storage.popularity(1) == 1
    assert storage.popularity(2) == 0
    assert storage.popularity(3) == 1
    assert storage.watermark(1) == 30
    # pairs only among authors of this ingest's new records
    assert storage.author_match_score == {}


def test_watermark_never_moves_back() -> None:
    storage = CoefficientsStorage()
    storage.update_storage({1: [_rec(1, 50)]}, {1: _book("A")})
    storage.update_storage({1: [_rec(1, 20)]}, {1: _book("A")})
    storage.update_storage({1: []}, {})

    assert storage.watermark(1) == 50


def test_missing_details_counts_popularity_without_author_signal(caplog) -> None:
    storage = CoefficientsStorage()
    with caplog.at_level("WARNING"):
        storage.update_storage({1: [_rec(1, 10), _rec(2, 11)]}, {2: _book("B")})

    assert storage.popularity(1) == 1
    assert storage.authors_for(1) == ()
    assert storage.author_books("B") == [2]
    assert storage.author_match_score == {}
    assert "missing book details" in caplog.text

    # details show up later, watermark already past the record
    storage.update_storage({1: [_rec(1, 10), _rec(2, 11)]}, {1: _book("A"), 2: _book("B")})

    assert storage.authors_for(1) == ("A",)
    assert storage.author_books("A") == []
    assert storage.author_match_score == {}
    assert storage.popularity(1) == 1


def test_failed_update_leaves_state_untouched() -> None:
    storage = CoefficientsStorage()
    storage.update_storage({1: [_rec(1, 10)]}, {1: _book("A")})
    before = _state(storage)

    class Broken:
        book_id = 2

        @property
        def unreserved_at(self):
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        storage.update_storage({2: [_rec(2, 5)], 3: [Broken()]}, {2: _book("B")})

    assert _state(storage) == before
