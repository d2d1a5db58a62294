from __future__ import annotations

import logging
import threading
from itertools import combinations
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from bookservice_recommendations.core.models import BookDetails, BookId, ReservationHistoryRecord, UserId

logger = logging.getLogger(__name__)

AuthorPair = Tuple[str, str]


def author_pair(a: str, b: str) -> AuthorPair:
    """Canonical (lexicographically ordered) key for a pair of authors."""
    return (a, b) if a <= b else (b, a)


def _unique_book_ids(records: Iterable[ReservationHistoryRecord]) -> List[BookId]:
    seen: Set[BookId] = set()
    out: List[BookId] = []
    for r in records:
        if r.book_id in seen:
            continue
        seen.add(r.book_id)
        out.append(r.book_id)
    return out


def sort_by_popularity(book_ids: Iterable[BookId], popularity: Mapping[BookId, int]) -> List[BookId]:
    # most popular first, ties by ascending id
    return sorted(book_ids, key=lambda b: (-popularity.get(b, 0), b))


class CoefficientsStorage:
    """
    Derived indices built incrementally from closed reservations.

    Rule: update_storage() is the only mutator. It works on scratch copies and
    commits at the end under the storage lock, so a failure leaves the previous
    state intact.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.popularity_score: Dict[BookId, int] = {}
        self.author_to_books: Dict[str, List[BookId]] = {}
        self.author_to_books_sorted_by_popularity: Dict[str, List[BookId]] = {}
        self.books_sorted_by_popularity: List[BookId] = []
        self.author_match_score: Dict[AuthorPair, int] = {}
        self.book_id_to_authors: Dict[BookId, Tuple[str, ...]] = {}
        self.last_processed_timestamp_per_user: Dict[UserId, int] = {}

    def update_storage(
        self,
        user_to_history: Mapping[UserId, Sequence[ReservationHistoryRecord]],
        book_details: Mapping[BookId, BookDetails],
    ) -> None:
        with self._lock:
            popularity = dict(self.popularity_score)
            author_to_books = {a: list(books) for a, books in self.author_to_books.items()}
            match_score = dict(self.author_match_score)
            book_authors = dict(self.book_id_to_authors)
            watermarks = dict(self.last_processed_timestamp_per_user)

            for book_id, details in book_details.items():
                book_authors[book_id] = tuple(details.authors)

            for user_id in sorted(user_to_history):
                records = user_to_history[user_id]
                watermark = watermarks.get(user_id)
                fresh = [r for r in records if watermark is None or r.unreserved_at > watermark]

                user_authors: Set[str] = set()
                for book_id in _unique_book_ids(fresh):
                    popularity[book_id] = popularity.get(book_id, 0) + 1
                    if book_id not in book_details:
                        logger.warning("missing book details | book_id=%s | user_id=%s", book_id, user_id)
                        continue
                    for author in book_authors[book_id]:
                        user_authors.add(author)
                        books = author_to_books.setdefault(author, [])
                        if book_id not in books:
                            books.append(book_id)

                for pair in combinations(sorted(user_authors), 2):
                    match_score[pair] = match_score.get(pair, 0) + 1

                if records:
                    latest = max(r.unreserved_at for r in records)
                    watermarks[user_id] = latest if watermark is None else max(latest, watermark)

            by_author = {
                author: sort_by_popularity(books, popularity) for author, books in author_to_books.items()
            }
            ranking = sort_by_popularity(popularity.keys(), popularity)

            self.popularity_score = popularity
            self.author_to_books = author_to_books
            self.author_to_books_sorted_by_popularity = by_author
            self.books_sorted_by_popularity = ranking
            self.author_match_score = match_score
            self.book_id_to_authors = book_authors
            self.last_processed_timestamp_per_user = watermarks

        logger.debug(
            "storage updated | users=%s | books=%s | authors=%s | pairs=%s",
            len(user_to_history),
            len(self.popularity_score),
            len(self.author_to_books),
            len(self.author_match_score),
        )

    def popularity(self, book_id: BookId) -> int:
        return self.popularity_score.get(book_id, 0)

    def authors_for(self, book_id: BookId) -> Tuple[str, ...]:
        return self.book_id_to_authors.get(book_id, ())

    def author_books(self, author: str) -> List[BookId]:
        return self.author_to_books_sorted_by_popularity.get(author, [])

    def known_authors(self) -> List[str]:
        return sorted(self.author_to_books_sorted_by_popularity)

    def author_match(self, a: str, b: str) -> int:
        return self.author_match_score.get(author_pair(a, b), 0)

    def watermark(self, user_id: UserId) -> Optional[int]:
        return self.last_processed_timestamp_per_user.get(user_id)
