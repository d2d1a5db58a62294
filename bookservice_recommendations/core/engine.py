from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from bookservice_recommendations.core.coefficients import CoefficientsStorage
from bookservice_recommendations.core.models import BookId, Recommendations, ReservationHistoryRecord, UserId

logger = logging.getLogger(__name__)

DEFAULT_RECOMMENDATIONS_COUNT = 4


def _first_unseen(books: Iterable[BookId], excluded: Set[BookId]) -> Optional[BookId]:
    for book_id in books:
        if book_id not in excluded:
            return book_id
    return None


class RecommendationsEngine:
    """
    Materialized per-user recommendations plus the default served to unknown users.

    Not synchronized on its own; callers share it behind a ReadWriteLock.
    """

    def __init__(self, recommendations_count: int = DEFAULT_RECOMMENDATIONS_COUNT) -> None:
        self.recommendations_count = max(1, int(recommendations_count))
        self._user_to_recommendations: Dict[UserId, Recommendations] = {}
        self._default_recommendations = Recommendations()

    @property
    def default_recommendations(self) -> Recommendations:
        return self._default_recommendations

    def cached_users(self) -> int:
        return len(self._user_to_recommendations)

    def update_recommendations_for_users(
        self,
        storage: CoefficientsStorage,
        user_to_active_reservations: Mapping[UserId, Sequence[BookId]],
        user_to_history: Mapping[UserId, Sequence[ReservationHistoryRecord]],
    ) -> None:
        users = sorted(set(user_to_active_reservations) | set(user_to_history))
        logger.info("updating recommendations | users=%s", len(users))

        for user_id in users:
            recommendations = self.recommend(
                storage,
                user_to_active_reservations.get(user_id, ()),
                user_to_history.get(user_id, ()),
            )
            logger.debug("recommendations | user_id=%s | %s", user_id, recommendations)
            self._user_to_recommendations[user_id] = recommendations

        self._default_recommendations = Recommendations(
            most_popular=tuple(storage.books_sorted_by_popularity[: self.recommendations_count]),
        )

    def recommend(
        self,
        storage: CoefficientsStorage,
        active_reservations: Sequence[BookId],
        history: Sequence[ReservationHistoryRecord],
    ) -> Recommendations:
        cap = self.recommendations_count
        reserved: Set[BookId] = set(active_reservations)
        reserved.update(r.book_id for r in history)

        author_frequency: Counter = Counter()
        for book_id in reserved:
            for author in set(storage.authors_for(book_id)):
                author_frequency[author] += 1

        # Books by authors the user already reads
        author_match: List[BookId] = []
        for author, _ in sorted(author_frequency.items(), key=lambda kv: (-kv[1], kv[0])):
            book_id = _first_unseen(storage.author_books(author), reserved.union(author_match))
            if book_id is None:
                continue
            author_match.append(book_id)
            if len(author_match) >= cap:
                break

        # Authors never read, ranked by co-occurrence with the ones that were
        affinity = {
            candidate: sum(storage.author_match(candidate, read) for read in author_frequency)
            for candidate in storage.known_authors()
            if candidate not in author_frequency
        }
        new_author_match: List[BookId] = []
        for author, _ in sorted(affinity.items(), key=lambda kv: (-kv[1], kv[0])):
            book_id = _first_unseen(storage.author_books(author), reserved.union(new_author_match))
            if book_id is None:
                continue
            new_author_match.append(book_id)
            if len(new_author_match) >= cap:
                break

        most_popular = [b for b in storage.books_sorted_by_popularity if b not in reserved][:cap]

        return Recommendations(
            most_popular=tuple(most_popular),
            author_match=tuple(author_match),
            new_author_match=tuple(new_author_match),
        )

    def get_recommendations_for_user(self, user_id: UserId) -> Recommendations:
        return self._user_to_recommendations.get(user_id, self._default_recommendations)
