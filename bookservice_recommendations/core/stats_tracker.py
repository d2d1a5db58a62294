from __future__ import annotations

import threading

from bookservice_recommendations.core.models import StatsSnapshot


class UpdaterStats:
    """
    Thread-safe counters for the recommendations updater.

    Rule: All mutation is done under one lock.
    Call snapshot() to get a consistent StatsSnapshot for logging.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ticks_done = 0
        self._ticks_failed = 0
        self._requests_made = 0
        self._users_processed = 0
        self._books_fetched = 0
        self._missing_books = 0

    def inc_ticks_done(self, n: int = 1) -> None:
        with self._lock:
            self._ticks_done += int(n)

    def inc_ticks_failed(self, n: int = 1) -> None:
        with self._lock:
            self._ticks_failed += int(n)

    def inc_requests(self, n: int = 1) -> None:
        with self._lock:
            self._requests_made += int(n)

    def inc_users_processed(self, n: int = 1) -> None:
        with self._lock:
            self._users_processed += int(n)

    def inc_books_fetched(self, n: int = 1) -> None:
        with self._lock:
            self._books_fetched += int(n)

    def inc_missing_books(self, n: int = 1) -> None:
        with self._lock:
            self._missing_books += int(n)

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                ticks_done=self._ticks_done,
                ticks_failed=self._ticks_failed,
                requests_made=self._requests_made,
                users_processed=self._users_processed,
                books_fetched=self._books_fetched,
                missing_books=self._missing_books,
            )

    def snapshot_dict(self) -> dict:
        snap = self.snapshot()
        return {
            "ticks_done": snap.ticks_done,
            "ticks_failed": snap.ticks_failed,
            "requests_made": snap.requests_made,
            "users_processed": snap.users_processed,
            "books_fetched": snap.books_fetched,
            "missing_books": snap.missing_books,
        }
