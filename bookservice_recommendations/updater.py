from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from bookservice_recommendations.config import AppConfig
from bookservice_recommendations.core.coefficients import CoefficientsStorage
from bookservice_recommendations.core.engine import RecommendationsEngine
from bookservice_recommendations.core.models import (
    BookDetails,
    BookId,
    ReservationHistoryRecord,
    TickReport,
    UserId,
)
from bookservice_recommendations.core.rwlock import ReadWriteLock
from bookservice_recommendations.core.sharding import select_shard_members, shard_for_tick
from bookservice_recommendations.core.stats_tracker import UpdaterStats
from bookservice_recommendations.integrations.http_client import (
    BookCatalogClient,
    ReservationsClient,
    build_clients,
)
from bookservice_recommendations.provider import RecommendationsProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def _unique(items: Iterable[T]) -> List[T]:
    seen = set()
    out: List[T] = []
    for x in items:
        if x in seen:
            continue
        seen.add(x)
        out.append(x)
    return out


def referenced_books(
    user_to_reservations: Mapping[UserId, Sequence[BookId]],
    user_to_history: Mapping[UserId, Sequence[ReservationHistoryRecord]],
) -> List[BookId]:
    active = (b for books in user_to_reservations.values() for b in books)
    closed = (r.book_id for records in user_to_history.values() for r in records)
    return _unique(list(active) + list(closed))


class RecommendationsUpdater:
    """
    Single writer for the coefficients storage and the recommendations engine.

    Each tick:
      - lists users, picks new users plus the current shard of known users
      - fetches their reservations/history and the book details they reference
        (the whole catalog on tick 0)
      - ingests into the storage, then recomputes their recommendations

    A failed upstream call aborts the tick and stops the background thread;
    providers keep answering from the last committed state.
    """

    def __init__(
        self,
        catalog: BookCatalogClient,
        reservations: ReservationsClient,
        *,
        interval_s: float = 10.0,
        full_cycle_ticks: int = 200,
        shard_count: int = 10,
        recommendations_count: int = 4,
        shard_mode: str = "modulo",
        fetch_concurrency: int = 1,
        stats: Optional[UpdaterStats] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.catalog = catalog
        self.reservations = reservations

        if int(shard_count) < 1:
            raise ValueError(f"shard_count must be >= 1, got {shard_count}")
        if int(full_cycle_ticks) < int(shard_count):
            # fewer ticks than shards would leave some shards never scheduled
            raise ValueError(
                f"full_cycle_ticks ({full_cycle_ticks}) must be >= shard_count ({shard_count})"
            )

        self.interval_s = float(interval_s)
        self.full_cycle_ticks = int(full_cycle_ticks)
        self.shard_count = int(shard_count)
        self.shard_mode = shard_mode
        self.fetch_concurrency = max(1, int(fetch_concurrency))
        self.stats = stats or UpdaterStats()
        self._clock = clock

        self.storage = CoefficientsStorage()
        self.engine = RecommendationsEngine(recommendations_count)
        self._engine_lock = ReadWriteLock()
        self._executor: Optional[ThreadPoolExecutor] = None

        self.interval_no = 0
        self.processed_users_to_last_updated: Dict[UserId, float] = {}

        self.last_error: Optional[BaseException] = None
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, cfg: AppConfig, stats: Optional[UpdaterStats] = None) -> "RecommendationsUpdater":
        stats = stats or UpdaterStats()
        clients = build_clients(
            cfg.repository_url,
            cfg.reservations_url,
            timeout_s=cfg.timeout_s,
            retries=cfg.retries,
            rate_per_sec=cfg.rate_per_sec,
            burst=cfg.burst,
            stats=stats,
        )
        return cls(
            clients["catalog"],
            clients["reservations"],
            interval_s=cfg.interval_s,
            full_cycle_ticks=cfg.full_cycle_ticks,
            shard_count=cfg.shard_count,
            recommendations_count=cfg.recommendations_count,
            shard_mode=cfg.shard_mode,
            fetch_concurrency=cfg.fetch_concurrency,
            stats=stats,
        )

    def provider(self) -> RecommendationsProvider:
        return RecommendationsProvider(self.engine, self._engine_lock)

    # -----------------------------
    # One tick
    # -----------------------------
    def select_users(self, user_ids: Sequence[UserId], interval_no: int) -> Tuple[List[UserId], int, Optional[int]]:
        new_users = [uid for uid in user_ids if uid not in self.processed_users_to_last_updated]
        working = list(new_users)

        shard = shard_for_tick(interval_no, self.full_cycle_ticks, self.shard_count)
        if shard is not None:
            members = select_shard_members(
                sorted(self.processed_users_to_last_updated),
                shard,
                self.shard_count,
                mode=self.shard_mode,
            )
            logger.info("processing shard | shard=%s/%s | members=%s", shard, self.shard_count, len(members))
            working.extend(members)

        return _unique(working), len(new_users), shard

    def run_tick(self) -> TickReport:
        start = time.monotonic()
        tick_no = self.interval_no
        logger.info("recommendations tick | tick=%s", tick_no)

        user_ids = self.reservations.list_users()
        users_to_process, new_users, shard = self.select_users(user_ids, tick_no)

        user_to_reservations, user_to_history = self.fetch_user_data(users_to_process)

        if tick_no == 0:
            book_ids = [b.book_id for b in self.catalog.list_books()]
        else:
            book_ids = referenced_books(user_to_reservations, user_to_history)
        book_details, missing = self.fetch_book_details(book_ids)

        self.update(user_to_reservations, user_to_history, book_details)

        now = self._clock()
        for user_id in users_to_process:
            self.processed_users_to_last_updated[user_id] = now

        self.interval_no = (tick_no + 1) % self.full_cycle_ticks

        self.stats.inc_ticks_done()
        self.stats.inc_users_processed(len(users_to_process))
        self.stats.inc_books_fetched(len(book_details))
        self.stats.inc_missing_books(len(missing))

        report = TickReport(
            tick_no=tick_no,
            users_processed=len(users_to_process),
            new_users=new_users,
            shard=shard,
            books_fetched=len(book_details),
            missing_books=len(missing),
            elapsed_s=time.monotonic() - start,
            user_ids=tuple(users_to_process),
        )
        logger.info(
            "tick done | tick=%s | users=%s | new=%s | shard=%s | books=%s | missing=%s | %.2fs",
            report.tick_no,
            report.users_processed,
            report.new_users,
            report.shard,
            report.books_fetched,
            report.missing_books,
            report.elapsed_s,
        )
        return report

    def _map(self, fn: Callable[[T], R], items: Sequence[T]) -> List[R]:
        if self.fetch_concurrency <= 1 or len(items) <= 1:
            return [fn(x) for x in items]
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.fetch_concurrency,
                thread_name_prefix="recommendations-fetch",
            )
        return list(self._executor.map(fn, items))

    def fetch_user_data(
        self, user_ids: Sequence[UserId]
    ) -> Tuple[Dict[UserId, List[BookId]], Dict[UserId, List[ReservationHistoryRecord]]]:
        def fetch(user_id: UserId) -> Tuple[List[BookId], List[ReservationHistoryRecord]]:
            history = self.reservations.history(user_id)
            reservations = self.reservations.list_reservations(user_id)
            return reservations, history

        results = self._map(fetch, list(user_ids))
        user_to_reservations: Dict[UserId, List[BookId]] = {}
        user_to_history: Dict[UserId, List[ReservationHistoryRecord]] = {}
        for user_id, (reservations, history) in zip(user_ids, results):
            user_to_reservations[user_id] = reservations
            user_to_history[user_id] = history
        return user_to_reservations, user_to_history

    def fetch_book_details(self, book_ids: Sequence[BookId]) -> Tuple[Dict[BookId, BookDetails], List[BookId]]:
        results = self._map(self.catalog.get_book, list(book_ids))
        details: Dict[BookId, BookDetails] = {}
        missing: List[BookId] = []
        for book_id, d in zip(book_ids, results):
            if d is None:
                logger.warning("failed to get details | book_id=%s", book_id)
                missing.append(book_id)
                continue
            details[book_id] = d
        return details, missing

    def update(
        self,
        user_to_reservations: Mapping[UserId, Sequence[BookId]],
        user_to_history: Mapping[UserId, Sequence[ReservationHistoryRecord]],
        book_details: Mapping[BookId, BookDetails],
    ) -> None:
        self.storage.update_storage(user_to_history, book_details)
        with self._engine_lock.write_locked():
            self.engine.update_recommendations_for_users(self.storage, user_to_reservations, user_to_history)

    # -----------------------------
    # Background loop
    # -----------------------------
    def run_forever(self, max_ticks: Optional[int] = None) -> None:
        """Tick every interval_s until stopped, max_ticks reached or a tick fails."""
        done = 0
        next_at = time.monotonic()
        while not self._stop_evt.is_set():
            try:
                self.run_tick()
            except Exception as e:
                self.last_error = e
                self.stats.inc_ticks_failed()
                logger.exception("tick failed, updater stopping | tick=%s", self.interval_no)
                return
            logger.debug("updater stats | %s", self.stats.snapshot_dict())

            done += 1
            if max_ticks is not None and done >= max_ticks:
                return

            next_at += self.interval_s
            self._stop_evt.wait(max(0.0, next_at - time.monotonic()))

    def start(self, max_ticks: Optional[int] = None) -> threading.Thread:
        if self._thread and self._thread.is_alive():
            raise RuntimeError("Recommendations updater already running")
        self._stop_evt.clear()
        self._thread = threading.Thread(
            target=self.run_forever,
            kwargs={"max_ticks": max_ticks},
            name="recommendations-updater",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "updater started | interval=%ss | full_cycle=%s | shards=%s",
            self.interval_s,
            self.full_cycle_ticks,
            self.shard_count,
        )
        return self._thread

    def stop(self) -> None:
        self._stop_evt.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread:
            self._thread.join(timeout=timeout)

    def close(self) -> None:
        """Release the fetch pool and the clients' HTTP sessions. Call after the loop has ended."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        for client in (self.catalog, self.reservations):
            close = getattr(client, "close", None)
            if close is not None:
                close()

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def failed(self) -> bool:
        return self.last_error is not None
