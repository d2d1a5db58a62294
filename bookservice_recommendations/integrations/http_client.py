from __future__ import annotations

import json
import logging
import random
import threading
import time
from typing import Any, Dict, List, Optional

import requests

from bookservice_recommendations.core.models import (
    BookDetails,
    BookId,
    BookTitleAndId,
    ReservationHistoryRecord,
    UserId,
    parse_id_list,
)
from bookservice_recommendations.core.stats_tracker import UpdaterStats

logger = logging.getLogger(__name__)

_NOT_FOUND = object()


def _safe_body_preview(resp: requests.Response, limit: int = 800) -> str:
    try:
        if "application/json" in (resp.headers.get("Content-Type") or "").lower():
            try:
                payload = resp.json()
                text = json.dumps(payload, ensure_ascii=False)
            except ValueError:
                text = resp.text or ""
        else:
            text = resp.text or ""
    except Exception:
        return "<unavailable>"
    text = text.replace("\r", " ").strip()
    if len(text) > limit:
        return text[:limit].rstrip() + "..."
    return text


class UpstreamError(RuntimeError):
    pass


class TokenBucket:
    """
    Shared request budget: refills at rate_per_sec up to burst tokens.

    take() blocks the calling thread until a token is available.
    """

    def __init__(self, rate_per_sec: float, burst: int, clock=time.monotonic, sleep=time.sleep) -> None:
        self.rate = max(0.01, float(rate_per_sec))
        self.capacity = max(1, int(burst))
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._available = float(self.capacity)
        self._refilled_at = clock()

    def _refill(self) -> None:
        now = self._clock()
        self._available = min(self.capacity, self._available + (now - self._refilled_at) * self.rate)
        self._refilled_at = now

    def take(self, n: float = 1.0) -> None:
        while True:
            with self._lock:
                self._refill()
                shortfall = n - self._available
                if shortfall <= 0:
                    self._available -= n
                    return
            self._sleep(min(0.25, max(0.01, shortfall / self.rate)))


def make_service_session() -> requests.Session:
    s = requests.Session()
    s.headers.update({
        "Accept": "application/json",
        "User-Agent": "bookservice-recommendations/0.1",
    })
    return s


RETRYABLE_STATUSES = frozenset((429, 500, 502, 503, 504))
MAX_BACKOFF_S = 30.0


def _retry_delay(attempt: int, retry_after: Optional[str] = None) -> float:
    # exponential from 1s, or the server's Retry-After; plus up to 0.5s jitter
    if retry_after and retry_after.isdigit():
        base = float(retry_after)
    else:
        base = min(MAX_BACKOFF_S, 2.0 ** (attempt - 1))
    return base + random.uniform(0.0, 0.5)


def _wait(delay_s: float) -> None:
    time.sleep(delay_s)


def _decode_json(resp: requests.Response, url: str) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        # requests.JSONDecodeError is both a ValueError and a RequestException
        raise UpstreamError(f"Invalid JSON from {url}: {e}") from e


def service_get(
    session: requests.Session,
    url: str,
    *,
    timeout_s: Optional[float] = None,
    retries: int = 0,
    allow_not_found: bool = False,
) -> Any:
    """
    GET a JSON document from an upstream service.

      - 404 returns a sentinel when allow_not_found is set
      - 429/5xx/connection errors are retried with exponential backoff + jitter
        (retries=0 fails on the first error)
      - any other non-2xx or an undecodable body raises UpstreamError, never retried
    """
    attempts = retries + 1
    for attempt in range(1, attempts + 1):
        logger.debug("request | method=GET | url=%s | attempt=%s/%s", url, attempt, attempts)
        try:
            r = session.get(url, timeout=timeout_s)
        except requests.RequestException as e:
            if attempt < attempts:
                delay = _retry_delay(attempt)
                logger.warning("request error | url=%s | err=%r | retry in %.1fs", url, e, delay)
                _wait(delay)
                continue
            raise UpstreamError(f"Request failed: {url} error={e}") from e

        if r.status_code == 404 and allow_not_found:
            return _NOT_FOUND

        if r.status_code in RETRYABLE_STATUSES and attempt < attempts:
            delay = _retry_delay(attempt, r.headers.get("Retry-After"))
            logger.warning("retrying | status=%s | delay=%.1fs | url=%s", r.status_code, delay, url)
            _wait(delay)
            continue

        if r.status_code >= 400:
            preview = _safe_body_preview(r)
            logger.error("http error | status=%s | url=%s | body=%s", r.status_code, url, preview)
            raise UpstreamError(f"GET {url} failed with status {r.status_code}: {preview}")

        return _decode_json(r, url)

    raise UpstreamError(f"Request failed: {url} (retries exhausted)")


class _ServiceClient:
    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout_s: Optional[float] = None,
        retries: int = 0,
        limiter: Optional[TokenBucket] = None,
        stats: Optional[UpdaterStats] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.retries = max(0, int(retries))
        self.limiter = limiter
        self.stats = stats
        self._owns_template = session is None
        self._template = session or make_service_session()
        self._owner = threading.get_ident()
        self._local = threading.local()
        self._clones: List[requests.Session] = []
        self._clones_lock = threading.Lock()

    def _session(self) -> requests.Session:
        # one session per worker thread; the creating thread uses the template
        if threading.get_ident() == self._owner:
            return self._template
        sess = getattr(self._local, "session", None)
        if sess is None:
            sess = requests.Session()
            sess.headers.update(self._template.headers)
            self._local.session = sess
            with self._clones_lock:
                self._clones.append(sess)
        return sess

    def close(self) -> None:
        with self._clones_lock:
            clones, self._clones = self._clones, []
        for sess in clones:
            sess.close()
        if self._owns_template:
            self._template.close()

    def _get(self, path: str, *, allow_not_found: bool = False) -> Any:
        if self.limiter:
            self.limiter.take(1.0)
        if self.stats:
            self.stats.inc_requests()
        return service_get(
            self._session(),
            f"{self.base_url}{path}",
            timeout_s=self.timeout_s,
            retries=self.retries,
            allow_not_found=allow_not_found,
        )


class BookCatalogClient(_ServiceClient):
    """Read side of the book repository service."""

    def list_books(self) -> List[BookTitleAndId]:
        data = self._get("/api/books")
        try:
            if not isinstance(data, list):
                raise ValueError(f"Expected a list of books, got {type(data).__name__}")
            return [BookTitleAndId.from_dict(item) for item in data]
        except ValueError as e:
            raise UpstreamError(f"Malformed book listing: {e}") from e

    def get_book(self, book_id: BookId) -> Optional[BookDetails]:
        data = self._get(f"/api/book/{book_id}", allow_not_found=True)
        if data is _NOT_FOUND:
            return None
        try:
            return BookDetails.from_dict(data)
        except ValueError as e:
            raise UpstreamError(f"Malformed details for book {book_id}: {e}") from e


class ReservationsClient(_ServiceClient):
    """Read side of the reservations service."""

    def list_users(self) -> List[UserId]:
        try:
            return parse_id_list(self._get("/api/users"), "user ids")
        except ValueError as e:
            raise UpstreamError(f"Malformed user listing: {e}") from e

    def list_reservations(self, user_id: UserId) -> List[BookId]:
        try:
            return parse_id_list(self._get(f"/api/user/{user_id}/reservations"), "book ids")
        except ValueError as e:
            raise UpstreamError(f"Malformed reservations for user {user_id}: {e}") from e

    def history(self, user_id: UserId) -> List[ReservationHistoryRecord]:
        data = self._get(f"/api/user/{user_id}/history")
        try:
            if not isinstance(data, list):
                raise ValueError(f"Expected a list of history records, got {type(data).__name__}")
            return [ReservationHistoryRecord.from_dict(item) for item in data]
        except ValueError as e:
            raise UpstreamError(f"Malformed history for user {user_id}: {e}") from e


def build_clients(
    repository_url: str,
    reservations_url: str,
    *,
    timeout_s: Optional[float] = None,
    retries: int = 0,
    rate_per_sec: float = 0.0,
    burst: int = 1,
    stats: Optional[UpdaterStats] = None,
) -> Dict[str, _ServiceClient]:
    limiter = TokenBucket(rate_per_sec, burst) if rate_per_sec and rate_per_sec > 0 else None
    common = dict(timeout_s=timeout_s, retries=retries, limiter=limiter, stats=stats)
    return {
        "catalog": BookCatalogClient(repository_url, **common),
        "reservations": ReservationsClient(reservations_url, **common),
    }
