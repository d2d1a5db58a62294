from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

BookId = int
UserId = int


def _require_int(payload: dict, key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Expected integer field {key!r}, got {value!r}")
    return value


def _require_str(payload: dict, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ValueError(f"Expected string field {key!r}, got {value!r}")
    return value


def _require_str_list(payload: dict, key: str) -> Tuple[str, ...]:
    value = payload.get(key)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"Expected list of strings for {key!r}, got {value!r}")
    return tuple(value)


def parse_id_list(payload: Any, what: str) -> List[int]:
    if not isinstance(payload, list):
        raise ValueError(f"Expected a list of {what}, got {type(payload).__name__}")
    out: List[int] = []
    for v in payload:
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError(f"Invalid {what} entry: {v!r}")
        out.append(v)
    return out


@dataclass(frozen=True)
class ReservationHistoryRecord:
    book_id: BookId
    unreserved_at: int  # unix seconds

    @classmethod
    def from_dict(cls, payload: Any) -> "ReservationHistoryRecord":
        if not isinstance(payload, dict):
            raise ValueError(f"History record must be an object, got {payload!r}")
        return cls(
            book_id=_require_int(payload, "book_id"),
            unreserved_at=_require_int(payload, "unreserved_at"),
        )


@dataclass(frozen=True)
class BookTitleAndId:
    book_id: BookId
    title: str

    @classmethod
    def from_dict(cls, payload: Any) -> "BookTitleAndId":
        if not isinstance(payload, dict):
            raise ValueError(f"Book listing entry must be an object, got {payload!r}")
        return cls(book_id=_require_int(payload, "book_id"), title=_require_str(payload, "title"))


@dataclass(frozen=True)
class BookDetails:
    title: str
    authors: Tuple[str, ...]
    publisher: str = ""
    description: str = ""
    tags: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: Any) -> "BookDetails":
        if not isinstance(payload, dict):
            raise ValueError(f"Book details must be an object, got {payload!r}")
        return cls(
            title=_require_str(payload, "title"),
            authors=_require_str_list(payload, "authors"),
            publisher=_require_str(payload, "publisher"),
            description=_require_str(payload, "description"),
            tags=_require_str_list(payload, "tags"),
        )


@dataclass(frozen=True)
class Recommendations:
    """
    Per-user output. Each list is ordered best candidate first.
    """

    most_popular: Tuple[BookId, ...] = ()
    author_match: Tuple[BookId, ...] = ()
    new_author_match: Tuple[BookId, ...] = ()

    def to_dict(self) -> dict:
        return {
            "most_popular": list(self.most_popular),
            "author_match": list(self.author_match),
            "new_author_match": list(self.new_author_match),
        }


@dataclass(frozen=True)
class TickReport:
    tick_no: int
    users_processed: int
    new_users: int
    shard: Optional[int]
    books_fetched: int
    missing_books: int
    elapsed_s: float
    user_ids: Tuple[UserId, ...] = field(default=(), repr=False)


@dataclass(frozen=True)
class StatsSnapshot:
    ticks_done: int
    ticks_failed: int
    requests_made: int
    users_processed: int
    books_fetched: int
    missing_books: int
