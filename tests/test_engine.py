from bookservice_recommendations.core.coefficients import CoefficientsStorage
from bookservice_recommendations.core.engine import RecommendationsEngine
from bookservice_recommendations.core.models import BookDetails, Recommendations, ReservationHistoryRecord


def _book(*authors: str) -> BookDetails:
    return BookDetails(title="Title", authors=tuple(authors), publisher="Pub", description="", tags=())


def _rec(book_id: int, ts: int = 1) -> ReservationHistoryRecord:
    return ReservationHistoryRecord(book_id=book_id, unreserved_at=ts)


def _all_ids(r: Recommendations) -> set:
    return set(r.most_popular) | set(r.author_match) | set(r.new_author_match)


def test_shared_author_scenario_recommends_other_users_book() -> None:
    storage = CoefficientsStorage()
    history = {1: [_rec(1, 100)], 2: [_rec(2, 50)]}
    storage.update_storage(history, {1: _book("X"), 2: _book("X")})

    engine = RecommendationsEngine()
    engine.update_recommendations_for_users(storage, {1: [], 2: []}, history)

    assert engine.get_recommendations_for_user(1).author_match == (2,)
    assert engine.get_recommendations_for_user(2).author_match == (1,)
    assert engine.get_recommendations_for_user(1).most_popular == (2,)


def test_never_recommends_read_or_reserved_books() -> None:
    storage = CoefficientsStorage()
    details = {i: _book(f"A{i % 3}", f"B{i % 2}") for i in range(1, 13)}
    history = {
        1: [_rec(1), _rec(2), _rec(3)],
        2: [_rec(3), _rec(4), _rec(5), _rec(6)],
        3: [_rec(7), _rec(8), _rec(1)],
        4: [_rec(9), _rec(10), _rec(11), _rec(12)],
    }
    storage.update_storage(history, details)
    reservations = {1: [9, 10], 2: [1], 3: [], 4: [2]}

    engine = RecommendationsEngine()
    engine.update_recommendations_for_users(storage, reservations, history)

    for user_id in history:
        seen = set(reservations[user_id]) | {r.book_id for r in history[user_id]}
        recs = engine.get_recommendations_for_user(user_id)
        assert not (_all_ids(recs) & seen)
        assert len(recs.most_popular) <= 4
        assert len(recs.author_match) <= 4
        assert len(recs.new_author_match) <= 4


def test_author_match_prioritizes_frequent_authors_one_book_each() -> None:
    storage = CoefficientsStorage()
    details = {
        1: _book("Often"),
        2: _book("Often"),
        3: _book("Once"),
        4: _book("Often"),
        5: _book("Once"),
    }
    # other readers make books 4 and 5 known
    storage.update_storage({2: [_rec(4)], 3: [_rec(5)]}, details)

    engine = RecommendationsEngine()
    recs = engine.recommend(storage, [3], [_rec(1), _rec(2)])

    assert recs.author_match == (4, 5)


def test_five_tied_authors_capped_deterministically() -> None:
    authors = ["E", "C", "A", "D", "B"]
    details = {}
    for i, author in enumerate(authors):
        details[10 + i] = _book(author)  # read by user 1
        details[20 + i] = _book(author)  # read by someone else
    history = {1: [_rec(10 + i) for i in range(5)], 2: [_rec(20 + i) for i in range(5)]}

    results = []
    for _ in range(3):
        storage = CoefficientsStorage()
        storage.update_storage(history, details)
        engine = RecommendationsEngine(recommendations_count=4)
        engine.update_recommendations_for_users(storage, {1: []}, history)
        results.append(engine.get_recommendations_for_user(1).author_match)

    assert results[0] == results[1] == results[2]
    assert len(results[0]) == 4
    # ties broken by author name: A, B, C, D
    assert results[0] == (22, 24, 21, 23)


def test_new_author_match_ranked_by_affinity() -> None:
    storage = CoefficientsStorage()
    details = {1: _book("Mine"), 2: _book("Close"), 3: _book("Far"), 4: _book("Close")}
    storage.update_storage(
        {
            10: [_rec(1), _rec(2)],
            11: [_rec(1), _rec(4)],
            12: [_rec(3)],
        },
        details,
    )

    engine = RecommendationsEngine()
    recs = engine.recommend(storage, [], [_rec(1)])

    # "Close" co-occurs with "Mine" twice, "Far" never
    assert recs.new_author_match == (2, 3)
    assert recs.author_match == ()


def test_unknown_user_gets_default() -> None:
    storage = CoefficientsStorage()
    details = {i: _book("A") for i in range(1, 7)}
    storage.update_storage({1: [_rec(i) for i in range(1, 7)], 2: [_rec(6), _rec(5)]}, details)

    engine = RecommendationsEngine(recommendations_count=4)
    assert engine.get_recommendations_for_user(99) == Recommendations()

    engine.update_recommendations_for_users(storage, {1: []}, {1: []})

    default = engine.get_recommendations_for_user(99)
    assert default == engine.default_recommendations
    assert default.most_popular == (5, 6, 1, 2)
    assert default.author_match == ()
    assert default.new_author_match == ()


def test_update_replaces_only_processed_users() -> None:
    storage = CoefficientsStorage()
    details = {1: _book("A"), 2: _book("A")}
    storage.update_storage({1: [_rec(1)]}, details)

    engine = RecommendationsEngine()
    engine.update_recommendations_for_users(storage, {1: []}, {1: [_rec(1)]})
    first = engine.get_recommendations_for_user(1)

    storage.update_storage({2: [_rec(2)]}, details)
    engine.update_recommendations_for_users(storage, {2: []}, {2: [_rec(2)]})

    assert engine.get_recommendations_for_user(1) is first
    assert engine.cached_users() == 2


def test_to_dict_shape() -> None:
    recs = Recommendations(most_popular=(1, 2), author_match=(3,), new_author_match=())
    assert recs.to_dict() == {"most_popular": [1, 2], "author_match": [3], "new_author_match": []}
