from __future__ import annotations

from bookservice_recommendations.core.engine import RecommendationsEngine
from bookservice_recommendations.core.models import Recommendations, UserId
from bookservice_recommendations.core.rwlock import ReadWriteLock


class RecommendationsProvider:
    """
    Read-only handle for the serving layer.

    Lookups only take the engine read lock, which the updater holds for the
    in-memory recompute and never across an upstream call.
    """

    def __init__(self, engine: RecommendationsEngine, lock: ReadWriteLock) -> None:
        self._engine = engine
        self._lock = lock

    def get_recommendations_for_user(self, user_id: UserId) -> Recommendations:
        with self._lock.read_locked():
            return self._engine.get_recommendations_for_user(user_id)
