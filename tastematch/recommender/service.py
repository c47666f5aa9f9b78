"""TasteMatch service facade.

Wires the aggregator, compatibility scorer, recommendation engine and
recompute triggers to one set of collaborators, and exposes the operations
the HTTP layer and the batch scripts call.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from tastematch.config import Settings, get_settings
from tastematch.exceptions import CollaboratorUnavailableError, UserNotFoundError
from tastematch.recommender.collaborators import (
    BoundedCaller,
    Cache,
    Catalog,
    ExternalRecommender,
    FeatureStore,
    ItemType,
    OwnershipStore,
    TTLCache,
    UserRecord,
    UserStore,
    utcnow,
)
from tastematch.recommender.compatibility import CompatibilityResult, CompatibilityScorer
from tastematch.recommender.embed import (
    DEFAULT_REFRESH_BATCH_SIZE,
    DEFAULT_SIMILAR_USERS,
    DEFAULT_SIMILARITY_THRESHOLD,
    EmbeddingAggregator,
)
from tastematch.recommender.recommend import Recommendation, RecommendationEngine
from tastematch.recommender.triggers import EmbeddingRefreshDebouncer, FeatureUpdateFanout
from tastematch.recommender.utils import load_stores
from tastematch.recommender.vectors import Vector
from tastematch.recommender.weighting import WeightingPolicy

# Configure module logger
logger = logging.getLogger(__name__)


class TasteService:
    """Entry point for every taste operation.

    Example:
        >>> service = TasteService(features, ownerships, users)
        >>> service.aggregate_embedding_for("u1")
        >>> service.get_compatibility("u1", "u2")
        42.7
    """

    def __init__(
        self,
        feature_store: FeatureStore,
        ownership_store: OwnershipStore,
        user_store: UserStore,
        catalog: Optional[Catalog] = None,
        cache: Optional[Cache] = None,
        external: Optional[ExternalRecommender] = None,
        settings: Optional[Settings] = None,
        policy: Optional[WeightingPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the service.

        Args:
            feature_store: Per-item feature records.
            ownership_store: Owned items per user.
            user_store: Persisted user embeddings.
            catalog: Artist names and tracks; defaults to the feature store,
                which implements both interfaces in memory.
            cache: Result cache; defaults to a TTLCache sized from settings.
            external: Catalog-search fallback for recommendations.
            settings: Application settings; defaults to ``get_settings()``.
            policy: Weighting policy; defaults to one built from settings.
            clock: Returns "now" for recency weighting.
        """
        self.settings = settings or get_settings()
        self.policy = policy or WeightingPolicy.from_settings(self.settings)
        self.user_store = user_store
        self.cache = cache if cache is not None else TTLCache(
            max_size=self.settings.cache_max_size,
            default_ttl=self.settings.cache_ttl_seconds,
        )
        self.caller = BoundedCaller(
            timeout_seconds=self.settings.collaborator_timeout_seconds,
            max_workers=self.settings.collaborator_max_workers,
        )

        self.aggregator = EmbeddingAggregator(
            feature_store,
            ownership_store,
            user_store,
            policy=self.policy,
            caller=self.caller,
            embedding_dim=self.settings.embedding_dim,
            clock=clock,
        )
        self.scorer = CompatibilityScorer(
            self.aggregator,
            self.cache,
            policy=self.policy,
            cache_ttl=self.settings.cache_ttl_seconds,
        )
        self.engine = RecommendationEngine(
            self.aggregator,
            catalog if catalog is not None else feature_store,
            self.cache,
            external=external,
            scan_batch_size=self.settings.scan_batch_size,
            tracks_per_artist=self.settings.artist_tracks_per_artist,
            seed_artists=self.settings.external_seed_artists,
            cache_ttl=self.settings.cache_ttl_seconds,
        )
        self.debouncer = EmbeddingRefreshDebouncer(
            self.aggregator.aggregate_embedding_for,
            window_seconds=self.settings.debounce_seconds,
            max_wait_seconds=self.settings.debounce_max_wait_seconds,
        )
        self.fanout = FeatureUpdateFanout(ownership_store, self.debouncer, caller=self.caller)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        external: Optional[ExternalRecommender] = None,
    ) -> "TasteService":
        """Build a service over in-memory stores loaded from ``snapshot_path``."""
        settings = settings or get_settings()
        stores = load_stores(settings.snapshot_path)
        return cls(
            stores.feature_store,
            stores.ownership_store,
            stores.user_store,
            external=external,
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> UserRecord:
        """Look up a user.

        An unreachable user store yields a bare record so that callers fall
        through to their degraded paths.

        Raises:
            UserNotFoundError: If the user store does not know the id.
        """
        try:
            user = self.caller.call("user_store", self.user_store.get, user_id)
        except CollaboratorUnavailableError:
            logger.warning(f"User store unavailable, continuing without record for {user_id}")
            return UserRecord(user_id=user_id)

        if user is None:
            raise UserNotFoundError(user_id)
        return user

    # ------------------------------------------------------------------
    # Exposed operations
    # ------------------------------------------------------------------

    def aggregate_embedding_for(self, user_id: str) -> Optional[Vector]:
        """Recompute and persist a user's embedding now."""
        return self.aggregator.aggregate_embedding_for(user_id)

    def get_compatibility_result(self, user_id_a: str, user_id_b: str) -> CompatibilityResult:
        user_a = self.get_user(user_id_a)
        user_b = self.get_user(user_id_b)
        return self.scorer.score_with_method(user_a, user_b)

    def get_compatibility(self, user_id_a: str, user_id_b: str) -> float:
        """Compatibility score in [0, 100]."""
        return self.get_compatibility_result(user_id_a, user_id_b).score

    def recommend(self, user_id: str, limit: Optional[int] = None) -> List[Recommendation]:
        if limit is None:
            limit = self.settings.default_recommendation_limit
        return self.engine.recommend(self.get_user(user_id), limit)

    def get_recommendations(self, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Recommendations as ``{itemType, itemId, score, source}`` dictionaries."""
        return [recommendation.to_dict() for recommendation in self.recommend(user_id, limit)]

    def find_similar_users(
        self,
        user_id: str,
        limit: int = DEFAULT_SIMILAR_USERS,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> List[Tuple[str, float]]:
        self.get_user(user_id)
        return self.aggregator.find_similar_users(user_id, limit=limit, threshold=threshold)

    def genre_breakdown(self, user_id: str) -> Dict[str, float]:
        self.get_user(user_id)
        return self.aggregator.genre_breakdown(user_id)

    # ------------------------------------------------------------------
    # Triggers and batch jobs
    # ------------------------------------------------------------------

    def on_ownership_changed(self, user_id: str) -> None:
        """Schedule a debounced recompute after the user's items changed."""
        self.debouncer.notify(user_id)

    def on_feature_updated(self, item_type: ItemType, item_id: str) -> List[str]:
        """Schedule recomputes for every owner of an updated item."""
        return self.fanout.on_feature_updated(item_type, item_id)

    def flush_pending(self) -> List[str]:
        """Run debounced recomputes immediately."""
        return self.debouncer.flush()

    def refresh_embeddings(self, user_ids: List[str]) -> Dict[str, List[str]]:
        return self.aggregator.refresh_embeddings(user_ids)

    def refresh_all_embeddings(self, batch_size: int = DEFAULT_REFRESH_BATCH_SIZE) -> Dict[str, int]:
        return self.aggregator.refresh_all_embeddings(batch_size=batch_size)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Runtime state for the status endpoint."""
        status: Dict[str, Any] = {
            "embedding_dim": self.settings.embedding_dim,
            "pending_refreshes": len(self.debouncer.pending()),
            "strategies": {
                "compatibility": [s.name for s in self.scorer.strategies],
                "recommendations": [s.name for s in self.engine.strategies],
            },
        }
        if hasattr(self.user_store, "__len__"):
            status["users"] = len(self.user_store)
        if hasattr(self.cache, "stats"):
            status["cache"] = self.cache.stats()
        return status

    def shutdown(self) -> None:
        """Cancel pending recomputes and stop the collaborator workers."""
        self.debouncer.shutdown()
        self.caller.shutdown()
        logger.info("TasteService shut down")
