"""User taste embeddings.

Builds one normalized embedding per user from the feature embeddings of the
tracks, artists and albums the user owns, weighted by how recently each item
was acquired and how popular it is, with the user's anthem track on top.
"""

import logging
import threading
import time
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from tastematch.exceptions import CollaboratorUnavailableError
from tastematch.recommender.collaborators import (
    BoundedCaller,
    FeatureRecord,
    FeatureStore,
    ItemType,
    OwnershipStore,
    UserRecord,
    UserStore,
    utcnow,
)
from tastematch.recommender.vectors import (
    Vector,
    cosine_similarity,
    is_valid_embedding,
    normalize,
    weighted_average,
)
from tastematch.recommender.weighting import WeightingPolicy

# Configure module logger
logger = logging.getLogger(__name__)

# Item kinds that contribute to a user's taste, in collection order
SOURCE_ITEM_TYPES = (ItemType.TRACK, ItemType.ARTIST, ItemType.ALBUM)

DEFAULT_REFRESH_BATCH_SIZE = 100
DEFAULT_SIMILAR_USERS = 10
DEFAULT_SIMILARITY_THRESHOLD = 0.8


class EmbeddingAggregator:
    """Computes and stores taste embeddings for users.

    Recomputation for one user runs under a per-user lock, so concurrent
    triggers for the same user queue up instead of racing; different users
    never block each other.
    """

    def __init__(
        self,
        feature_store: FeatureStore,
        ownership_store: OwnershipStore,
        user_store: UserStore,
        policy: Optional[WeightingPolicy] = None,
        caller: Optional[BoundedCaller] = None,
        embedding_dim: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the aggregator.

        Args:
            feature_store: Source of per-item feature records.
            ownership_store: Source of the user's owned items.
            user_store: Where the resulting embedding is persisted.
            policy: Weighting policy; defaults to WeightingPolicy().
            caller: Timeout wrapper for collaborator calls.
            embedding_dim: Expected dimension of every embedding. Vectors of
                any other size are discarded. None accepts the dimension of
                the first vector seen.
            clock: Returns "now" for recency weighting.
        """
        self.feature_store = feature_store
        self.ownership_store = ownership_store
        self.user_store = user_store
        self.policy = policy or WeightingPolicy()
        self.caller = caller or BoundedCaller()
        self.embedding_dim = embedding_dim
        self._clock = clock
        self._user_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Collaborator reads
    # ------------------------------------------------------------------

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._user_locks[user_id] = lock
            return lock

    def load_user(self, user_id: str) -> Optional[UserRecord]:
        try:
            return self.caller.call("user_store", self.user_store.get, user_id)
        except CollaboratorUnavailableError:
            return None

    def read_feature(self, item_type: ItemType, item_id: str) -> Optional[FeatureRecord]:
        """Read one feature record; a failed read is logged and skipped."""
        try:
            return self.caller.call("feature_store", self.feature_store.get, item_type, item_id)
        except CollaboratorUnavailableError:
            logger.warning(
                f"Skipping {item_type.value} {item_id}: feature store unavailable",
                extra={"item_type": item_type.value, "item_id": item_id},
            )
            return None

    def list_owned(self, user_id: str, item_type: ItemType):
        try:
            return self.caller.call(
                "ownership_store", self.ownership_store.list_owned, user_id, item_type
            )
        except CollaboratorUnavailableError:
            logger.warning(
                f"Could not list owned {item_type.value}s for user {user_id}",
                extra={"user_id": user_id, "item_type": item_type.value},
            )
            return []

    def _usable_vector(self, vector: Optional[Vector], item_type: ItemType, item_id: str) -> bool:
        if vector is None:
            return False
        if not is_valid_embedding(vector):
            logger.warning(
                f"Discarding invalid embedding for {item_type.value} {item_id}",
                extra={"event": "invalid_vector", "item_type": item_type.value, "item_id": item_id},
            )
            return False
        if self.embedding_dim is not None and vector.size != self.embedding_dim:
            logger.warning(
                f"Discarding {item_type.value} {item_id}: dimension {vector.size}, "
                f"expected {self.embedding_dim}",
                extra={
                    "event": "dimension_mismatch",
                    "item_type": item_type.value,
                    "item_id": item_id,
                    "expected": self.embedding_dim,
                    "actual": int(vector.size),
                },
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def collect_weighted_sources(self, user: UserRecord) -> List[Tuple[Vector, float]]:
        """Gather (embedding, weight) pairs for everything the user owns.

        Items without a usable embedding, or whose feature record could not
        be read, are skipped. The anthem track, if it has an embedding, is
        added once more with the fixed anthem weight.
        """
        now = self._clock()
        sources: List[Tuple[Vector, float]] = []

        for item_type in SOURCE_ITEM_TYPES:
            for ownership in self.list_owned(user.user_id, item_type):
                record = self.read_feature(item_type, ownership.item_id)
                if record is None or not self._usable_vector(
                    record.embedding, item_type, ownership.item_id
                ):
                    continue
                weight = self.policy.item_weight(
                    item_type, ownership.acquired_at, record.popularity, now
                )
                sources.append((record.embedding, weight))

        if user.anthem_track_id:
            record = self.read_feature(ItemType.TRACK, user.anthem_track_id)
            if record is not None and self._usable_vector(
                record.embedding, ItemType.TRACK, user.anthem_track_id
            ):
                sources.append((record.embedding, self.policy.anthem_weight))

        return sources

    def compute_embedding(self, user: UserRecord) -> Optional[Vector]:
        """Compute a user's taste embedding without storing it.

        Returns:
            Unit-length embedding, or None if the user has no owned item with
            a usable embedding or the result fails validation.
        """
        sources = self.collect_weighted_sources(user)
        if not sources:
            logger.warning(
                f"No embeddings found for user {user.user_id}",
                extra={"user_id": user.user_id},
            )
            return None

        average = weighted_average(sources)
        if average is None:
            return None

        embedding = normalize(average)
        if not is_valid_embedding(embedding):
            logger.error(
                f"Invalid embedding calculated for user {user.user_id}",
                extra={"event": "invalid_aggregate", "user_id": user.user_id},
            )
            return None

        return embedding

    def aggregate(self, user: UserRecord) -> Optional[Vector]:
        """Recompute and persist a user's embedding.

        A None result leaves the stored embedding untouched.
        """
        start_time = time.time()

        with self._lock_for(user.user_id):
            embedding = self.compute_embedding(user)
            if embedding is None:
                return None

            try:
                self.caller.call("user_store", self.user_store.save_embedding, user.user_id, embedding)
            except CollaboratorUnavailableError:
                logger.error(
                    f"Could not persist embedding for user {user.user_id}",
                    extra={"user_id": user.user_id},
                )
                return None

        logger.info(
            "Updated user embedding",
            extra={
                "user_id": user.user_id,
                "dimension": int(embedding.size),
                "duration_ms": round((time.time() - start_time) * 1000, 2),
            },
        )
        return embedding

    def aggregate_embedding_for(self, user_id: str) -> Optional[Vector]:
        """Load a user by id, then recompute and persist their embedding."""
        user = self.load_user(user_id)
        if user is None:
            logger.warning(f"User {user_id} not found, skipping embedding update")
            return None
        return self.aggregate(user)

    def ensure_embedding(self, user: UserRecord) -> Optional[UserRecord]:
        """Return the user with a valid embedding, aggregating once if needed.

        Returns:
            The user record (reloaded after a fresh aggregation, so that
            ``updated_at`` is current), or None if no embedding can be built.
        """
        if is_valid_embedding(user.embedding):
            return user

        logger.info(
            f"User {user.user_id} has no embedding, attempting aggregation",
            extra={"user_id": user.user_id},
        )
        if self.aggregate(user) is None:
            return None

        refreshed = self.load_user(user.user_id)
        if refreshed is None or not is_valid_embedding(refreshed.embedding):
            return None
        return refreshed

    # ------------------------------------------------------------------
    # Batch refresh
    # ------------------------------------------------------------------

    def refresh_embeddings(self, user_ids: Iterable[str]) -> Dict[str, List[str]]:
        """Recompute embeddings for several users.

        Returns:
            Dictionary with "success" and "failed" lists of user ids.
        """
        results: Dict[str, List[str]] = {"success": [], "failed": []}
        for user_id in user_ids:
            if self.aggregate_embedding_for(user_id) is not None:
                results["success"].append(user_id)
            else:
                results["failed"].append(user_id)
        return results

    def refresh_all_embeddings(self, batch_size: int = DEFAULT_REFRESH_BATCH_SIZE) -> Dict[str, int]:
        """Recompute embeddings for every user, logging progress per batch.

        Args:
            batch_size: Number of users between progress reports.

        Returns:
            Dictionary with total, processed and failed counts.
        """
        user_ids = list(self.user_store.iter_user_ids())
        total = len(user_ids)
        processed = 0
        failed = 0

        for start in range(0, total, batch_size):
            batch = user_ids[start:start + batch_size]
            results = self.refresh_embeddings(batch)
            processed += len(results["success"])
            failed += len(results["failed"])
            logger.info(f"Processed {processed + failed}/{total} users ({failed} failures)")

        return {"total": total, "processed": processed, "failed": failed}

    # ------------------------------------------------------------------
    # Taste lookups
    # ------------------------------------------------------------------

    def find_similar_users(
        self,
        user_id: str,
        limit: int = DEFAULT_SIMILAR_USERS,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> List[Tuple[str, float]]:
        """Find users whose taste embedding is close to this user's.

        Args:
            user_id: User to compare against.
            limit: Maximum number of users to return.
            threshold: Minimum cosine similarity to include a user.

        Returns:
            List of (user_id, similarity) tuples, most similar first.
        """
        user = self.load_user(user_id)
        if user is None or not is_valid_embedding(user.embedding):
            return []

        try:
            others = self.caller.call(
                "user_store", lambda: list(self.user_store.iter_users_with_embeddings())
            )
        except CollaboratorUnavailableError:
            return []

        similar = []
        for other in others:
            if other.user_id == user_id or not is_valid_embedding(other.embedding):
                continue
            if other.embedding.size != user.embedding.size:
                continue
            similarity = cosine_similarity(user.embedding, other.embedding)
            if similarity >= threshold:
                similar.append((other.user_id, similarity))

        similar.sort(key=lambda pair: (-pair[1], pair[0]))
        return similar[:limit]

    def genre_breakdown(self, user_id: str) -> Dict[str, float]:
        """Share of each genre across the user's owned items, in percent."""
        genre_counts: Counter = Counter()
        for item_type in SOURCE_ITEM_TYPES:
            for ownership in self.list_owned(user_id, item_type):
                record = self.read_feature(item_type, ownership.item_id)
                if record is not None and record.genre:
                    genre_counts[record.genre] += 1

        total = float(sum(genre_counts.values()))
        if total == 0:
            return {}

        percentages = {
            genre: round(count / total * 100, 1) for genre, count in genre_counts.items()
        }
        return dict(sorted(percentages.items(), key=lambda kv: (-kv[1], kv[0])))

