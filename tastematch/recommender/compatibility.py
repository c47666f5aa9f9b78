"""Music compatibility between two users.

Scores how alike two users' tastes are on a 0-100 scale. The scorer tries an
ordered list of strategies and returns the first one that produces a score:

1. EmbeddingCompatibility: cosine similarity of the two taste embeddings,
   rescaled to [0, 1], stretched by the convexity exponent and cached.
2. OverlapCompatibility: weighted Jaccard overlap of the raw owned track,
   artist and album ids plus the genres they carry. Always produces a score,
   0 when neither user owns anything.

Both strategies evaluate the pair in sorted user-id order, so the score does
not depend on argument order.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple

from tastematch.exceptions import CollaboratorUnavailableError, InvalidVectorError
from tastematch.recommender.collaborators import BoundedCaller, Cache, ItemType, UserRecord
from tastematch.recommender.embed import SOURCE_ITEM_TYPES, EmbeddingAggregator
from tastematch.recommender.vectors import cosine_similarity
from tastematch.recommender.weighting import WeightingPolicy

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 86400  # one day
MAX_SCORE = 100.0

# Default weights for the overlap fallback
DEFAULT_OVERLAP_WEIGHTS: Dict[str, float] = {
    ItemType.TRACK.value: 0.35,
    ItemType.ARTIST.value: 0.35,
    ItemType.ALBUM.value: 0.1,
    "genre": 0.2,
}


@dataclass(frozen=True)
class CompatibilityResult:
    """A compatibility score and the strategy that produced it."""

    score: float
    method: str


class CompatibilityStrategy(Protocol):
    name: str

    def score(self, user_a: UserRecord, user_b: UserRecord) -> Optional[CompatibilityResult]:
        ...


def ordered_pair(user_a: UserRecord, user_b: UserRecord) -> Tuple[UserRecord, UserRecord]:
    """Put a pair of users in a canonical order."""
    if user_b.user_id < user_a.user_id:
        return user_b, user_a
    return user_a, user_b


def compatibility_cache_key(user_a: UserRecord, user_b: UserRecord) -> str:
    """Cache key for an embedding-based score.

    Derived from both ids and both ``updated_at`` values, so any embedding
    write for either user produces a new key.
    """
    first, second = ordered_pair(user_a, user_b)
    return (
        f"user_compatibility:{first.user_id}-{second.user_id}:"
        f"{first.updated_at.isoformat()}-{second.updated_at.isoformat()}"
    )


def similarity_to_score(similarity: float, policy: WeightingPolicy) -> float:
    """Map a cosine similarity in [-1, 1] to a 0-100 score.

    Higher similarity never yields a lower score.
    """
    unit = (similarity + 1.0) / 2.0
    score = round(policy.stretch(unit) * MAX_SCORE, 1)
    return min(MAX_SCORE, max(0.0, score))


def jaccard(first: Set[str], second: Set[str]) -> float:
    union = first | second
    if not union:
        return 0.0
    return len(first & second) / len(union)


class EmbeddingCompatibility:
    """Compatibility from the two users' taste embeddings."""

    name = "embedding"

    def __init__(
        self,
        aggregator: EmbeddingAggregator,
        cache: Cache,
        policy: Optional[WeightingPolicy] = None,
        caller: Optional[BoundedCaller] = None,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
    ):
        self.aggregator = aggregator
        self.cache = cache
        self.policy = policy or aggregator.policy
        self.caller = caller or aggregator.caller
        self.cache_ttl = cache_ttl

    def _cache_get(self, key: str) -> Optional[float]:
        try:
            return self.caller.call("cache", self.cache.get, key)
        except CollaboratorUnavailableError:
            return None

    def _cache_set(self, key: str, score: float) -> None:
        try:
            self.caller.call("cache", self.cache.set, key, score, self.cache_ttl)
        except CollaboratorUnavailableError:
            logger.debug(f"Could not cache compatibility under {key}")

    def score(self, user_a: UserRecord, user_b: UserRecord) -> Optional[CompatibilityResult]:
        first = self.aggregator.ensure_embedding(user_a)
        second = first and self.aggregator.ensure_embedding(user_b)
        if first is None or second is None:
            return None
        first, second = ordered_pair(first, second)

        key = compatibility_cache_key(first, second)
        cached = self._cache_get(key)
        if cached is not None:
            logger.debug(f"Using cached compatibility for {key}")
            return CompatibilityResult(float(cached), self.name)

        try:
            similarity = cosine_similarity(first.embedding, second.embedding)
        except InvalidVectorError as e:
            logger.warning(
                f"Cannot compare embeddings of users {first.user_id} and {second.user_id}: {e.message}",
                extra={"event": "invalid_vector", **e.details},
            )
            return None

        score = similarity_to_score(similarity, self.policy)
        self._cache_set(key, score)
        return CompatibilityResult(score, self.name)


class OverlapCompatibility:
    """Compatibility from shared owned items and genres.

    Used when either user has no taste embedding. Each category contributes
    its Jaccard similarity times its weight; weights are normalized to sum
    to one.
    """

    name = "overlap"

    def __init__(
        self,
        aggregator: EmbeddingAggregator,
        weights: Optional[Dict[str, float]] = None,
        include_genres: bool = True,
    ):
        self.aggregator = aggregator
        self.include_genres = include_genres

        weights = dict(weights or DEFAULT_OVERLAP_WEIGHTS)
        if not include_genres:
            weights.pop("genre", None)

        # Normalize weights
        total_weight = sum(weights.values())
        if total_weight > 0:
            weights = {category: w / total_weight for category, w in weights.items()}
        self.weights = weights

    def _owned_ids(self, user_id: str) -> Dict[ItemType, Set[str]]:
        return {
            item_type: {o.item_id for o in self.aggregator.list_owned(user_id, item_type)}
            for item_type in SOURCE_ITEM_TYPES
        }

    def _genres(self, owned: Dict[ItemType, Set[str]]) -> Set[str]:
        genres = set()
        for item_type, item_ids in owned.items():
            for item_id in sorted(item_ids):
                record = self.aggregator.read_feature(item_type, item_id)
                if record is None:
                    continue
                if record.genre:
                    genres.add(record.genre.lower())
                genres.update(tag.lower() for tag in record.tags)
        return genres

    def breakdown(self, user_a: UserRecord, user_b: UserRecord) -> Dict[str, float]:
        """Jaccard similarity per category, for explainability."""
        first, second = ordered_pair(user_a, user_b)
        owned_first = self._owned_ids(first.user_id)
        owned_second = self._owned_ids(second.user_id)

        parts = {
            item_type.value: jaccard(owned_first[item_type], owned_second[item_type])
            for item_type in SOURCE_ITEM_TYPES
        }
        if self.include_genres:
            parts["genre"] = jaccard(self._genres(owned_first), self._genres(owned_second))
        return parts

    def score(self, user_a: UserRecord, user_b: UserRecord) -> Optional[CompatibilityResult]:
        parts = self.breakdown(user_a, user_b)
        overall = sum(self.weights.get(category, 0.0) * value for category, value in parts.items())
        score = min(MAX_SCORE, max(0.0, round(overall * MAX_SCORE, 1)))
        return CompatibilityResult(score, self.name)


class CompatibilityScorer:
    """Tries each compatibility strategy in order until one yields a score.

    The default order is embedding first, then item overlap; the switch is
    all-or-nothing, so a pair is never scored with one embedding side and
    one overlap side.
    """

    def __init__(
        self,
        aggregator: EmbeddingAggregator,
        cache: Cache,
        policy: Optional[WeightingPolicy] = None,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        strategies: Optional[Sequence[CompatibilityStrategy]] = None,
    ):
        if strategies is None:
            strategies = [
                EmbeddingCompatibility(aggregator, cache, policy=policy, cache_ttl=cache_ttl),
                OverlapCompatibility(aggregator),
            ]
        self.strategies: List[CompatibilityStrategy] = list(strategies)

        logger.info(
            f"Initialized CompatibilityScorer: strategies="
            f"{[strategy.name for strategy in self.strategies]}"
        )

    def score_with_method(self, user_a: UserRecord, user_b: UserRecord) -> CompatibilityResult:
        for strategy in self.strategies:
            try:
                result = strategy.score(user_a, user_b)
            except (CollaboratorUnavailableError, InvalidVectorError) as e:
                logger.warning(
                    f"Compatibility strategy {strategy.name} failed: {e}",
                    extra={"strategy": strategy.name, "error_type": type(e).__name__},
                )
                continue
            if result is not None:
                logger.debug(
                    f"Compatibility {user_a.user_id}/{user_b.user_id} via {strategy.name}: "
                    f"{result.score}"
                )
                return result

        return CompatibilityResult(0.0, "none")

    def compatibility(self, user_a: UserRecord, user_b: UserRecord) -> float:
        """Compatibility score in [0, 100]."""
        return self.score_with_method(user_a, user_b).score
