"""Module for getting recommendations.

Ranks catalog tracks for a user by similarity to the user's taste embedding.
Recommendation strategies are tried in order until one returns items:

1. EmbeddingScanStrategy: streaming nearest-neighbour scan over track
   embeddings, topped up with tracks from the most similar artists the user
   does not follow yet.
2. ExternalStrategy: a catalog-search-by-similar-artist service, seeded with
   the user's most recently acquired artists.
3. PopularityStrategy: the most popular tracks the user does not own.

Whatever strategy answers, owned items are excluded, item ids are unique and
the list never exceeds the requested limit.
"""

import heapq
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Set, Tuple

import numpy as np

from tastematch.exceptions import CollaboratorUnavailableError, InvalidVectorError
from tastematch.recommender.collaborators import (
    Cache,
    Catalog,
    ExternalRecommender,
    FeatureRecord,
    ItemType,
    NullExternalRecommender,
    Ownership,
    UserRecord,
    as_utc,
)
from tastematch.recommender.embed import SOURCE_ITEM_TYPES, EmbeddingAggregator
from tastematch.recommender.vectors import Vector, batch_cosine_similarity, is_valid_embedding

# Configure module logger
logger = logging.getLogger(__name__)

# Default parameters
DEFAULT_LIMIT = 20
DEFAULT_SCAN_BATCH_SIZE = 256
DEFAULT_TRACKS_PER_ARTIST = 3
DEFAULT_SEED_ARTISTS = 5
DEFAULT_CACHE_TTL_SECONDS = 86400


@dataclass(frozen=True)
class Recommendation:
    """One recommended item.

    Attributes:
        item_type: Kind of item, always a track for catalog strategies.
        item_id: Catalog id of the item.
        score: Cosine similarity to the user's taste embedding, or None when
            the strategy has no similarity to report.
        source: Strategy tier that produced the item.
    """

    item_type: ItemType
    item_id: str
    score: Optional[float]
    source: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemType": self.item_type.value,
            "itemId": self.item_id,
            "score": self.score,
            "source": self.source,
        }


@dataclass
class RecommendationRequest:
    """Everything a strategy needs to answer one request."""

    user: UserRecord
    owned: Dict[ItemType, Set[str]]
    limit: int

    def is_owned(self, item_type: ItemType, item_id: str) -> bool:
        return item_id in self.owned.get(ItemType(item_type), set())


class RecommendationStrategy(Protocol):
    name: str
    cacheable: bool

    def recommend(self, request: RecommendationRequest) -> List[Recommendation]:
        ...


def recommendation_cache_key(user: UserRecord, limit: int) -> str:
    return f"recommendations:{user.user_id}:{user.updated_at.isoformat()}:{limit}"


def finalize(request: RecommendationRequest, candidates: Sequence[Recommendation]) -> List[Recommendation]:
    """Drop owned and duplicate items and cap the list at the request limit."""
    results: List[Recommendation] = []
    seen: Set[Tuple[ItemType, str]] = set()
    for candidate in candidates:
        key = (candidate.item_type, candidate.item_id)
        if key in seen or request.is_owned(*key):
            continue
        seen.add(key)
        results.append(candidate)
        if len(results) >= request.limit:
            break
    return results


class CatalogScanner:
    """Streams feature records of one type and keeps the best matches.

    Each batch from the feature store is fetched through the bounded caller,
    so a stalled store aborts the scan with CollaboratorUnavailableError
    instead of blocking. Only the current batch and the top-k heap are held
    in memory.
    """

    def __init__(self, aggregator: EmbeddingAggregator, batch_size: int = DEFAULT_SCAN_BATCH_SIZE):
        self.feature_store = aggregator.feature_store
        self.caller = aggregator.caller
        self.batch_size = batch_size

    def batches(self, item_type: ItemType) -> Iterator[List[FeatureRecord]]:
        iterator = self.caller.call(
            "feature_store", self.feature_store.iter_records, item_type, self.batch_size
        )
        while True:
            batch = self.caller.call("feature_store", next, iterator, None)
            if batch is None:
                return
            yield batch

    def nearest(
        self,
        item_type: ItemType,
        query: Vector,
        exclude: Set[str],
        limit: Optional[int],
    ) -> List[Tuple[FeatureRecord, float]]:
        """Most similar records, best first.

        Ties are broken by higher popularity, then by catalog order.

        Args:
            item_type: Kind of record to scan.
            query: Unit taste embedding.
            exclude: Item ids to skip.
            limit: Number of records to keep, or None to rank everything.

        Returns:
            List of (record, similarity) tuples.
        """
        heap: List[Tuple[float, float, int, FeatureRecord]] = []
        order = 0
        mismatched = 0

        for batch in self.batches(item_type):
            candidates = []
            for record in batch:
                if record.item_id in exclude or not is_valid_embedding(record.embedding):
                    continue
                if record.embedding.size != query.size:
                    mismatched += 1
                    continue
                candidates.append(record)
            if not candidates:
                continue

            matrix = np.vstack([record.embedding for record in candidates])
            similarities = batch_cosine_similarity(query, matrix)

            for record, similarity in zip(candidates, similarities):
                popularity = record.popularity if record.popularity is not None else -1
                entry = (float(similarity), float(popularity), -order, record)
                order += 1
                if limit is None or len(heap) < limit:
                    heapq.heappush(heap, entry)
                elif entry[:3] > heap[0][:3]:
                    heapq.heapreplace(heap, entry)

        if mismatched:
            logger.warning(
                f"Skipped {mismatched} {item_type.value} embeddings of the wrong dimension",
                extra={"event": "dimension_mismatch", "item_type": item_type.value, "count": mismatched},
            )

        ranked = sorted(heap, key=lambda entry: entry[:3], reverse=True)
        return [(entry[3], entry[0]) for entry in ranked]


class EmbeddingScanStrategy:
    """Nearest tracks by embedding, supplemented from neighbouring artists."""

    name = "embedding"
    cacheable = True

    def __init__(
        self,
        aggregator: EmbeddingAggregator,
        catalog: Catalog,
        scan_batch_size: int = DEFAULT_SCAN_BATCH_SIZE,
        tracks_per_artist: int = DEFAULT_TRACKS_PER_ARTIST,
    ):
        self.scanner = CatalogScanner(aggregator, scan_batch_size)
        self.catalog = catalog
        self.caller = aggregator.caller
        self.tracks_per_artist = tracks_per_artist

    def recommend(self, request: RecommendationRequest) -> List[Recommendation]:
        query = request.user.embedding
        if not is_valid_embedding(query):
            return []

        owned_tracks = request.owned.get(ItemType.TRACK, set())
        nearest = self.scanner.nearest(ItemType.TRACK, query, owned_tracks, request.limit)
        results = [
            Recommendation(ItemType.TRACK, record.item_id, round(similarity, 4), self.name)
            for record, similarity in nearest
        ]

        if len(results) < request.limit:
            results.extend(self._from_similar_artists(request, results))

        return results

    def _from_similar_artists(
        self, request: RecommendationRequest, so_far: List[Recommendation]
    ) -> List[Recommendation]:
        """Representative tracks of the closest artists the user does not follow.

        Artist candidates are ranked over the whole artist catalog, keeping
        only their scores, so the pass can walk down the list until the limit
        is met or the artists run out.
        """
        shortfall = request.limit - len(so_far)
        seen = set(request.owned.get(ItemType.TRACK, set()))
        seen.update(r.item_id for r in so_far)

        try:
            artists = self.scanner.nearest(
                ItemType.ARTIST,
                request.user.embedding,
                request.owned.get(ItemType.ARTIST, set()),
                None,
            )
        except CollaboratorUnavailableError:
            logger.warning(f"Artist pass unavailable for user {request.user.user_id}")
            return []

        supplement: List[Recommendation] = []
        for artist, similarity in artists:
            try:
                track_ids = self.caller.call(
                    "catalog", self.catalog.tracks_for_artist, artist.item_id, self.tracks_per_artist
                )
            except CollaboratorUnavailableError:
                continue

            for track_id in track_ids:
                if track_id in seen:
                    continue
                seen.add(track_id)
                supplement.append(
                    Recommendation(ItemType.TRACK, track_id, round(similarity, 4), "artist_neighbour")
                )
                if len(supplement) >= shortfall:
                    return supplement

        return supplement


_UNKNOWN_ACQUIRED_AT = datetime.min.replace(tzinfo=timezone.utc)


def _acquired_key(ownership: Ownership) -> datetime:
    """Sort key putting items with no acquisition time last."""
    if ownership.acquired_at is None:
        return _UNKNOWN_ACQUIRED_AT
    return as_utc(ownership.acquired_at)


class ExternalStrategy:
    """Asks the external catalog service for artists similar to the user's."""

    name = "external"
    cacheable = False

    def __init__(
        self,
        aggregator: EmbeddingAggregator,
        catalog: Catalog,
        external: ExternalRecommender,
        seed_artists: int = DEFAULT_SEED_ARTISTS,
    ):
        self.aggregator = aggregator
        self.catalog = catalog
        self.external = external
        self.caller = aggregator.caller
        self.seed_artists = seed_artists

    def seed_artist_names(self, user_id: str) -> List[str]:
        """Names of the user's most recently acquired artists."""
        owned = self.aggregator.list_owned(user_id, ItemType.ARTIST)
        recent = sorted(owned, key=_acquired_key, reverse=True)

        names = []
        for ownership in recent[: self.seed_artists]:
            try:
                name = self.caller.call("catalog", self.catalog.artist_name, ownership.item_id)
            except CollaboratorUnavailableError:
                continue
            if name:
                names.append(name)
        return names

    def recommend(self, request: RecommendationRequest) -> List[Recommendation]:
        seeds = self.seed_artist_names(request.user.user_id)
        items = self.caller.call(
            "external_recommender", self.external.recommend, seeds, request.limit
        )
        logger.info(
            "External recommender answered",
            extra={"user_id": request.user.user_id, "seeds": len(seeds), "items": len(items or [])},
        )
        return [
            Recommendation(ItemType(item.item_type), item.item_id, None, self.name)
            for item in items or []
        ]


class PopularityStrategy:
    """Most popular unowned tracks, the last resort for cold-start users."""

    name = "popularity"
    cacheable = False

    def __init__(self, aggregator: EmbeddingAggregator, scan_batch_size: int = DEFAULT_SCAN_BATCH_SIZE):
        self.scanner = CatalogScanner(aggregator, scan_batch_size)

    def recommend(self, request: RecommendationRequest) -> List[Recommendation]:
        owned_tracks = request.owned.get(ItemType.TRACK, set())
        heap: List[Tuple[float, int, str]] = []
        order = 0

        for batch in self.scanner.batches(ItemType.TRACK):
            for record in batch:
                if record.item_id in owned_tracks:
                    continue
                popularity = record.popularity if record.popularity is not None else -1
                entry = (float(popularity), -order, record.item_id)
                order += 1
                if len(heap) < request.limit:
                    heapq.heappush(heap, entry)
                elif entry > heap[0]:
                    heapq.heapreplace(heap, entry)

        ranked = sorted(heap, reverse=True)
        return [Recommendation(ItemType.TRACK, item_id, None, self.name) for _, _, item_id in ranked]


class RecommendationEngine:
    """Produces ranked, deduplicated recommendations for a user.

    Results from the embedding strategy are cached under the user's id,
    ``updated_at`` and the limit; any embedding write moves ``updated_at``
    and so invalidates them.
    """

    def __init__(
        self,
        aggregator: EmbeddingAggregator,
        catalog: Catalog,
        cache: Cache,
        external: Optional[ExternalRecommender] = None,
        scan_batch_size: int = DEFAULT_SCAN_BATCH_SIZE,
        tracks_per_artist: int = DEFAULT_TRACKS_PER_ARTIST,
        seed_artists: int = DEFAULT_SEED_ARTISTS,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        strategies: Optional[Sequence[RecommendationStrategy]] = None,
    ):
        """Initialize the engine.

        Args:
            aggregator: Embedding aggregator; also supplies the feature
                store, ownership reads and the bounded caller.
            catalog: Artist names and representative tracks per artist.
            cache: Result cache.
            external: Catalog-search fallback service.
            scan_batch_size: Records per feature-store batch during scans.
            tracks_per_artist: Tracks pulled per neighbouring artist.
            seed_artists: Number of recent artists sent to the external
                service.
            cache_ttl: Lifetime of cached lists, in seconds.
            strategies: Override the default strategy order.
        """
        self.aggregator = aggregator
        self.cache = cache
        self.caller = aggregator.caller
        self.cache_ttl = cache_ttl

        if strategies is None:
            strategies = [
                EmbeddingScanStrategy(aggregator, catalog, scan_batch_size, tracks_per_artist),
                ExternalStrategy(aggregator, catalog, external or NullExternalRecommender(), seed_artists),
                PopularityStrategy(aggregator, scan_batch_size),
            ]
        self.strategies: List[RecommendationStrategy] = list(strategies)

        logger.info(
            f"Initialized RecommendationEngine: strategies="
            f"{[strategy.name for strategy in self.strategies]}"
        )

    def _owned_ids(self, user_id: str) -> Dict[ItemType, Set[str]]:
        """Owned ids per item type; raises if ownership cannot be read."""
        owned = {}
        for item_type in SOURCE_ITEM_TYPES:
            ownerships = self.caller.call(
                "ownership_store", self.aggregator.ownership_store.list_owned, user_id, item_type
            )
            owned[item_type] = {o.item_id for o in ownerships}
        return owned

    def _cached(self, key: str) -> Optional[List[Recommendation]]:
        try:
            return self.caller.call("cache", self.cache.get, key)
        except CollaboratorUnavailableError:
            return None

    def _store(self, key: str, results: List[Recommendation]) -> None:
        try:
            self.caller.call("cache", self.cache.set, key, list(results), self.cache_ttl)
        except CollaboratorUnavailableError:
            logger.debug(f"Could not cache recommendations under {key}")

    def recommend(self, user: UserRecord, limit: int = DEFAULT_LIMIT) -> List[Recommendation]:
        """Get recommendations for a user.

        Args:
            user: User to recommend for.
            limit: Maximum number of items to return.

        Returns:
            Recommendations ordered best first, possibly empty. Never raises
            for missing or unavailable data.
        """
        if limit <= 0:
            return []

        start_time = time.time()
        user = self.aggregator.ensure_embedding(user) or user

        key = recommendation_cache_key(user, limit)
        if is_valid_embedding(user.embedding):
            cached = self._cached(key)
            if cached is not None:
                logger.debug(f"Using cached recommendations for {key}")
                return list(cached)

        try:
            owned = self._owned_ids(user.user_id)
        except CollaboratorUnavailableError:
            # Without the owned set, exclusion cannot be guaranteed
            logger.warning(f"Ownership unavailable for user {user.user_id}, returning no items")
            return []

        request = RecommendationRequest(user=user, owned=owned, limit=limit)
        for strategy in self.strategies:
            try:
                candidates = strategy.recommend(request)
            except (CollaboratorUnavailableError, InvalidVectorError) as e:
                logger.warning(
                    f"Recommendation strategy {strategy.name} failed: {e}",
                    extra={"user_id": user.user_id, "strategy": strategy.name},
                )
                continue

            results = finalize(request, candidates)
            if not results:
                continue

            if strategy.cacheable:
                self._store(key, results)

            logger.info(
                "Recommendations generated",
                extra={
                    "user_id": user.user_id,
                    "strategy": strategy.name,
                    "num_recommendations": len(results),
                    "total_time_ms": round((time.time() - start_time) * 1000, 2),
                },
            )
            return results

        logger.info(f"No recommendations available for user {user.user_id}")
        return []
