"""Tests for user compatibility scoring."""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from tastematch.recommender.collaborators import (
    FeatureRecord,
    InMemoryFeatureStore,
    InMemoryOwnershipStore,
    InMemoryUserStore,
    ItemType,
    TTLCache,
)
from tastematch.recommender.compatibility import (
    CompatibilityScorer,
    OverlapCompatibility,
    compatibility_cache_key,
    similarity_to_score,
)
from tastematch.recommender.embed import EmbeddingAggregator
from tastematch.recommender.weighting import WeightingPolicy

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)
LONG_AGO = NOW - timedelta(days=400)


class World:
    """Stores plus a factory for fresh scorers over them."""

    def __init__(self):
        self.features = InMemoryFeatureStore()
        self.ownerships = InMemoryOwnershipStore()
        self.users = InMemoryUserStore()
        self.aggregator = EmbeddingAggregator(
            self.features, self.ownerships, self.users, clock=lambda: NOW
        )

    def scorer(self, cache=None):
        return CompatibilityScorer(self.aggregator, cache if cache is not None else TTLCache())

    def own(self, user_id, track_id, embedding=None, genre=None, tags=()):
        if self.features.get(ItemType.TRACK, track_id) is None:
            self.features.put(
                FeatureRecord(ItemType.TRACK, track_id, genre=genre, embedding=embedding, tags=tags)
            )
        self.ownerships.add(user_id, ItemType.TRACK, track_id, LONG_AGO)


@pytest.fixture
def world():
    return World()


# ===== Embedding Strategy Tests =====


@pytest.mark.parametrize(
    "first,second,expected",
    [
        ([1.0, 0.0], [1.0, 0.0], 100.0),
        ([1.0, 0.0], [-1.0, 0.0], 0.0),
        ([1.0, 0.0], [0.0, 1.0], 35.4),
    ],
)
def test_embedding_scores(world, first, second, expected):
    """Identical, opposite and orthogonal tastes."""
    a = world.users.add_user("a", embedding=first)
    b = world.users.add_user("b", embedding=second)

    result = world.scorer().score_with_method(a, b)

    assert result.score == expected
    assert result.method == "embedding"


def test_identical_owned_track_scores_100(world):
    """Two users owning only the same track are fully compatible."""
    a = world.users.add_user("a")
    b = world.users.add_user("b")
    world.own("a", "t1", embedding=[0.3, 0.4, 0.5])
    world.own("b", "t1")

    assert world.scorer().compatibility(a, b) == 100.0


def test_score_is_symmetric_and_bounded(world):
    """Argument order never changes the score; scores stay in [0, 100]."""
    rng = np.random.default_rng(3)
    users = [world.users.add_user(f"u{i}", embedding=rng.normal(size=8)) for i in range(6)]

    for a in users:
        for b in users:
            forward = world.scorer().compatibility(a, b)
            backward = world.scorer().compatibility(b, a)
            assert forward == backward
            assert 0.0 <= forward <= 100.0


def test_similarity_to_score_is_monotonic():
    policy = WeightingPolicy()
    scores = [similarity_to_score(s, policy) for s in np.linspace(-1.0, 1.0, 201)]

    assert all(later >= earlier for earlier, later in zip(scores, scores[1:]))
    assert scores[0] == 0.0
    assert scores[-1] == 100.0


# ===== Cache Tests =====


def test_cached_score_is_reused(world):
    """A score already in the cache is returned without recomputation."""
    cache = TTLCache()
    a = world.users.add_user("a", embedding=[1.0, 0.0])
    b = world.users.add_user("b", embedding=[1.0, 0.0])
    cache.set(compatibility_cache_key(a, b), 42.0)

    assert world.scorer(cache).compatibility(b, a) == 42.0


def test_embedding_update_invalidates_cached_score(world):
    """Writing a new embedding changes the key, so the old score is ignored."""
    cache = TTLCache()
    scorer = world.scorer(cache)
    world.users.add_user("a", embedding=[1.0, 0.0])
    world.users.add_user("b", embedding=[1.0, 0.0])

    assert scorer.compatibility(world.users.get("a"), world.users.get("b")) == 100.0

    world.users.save_embedding("a", [-1.0, 0.0])

    assert scorer.compatibility(world.users.get("a"), world.users.get("b")) == 0.0


# ===== Overlap Strategy Tests =====


def test_overlap_fallback_on_shared_tracks(world):
    """Without embeddings, track overlap drives the score."""
    a = world.users.add_user("a")
    b = world.users.add_user("b")
    for track in ("t1", "t2"):
        world.own("a", track)
    for track in ("t2", "t3"):
        world.own("b", track)

    result = world.scorer().score_with_method(a, b)

    assert result.method == "overlap"
    assert result.score == 11.7


def test_overlap_with_nothing_owned(world):
    a = world.users.add_user("a")
    b = world.users.add_user("b")

    result = world.scorer().score_with_method(a, b)

    assert result.method == "overlap"
    assert result.score == 0.0


def test_overlap_genres_match_case_insensitively(world):
    """Shared genres count even when no item is shared."""
    a = world.users.add_user("a")
    b = world.users.add_user("b")
    world.own("a", "t1", genre="Rock")
    world.own("b", "t2", genre="rock")

    assert world.scorer().compatibility(a, b) == 20.0


def test_overlap_breakdown(world):
    world.users.add_user("a")
    world.users.add_user("b")
    world.own("a", "t1", tags=("indie",))
    world.own("b", "t1")

    overlap = OverlapCompatibility(world.aggregator)
    parts = overlap.breakdown(world.users.get("b"), world.users.get("a"))

    assert parts == {"track": 1.0, "artist": 0.0, "album": 0.0, "genre": 1.0}


@pytest.mark.parametrize(
    "first,second",
    [
        ([("t1", "rock", ())], [("t1", "rock", ())]),
        ([("t1", "rock", ()), ("t2", "jazz", ())], [("t2", "jazz", ()), ("t3", "pop", ())]),
        ([("t1", "Rock", ("indie",))], [("t4", "folk", ("Indie", "lofi"))]),
        ([("t1", None, ("ambient",)), ("t5", "soul", ())], [("t6", "Soul", ("ambient",))]),
        ([("t1", "rock", ())], []),
    ],
)
def test_overlap_is_symmetric_and_bounded(world, first, second):
    """Argument order never changes an overlap score, whatever is shared."""
    a = world.users.add_user("a")
    b = world.users.add_user("b")
    for track_id, genre, tags in first:
        world.own("a", track_id, genre=genre, tags=tags)
    for track_id, genre, tags in second:
        world.own("b", track_id, genre=genre, tags=tags)

    forward = world.scorer().score_with_method(a, b)
    backward = world.scorer().score_with_method(b, a)

    assert forward.method == backward.method == "overlap"
    assert forward.score == backward.score
    assert 0.0 <= forward.score <= 100.0


def test_one_sided_embedding_uses_overlap(world):
    """If either side lacks an embedding, both sides use the overlap path."""
    a = world.users.add_user("a", embedding=[1.0, 0.0])
    b = world.users.add_user("b")
    world.own("a", "t1")
    world.own("b", "t1")

    result = world.scorer().score_with_method(a, b)

    assert result.method == "overlap"
    assert result.score == 35.0


def test_missing_embedding_is_aggregated_first(world):
    """A user whose embedding can be built is aggregated, then compared."""
    a = world.users.add_user("a", embedding=[0.0, 1.0])
    b = world.users.add_user("b")
    world.own("b", "t1", embedding=[0.0, 5.0])

    result = world.scorer().score_with_method(a, b)

    assert result.method == "embedding"
    assert result.score == 100.0
    assert world.users.get("b").embedding is not None


# ===== Timestamp Tests =====


def test_acquisition_times_without_timezone_are_read_as_utc(world):
    """Ownership rows from a store that drops the timezone still score."""
    a = world.users.add_user("a")
    b = world.users.add_user("b")
    world.features.put(FeatureRecord(ItemType.TRACK, "t1", embedding=[0.6, 0.8]))
    world.ownerships.add("a", ItemType.TRACK, "t1", datetime(2025, 1, 1))
    world.ownerships.add("b", ItemType.TRACK, "t1", datetime(2025, 1, 1))

    result = world.scorer().score_with_method(a, b)

    assert result.method == "embedding"
    assert result.score == 100.0
