"""Tests for the recommendation engine and its strategies."""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from tastematch.recommender.collaborators import (
    CatalogItem,
    FeatureRecord,
    InMemoryFeatureStore,
    InMemoryOwnershipStore,
    InMemoryUserStore,
    ItemType,
    Ownership,
    TTLCache,
)
from tastematch.recommender.embed import EmbeddingAggregator
from tastematch.recommender.recommend import (
    Recommendation,
    RecommendationEngine,
    recommendation_cache_key,
)
from tastematch.recommender.vectors import cosine_similarity

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


class FakeExternal:
    """External recommender returning a fixed list and remembering its seeds."""

    def __init__(self, count=25, fail=False):
        self.count = count
        self.fail = fail
        self.seeds = None

    def recommend(self, seed_artist_names, limit):
        self.seeds = list(seed_artist_names)
        if self.fail:
            raise ConnectionError("search service down")
        return [CatalogItem(ItemType.TRACK, f"e{i}") for i in range(self.count)]


class BrokenScanStore(InMemoryFeatureStore):
    def iter_records(self, item_type, batch_size=256):
        raise ConnectionError("scan cursor lost")


class BrokenOwnershipStore(InMemoryOwnershipStore):
    def list_owned(self, user_id, item_type):
        raise ConnectionError("ownership store down")


class UndatedArtistStore(InMemoryOwnershipStore):
    """Ownership store that lost the acquisition time of one artist."""

    def list_owned(self, user_id, item_type):
        if item_type == ItemType.ARTIST:
            return [Ownership("ar1", None), Ownership("ar2", NOW - timedelta(days=3))]
        return super().list_owned(user_id, item_type)


class World:
    def __init__(self, features=None, ownerships=None):
        self.features = features or InMemoryFeatureStore()
        self.ownerships = ownerships or InMemoryOwnershipStore()
        self.users = InMemoryUserStore()
        self.cache = TTLCache()
        self.aggregator = EmbeddingAggregator(
            self.features, self.ownerships, self.users, clock=lambda: NOW
        )

    def engine(self, external=None, **kwargs):
        return RecommendationEngine(
            self.aggregator, self.features, self.cache, external=external, **kwargs
        )

    def track(self, track_id, embedding=None, popularity=None, artist_id=None):
        self.features.put(
            FeatureRecord(ItemType.TRACK, track_id, popularity=popularity, embedding=embedding),
            artist_id=artist_id,
        )

    def artist(self, artist_id, embedding=None, name=None):
        self.features.put(FeatureRecord(ItemType.ARTIST, artist_id, embedding=embedding), name=name)

    def own(self, user_id, item_type, item_id, days_ago=100):
        self.ownerships.add(user_id, item_type, item_id, NOW - timedelta(days=days_ago))


@pytest.fixture
def world():
    """A user facing [1, 0] and a small track catalog."""
    world = World()
    world.users.add_user("u1", embedding=[1.0, 0.0])
    world.track("t1", [1.0, 0.0], popularity=10)
    world.track("t2", [1.0, 0.0], popularity=50)
    world.track("t3", [1.0, 0.0], popularity=50)
    world.track("t4", [0.8, 0.6], popularity=0)
    world.track("t5", [0.0, 1.0])
    world.track("t6", [1.0, 0.0], popularity=99)
    world.own("u1", ItemType.TRACK, "t6")
    return world


def _ids(recommendations):
    return [r.item_id for r in recommendations]


# ===== Embedding Strategy Tests =====


def test_ranking_and_tie_breaks(world):
    """Best similarity first; popularity then catalog order break ties."""
    results = world.engine().recommend(world.users.get("u1"), limit=10)

    assert _ids(results) == ["t2", "t3", "t1", "t4", "t5"]
    assert all(r.source == "embedding" for r in results)
    assert results[0].score == 1.0
    assert results[3].score == pytest.approx(0.8)


@pytest.mark.parametrize("limit", range(1, 11))
def test_results_exclude_owned_unique_and_capped(limit):
    """Owned items never appear, ids are unique, the limit holds."""
    world = World()
    rng = np.random.default_rng(limit)
    world.users.add_user("u1", embedding=rng.normal(size=4))
    for i in range(30):
        world.track(f"t{i}", rng.normal(size=4), popularity=int(rng.integers(0, 100)))
    owned = {f"t{i}" for i in range(0, 30, 3)}
    for track_id in owned:
        world.own("u1", ItemType.TRACK, track_id)

    results = world.engine().recommend(world.users.get("u1"), limit=limit)
    ids = _ids(results)

    assert len(ids) == limit
    assert len(set(ids)) == len(ids)
    assert not owned & set(ids)
    scores = [r.score for r in results]
    assert scores == sorted(scores, reverse=True)


def test_similar_artists_top_up_short_lists():
    """When too few tracks qualify, neighbouring artists' top tracks fill in."""
    world = World()
    world.users.add_user("u1", embedding=[1.0, 0.0])
    world.track("t1", [1.0, 0.0])
    world.artist("a1", [1.0, 0.0])
    world.artist("a4", [0.9, 0.1])
    world.artist("a5", [0.0, 1.0])
    for track_id, popularity in [("x4", 10), ("x1", 40), ("x2", 30), ("x3", 20)]:
        world.track(track_id, popularity=popularity, artist_id="a4")
    world.track("y1", artist_id="a5")
    world.track("z1", artist_id="a1")
    world.own("u1", ItemType.ARTIST, "a1")

    results = world.engine(tracks_per_artist=3).recommend(world.users.get("u1"), limit=5)

    assert _ids(results) == ["t1", "x1", "x2", "x3", "y1"]
    assert [r.source for r in results] == ["embedding"] + ["artist_neighbour"] * 4
    expected = round(cosine_similarity([1.0, 0.0], [0.9, 0.1]), 4)
    assert results[1].score == expected


def test_scan_batch_size_does_not_change_results(world):
    """Streaming in small batches gives the same ranking."""
    user = world.users.get("u1")
    large = RecommendationEngine(world.aggregator, world.features, TTLCache())
    small = RecommendationEngine(world.aggregator, world.features, TTLCache(), scan_batch_size=2)

    expected = large.recommend(user, limit=4)
    actual = small.recommend(user, limit=4)

    assert _ids(actual) == _ids(expected)


# ===== Fallback Tests =====


def test_cold_start_uses_external_and_caps():
    """A user without any taste gets external results, capped at the limit."""
    world = World()
    world.users.add_user("new")
    external = FakeExternal(count=25)

    results = world.engine(external=external).recommend(world.users.get("new"), limit=20)

    assert len(results) == 20
    assert all(r.source == "external" and r.score is None for r in results)


def test_external_results_exclude_owned():
    world = World()
    world.users.add_user("u1")
    world.own("u1", ItemType.TRACK, "e0")

    results = world.engine(external=FakeExternal(count=5)).recommend(world.users.get("u1"), 10)

    assert _ids(results) == ["e1", "e2", "e3", "e4"]


def test_external_seeds_are_most_recent_artists():
    """Seeds are artist names, most recently acquired first."""
    world = World()
    world.users.add_user("u1")
    world.artist("a1", name="Old Favourite")
    world.artist("a2", name="New Discovery")
    world.artist("a3")
    world.own("u1", ItemType.ARTIST, "a1", days_ago=10)
    world.own("u1", ItemType.ARTIST, "a2", days_ago=1)
    world.own("u1", ItemType.ARTIST, "a3", days_ago=0)
    external = FakeExternal(count=3)

    world.engine(external=external).recommend(world.users.get("u1"), limit=3)

    assert external.seeds == ["New Discovery", "Old Favourite"]


def test_artists_without_acquisition_time_are_seeded_last():
    """Undated artists still seed the external search, after dated ones."""
    world = World(ownerships=UndatedArtistStore())
    world.users.add_user("u1")
    world.artist("ar1", name="Undated")
    world.artist("ar2", name="Dated")
    external = FakeExternal(count=3)

    results = world.engine(external=external).recommend(world.users.get("u1"), limit=3)

    assert external.seeds == ["Dated", "Undated"]
    assert _ids(results) == ["e0", "e1", "e2"]


def test_acquisition_times_without_timezone_still_rank():
    """Ownership rows without a timezone are aggregated and ranked as usual."""
    world = World()
    world.users.add_user("u1")
    world.track("t1", [1.0, 0.0])
    world.track("t2", [0.9, 0.1])
    world.track("t3", [0.0, 1.0])
    world.ownerships.add("u1", ItemType.TRACK, "t1", datetime(2025, 1, 1))

    results = world.engine().recommend(world.users.get("u1"), limit=5)

    assert _ids(results) == ["t2", "t3"]
    assert all(r.source == "embedding" for r in results)


def test_failing_external_falls_back_to_popularity():
    world = World()
    world.users.add_user("u1")
    world.track("p1", popularity=10)
    world.track("p2", popularity=80)
    world.track("p3", popularity=80)
    world.track("p4")

    results = world.engine(external=FakeExternal(fail=True)).recommend(
        world.users.get("u1"), limit=3
    )

    assert _ids(results) == ["p2", "p3", "p1"]
    assert all(r.source == "popularity" for r in results)


def test_failing_scan_falls_back_to_external():
    world = World(features=BrokenScanStore())
    world.users.add_user("u1", embedding=[1.0, 0.0])

    results = world.engine(external=FakeExternal(count=2)).recommend(world.users.get("u1"), 5)

    assert _ids(results) == ["e0", "e1"]


def test_unreadable_ownership_returns_nothing():
    """Without ownership data exclusion cannot be checked, so nothing is returned."""
    world = World(ownerships=BrokenOwnershipStore())
    world.users.add_user("u1", embedding=[1.0, 0.0])
    world.track("t1", [1.0, 0.0])

    assert world.engine().recommend(world.users.get("u1"), limit=5) == []


def test_nothing_anywhere_returns_empty():
    world = World()
    world.users.add_user("u1")

    assert world.engine().recommend(world.users.get("u1"), limit=5) == []


def test_non_positive_limit(world):
    assert world.engine().recommend(world.users.get("u1"), limit=0) == []
    assert world.engine().recommend(world.users.get("u1"), limit=-3) == []


# ===== Cache Tests =====


def test_cached_list_is_returned(world):
    """A cached list for the same user state is served as is."""
    user = world.users.get("u1")
    cached = [Recommendation(ItemType.TRACK, "cached", 0.5, "embedding")]
    world.cache.set(recommendation_cache_key(user, 3), cached)

    assert world.engine().recommend(user, limit=3) == cached


def test_new_ownership_invalidates_cached_list(world):
    """Re-aggregating after a new ownership changes the cached key."""
    engine = world.engine()
    before = engine.recommend(world.users.get("u1"), limit=3)
    assert before[0].item_id == "t2"

    world.own("u1", ItemType.TRACK, "t2", days_ago=0)
    world.aggregator.aggregate_embedding_for("u1")
    after = engine.recommend(world.users.get("u1"), limit=3)

    assert "t2" not in _ids(after)
    assert world.cache.stats()["hits"] == 0


def test_to_dict_format():
    rec = Recommendation(ItemType.TRACK, "t1", 0.91, "embedding")

    assert rec.to_dict() == {"itemType": "track", "itemId": "t1", "score": 0.91, "source": "embedding"}
