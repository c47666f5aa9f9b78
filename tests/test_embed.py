"""Tests for taste embedding aggregation."""

import logging
import threading
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from tastematch.recommender.collaborators import (
    BoundedCaller,
    FeatureRecord,
    InMemoryFeatureStore,
    InMemoryOwnershipStore,
    InMemoryUserStore,
    ItemType,
)
from tastematch.recommender.embed import EmbeddingAggregator
from tastematch.recommender.vectors import cosine_similarity, normalize

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)
LONG_AGO = NOW - timedelta(days=365)


def _basis(i, dim=10):
    v = np.zeros(dim)
    v[i] = 1.0
    return v


class SlowFeatureStore(InMemoryFeatureStore):
    """Feature store that blocks on one item until released."""

    def __init__(self, slow_item_id):
        super().__init__()
        self.slow_item_id = slow_item_id
        self.release = threading.Event()

    def get(self, item_type, item_id):
        if item_id == self.slow_item_id:
            self.release.wait(5)
        return super().get(item_type, item_id)


class FailingSaveUserStore(InMemoryUserStore):
    def save_embedding(self, user_id, embedding):
        raise ConnectionError("database is read-only")


@pytest.fixture
def stores():
    return InMemoryFeatureStore(), InMemoryOwnershipStore(), InMemoryUserStore()


def _aggregator(stores, **kwargs):
    features, ownerships, users = stores
    kwargs.setdefault("clock", lambda: NOW)
    return EmbeddingAggregator(features, ownerships, users, **kwargs)


def _own_track(stores, user_id, track_id, vector, acquired_at=LONG_AGO, genre=None):
    features, ownerships, _ = stores
    features.put(FeatureRecord(ItemType.TRACK, track_id, genre=genre, embedding=vector))
    ownerships.add(user_id, ItemType.TRACK, track_id, acquired_at)


def _events(caplog, name):
    return [r for r in caplog.records if getattr(r, "event", None) == name]


# ===== Aggregation Tests =====


def test_anthem_pulls_embedding_towards_it(stores):
    """With ten orthogonal tracks, the anthem dominates the user's taste."""
    _, _, users = stores
    users.add_user("u1", anthem_track_id="t3")
    for i in range(10):
        _own_track(stores, "u1", f"t{i}", _basis(i))

    embedding = _aggregator(stores).aggregate_embedding_for("u1")

    similarities = [cosine_similarity(embedding, _basis(i)) for i in range(10)]
    assert int(np.argmax(similarities)) == 3
    assert np.linalg.norm(embedding) == pytest.approx(1.0)


def test_recent_items_weigh_more(stores):
    """A track acquired yesterday outweighs one from last year."""
    _, _, users = stores
    users.add_user("u1")
    _own_track(stores, "u1", "new", _basis(0, 2), acquired_at=NOW - timedelta(days=1))
    _own_track(stores, "u1", "old", _basis(1, 2))

    embedding = _aggregator(stores).aggregate_embedding_for("u1")

    np.testing.assert_allclose(embedding, normalize([3.0, 1.0]))


def test_aggregation_is_idempotent(stores):
    """Recomputing without changes yields the same embedding."""
    _, _, users = stores
    users.add_user("u1", anthem_track_id="t1")
    for i in range(4):
        _own_track(stores, "u1", f"t{i}", _basis(i, 4) + 0.1)
    aggregator = _aggregator(stores)

    first = aggregator.aggregate_embedding_for("u1")
    second = aggregator.aggregate_embedding_for("u1")

    np.testing.assert_allclose(first, second)
    np.testing.assert_allclose(users.get("u1").embedding, second)


def test_no_usable_items_leaves_embedding_untouched(stores):
    """A user with nothing usable keeps the stored embedding."""
    features, ownerships, users = stores
    users.add_user("u1", embedding=[1.0, 0.0, 0.0])
    features.put(FeatureRecord(ItemType.TRACK, "t1"))
    ownerships.add("u1", ItemType.TRACK, "t1", LONG_AGO)

    assert _aggregator(stores).aggregate_embedding_for("u1") is None
    np.testing.assert_allclose(users.get("u1").embedding, [1.0, 0.0, 0.0])


def test_unknown_user_is_skipped(stores):
    assert _aggregator(stores).aggregate_embedding_for("ghost") is None


def test_dimension_mismatch_is_discarded_and_logged(stores, caplog):
    """Vectors of the wrong size are left out of the average."""
    _, _, users = stores
    users.add_user("u1")
    _own_track(stores, "u1", "t1", [1.0, 0.0, 0.0])
    _own_track(stores, "u1", "t2", [0.0, 1.0])

    with caplog.at_level(logging.WARNING):
        embedding = _aggregator(stores, embedding_dim=3).aggregate_embedding_for("u1")

    np.testing.assert_allclose(embedding, [1.0, 0.0, 0.0])
    assert len(_events(caplog, "dimension_mismatch")) == 1


def test_all_item_types_contribute(stores):
    """Artists and albums are averaged in alongside tracks."""
    features, ownerships, users = stores
    users.add_user("u1")
    _own_track(stores, "u1", "t1", _basis(0, 3))
    features.put(FeatureRecord(ItemType.ARTIST, "a1", embedding=_basis(1, 3)))
    features.put(FeatureRecord(ItemType.ALBUM, "b1", embedding=_basis(2, 3)))
    ownerships.add("u1", ItemType.ARTIST, "a1", LONG_AGO)
    ownerships.add("u1", ItemType.ALBUM, "b1", LONG_AGO)

    embedding = _aggregator(stores).aggregate_embedding_for("u1")

    np.testing.assert_allclose(embedding, normalize([1.0, 1.0, 1.0]))


# ===== Degradation Tests =====


def test_slow_feature_read_skips_only_that_item():
    """A timed-out feature read drops one item; the rest still aggregate."""
    features = SlowFeatureStore(slow_item_id="t2")
    ownerships = InMemoryOwnershipStore()
    users = InMemoryUserStore()
    stores = (features, ownerships, users)
    users.add_user("u1")
    for i in range(3):
        _own_track(stores, "u1", f"t{i}", _basis(i, 3))

    caller = BoundedCaller(timeout_seconds=0.1)
    try:
        embedding = _aggregator(stores, caller=caller).aggregate_embedding_for("u1")
    finally:
        features.release.set()
        caller.shutdown()

    np.testing.assert_allclose(embedding, normalize([1.0, 1.0, 0.0]))


def test_persist_failure_returns_none():
    """When the embedding cannot be saved, aggregation reports no result."""
    stores = (InMemoryFeatureStore(), InMemoryOwnershipStore(), FailingSaveUserStore())
    stores[2].add_user("u1")
    _own_track(stores, "u1", "t1", [1.0, 0.0])

    assert _aggregator(stores).aggregate_embedding_for("u1") is None
    assert stores[2].get("u1").embedding is None


# ===== ensure_embedding Tests =====


def test_ensure_embedding_returns_valid_user_as_is(stores):
    _, _, users = stores
    user = users.add_user("u1", embedding=[0.6, 0.8])

    assert _aggregator(stores).ensure_embedding(user) is user


def test_ensure_embedding_aggregates_missing(stores):
    """A missing embedding is computed once and the fresh record returned."""
    _, _, users = stores
    user = users.add_user("u1")
    _own_track(stores, "u1", "t1", [0.0, 2.0])

    refreshed = _aggregator(stores).ensure_embedding(user)

    np.testing.assert_allclose(refreshed.embedding, [0.0, 1.0])
    assert refreshed.updated_at > user.updated_at


def test_ensure_embedding_without_items(stores):
    _, _, users = stores
    user = users.add_user("u1")

    assert _aggregator(stores).ensure_embedding(user) is None


# ===== Batch Refresh Tests =====


def test_refresh_embeddings_reports_success_and_failure(stores):
    _, _, users = stores
    users.add_user("u1")
    users.add_user("u2")
    _own_track(stores, "u1", "t1", [1.0, 0.0])

    aggregator = _aggregator(stores)

    assert aggregator.refresh_embeddings(["u1", "u2"]) == {"success": ["u1"], "failed": ["u2"]}
    assert aggregator.refresh_all_embeddings(batch_size=1) == {
        "total": 2,
        "processed": 1,
        "failed": 1,
    }


# ===== Lookup Tests =====


def test_find_similar_users(stores):
    """Similar users are ranked by similarity and filtered by threshold."""
    _, _, users = stores
    users.add_user("me", embedding=[1.0, 0.0])
    users.add_user("close", embedding=[0.99, 0.14])
    users.add_user("closer", embedding=[1.0, 0.01])
    users.add_user("far", embedding=[0.0, 1.0])
    users.add_user("blank")

    similar = _aggregator(stores).find_similar_users("me", limit=5, threshold=0.8)

    assert [user_id for user_id, _ in similar] == ["closer", "close"]
    assert all(0.8 <= score <= 1.0 for _, score in similar)
    assert _aggregator(stores).find_similar_users("blank") == []


def test_genre_breakdown(stores):
    """Genres are reported as percentages, largest first."""
    _, _, users = stores
    users.add_user("u1")
    for i in range(3):
        _own_track(stores, "u1", f"r{i}", [1.0, 0.0], genre="rock")
    _own_track(stores, "u1", "j1", [0.0, 1.0], genre="jazz")
    _own_track(stores, "u1", "x1", [0.0, 1.0])

    assert _aggregator(stores).genre_breakdown("u1") == {"rock": 75.0, "jazz": 25.0}
    assert _aggregator(stores).genre_breakdown("nobody") == {}
