"""Tests for the FastAPI application endpoints.

This module contains integration tests for the TasteMatch API endpoints,
including health checks, taste operations and error rendering. The service
dependency is overridden with one built over small in-memory stores.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from tastematch.api.main import app
from tastematch.api.metrics import metrics_service
from tastematch.api.routes.taste import get_service
from tastematch.config import Settings
from tastematch.recommender.collaborators import (
    FeatureRecord,
    InMemoryFeatureStore,
    InMemoryOwnershipStore,
    InMemoryUserStore,
    ItemType,
)
from tastematch.recommender.service import TasteService

LONG_AGO = datetime.now(timezone.utc) - timedelta(days=365)


@pytest.fixture
def service():
    """Fixture providing a service with two users and four tracks."""
    features = InMemoryFeatureStore()
    ownerships = InMemoryOwnershipStore()
    users = InMemoryUserStore()

    features.put(FeatureRecord(ItemType.TRACK, "t1", genre="rock", embedding=[1.0, 0.0, 0.0]))
    features.put(FeatureRecord(ItemType.TRACK, "t2", genre="rock", embedding=[0.9, 0.1, 0.0]))
    features.put(FeatureRecord(ItemType.TRACK, "t3", genre="jazz", embedding=[0.0, 1.0, 0.0]))
    features.put(FeatureRecord(ItemType.TRACK, "t4", genre="pop", embedding=[0.0, 0.0, 1.0]))
    users.add_user("alice")
    users.add_user("bob")
    ownerships.add("alice", ItemType.TRACK, "t1", LONG_AGO)
    ownerships.add("bob", ItemType.TRACK, "t2", LONG_AGO)
    ownerships.add("bob", ItemType.TRACK, "t3", LONG_AGO)

    service = TasteService(
        features, ownerships, users, settings=Settings(embedding_dim=3, debounce_seconds=60)
    )
    yield service
    service.shutdown()


@pytest.fixture
def client(service):
    """Fixture providing a test client wired to the test service."""
    app.dependency_overrides[get_service] = lambda: service
    metrics_service.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


# ===== Health and Status Tests =====


def test_ping_endpoint(client):
    """Test that the /ping endpoint returns correct status and JSON."""
    response = client.get("/ping")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert "X-Request-ID" in response.headers


def test_status_endpoint(client):
    """Test that the /status endpoint reports service state."""
    response = client.get("/status")

    assert response.status_code == 200
    data = response.json()
    assert data["embedding_dim"] == 3
    assert data["users"] == 2
    assert data["pending_refreshes"] == 0
    assert isinstance(data["version"], str)
    assert isinstance(data["started_at"], str)
    assert "cache" in data


def test_metrics_endpoint(client):
    """Metrics count calls per operation with their outcomes."""
    client.get("/users/alice/compatibility/bob")
    client.get("/users/alice/recommendations")

    data = client.get("/metrics").json()

    assert data["total_calls"] == 2
    assert data["operations"]["compatibility"]["outcomes"] == {"embedding": 1}
    assert data["operations"]["recommend"]["outcomes"] == {"embedding": 1}


# ===== Taste Endpoint Tests =====


def test_recompute_embedding(client):
    response = client.post("/users/alice/embedding")

    assert response.status_code == 200
    assert response.json() == {"user_id": "alice", "updated": True, "dimension": 3}


def test_ownership_event_is_accepted(client, service):
    """Ownership events are accepted and scheduled, not run inline."""
    response = client.post("/users/bob/ownership-events")

    assert response.status_code == 202
    assert response.json() == {"user_id": "bob", "status": "scheduled"}
    assert service.debouncer.pending() == ["bob"]


def test_compatibility_endpoint(client):
    response = client.get("/users/alice/compatibility/bob")

    assert response.status_code == 200
    data = response.json()
    assert data["user_id"] == "alice"
    assert data["other_user_id"] == "bob"
    assert 0.0 <= data["score"] <= 100.0
    assert data["method"] == "embedding"


def test_recommendations_format(client):
    """Items carry itemType, itemId, score and source."""
    response = client.get("/users/alice/recommendations")

    assert response.status_code == 200
    data = response.json()
    assert data["user_id"] == "alice"
    items = data["recommendations"]
    assert [item["itemId"] for item in items] == ["t2", "t3", "t4"]
    assert set(items[0]) == {"itemType", "itemId", "score", "source"}
    assert items[0]["itemType"] == "track"


def test_recommendations_limit(client):
    response = client.get("/users/alice/recommendations?limit=1")

    assert response.status_code == 200
    assert len(response.json()["recommendations"]) == 1


@pytest.mark.parametrize("limit", [0, -1, 101])
def test_recommendations_invalid_limit(client, limit):
    response = client.get(f"/users/alice/recommendations?limit={limit}")

    assert response.status_code == 422


def test_similar_users(client):
    """Only users with stored embeddings are compared."""
    assert client.get("/users/alice/similar").json()["similar_users"] == []

    client.post("/users/alice/embedding")
    client.post("/users/bob/embedding")
    response = client.get("/users/alice/similar?threshold=0.1")

    assert response.status_code == 200
    similar = response.json()["similar_users"]
    assert [s["user_id"] for s in similar] == ["bob"]


def test_genre_breakdown(client):
    response = client.get("/users/bob/genres")

    assert response.status_code == 200
    assert response.json()["genres"] == {"jazz": 50.0, "rock": 50.0}


# ===== Error Handling Tests =====


@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/users/nobody/recommendations"),
        ("get", "/users/alice/compatibility/nobody"),
        ("post", "/users/nobody/embedding"),
        ("post", "/users/nobody/ownership-events"),
        ("get", "/users/nobody/genres"),
    ],
)
def test_unknown_user_returns_404(client, method, path):
    """Unknown users are rendered by the TasteMatch exception handler."""
    response = getattr(client, method)(path)

    assert response.status_code == 404
    data = response.json()
    assert data["error"] == "User nobody not found."
    assert data["details"] == {"user_id": "nobody"}
