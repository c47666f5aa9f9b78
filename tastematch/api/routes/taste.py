"""Taste endpoints for the TasteMatch API.

This module exposes the taste service over HTTP: on-demand embedding
recomputes, debounced ownership-change events, compatibility scores,
recommendations, similar users and genre breakdowns.

Missing music data never turns into an error response here: the service
degrades to a lower-fidelity answer. Only unknown user ids are rejected
(404, rendered by the application's exception handler).
"""

import logging
import threading
import time
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from tastematch.api.metrics import metrics_service
from tastematch.recommender.embed import DEFAULT_SIMILAR_USERS, DEFAULT_SIMILARITY_THRESHOLD
from tastematch.recommender.service import TasteService

# Configure module logger
logger = logging.getLogger(__name__)

# Create API router
router = APIRouter(
    prefix="/users",
    tags=["taste"],
)

MAX_LIMIT = 100

_service_lock = threading.Lock()


class EmbeddingResponse(BaseModel):
    """Response model for an embedding recompute.

    Attributes:
        user_id: The user whose embedding was recomputed.
        updated: Whether a new embedding was stored.
        dimension: Size of the stored embedding, if one was stored.
    """

    user_id: str = Field(..., description="User ID")
    updated: bool = Field(..., description="Whether a new embedding was stored")
    dimension: Optional[int] = Field(default=None, description="Embedding dimension")


class OwnershipEventResponse(BaseModel):
    user_id: str
    status: str = "scheduled"


class CompatibilityResponse(BaseModel):
    """Response model for a compatibility score.

    Attributes:
        user_id: First user.
        other_user_id: Second user.
        score: Compatibility in [0, 100].
        method: "embedding", "overlap" or "none".
    """

    user_id: str
    other_user_id: str
    score: float = Field(..., ge=0.0, le=100.0)
    method: str


class RecommendationItem(BaseModel):
    item_type: str = Field(..., alias="itemType")
    item_id: str = Field(..., alias="itemId")
    score: Optional[float] = None
    source: str


class RecommendationResponse(BaseModel):
    user_id: str
    recommendations: List[RecommendationItem]


class SimilarUser(BaseModel):
    user_id: str
    similarity: float


class SimilarUsersResponse(BaseModel):
    user_id: str
    similar_users: List[SimilarUser]


class GenreBreakdownResponse(BaseModel):
    user_id: str
    genres: Dict[str, float] = Field(..., description="Percent of owned items per genre")


def get_service(request: Request) -> TasteService:
    """Return the application's TasteService, building it on first use.

    The service is built from settings (loading ``snapshot_path`` if set)
    and kept on ``app.state`` for the lifetime of the application.
    """
    service = getattr(request.app.state, "service", None)
    if service is not None:
        return service

    with _service_lock:
        service = getattr(request.app.state, "service", None)
        if service is None:
            logger.info("Building TasteService from settings")
            service = TasteService.from_settings()
            request.app.state.service = service
    return service


def _elapsed_ms(start_time: float) -> float:
    return (time.time() - start_time) * 1000


@router.post("/{user_id}/embedding", response_model=EmbeddingResponse)
def recompute_embedding(
    user_id: str,
    service: TasteService = Depends(get_service),
) -> EmbeddingResponse:
    """Recompute and store a user's taste embedding now.

    A user with no usable owned items keeps their previous embedding and gets
    ``updated: false``.
    """
    start_time = time.time()
    service.get_user(user_id)

    embedding = service.aggregate_embedding_for(user_id)
    updated = embedding is not None
    metrics_service.record("aggregate", _elapsed_ms(start_time), "updated" if updated else "unchanged")

    return EmbeddingResponse(
        user_id=user_id,
        updated=updated,
        dimension=int(embedding.size) if updated else None,
    )


@router.post(
    "/{user_id}/ownership-events",
    response_model=OwnershipEventResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def ownership_changed(
    user_id: str,
    service: TasteService = Depends(get_service),
) -> OwnershipEventResponse:
    """Signal that a user's owned items changed.

    Bursts of events for the same user are coalesced into one recompute.
    """
    service.get_user(user_id)
    service.on_ownership_changed(user_id)
    return OwnershipEventResponse(user_id=user_id)


@router.get("/{user_id}/compatibility/{other_id}", response_model=CompatibilityResponse)
def get_compatibility(
    user_id: str,
    other_id: str,
    service: TasteService = Depends(get_service),
) -> CompatibilityResponse:
    """Music compatibility between two users.

    Example:
        GET /users/u1/compatibility/u2
        Returns {"user_id": "u1", "other_user_id": "u2", "score": 87.3, "method": "embedding"}
    """
    start_time = time.time()
    result = service.get_compatibility_result(user_id, other_id)
    metrics_service.record("compatibility", _elapsed_ms(start_time), result.method)

    logger.info(f"Compatibility {user_id}/{other_id}: {result.score} via {result.method}")
    return CompatibilityResponse(
        user_id=user_id,
        other_user_id=other_id,
        score=result.score,
        method=result.method,
    )


@router.get("/{user_id}/recommendations", response_model=RecommendationResponse)
def get_recommendations(
    user_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=MAX_LIMIT),
    service: TasteService = Depends(get_service),
) -> RecommendationResponse:
    """Recommended tracks the user does not own yet, best first.

    Example:
        GET /users/u1/recommendations?limit=5
        Returns at most 5 items.
    """
    start_time = time.time()
    recommendations = service.recommend(user_id, limit)
    source = recommendations[0].source if recommendations else "none"
    metrics_service.record("recommend", _elapsed_ms(start_time), source)

    logger.info(f"Generated {len(recommendations)} recommendations for user {user_id}")
    return RecommendationResponse(
        user_id=user_id,
        recommendations=[RecommendationItem(**r.to_dict()) for r in recommendations],
    )


@router.get("/{user_id}/similar", response_model=SimilarUsersResponse)
def get_similar_users(
    user_id: str,
    limit: int = Query(default=DEFAULT_SIMILAR_USERS, ge=1, le=MAX_LIMIT),
    threshold: float = Query(default=DEFAULT_SIMILARITY_THRESHOLD, ge=-1.0, le=1.0),
    service: TasteService = Depends(get_service),
) -> SimilarUsersResponse:
    """Users whose taste embedding is at least ``threshold`` similar."""
    start_time = time.time()
    similar = service.find_similar_users(user_id, limit=limit, threshold=threshold)
    metrics_service.record("similar_users", _elapsed_ms(start_time))

    return SimilarUsersResponse(
        user_id=user_id,
        similar_users=[SimilarUser(user_id=other, similarity=round(s, 4)) for other, s in similar],
    )


@router.get("/{user_id}/genres", response_model=GenreBreakdownResponse)
def get_genre_breakdown(
    user_id: str,
    service: TasteService = Depends(get_service),
) -> GenreBreakdownResponse:
    """Share of each genre among the user's owned items."""
    return GenreBreakdownResponse(user_id=user_id, genres=service.genre_breakdown(user_id))
