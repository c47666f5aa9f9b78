"""TasteMatch: music taste embeddings, compatibility and recommendations.

This package turns the tracks, artists and albums a user has collected into a
single taste embedding, scores how compatible two users are, and recommends
new music by similarity search over the item catalog.

Modules:
    api: FastAPI application and REST API endpoints
    recommender: taste embedding, compatibility and recommendation logic
"""

__version__ = "0.1.0"
