"""Application configuration using pydantic-settings.

Every value can be overridden with an environment variable carrying the
``TASTEMATCH_`` prefix (for example ``TASTEMATCH_EMBEDDING_DIM=1536``) or
through a local ``.env`` file.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from tastematch.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TASTEMATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "TasteMatch API"
    log_level: str = "INFO"

    # Shared embedding space
    embedding_dim: int = 512

    # Collaborators
    collaborator_timeout_seconds: float = 2.0
    collaborator_max_workers: int = 8
    scan_batch_size: int = 256

    # Result cache (one day)
    cache_ttl_seconds: int = 86400
    cache_max_size: int = 10000

    # Ownership-change coalescing window
    debounce_seconds: float = 2.0
    debounce_max_wait_seconds: float = 30.0

    # Recommendations
    default_recommendation_limit: int = 20
    artist_tracks_per_artist: int = 3
    external_seed_artists: int = 5

    # Weighting knobs
    prominence_span: float = 0.5
    anthem_weight: float = 5.0
    convexity_exponent: float = 1.5

    # Catalog snapshot loaded by the API on startup
    snapshot_path: Optional[str] = None

    def validate_contract(self) -> "Settings":
        """Reject settings that would break the system-wide vector contract."""
        if self.embedding_dim <= 0:
            raise ConfigurationError(
                f"embedding_dim must be positive, got {self.embedding_dim}",
                details={"embedding_dim": self.embedding_dim},
            )
        if self.collaborator_timeout_seconds <= 0:
            raise ConfigurationError(
                "collaborator_timeout_seconds must be positive",
                details={"timeout": self.collaborator_timeout_seconds},
            )
        if self.scan_batch_size <= 0:
            raise ConfigurationError(
                "scan_batch_size must be positive",
                details={"scan_batch_size": self.scan_batch_size},
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the cached application settings."""
    return Settings().validate_contract()
