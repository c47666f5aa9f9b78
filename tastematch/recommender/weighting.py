"""Weighting policy for taste aggregation and compatibility scoring.

The multipliers in here are tuning knobs, not fixed truths. What is fixed is
their shape: recency weight never grows with age, prominence stays within
[1, 1 + span], the anthem outweighs any ordinary item, and the convexity
exponent keeps the compatibility curve monotonic.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Sequence, Tuple

from tastematch.exceptions import ConfigurationError
from tastematch.recommender.collaborators import ItemType, as_utc

# Configure module logger
logger = logging.getLogger(__name__)

# (max_age_days, multiplier) tiers, checked in order
DEFAULT_TRACK_TIERS: Tuple[Tuple[float, float], ...] = ((7, 3.0), (30, 2.0), (90, 1.5))
DEFAULT_ARTIST_TIERS: Tuple[Tuple[float, float], ...] = ((7, 2.5), (30, 2.0))
DEFAULT_ALBUM_TIERS: Tuple[Tuple[float, float], ...] = ((7, 2.0), (30, 1.5))
DEFAULT_OLDER_MULTIPLIER = 1.0
DEFAULT_PROMINENCE_SPAN = 0.5
DEFAULT_ANTHEM_WEIGHT = 5.0
DEFAULT_CONVEXITY_EXPONENT = 1.5

SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class RecencyTiers:
    """Step function from acquisition age to weight multiplier."""

    tiers: Tuple[Tuple[float, float], ...]
    older_multiplier: float = DEFAULT_OLDER_MULTIPLIER

    def multiplier(self, age_days: float) -> float:
        for max_age_days, multiplier in self.tiers:
            if age_days <= max_age_days:
                return multiplier
        return self.older_multiplier

    @property
    def max_multiplier(self) -> float:
        return max([m for _, m in self.tiers] + [self.older_multiplier])

    def validate(self, name: str) -> None:
        ages = [age for age, _ in self.tiers]
        if ages != sorted(ages) or len(set(ages)) != len(ages):
            raise ConfigurationError(
                f"{name} recency tiers must have strictly ascending ages",
                details={"tiers": list(self.tiers)},
            )
        multipliers = [m for _, m in self.tiers] + [self.older_multiplier]
        if any(m < 1.0 for m in multipliers):
            raise ConfigurationError(
                f"{name} recency multipliers must be at least 1.0",
                details={"tiers": list(self.tiers)},
            )
        if any(later > earlier for earlier, later in zip(multipliers, multipliers[1:])):
            raise ConfigurationError(
                f"{name} recency multipliers must not increase with age",
                details={"tiers": list(self.tiers), "older": self.older_multiplier},
            )


def _default_tiers() -> Dict[ItemType, RecencyTiers]:
    return {
        ItemType.TRACK: RecencyTiers(DEFAULT_TRACK_TIERS),
        ItemType.ARTIST: RecencyTiers(DEFAULT_ARTIST_TIERS),
        ItemType.ALBUM: RecencyTiers(DEFAULT_ALBUM_TIERS),
    }


@dataclass(frozen=True)
class WeightingPolicy:
    """All tunable weights used by aggregation and scoring.

    Validated on construction; an inconsistent policy is a configuration
    error, the one failure the taste core lets escape.

    Attributes:
        recency: Recency tiers per item type.
        prominence_span: Popularity 100 multiplies weight by 1 + span.
        anthem_weight: Fixed weight of the user's anthem track.
        convexity_exponent: Exponent in [1, 2] applied to the rescaled
            cosine similarity before it becomes a 0-100 score.
    """

    recency: Dict[ItemType, RecencyTiers] = field(default_factory=_default_tiers)
    prominence_span: float = DEFAULT_PROMINENCE_SPAN
    anthem_weight: float = DEFAULT_ANTHEM_WEIGHT
    convexity_exponent: float = DEFAULT_CONVEXITY_EXPONENT

    def __post_init__(self) -> None:
        for item_type in ItemType:
            if item_type not in self.recency:
                raise ConfigurationError(
                    f"Missing recency tiers for {item_type.value}",
                    details={"item_type": item_type.value},
                )
            self.recency[item_type].validate(item_type.value)

        if self.prominence_span < 0:
            raise ConfigurationError(
                "prominence_span must not be negative",
                details={"prominence_span": self.prominence_span},
            )

        if not 1.0 <= self.convexity_exponent <= 2.0:
            raise ConfigurationError(
                "convexity_exponent must lie in [1.0, 2.0]",
                details={"convexity_exponent": self.convexity_exponent},
            )

        max_ordinary = self.max_ordinary_weight
        if self.anthem_weight <= max_ordinary:
            raise ConfigurationError(
                f"anthem_weight ({self.anthem_weight}) must exceed the largest "
                f"ordinary item weight ({max_ordinary})",
                details={"anthem_weight": self.anthem_weight, "max_ordinary": max_ordinary},
            )

    @classmethod
    def from_settings(cls, settings) -> "WeightingPolicy":
        """Build a policy from application settings, keeping default tiers."""
        return cls(
            prominence_span=settings.prominence_span,
            anthem_weight=settings.anthem_weight,
            convexity_exponent=settings.convexity_exponent,
        )

    @property
    def max_ordinary_weight(self) -> float:
        max_recency = max(tiers.max_multiplier for tiers in self.recency.values())
        return max_recency * (1.0 + self.prominence_span)

    def recency_factor(
        self, item_type: ItemType, acquired_at: Optional[datetime], now: datetime
    ) -> float:
        """Multiplier for how recently an item was acquired.

        Items with no acquisition time are treated as old. Timestamps without
        a timezone are read as UTC.
        """
        tiers = self.recency[ItemType(item_type)]
        if acquired_at is None:
            return tiers.older_multiplier
        elapsed = as_utc(now) - as_utc(acquired_at)
        age_days = max(0.0, elapsed.total_seconds() / SECONDS_PER_DAY)
        return tiers.multiplier(age_days)

    def prominence_factor(self, popularity: Optional[float]) -> float:
        """Popularity-derived multiplier in [1, 1 + prominence_span]."""
        if popularity is None:
            return 1.0
        clamped = min(100.0, max(0.0, float(popularity)))
        return 1.0 + (clamped / 100.0) * self.prominence_span

    def item_weight(
        self,
        item_type: ItemType,
        acquired_at: Optional[datetime],
        popularity: Optional[float],
        now: datetime,
    ) -> float:
        return self.recency_factor(item_type, acquired_at, now) * self.prominence_factor(popularity)

    def stretch(self, unit_similarity: float) -> float:
        """Apply the convexity correction to a similarity already in [0, 1]."""
        clamped = min(1.0, max(0.0, unit_similarity))
        return clamped ** self.convexity_exponent


def tiers_from_pairs(pairs: Sequence[Tuple[float, float]], older: float = 1.0) -> RecencyTiers:
    """Convenience constructor used by tests and scripts."""
    return RecencyTiers(tuple((float(a), float(m)) for a, m in pairs), older)
