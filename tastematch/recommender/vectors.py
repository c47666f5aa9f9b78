"""Vector math utilities for taste embeddings.

Pure functions over numpy arrays: parsing stored vectors, normalization,
cosine similarity and weighted averaging. Nothing in here performs I/O.
"""

import json
import logging
from typing import Any, Iterable, Optional, Sequence, Tuple

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity as pairwise_cosine

from tastematch.exceptions import CollaboratorDataCorruptError, InvalidVectorError

# Configure module logger
logger = logging.getLogger(__name__)

Vector = np.ndarray


def parse_vector(raw: Any) -> Optional[Vector]:
    """Convert a stored embedding into the canonical vector type.

    Storage backends hand embeddings over as Python lists, numpy arrays,
    JSON strings (``"[0.1, 0.2]"``), Postgres array literals
    (``"{0.1,0.2}"``) or driver objects exposing ``tolist()``. All of them
    become a 1-D float64 numpy array.

    Args:
        raw: Embedding as read from storage. ``None`` means no embedding.

    Returns:
        1-D float64 array, or None if the value is missing or cannot be
        parsed. Unparseable values are logged as corrupt data and never
        raised to the caller.

    Example:
        >>> parse_vector("[1, 0, 0]")
        array([1., 0., 0.])
        >>> parse_vector("{1,0,0}")
        array([1., 0., 0.])
    """
    if raw is None:
        return None

    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")

        if isinstance(raw, str):
            text = raw.strip()
            if not text:
                return None
            if text.startswith("{") and text.endswith("}"):
                # Postgres array literal
                text = "[" + text[1:-1] + "]"
            values = json.loads(text)
        elif hasattr(raw, "tolist"):
            values = raw.tolist()
        else:
            values = list(raw)

        vector = np.asarray(values, dtype=np.float64)
        if vector.ndim != 1:
            raise ValueError(f"expected a flat vector, got shape {vector.shape}")
        return vector

    except (TypeError, ValueError) as e:
        error = CollaboratorDataCorruptError(type(raw).__name__, e)
        logger.warning(
            error.message,
            extra={"event": "corrupt_vector", **error.details},
        )
        return None


def is_valid_embedding(vector: Optional[Sequence[float]]) -> bool:
    """Check that a vector is non-empty, finite and not all zeros."""
    if vector is None:
        return False
    array = np.asarray(vector, dtype=np.float64)
    if array.ndim != 1 or array.size == 0:
        return False
    if not np.all(np.isfinite(array)):
        return False
    return bool(np.any(array != 0.0))


def normalize(vector: Sequence[float]) -> Vector:
    """Scale a vector to unit L2 norm.

    The zero vector has no direction, so it is returned unchanged rather than
    treated as an error.
    """
    array = np.asarray(vector, dtype=np.float64)
    magnitude = np.linalg.norm(array)
    if magnitude == 0:
        return array.copy()
    return array / magnitude


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors, clamped to [-1, 1].

    Args:
        a: First vector.
        b: Second vector, same length as ``a``.

    Returns:
        Similarity in [-1, 1]; 0.0 if either vector has zero norm.

    Raises:
        InvalidVectorError: If the vectors are empty, differ in length or
            contain NaN/Infinity.
    """
    first = np.asarray(a, dtype=np.float64)
    second = np.asarray(b, dtype=np.float64)

    if first.size == 0 or first.shape != second.shape:
        raise InvalidVectorError(
            "dimension mismatch",
            details={"left": int(first.size), "right": int(second.size)},
        )
    if not (np.all(np.isfinite(first)) and np.all(np.isfinite(second))):
        raise InvalidVectorError("non-finite values")

    norm_first = np.linalg.norm(first)
    norm_second = np.linalg.norm(second)
    if norm_first == 0 or norm_second == 0:
        return 0.0

    similarity = float(np.dot(first, second) / (norm_first * norm_second))
    # Absorb floating-point drift just outside the valid range
    return float(np.clip(similarity, -1.0, 1.0))


def batch_cosine_similarity(query: Vector, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of one query vector against every row of a matrix.

    Rows must already be valid embeddings of the query's dimension.
    """
    if matrix.size == 0:
        return np.empty(0, dtype=np.float64)
    similarities = pairwise_cosine(query.reshape(1, -1), matrix)[0]
    return np.clip(similarities, -1.0, 1.0)


def weighted_average(
    items: Iterable[Tuple[Optional[Sequence[float]], float]],
) -> Optional[Vector]:
    """Weighted mean of a collection of vectors.

    The first usable vector fixes the dimension. Later vectors with another
    dimension, non-finite values or an unusable weight are skipped and logged
    as data-quality events.

    Args:
        items: Iterable of (vector, weight) pairs.

    Returns:
        The weighted average, or None if no valid vectors remain or the total
        weight is zero.

    Example:
        >>> weighted_average([([1.0, 0.0], 1.0), ([0.0, 1.0], 1.0)])
        array([0.5, 0.5])
    """
    dimension: Optional[int] = None
    weighted_sum: Optional[Vector] = None
    total_weight = 0.0
    skipped = 0

    for raw_vector, weight in items:
        if raw_vector is None:
            continue
        vector = np.asarray(raw_vector, dtype=np.float64)
        if vector.ndim != 1 or vector.size == 0:
            skipped += 1
            continue

        if weight is None or not np.isfinite(weight) or weight < 0:
            logger.warning(
                f"Skipping vector with unusable weight {weight}",
                extra={"event": "invalid_vector", "reason": "weight"},
            )
            skipped += 1
            continue

        if not np.all(np.isfinite(vector)):
            logger.warning(
                "Skipping vector with non-finite values",
                extra={"event": "invalid_vector", "reason": "non_finite"},
            )
            skipped += 1
            continue

        if dimension is None:
            dimension = vector.size
            weighted_sum = np.zeros(dimension, dtype=np.float64)
        elif vector.size != dimension:
            logger.warning(
                f"Skipping vector of dimension {vector.size}, expected {dimension}",
                extra={
                    "event": "dimension_mismatch",
                    "expected": dimension,
                    "actual": int(vector.size),
                },
            )
            skipped += 1
            continue

        weighted_sum += vector * weight
        total_weight += weight

    if weighted_sum is None or total_weight == 0:
        return None

    if skipped:
        logger.debug(f"Weighted average skipped {skipped} vectors")

    return weighted_sum / total_weight
