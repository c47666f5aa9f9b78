"""Utility functions for loading catalog data.

This module reads feature records, ownerships and users from CSV files with
pandas, stores pre-parsed catalog snapshots with joblib and turns either of
them into the in-memory collaborator stores used by the API and scripts.

Expected CSV files in a data directory:

- ``features.csv``: item_type, item_id, name, artist_id, genre, mood,
  popularity, embedding (JSON list), tags (``|`` separated)
- ``ownerships.csv``: user_id, item_type, item_id, acquired_at (ISO 8601)
- ``users.csv``: user_id, anthem_track_id, embedding (JSON list, optional)
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import joblib
import numpy as np
import pandas as pd

from tastematch.recommender.collaborators import (
    FeatureRecord,
    InMemoryFeatureStore,
    InMemoryOwnershipStore,
    InMemoryUserStore,
    ItemType,
)
from tastematch.recommender.vectors import parse_vector

# Configure module logger
logger = logging.getLogger(__name__)

# Data filenames
FEATURES_FILENAME = "features.csv"
OWNERSHIPS_FILENAME = "ownerships.csv"
USERS_FILENAME = "users.csv"
SNAPSHOT_FILENAME = "catalog_snapshot.joblib"

REQUIRED_COLUMNS = {
    "features": {"item_type", "item_id"},
    "ownerships": {"user_id", "item_type", "item_id"},
    "users": {"user_id"},
}

TAG_SEPARATOR = "|"


@dataclass
class CatalogStores:
    """The three in-memory stores built from one dataset."""

    feature_store: InMemoryFeatureStore
    ownership_store: InMemoryOwnershipStore
    user_store: InMemoryUserStore


def _cell(value: Any) -> Any:
    """Turn pandas missing values into None."""
    if value is None:
        return None
    if isinstance(value, float) and np.isnan(value):
        return None
    return value


def _read_frame(csv_path: Path, kind: str) -> pd.DataFrame:
    if not csv_path.exists():
        raise FileNotFoundError(f"CSV file not found: {csv_path}")

    logger.info(f"Loading {kind} from {csv_path}")
    df = pd.read_csv(csv_path, dtype=str)

    required_columns = REQUIRED_COLUMNS[kind]
    if not required_columns.issubset(df.columns):
        missing = required_columns - set(df.columns)
        raise ValueError(f"{csv_path.name} missing required columns: {missing}")

    logger.info(f"Loaded {len(df)} {kind} rows")
    return df


def load_catalog_frames(data_dir: str) -> Dict[str, pd.DataFrame]:
    """Load the catalog CSV files from a directory.

    ``users.csv`` is optional; users are also derived from ownerships.

    Args:
        data_dir: Directory holding the CSV files.

    Returns:
        Dictionary with "features", "ownerships" and "users" DataFrames.
        Embedding columns are parsed into numpy arrays (or None).

    Raises:
        FileNotFoundError: If features.csv or ownerships.csv is missing.
        ValueError: If a file lacks its required columns.

    Example:
        >>> frames = load_catalog_frames("data")
        >>> print(f"Tracks: {(frames['features'].item_type == 'track').sum()}")
    """
    data_path = Path(data_dir)

    features = _read_frame(data_path / FEATURES_FILENAME, "features")
    ownerships = _read_frame(data_path / OWNERSHIPS_FILENAME, "ownerships")

    users_path = data_path / USERS_FILENAME
    if users_path.exists():
        users = _read_frame(users_path, "users")
    else:
        users = pd.DataFrame({"user_id": sorted(ownerships["user_id"].unique())})

    if "popularity" in features.columns:
        features["popularity"] = pd.to_numeric(features["popularity"], errors="coerce")
    if "acquired_at" in ownerships.columns:
        ownerships["acquired_at"] = pd.to_datetime(ownerships["acquired_at"], utc=True)

    for frame in (features, users):
        if "embedding" in frame.columns:
            frame["embedding"] = pd.Series(
                [parse_vector(_cell(raw)) for raw in frame["embedding"]],
                index=frame.index,
                dtype=object,
            )

    return {"features": features, "ownerships": ownerships, "users": users}


def build_stores(frames: Dict[str, pd.DataFrame]) -> CatalogStores:
    """Populate in-memory stores from catalog DataFrames.

    Args:
        frames: Output of ``load_catalog_frames`` or ``load_snapshot``.

    Returns:
        CatalogStores holding the feature, ownership and user stores.
    """
    feature_store = InMemoryFeatureStore()
    ownership_store = InMemoryOwnershipStore()
    user_store = InMemoryUserStore()

    for row in frames["features"].to_dict(orient="records"):
        tags = _cell(row.get("tags"))
        popularity = _cell(row.get("popularity"))
        record = FeatureRecord(
            item_type=ItemType(row["item_type"]),
            item_id=str(row["item_id"]),
            genre=_cell(row.get("genre")),
            mood=_cell(row.get("mood")),
            popularity=int(popularity) if popularity is not None else None,
            embedding=_cell(row.get("embedding")),
            tags=tuple(tags.split(TAG_SEPARATOR)) if tags else (),
        )
        feature_store.put(
            record,
            name=_cell(row.get("name")),
            artist_id=_cell(row.get("artist_id")),
        )

    for row in frames["users"].to_dict(orient="records"):
        user_store.add_user(
            str(row["user_id"]),
            anthem_track_id=_cell(row.get("anthem_track_id")),
            embedding=_cell(row.get("embedding")),
        )

    for row in frames["ownerships"].to_dict(orient="records"):
        user_id = str(row["user_id"])
        if user_store.get(user_id) is None:
            user_store.add_user(user_id)

        acquired_at = row.get("acquired_at")
        if acquired_at is None or pd.isna(acquired_at):
            acquired_at = None
        else:
            acquired_at = acquired_at.to_pydatetime()

        ownership_store.add(user_id, ItemType(row["item_type"]), str(row["item_id"]), acquired_at)

    logger.info(
        "Built catalog stores",
        extra={
            "tracks": feature_store.count(ItemType.TRACK),
            "artists": feature_store.count(ItemType.ARTIST),
            "albums": feature_store.count(ItemType.ALBUM),
            "users": len(user_store),
        },
    )
    return CatalogStores(feature_store, ownership_store, user_store)


def save_snapshot(
    frames: Dict[str, pd.DataFrame],
    output_dir: str,
    snapshot_filename: str = SNAPSHOT_FILENAME,
) -> Path:
    """Save parsed catalog DataFrames to disk.

    Args:
        frames: Parsed catalog DataFrames.
        output_dir: Directory where the snapshot will be saved.
        snapshot_filename: Filename for the snapshot.

    Returns:
        Path of the written snapshot.
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    snapshot_path = output_path / snapshot_filename
    joblib.dump(frames, snapshot_path)
    logger.info(f"Saved catalog snapshot to {snapshot_path}")
    return snapshot_path


def load_snapshot(
    snapshot_dir: str,
    snapshot_filename: str = SNAPSHOT_FILENAME,
) -> Dict[str, pd.DataFrame]:
    """Load parsed catalog DataFrames saved by ``save_snapshot``.

    Raises:
        FileNotFoundError: If the snapshot file is missing.
    """
    snapshot_path = Path(snapshot_dir) / snapshot_filename
    if not snapshot_path.exists():
        raise FileNotFoundError(f"Snapshot file not found: {snapshot_path}")

    frames = joblib.load(snapshot_path)
    logger.info(f"Loaded catalog snapshot from {snapshot_path}")
    return frames


def check_snapshot_exists(snapshot_dir: str) -> bool:
    """Check if a catalog snapshot exists in a directory."""
    return (Path(snapshot_dir) / SNAPSHOT_FILENAME).exists()


def load_stores(path: Optional[str]) -> CatalogStores:
    """Build stores from a snapshot directory, a CSV directory or nothing.

    Args:
        path: Directory holding a snapshot or the catalog CSV files. None
            gives empty stores.
    """
    if path is None:
        return CatalogStores(InMemoryFeatureStore(), InMemoryOwnershipStore(), InMemoryUserStore())
    if check_snapshot_exists(path):
        return build_stores(load_snapshot(path))
    return build_stores(load_catalog_frames(path))
