"""Generate a fake music catalog for testing and development.

Creates the three CSV files the catalog loader reads: item features with
genre-clustered embeddings, user ownerships with acquisition timestamps, and
users with an anthem track.

Example:
    Run the script directly to generate default data:
        $ python scripts/generate_fake_catalog.py

    Or import and use programmatically:
        from scripts.generate_fake_catalog import generate_fake_catalog
        frames = generate_fake_catalog(num_users=20, num_artists=30)
"""

import argparse
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pandas as pd

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tastematch.recommender.utils import FEATURES_FILENAME, OWNERSHIPS_FILENAME, USERS_FILENAME

# Default configuration constants
DEFAULT_NUM_USERS = 50
DEFAULT_NUM_ARTISTS = 40
DEFAULT_ALBUMS_PER_ARTIST = 2
DEFAULT_TRACKS_PER_ALBUM = 5
DEFAULT_ITEMS_PER_USER = 25
DEFAULT_EMBEDDING_DIM = 64
DEFAULT_DAYS_BACK = 180
GENRES = ["rock", "pop", "jazz", "hip-hop", "electronic", "folk", "metal", "soul"]
MOODS = ["happy", "sad", "energetic", "calm"]


def _embedding(centroid: np.ndarray, rng: np.random.Generator, spread: float) -> str:
    vector = centroid + rng.normal(0.0, spread, size=centroid.size)
    return json.dumps([round(float(x), 5) for x in vector])


def generate_fake_catalog(
    num_users: int = DEFAULT_NUM_USERS,
    num_artists: int = DEFAULT_NUM_ARTISTS,
    albums_per_artist: int = DEFAULT_ALBUMS_PER_ARTIST,
    tracks_per_album: int = DEFAULT_TRACKS_PER_ALBUM,
    items_per_user: int = DEFAULT_ITEMS_PER_USER,
    embedding_dim: int = DEFAULT_EMBEDDING_DIM,
    missing_embedding_rate: float = 0.1,
    end_date: Optional[datetime] = None,
    seed: int = 42,
) -> Dict[str, pd.DataFrame]:
    """Generate a synthetic catalog with users.

    Every genre gets a random centroid; artists, albums and tracks are noisy
    copies of their genre centroid, so users who collect one genre end up
    with similar taste embeddings.

    Args:
        num_users: Number of users to simulate. Must be positive.
        num_artists: Number of artists. Must be positive.
        albums_per_artist: Albums per artist.
        tracks_per_album: Tracks per album.
        items_per_user: Tracks owned per user; artists and albums follow.
        embedding_dim: Dimension of every embedding.
        missing_embedding_rate: Share of tracks with no embedding yet.
        end_date: Latest acquisition time; defaults to now.
        seed: Random seed for reproducible output.

    Returns:
        Dictionary with "features", "ownerships" and "users" DataFrames.

    Raises:
        ValueError: If a count or the embedding dimension is not positive.
    """
    if min(num_users, num_artists, albums_per_artist, tracks_per_album, embedding_dim) <= 0:
        raise ValueError("counts and embedding_dim must be positive")

    rng = np.random.default_rng(seed)
    end_date = end_date or datetime.now(timezone.utc)
    centroids = {genre: rng.normal(0.0, 1.0, size=embedding_dim) for genre in GENRES}

    features = []
    tracks_by_genre: Dict[str, list] = {genre: [] for genre in GENRES}
    track_artist: Dict[str, str] = {}
    track_album: Dict[str, str] = {}

    for a in range(1, num_artists + 1):
        genre = GENRES[int(rng.integers(len(GENRES)))]
        artist_id = f"artist-{a}"
        artist_centroid = centroids[genre] + rng.normal(0.0, 0.3, size=embedding_dim)
        features.append({
            "item_type": "artist",
            "item_id": artist_id,
            "name": f"Artist {a}",
            "artist_id": None,
            "genre": genre,
            "mood": None,
            "popularity": int(rng.integers(0, 101)),
            "embedding": _embedding(artist_centroid, rng, 0.1),
            "tags": f"{genre}|{MOODS[int(rng.integers(len(MOODS)))]}",
        })

        for b in range(1, albums_per_artist + 1):
            album_id = f"album-{a}-{b}"
            features.append({
                "item_type": "album",
                "item_id": album_id,
                "name": f"Album {a}.{b}",
                "artist_id": None,
                "genre": genre,
                "mood": None,
                "popularity": int(rng.integers(0, 101)),
                "embedding": _embedding(artist_centroid, rng, 0.2),
                "tags": genre,
            })

            for t in range(1, tracks_per_album + 1):
                track_id = f"track-{a}-{b}-{t}"
                has_embedding = rng.random() >= missing_embedding_rate
                features.append({
                    "item_type": "track",
                    "item_id": track_id,
                    "name": f"Track {a}.{b}.{t}",
                    "artist_id": artist_id,
                    "genre": genre,
                    "mood": MOODS[int(rng.integers(len(MOODS)))],
                    "popularity": int(rng.integers(0, 101)),
                    "embedding": _embedding(artist_centroid, rng, 0.3) if has_embedding else None,
                    "tags": genre,
                })
                tracks_by_genre[genre].append(track_id)
                track_artist[track_id] = artist_id
                track_album[track_id] = album_id

    populated = [genre for genre in GENRES if tracks_by_genre[genre]]
    ownerships = []
    users = []

    for u in range(1, num_users + 1):
        user_id = f"user-{u}"
        # Mostly one favourite genre, some spill-over into a second one
        picks = rng.choice(populated, size=2, replace=len(populated) < 2)
        favourite, second = str(picks[0]), str(picks[1])
        pool = tracks_by_genre[favourite] * 3 + tracks_by_genre[second]
        owned_tracks = sorted({str(t) for t in rng.choice(pool, size=min(items_per_user, len(pool)))})

        owned = {"track": owned_tracks, "artist": set(), "album": set()}
        for track_id in owned_tracks:
            owned["artist"].add(track_artist[track_id])
            owned["album"].add(track_album[track_id])

        for item_type, item_ids in owned.items():
            for item_id in sorted(item_ids):
                acquired_at = end_date - timedelta(
                    days=int(rng.integers(0, DEFAULT_DAYS_BACK)),
                    seconds=int(rng.integers(0, 86400)),
                )
                ownerships.append({
                    "user_id": user_id,
                    "item_type": item_type,
                    "item_id": item_id,
                    "acquired_at": acquired_at.isoformat(),
                })

        users.append({
            "user_id": user_id,
            "anthem_track_id": owned_tracks[0] if owned_tracks else None,
        })

    return {
        "features": pd.DataFrame(features),
        "ownerships": pd.DataFrame(ownerships),
        "users": pd.DataFrame(users),
    }


def main() -> None:
    """Generate a fake catalog and save it as CSV files."""
    parser = argparse.ArgumentParser(description="Generate a fake music catalog")
    parser.add_argument("--output-dir", type=str, default="data", help="Output directory (default: data)")
    parser.add_argument("--num-users", type=int, default=DEFAULT_NUM_USERS)
    parser.add_argument("--num-artists", type=int, default=DEFAULT_NUM_ARTISTS)
    parser.add_argument("--embedding-dim", type=int, default=DEFAULT_EMBEDDING_DIM)
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    print(f"Generating catalog: {args.num_artists} artists, {args.num_users} users...")

    try:
        frames = generate_fake_catalog(
            num_users=args.num_users,
            num_artists=args.num_artists,
            embedding_dim=args.embedding_dim,
            seed=args.seed,
        )
    except ValueError as e:
        print(f"Error generating data: {e}")
        sys.exit(1)

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    filenames = {
        "features": FEATURES_FILENAME,
        "ownerships": OWNERSHIPS_FILENAME,
        "users": USERS_FILENAME,
    }
    for kind, frame in frames.items():
        output_path = output_dir / filenames[kind]
        frame.to_csv(output_path, index=False)
        print(f"Saved {len(frame)} {kind} rows to {output_path}")

    features = frames["features"]
    print(f"\nData summary:")
    print(f"  Tracks: {(features['item_type'] == 'track').sum()}")
    print(f"  Artists: {(features['item_type'] == 'artist').sum()}")
    print(f"  Albums: {(features['item_type'] == 'album').sum()}")
    print(f"  Ownerships: {len(frames['ownerships'])}")
    print(f"\nSet TASTEMATCH_EMBEDDING_DIM={args.embedding_dim} before loading this catalog.")


if __name__ == "__main__":
    main()
