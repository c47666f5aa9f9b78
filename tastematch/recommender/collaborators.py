"""Collaborator interfaces and in-memory implementations.

The taste core never talks to a database, cache server or third-party API
directly. It reads from the collaborators defined here, which are injected
into each component at construction time:

- FeatureStore: per-item feature records (tags, popularity, embedding)
- Catalog: artist names and representative tracks per artist
- OwnershipStore: which user owns which item, and since when
- UserStore: user records holding the persisted taste embedding
- Cache: TTL key-value store for computed results
- ExternalRecommender: best-effort catalog search by similar artist

The in-memory implementations back the API, the scripts and the tests.
Every call the core makes to a collaborator goes through a BoundedCaller so
that a slow backend degrades the result instead of stalling the request.
"""

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    TypeVar,
)

import numpy as np

from tastematch.exceptions import CollaboratorUnavailableError
from tastematch.recommender.vectors import Vector, parse_vector

# Configure module logger
logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 2.0
DEFAULT_MAX_WORKERS = 8
DEFAULT_CACHE_SIZE = 10000


def utcnow() -> datetime:
    """Timezone-aware current time, the default clock for every component."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Read a timestamp without a timezone as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ItemType(str, Enum):
    """Kinds of catalog item a user can own."""

    TRACK = "track"
    ARTIST = "artist"
    ALBUM = "album"


# ============================================================================
# Records
# ============================================================================


@dataclass
class FeatureRecord:
    """Features produced for one catalog item by the extraction pipeline.

    The embedding is run through ``parse_vector`` on construction, so a
    record always holds either a float64 array or None, whatever encoding
    the backend used.
    """

    item_type: ItemType
    item_id: str
    genre: Optional[str] = None
    mood: Optional[str] = None
    popularity: Optional[int] = None
    embedding: Optional[Vector] = None
    tags: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.item_type = ItemType(self.item_type)
        self.embedding = parse_vector(self.embedding)
        self.tags = tuple(self.tags or ())


@dataclass(frozen=True)
class Ownership:
    """A user's ownership of one item. ``acquired_at`` may be unknown."""

    item_id: str
    acquired_at: Optional[datetime]


@dataclass
class UserRecord:
    """The slice of a user the taste core reads and writes."""

    user_id: str
    embedding: Optional[Vector] = None
    anthem_track_id: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class CatalogItem:
    """An item returned by a catalog search service."""

    item_type: ItemType
    item_id: str
    name: Optional[str] = None


# ============================================================================
# Collaborator protocols
# ============================================================================


class FeatureStore(Protocol):
    def get(self, item_type: ItemType, item_id: str) -> Optional[FeatureRecord]:
        ...

    def iter_records(
        self, item_type: ItemType, batch_size: int
    ) -> Iterator[List[FeatureRecord]]:
        ...


class Catalog(Protocol):
    def tracks_for_artist(self, artist_id: str, limit: int) -> List[str]:
        ...

    def artist_name(self, artist_id: str) -> Optional[str]:
        ...


class OwnershipStore(Protocol):
    def list_owned(self, user_id: str, item_type: ItemType) -> List[Ownership]:
        ...

    def list_owners(self, item_type: ItemType, item_id: str) -> List[str]:
        ...


class UserStore(Protocol):
    def get(self, user_id: str) -> Optional[UserRecord]:
        ...

    def save_embedding(self, user_id: str, embedding: Vector) -> UserRecord:
        ...

    def iter_user_ids(self) -> Iterator[str]:
        ...

    def iter_users_with_embeddings(self) -> Iterator[UserRecord]:
        ...


class Cache(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...


class ExternalRecommender(Protocol):
    def recommend(self, seed_artist_names: Sequence[str], limit: int) -> List[CatalogItem]:
        ...


# ============================================================================
# Bounded collaborator calls
# ============================================================================


class BoundedCaller:
    """Runs collaborator calls with a timeout.

    A call that times out or raises becomes a CollaboratorUnavailableError,
    which the caller absorbs by moving to its next fallback. The worker
    thread of a timed-out call is left to finish on its own; its result is
    discarded.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="tastematch-collaborator"
        )

    def call(self, collaborator: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``fn(*args, **kwargs)`` and wait at most ``timeout_seconds``.

        Raises:
            CollaboratorUnavailableError: On timeout or on any exception
                raised by the collaborator.
        """
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                f"Collaborator {collaborator} timed out after {self.timeout_seconds}s",
                extra={
                    "event": "collaborator_unavailable",
                    "collaborator": collaborator,
                    "timeout_seconds": self.timeout_seconds,
                },
            )
            raise CollaboratorUnavailableError(collaborator) from None
        except Exception as e:
            logger.warning(
                f"Collaborator {collaborator} failed: {e}",
                extra={
                    "event": "collaborator_unavailable",
                    "collaborator": collaborator,
                    "error_type": type(e).__name__,
                },
            )
            raise CollaboratorUnavailableError(collaborator, e) from e

    def shutdown(self) -> None:
        """Stop accepting calls and drop queued ones."""
        self._executor.shutdown(wait=False, cancel_futures=True)


# ============================================================================
# TTL cache
# ============================================================================


class TTLCache:
    """Thread-safe LRU cache with per-entry TTL.

    Implements the Cache protocol. Entries expire ``ttl`` seconds after they
    were written; the least recently used entry is evicted once ``max_size``
    is reached.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_CACHE_SIZE,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, Optional[float]]]" = OrderedDict()
        self._lock = threading.Lock()

        # Statistics
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        expires_at = self._clock() + ttl if ttl is not None else None

        with self._lock:
            self._entries[key] = (value, expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        """Hit/miss counters for the status endpoint."""
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
            }


# ============================================================================
# In-memory collaborators
# ============================================================================


class InMemoryFeatureStore:
    """Feature store and catalog held in process memory.

    Records keep their insertion order, which is the stable order the
    recommendation engine uses to break ties.
    """

    def __init__(self) -> None:
        self._records: Dict[ItemType, "OrderedDict[str, FeatureRecord]"] = {
            item_type: OrderedDict() for item_type in ItemType
        }
        self._names: Dict[Tuple[ItemType, str], str] = {}
        self._artist_tracks: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    def put(
        self,
        record: FeatureRecord,
        name: Optional[str] = None,
        artist_id: Optional[str] = None,
    ) -> None:
        """Insert or wholesale replace a feature record.

        Args:
            record: Feature record to store.
            name: Optional display name (artist names seed the external
                recommender).
            artist_id: For tracks, the artist the track belongs to.
        """
        with self._lock:
            self._records[record.item_type][record.item_id] = record
            if name is not None:
                self._names[(record.item_type, record.item_id)] = name
            if artist_id is not None and record.item_type == ItemType.TRACK:
                tracks = self._artist_tracks.setdefault(artist_id, [])
                if record.item_id not in tracks:
                    tracks.append(record.item_id)

    def get(self, item_type: ItemType, item_id: str) -> Optional[FeatureRecord]:
        with self._lock:
            return self._records[ItemType(item_type)].get(item_id)

    def iter_records(
        self, item_type: ItemType, batch_size: int = 256
    ) -> Iterator[List[FeatureRecord]]:
        """Stream records of one type in insertion order, batch by batch."""
        with self._lock:
            item_ids = list(self._records[ItemType(item_type)].keys())

        for start in range(0, len(item_ids), batch_size):
            batch = []
            with self._lock:
                records = self._records[ItemType(item_type)]
                for item_id in item_ids[start:start + batch_size]:
                    record = records.get(item_id)
                    if record is not None:
                        batch.append(record)
            yield batch

    def tracks_for_artist(self, artist_id: str, limit: int) -> List[str]:
        """Most popular tracks by an artist, catalog order breaking ties."""
        with self._lock:
            track_ids = list(self._artist_tracks.get(artist_id, []))
            tracks = self._records[ItemType.TRACK]
            popularity = {
                track_id: (tracks[track_id].popularity if track_id in tracks else None)
                for track_id in track_ids
            }

        ranked = sorted(
            track_ids,
            key=lambda track_id: -(popularity[track_id] if popularity[track_id] is not None else -1),
        )
        return ranked[:limit]

    def artist_name(self, artist_id: str) -> Optional[str]:
        with self._lock:
            return self._names.get((ItemType.ARTIST, artist_id))

    def item_name(self, item_type: ItemType, item_id: str) -> Optional[str]:
        with self._lock:
            return self._names.get((ItemType(item_type), item_id))

    def count(self, item_type: ItemType) -> int:
        with self._lock:
            return len(self._records[ItemType(item_type)])


class InMemoryOwnershipStore:
    """Many-to-many ownership links, one row per (user, item) pair."""

    def __init__(self) -> None:
        self._owned: Dict[Tuple[str, ItemType], "OrderedDict[str, datetime]"] = {}
        self._lock = threading.Lock()

    def add(
        self,
        user_id: str,
        item_type: ItemType,
        item_id: str,
        acquired_at: Optional[datetime] = None,
    ) -> bool:
        """Record an ownership. Returns False if the pair already existed."""
        key = (user_id, ItemType(item_type))
        with self._lock:
            items = self._owned.setdefault(key, OrderedDict())
            if item_id in items:
                return False
            items[item_id] = acquired_at or utcnow()
            return True

    def remove(self, user_id: str, item_type: ItemType, item_id: str) -> bool:
        key = (user_id, ItemType(item_type))
        with self._lock:
            items = self._owned.get(key)
            if not items or item_id not in items:
                return False
            del items[item_id]
            return True

    def list_owned(self, user_id: str, item_type: ItemType) -> List[Ownership]:
        key = (user_id, ItemType(item_type))
        with self._lock:
            items = self._owned.get(key, OrderedDict())
            return [Ownership(item_id, acquired_at) for item_id, acquired_at in items.items()]

    def list_owners(self, item_type: ItemType, item_id: str) -> List[str]:
        item_type = ItemType(item_type)
        with self._lock:
            return [
                user_id
                for (user_id, owned_type), items in self._owned.items()
                if owned_type == item_type and item_id in items
            ]


class InMemoryUserStore:
    """User records keyed by id.

    ``save_embedding`` swaps in a private copy of the whole vector under the
    store lock, and always moves ``updated_at`` forward so cache keys derived
    from it change with every write.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._users: "OrderedDict[str, UserRecord]" = OrderedDict()
        self._clock = clock
        self._lock = threading.Lock()

    def add_user(
        self,
        user_id: str,
        anthem_track_id: Optional[str] = None,
        embedding: Optional[Any] = None,
    ) -> UserRecord:
        with self._lock:
            record = UserRecord(
                user_id=user_id,
                embedding=parse_vector(embedding),
                anthem_track_id=anthem_track_id,
                updated_at=self._clock(),
            )
            self._users[user_id] = record
            return self._copy(record)

    def set_anthem(self, user_id: str, track_id: Optional[str]) -> None:
        with self._lock:
            record = self._users[user_id]
            self._users[user_id] = replace(record, anthem_track_id=track_id)

    def delete(self, user_id: str) -> None:
        with self._lock:
            self._users.pop(user_id, None)

    def get(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            record = self._users.get(user_id)
            return self._copy(record) if record is not None else None

    def save_embedding(self, user_id: str, embedding: Vector) -> UserRecord:
        vector = np.array(embedding, dtype=np.float64, copy=True)
        with self._lock:
            record = self._users.get(user_id)
            if record is None:
                raise KeyError(user_id)
            updated_at = self._clock()
            if updated_at <= record.updated_at:
                updated_at = record.updated_at + timedelta(microseconds=1)
            self._users[user_id] = replace(record, embedding=vector, updated_at=updated_at)
            return self._copy(self._users[user_id])

    def iter_user_ids(self) -> Iterator[str]:
        with self._lock:
            user_ids = list(self._users.keys())
        return iter(user_ids)

    def iter_users_with_embeddings(self) -> Iterator[UserRecord]:
        with self._lock:
            records = [self._copy(r) for r in self._users.values() if r.embedding is not None]
        return iter(records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._users)

    @staticmethod
    def _copy(record: UserRecord) -> UserRecord:
        embedding = record.embedding.copy() if record.embedding is not None else None
        return replace(record, embedding=embedding)


class NullExternalRecommender:
    """External recommender used when no catalog search service is wired in."""

    def recommend(self, seed_artist_names: Sequence[str], limit: int) -> List[CatalogItem]:
        return []
