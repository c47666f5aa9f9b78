"""Debounced embedding recompute triggers.

Ownership changes arrive in bursts (a library import adds hundreds of tracks
in a few seconds). Rather than recomputing the user's embedding after every
insert, events for the same user are collected over a short coalescing
window and answered with a single aggregation call.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from tastematch.exceptions import CollaboratorUnavailableError
from tastematch.recommender.collaborators import BoundedCaller, ItemType, OwnershipStore

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 2.0
DEFAULT_MAX_WAIT_SECONDS = 30.0


class EmbeddingRefreshDebouncer:
    """Coalesces recompute requests per user.

    Each ``notify`` (re)starts a timer for the user; when the window passes
    without a new event, ``refresh`` is called once for that user. A steady
    stream of events cannot hold a refresh back for longer than
    ``max_wait_seconds`` after the first event of the burst.
    """

    def __init__(
        self,
        refresh: Callable[[str], object],
        window_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        max_wait_seconds: Optional[float] = DEFAULT_MAX_WAIT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the debouncer.

        Args:
            refresh: Called with a user id once the user's window closes,
                normally ``EmbeddingAggregator.aggregate_embedding_for``.
            window_seconds: Coalescing window.
            max_wait_seconds: Longest delay between the first event of a
                burst and its refresh. None disables the cap.
            clock: Monotonic clock in seconds.
        """
        self._refresh = refresh
        self.window_seconds = window_seconds
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._first_event_at: Dict[str, float] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._event_counts: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._closed = False

    def notify(self, user_id: str) -> None:
        """Record an ownership change for a user."""
        with self._lock:
            if self._closed:
                logger.debug(f"Debouncer closed, ignoring event for user {user_id}")
                return

            existing = self._timers.get(user_id)
            if existing is not None:
                existing.cancel()

            first = self._first_event_at.setdefault(user_id, self._clock())
            timer = threading.Timer(self._delay(first), self._fire, args=(user_id,))
            timer.daemon = True
            self._timers[user_id] = timer
            self._event_counts[user_id] = self._event_counts.get(user_id, 0) + 1
            timer.start()

    def _delay(self, first_event_at: float) -> float:
        if self.max_wait_seconds is None:
            return self.window_seconds
        remaining = self.max_wait_seconds - (self._clock() - first_event_at)
        return max(0.0, min(self.window_seconds, remaining))

    def pending(self) -> List[str]:
        """User ids waiting for their window to close."""
        with self._lock:
            return list(self._timers.keys())

    def _take(self, user_id: str) -> Optional[int]:
        with self._lock:
            timer = self._timers.pop(user_id, None)
            if timer is None:
                return None
            timer.cancel()
            self._first_event_at.pop(user_id, None)
            return self._event_counts.pop(user_id, 0)

    def _fire(self, user_id: str) -> None:
        events = self._take(user_id)
        if events is None:
            return
        self._run(user_id, events)

    def _run(self, user_id: str, events: int) -> None:
        logger.info(
            "Recomputing embedding after ownership changes",
            extra={"user_id": user_id, "coalesced_events": events},
        )
        try:
            self._refresh(user_id)
        except Exception as e:
            # Timer threads have no caller to report to
            logger.error(
                f"Embedding refresh failed for user {user_id}: {e}",
                extra={"user_id": user_id, "error_type": type(e).__name__},
                exc_info=True,
            )

    def flush(self) -> List[str]:
        """Run every pending refresh now, on the calling thread.

        Returns:
            User ids that were refreshed.
        """
        with self._lock:
            user_ids = list(self._timers.keys())

        flushed = []
        for user_id in user_ids:
            events = self._take(user_id)
            if events is not None:
                self._run(user_id, events)
                flushed.append(user_id)
        return flushed

    def shutdown(self) -> None:
        """Cancel pending timers and stop accepting events."""
        with self._lock:
            self._closed = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._event_counts.clear()
            self._first_event_at.clear()


class FeatureUpdateFanout:
    """Schedules a recompute for every owner of an item whose features changed."""

    def __init__(
        self,
        ownership_store: OwnershipStore,
        debouncer: EmbeddingRefreshDebouncer,
        caller: Optional[BoundedCaller] = None,
    ):
        self.ownership_store = ownership_store
        self.debouncer = debouncer
        self.caller = caller or BoundedCaller()

    def on_feature_updated(self, item_type: ItemType, item_id: str) -> List[str]:
        """Notify the debouncer for each owner of the item.

        Returns:
            User ids scheduled for a recompute.
        """
        try:
            owners = self.caller.call(
                "ownership_store", self.ownership_store.list_owners, ItemType(item_type), item_id
            )
        except CollaboratorUnavailableError:
            logger.warning(f"Could not list owners of {item_type} {item_id}")
            return []

        for user_id in owners:
            self.debouncer.notify(user_id)

        logger.debug(f"Scheduled {len(owners)} embedding refreshes for {item_type} {item_id}")
        return list(owners)
