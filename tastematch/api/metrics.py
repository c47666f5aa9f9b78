"""Metrics service for tracking API performance.

Singleton service that tracks call counts and latency per taste operation,
plus how often each compatibility method or recommendation source answered.
"""

import threading
from typing import Dict, Optional


class _OperationStats:
    """Counters for one operation. Callers hold the service lock."""

    def __init__(self):
        self.count = 0
        self.total_latency_ms = 0.0
        self.min_latency_ms = float('inf')
        self.max_latency_ms = 0.0
        self.outcomes: Dict[str, int] = {}

    def record(self, latency_ms: float, outcome: Optional[str]) -> None:
        self.count += 1
        self.total_latency_ms += latency_ms
        self.min_latency_ms = min(self.min_latency_ms, latency_ms)
        self.max_latency_ms = max(self.max_latency_ms, latency_ms)
        if outcome is not None:
            self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def as_dict(self) -> Dict:
        avg_latency = self.total_latency_ms / self.count if self.count > 0 else 0.0
        return {
            "count": self.count,
            "average_latency_ms": round(avg_latency, 2),
            "min_latency_ms": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0.0,
            "max_latency_ms": round(self.max_latency_ms, 2),
            "outcomes": dict(self.outcomes),
        }


class MetricsService:
    """Singleton service for tracking API metrics.

    Thread-safe per-operation counters. Operations are free-form names such
    as "aggregate", "compatibility" or "recommend"; the outcome records
    which path produced the answer (for example "embedding" or "overlap").
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        """Create singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super(MetricsService, cls).__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize metrics counters."""
        if self._initialized:
            return

        self._lock = threading.Lock()
        self._operations: Dict[str, _OperationStats] = {}
        self._initialized = True

    def record(self, operation: str, latency_ms: float, outcome: Optional[str] = None) -> None:
        """Record one call of an operation.

        Args:
            operation: Operation name
            latency_ms: Latency in milliseconds
            outcome: Method or source that produced the result, if any
        """
        with self._lock:
            stats = self._operations.get(operation)
            if stats is None:
                stats = _OperationStats()
                self._operations[operation] = stats
            stats.record(latency_ms, outcome)

    def get_metrics(self) -> Dict:
        """Get current metrics.

        Returns:
            Dictionary with:
            - total_calls: Calls across all operations
            - operations: Per-operation count, latency figures and outcomes
        """
        with self._lock:
            operations = {name: stats.as_dict() for name, stats in sorted(self._operations.items())}
            return {
                "total_calls": sum(stats["count"] for stats in operations.values()),
                "operations": operations,
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._operations = {}


# Global singleton instance
metrics_service = MetricsService()
