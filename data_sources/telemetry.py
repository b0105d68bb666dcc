"""
Telemetry for the Overpass resolution path
Tracks how each fetch was resolved so "no playgrounds here" can be told
apart from "every mirror was down" without changing the result contract.
"""

import time
import threading
from typing import Dict, List, Optional, Any
from collections import Counter
from dataclasses import dataclass, field, asdict

# How a fetch ended
OUTCOME_FULL = "full"            # whole bbox answered by one mirror
OUTCOME_SUBDIVIDED = "subdivided"  # quadrant fallback produced the result
OUTCOME_UNAVAILABLE = "unavailable"  # every mirror failed at every stage
OUTCOME_CANCELLED = "cancelled"  # superseded by a newer viewport


@dataclass
class FetchMetrics:
    """Metrics for a single fetch call."""
    timestamp: float
    outcome: str
    element_count: int
    response_time: float
    attempts: int
    mirror_used: Optional[str] = None
    failed_mirrors: List[str] = field(default_factory=list)
    tiles_resolved: int = 0


class TelemetryCollector:
    """Collects fetch outcomes in memory (bounded)."""

    def __init__(self, max_fetches: int = 1000):
        self.max_fetches = max_fetches
        self.fetches: List[FetchMetrics] = []
        self.lock = threading.Lock()
        self.start_time = time.time()
        self.total_fetches = 0
        self.mirror_failures: Counter = Counter()

    def record_fetch(self, metrics: FetchMetrics) -> None:
        """Record metrics for a single fetch."""
        with self.lock:
            self.fetches.append(metrics)
            self.total_fetches += 1
            self.mirror_failures.update(metrics.failed_mirrors)

            # Maintain max size
            if len(self.fetches) > self.max_fetches:
                self.fetches = self.fetches[-self.max_fetches:]

    def get_overall_stats(self) -> Dict[str, Any]:
        """Get overall fetch statistics."""
        with self.lock:
            if not self.fetches:
                return {
                    "total_fetches": 0,
                    "uptime_seconds": round(time.time() - self.start_time, 1),
                }

            outcomes = Counter(f.outcome for f in self.fetches)
            count = len(self.fetches)
            avg_response_time = sum(f.response_time for f in self.fetches) / count
            avg_attempts = sum(f.attempts for f in self.fetches) / count
            mirrors_used = Counter(f.mirror_used for f in self.fetches if f.mirror_used)

            return {
                "total_fetches": self.total_fetches,
                "window_size": count,
                "uptime_seconds": round(time.time() - self.start_time, 1),
                "outcomes": dict(outcomes),
                "unavailable_rate": round(outcomes[OUTCOME_UNAVAILABLE] / count * 100, 1),
                "subdivided_rate": round(outcomes[OUTCOME_SUBDIVIDED] / count * 100, 1),
                "avg_response_time": round(avg_response_time, 3),
                "avg_attempts": round(avg_attempts, 2),
                "mirrors_used": dict(mirrors_used),
                "mirror_failures": dict(self.mirror_failures),
                "last_fetch": asdict(self.fetches[-1]),
            }

    def reset(self) -> None:
        with self.lock:
            self.fetches = []
            self.total_fetches = 0
            self.mirror_failures = Counter()
            self.start_time = time.time()


# Global telemetry collector instance
telemetry_collector = TelemetryCollector()


def record_fetch(metrics: FetchMetrics) -> None:
    """Record the outcome of one fetch."""
    telemetry_collector.record_fetch(metrics)


def get_telemetry_stats() -> Dict[str, Any]:
    """Get current telemetry statistics."""
    return telemetry_collector.get_overall_stats()


def reset_telemetry() -> None:
    telemetry_collector.reset()
