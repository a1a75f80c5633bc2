"""In-memory timings for graft, served by the /metrics endpoint.

Two families are kept: per-endpoint request timings (recorded by the API
middleware) and per-statement timings (recorded by the store around each
prepared statement, including failures).
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock

logger = logging.getLogger(__name__)

# Statements slower than this are logged
SLOW_STATEMENT_MS = 100


@dataclass
class TimingStats:
    """Count, failures and durations for one endpoint or statement."""

    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def record(self, duration_ms: float, failed: bool = False) -> None:
        self.count += 1
        self.errors += failed
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)

    def to_dict(self) -> dict:
        avg_ms = self.total_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "errors": self.errors,
            "avg_ms": round(avg_ms, 2),
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class Metrics:
    """Process-wide timing registry.

    The lock matters because TestClient and uvicorn workers may record from
    threads other than the event loop's.
    """

    _lock: Lock = field(default_factory=Lock)
    statements: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    requests: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    _started: float = field(default_factory=time.time)

    def record_statement(self, statement: str, duration_ms: float, failed: bool = False) -> None:
        with self._lock:
            self.statements[statement].record(duration_ms, failed)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self.requests[endpoint].record(duration_ms)

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._started, 1),
                "statements": {k: v.to_dict() for k, v in self.statements.items()},
                "requests": {k: v.to_dict() for k, v in self.requests.items()},
            }

    def reset(self) -> None:
        """Forget everything recorded so far (tests start from a clean slate)."""
        with self._lock:
            self.statements.clear()
            self.requests.clear()
            self._started = time.time()


metrics = Metrics()


@contextmanager
def timed_statement(statement: str):
    """Time the enclosed statement execution; an exception counts as a failure."""
    start = time.perf_counter()
    failed = True
    try:
        yield
        failed = False
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_statement(statement, duration_ms, failed)
        if duration_ms > SLOW_STATEMENT_MS:
            logger.warning(f"Slow statement: {statement} took {duration_ms:.1f}ms")
