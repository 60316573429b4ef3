"""
Engine Metrics

Request, error and in-flight counters maintained around every handler.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from typing import Any, Dict

logger = logging.getLogger(__name__)


@dataclass
class MetricsSnapshot:
    """Point-in-time copy of the engine counters"""
    requests_processed: int
    errors: int
    in_flight: int
    uptime_seconds: float


class EngineMetrics:
    """Thread-safe operation counters"""

    def __init__(self):
        self._lock = threading.Lock()
        self._requests_processed = 0
        self._errors = 0
        self._in_flight = 0
        self._started_at = time.time()

    def increment_requests(self) -> None:
        with self._lock:
            self._requests_processed += 1

    def increment_errors(self) -> None:
        with self._lock:
            self._errors += 1

    @contextmanager
    def track_operation(self, name: str = ""):
        """
        Count one handler invocation

        Increments the request and in-flight counters on entry and the
        error counter if the wrapped block raises.
        """
        with self._lock:
            self._requests_processed += 1
            self._in_flight += 1
        try:
            yield
        except Exception:
            self.increment_errors()
            if name:
                logger.debug(f"Operation {name} failed")
            raise
        finally:
            with self._lock:
                self._in_flight -= 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_processed=self._requests_processed,
                errors=self._errors,
                in_flight=self._in_flight,
                uptime_seconds=round(time.time() - self._started_at, 3),
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self.snapshot())
