"""
Error taxonomy and failure tracking for the feed pipeline.

Only BatchTotalFailure ever reaches a user; everything else is recovered
where it happens and logged.
"""

import logging
import time
from collections import defaultdict
from typing import Callable, Dict, Optional, Tuple


class TopiqError(Exception):
    """Base class for feed aggregator errors"""
    pass


class AdapterFailure(TopiqError):
    """One source's upstream call failed or returned unusable data"""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class BatchTotalFailure(TopiqError):
    """Every adapter in a batch failed and nothing was produced"""

    def __init__(self, sources, errors: Optional[Dict[str, str]] = None):
        self.sources = list(sources)
        self.errors = errors or {}
        super().__init__(f"All sources failed: {', '.join(self.sources) or 'none requested'}")


class StorageFailure(TopiqError):
    """Durable store read/write failed or is unavailable"""
    pass


class CircuitBreaker:
    """Per-source circuit breaker.

    Opens after `failure_threshold` consecutive failures and closes again once
    `recovery_timeout` seconds have passed.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock
        self.failure_counts: Dict[str, int] = defaultdict(int)
        self.circuit_states: Dict[str, Tuple[str, float]] = {}
        self.logger = logging.getLogger(__name__)

    def record_success(self, service: str) -> None:
        self.failure_counts[service] = 0
        self.circuit_states[service] = ('closed', self.clock())

    def record_failure(self, service: str) -> None:
        self.failure_counts[service] += 1
        if self.failure_counts[service] >= self.failure_threshold:
            if not self.is_open(service):
                self.logger.warning(
                    f"Circuit opened for {service} after {self.failure_counts[service]} consecutive failures"
                )
            self.circuit_states[service] = ('open', self.clock())

    def is_open(self, service: str) -> bool:
        state = self.circuit_states.get(service)
        if not state:
            return False
        status, ts = state
        if status != 'open':
            return False
        if self.clock() - ts >= self.recovery_timeout:
            # Auto-close after timeout
            self.circuit_states[service] = ('closed', self.clock())
            self.failure_counts[service] = 0
            return False
        return True

    def should_attempt(self, service: str) -> bool:
        return not self.is_open(service)
