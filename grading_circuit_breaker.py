"""
Circuit breaker for remote scoring back-ends.

A scoring strategy that calls an external model can fail for minutes at a
time. ``ScoringCircuitBreaker`` counts consecutive failures of the scorer it
guards; once they reach the threshold it opens and the scoring engine goes
straight to the default score instead of waiting on a timeout every turn.
After ``recovery_timeout`` seconds a limited number of trial calls are let
through, and the circuit closes again once enough of them succeed.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from grading_config import ScoringConfig, get_config
from grading_errors import GradingError


logger = logging.getLogger(__name__)


T = TypeVar('T')

StateListener = Callable[["CircuitState", "CircuitState"], None]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"  # trial calls only


class CircuitOpenError(GradingError):
    """The scorer was not called because its circuit is open."""

    def __init__(self, scorer: str, retry_in: Optional[float] = None):
        message = f"Circuit for scorer {scorer} is open"
        if retry_in is not None:
            message += f"; next trial call in {retry_in:.1f}s"
        super().__init__(message)
        self.scorer = scorer
        self.retry_in = retry_in


@dataclass
class ScoringCallStats:
    """Outcome counters for calls made to one scorer."""
    calls: int = 0
    successes: int = 0
    failures: int = 0
    rejections: int = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    total_latency: float = 0.0
    opened_at: Optional[datetime] = None

    def record(self, succeeded: bool, latency: float) -> None:
        self.calls += 1
        self.total_latency += latency
        if succeeded:
            self.successes += 1
            self.consecutive_successes += 1
            self.consecutive_failures = 0
        else:
            self.failures += 1
            self.consecutive_failures += 1
            self.consecutive_successes = 0

    @property
    def failure_rate(self) -> float:
        return self.failures / self.calls if self.calls else 0.0

    @property
    def average_latency(self) -> float:
        return self.total_latency / self.calls if self.calls else 0.0


class ScoringCircuitBreaker:
    """Guards one scorer's async calls with closed / open / half-open states."""

    def __init__(self,
                 failure_threshold: int = 5,
                 success_threshold: int = 1,
                 recovery_timeout: float = 60.0,
                 half_open_max_calls: int = 1,
                 name: str = "scoring"):
        """
        Args:
            failure_threshold: Consecutive failures that open the circuit
            success_threshold: Consecutive trial successes that close it again
            recovery_timeout: Seconds the circuit stays open before trial calls
            half_open_max_calls: Trial calls allowed in flight at once
            name: Scorer name used in logs and errors
        """
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self.name = name

        self._state = CircuitState.CLOSED
        self._stats = ScoringCallStats()
        self._trials_in_flight = 0
        self._lock = threading.Lock()
        self._listeners: List[StateListener] = []

    @classmethod
    def from_config(cls, scoring_config: Optional[ScoringConfig] = None, name: str = "scoring") -> "ScoringCircuitBreaker":
        scoring_config = scoring_config or get_config().scoring
        return cls(
            failure_threshold=scoring_config.failure_threshold,
            recovery_timeout=scoring_config.recovery_timeout,
            name=name,
        )

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def stats(self) -> ScoringCallStats:
        return self._stats

    def on_state_change(self, listener: StateListener) -> None:
        """Register ``listener(old_state, new_state)``, called after every transition."""
        self._listeners.append(listener)

    def _retry_in(self) -> float:
        if self._stats.opened_at is None:
            return 0.0
        elapsed = (datetime.now() - self._stats.opened_at).total_seconds()
        return max(0.0, self.recovery_timeout - elapsed)

    def _set_state(self, new_state: CircuitState) -> Optional[Tuple[CircuitState, CircuitState]]:
        # Caller holds the lock; listeners are notified once it is released
        old_state = self._state
        if old_state == new_state:
            return None
        self._state = new_state
        self._trials_in_flight = 0
        if new_state == CircuitState.OPEN:
            self._stats.opened_at = datetime.now()
        elif new_state == CircuitState.CLOSED:
            self._stats.opened_at = None
        return old_state, new_state

    def _notify(self, transition: Optional[Tuple[CircuitState, CircuitState]]) -> None:
        if transition is None:
            return
        old_state, new_state = transition
        logger.info(f"Scorer {self.name} circuit: {old_state.value} -> {new_state.value}")
        for listener in self._listeners:
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.error(f"Circuit state listener failed for scorer {self.name}: {e}")

    def _admit(self) -> bool:
        """Let a call through or raise; returns True for a half-open trial call."""
        with self._lock:
            transition = None
            if self._state == CircuitState.OPEN and self._retry_in() <= 0:
                transition = self._set_state(CircuitState.HALF_OPEN)

            if self._state == CircuitState.OPEN:
                self._stats.rejections += 1
                error = CircuitOpenError(self.name, self._retry_in())
            elif self._state == CircuitState.HALF_OPEN and self._trials_in_flight >= self.half_open_max_calls:
                self._stats.rejections += 1
                error = CircuitOpenError(self.name)
            else:
                error = None
                trial = self._state == CircuitState.HALF_OPEN
                if trial:
                    self._trials_in_flight += 1

        self._notify(transition)
        if error is not None:
            raise error
        return trial

    def _settle(self, succeeded: bool, latency: float, trial: bool) -> None:
        with self._lock:
            self._stats.record(succeeded, latency)
            if trial and self._state == CircuitState.HALF_OPEN:
                self._trials_in_flight = max(0, self._trials_in_flight - 1)

            transition = None
            if succeeded:
                if self._state == CircuitState.HALF_OPEN and self._stats.consecutive_successes >= self.success_threshold:
                    transition = self._set_state(CircuitState.CLOSED)
            elif self._state == CircuitState.HALF_OPEN:
                transition = self._set_state(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._stats.consecutive_failures >= self.failure_threshold:
                transition = self._set_state(CircuitState.OPEN)

        self._notify(transition)

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Await ``func(*args, **kwargs)`` unless the circuit is open.

        Raises:
            CircuitOpenError: The call was rejected without running ``func``
            Exception: Whatever ``func`` raised, after it is counted
        """
        trial = self._admit()
        started = time.monotonic()
        try:
            result = await func(*args, **kwargs)
        except BaseException:
            # A cancelled call (scoring timeout) counts against the scorer
            self._settle(False, time.monotonic() - started, trial)
            raise
        self._settle(True, time.monotonic() - started, trial)
        return result

    def reset(self) -> None:
        """Close the circuit and forget all recorded calls."""
        with self._lock:
            transition = self._set_state(CircuitState.CLOSED)
            self._stats = ScoringCallStats()
        self._notify(transition)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            status = {
                "scorer": self.name,
                "state": self._state.value,
                "stats": {
                    "calls": self._stats.calls,
                    "successes": self._stats.successes,
                    "failures": self._stats.failures,
                    "rejections": self._stats.rejections,
                    "failure_rate": f"{self._stats.failure_rate:.1%}",
                    "average_latency_ms": round(self._stats.average_latency * 1000, 1),
                    "consecutive_failures": self._stats.consecutive_failures,
                },
                "config": {
                    "failure_threshold": self.failure_threshold,
                    "success_threshold": self.success_threshold,
                    "recovery_timeout": self.recovery_timeout,
                    "half_open_max_calls": self.half_open_max_calls,
                },
            }
            if self._state == CircuitState.OPEN:
                status["retry_in_seconds"] = round(self._retry_in(), 1)
            return status
