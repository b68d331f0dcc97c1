"""
Circuit breaker for blocking calls to the payment gateway
"""
import threading
import time
from enum import Enum
from typing import Callable, Any, Tuple
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5  # consecutive counted failures before opening
    reset_timeout: float = 60.0  # seconds open before a trial call is let through
    success_threshold: int = 3   # trial successes needed to close again

class CircuitBreakerException(Exception):
    """The breaker is open; the call was not attempted."""

class CircuitBreaker:
    """Thread-safe breaker. The lock guards the counters only, never the protected call.

    Only `counted_exceptions` count as failures, so a caller can let client
    errors (bad input) pass through without tripping the breaker.
    """

    def __init__(self, name: str, config: CircuitBreakerConfig, counted_exceptions: Tuple[type, ...] = (Exception,)):
        self.name = name
        self.config = config
        self.counted_exceptions = counted_exceptions
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0
        self.last_state_change = time.time()
        self._lock = threading.Lock()

    def _transition(self, state: CircuitState, reason: str) -> None:
        # caller holds the lock
        self.state = state
        self.success_count = 0
        if state == CircuitState.CLOSED:
            self.failure_count = 0
        self.last_state_change = time.time()
        log = logger.info if state != CircuitState.OPEN else logger.warning
        log(f"Circuit breaker {self.name} -> {state.value}: {reason}")

    def _before_call(self) -> None:
        with self._lock:
            if self.state == CircuitState.OPEN:
                if time.time() - self.last_failure_time < self.config.reset_timeout:
                    raise CircuitBreakerException(f"Circuit breaker {self.name} is open")
                self._transition(CircuitState.HALF_OPEN, "reset timeout elapsed")

    def _on_success(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED, "recovered")
            else:
                self.failure_count = 0

    def _on_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, "trial call failed")
            elif self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN, f"{self.failure_count} consecutive failures")

    def call(self, func: Callable, *args, **kwargs) -> Any:
        self._before_call()
        try:
            result = func(*args, **kwargs)
        except self.counted_exceptions:
            self._on_failure()
            raise
        self._on_success()
        return result

    def get_state(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "last_state_change": self.last_state_change,
        }

GATEWAY_CB_CONFIG = CircuitBreakerConfig(
    failure_threshold=5,
    reset_timeout=30.0,
    success_threshold=2,
)
