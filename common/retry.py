"""
Backoff retries for idempotent operations

Only wrap calls that are safe to repeat (lease acquisition, reads). Gateway
order and payout submissions are never retried here.
"""
import random
import time
from dataclasses import dataclass
from typing import Callable, Any, Tuple
import logging

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[type, ...] = (Exception,)

    def delay_for(self, attempt: int) -> float:
        """Exponential delay before the retry that follows `attempt` (1-based), with optional jitter."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay

def retry_call(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Call func, retrying the configured exceptions; the last one is re-raised when attempts run out."""
    name = getattr(func, "__name__", repr(func))
    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts:
                logger.warning(f"Giving up on {name} after {attempt} attempts: {e}")
                raise
            delay = config.delay_for(attempt)
            logger.debug(f"{name} attempt {attempt}/{config.max_attempts} failed: {e}; retrying in {delay:.2f}s")
            time.sleep(delay)
