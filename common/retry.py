"""
Exponential backoff for transient failures
"""
import random
import time
from typing import Callable, Any, Optional, Sequence
import logging

from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)

class RetryConfig:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Sequence[type]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or (Exception,))

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    delay = min(config.base_delay * 2 ** (attempt - 1), config.max_delay)
    if config.jitter:
        delay *= 0.5 + random.random() * 0.5
    return delay

def retry_call(func: Callable, config: RetryConfig, *args, sleep: Callable[[float], None] = time.sleep, **kwargs) -> Any:
    """Call func, retrying only config.retryable_exceptions; the last failure is re-raised."""
    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt >= config.max_attempts:
                logger.error(f"{func.__name__} failed after {attempt} attempts: {e}")
                raise
            delay = calculate_delay(attempt, config)
            logger.warning(f"{func.__name__} attempt {attempt}/{config.max_attempts} failed: {e}. Retrying in {delay:.2f}s")
            sleep(delay)
            attempt += 1

# Only storage-level failures are retried
DATABASE_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=10.0,
    retryable_exceptions=[OperationalError]
)
