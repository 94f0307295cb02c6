"""
Bounded retry policy

Used for fetching a freshly generated ticket, which the backend may not
have finished writing when the generation call returns.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def fixed_backoff(delay: float) -> Callable[[int], float]:
    """Backoff function returning the same delay for every attempt"""
    return lambda attempt: delay


class RetryExhausted(Exception):
    """Raised when every attempt of a RetryPolicy failed"""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    """
    Run a callable at most ``max_attempts`` times

    Attributes:
        max_attempts: Total number of attempts, at least 1
        backoff: Maps the 1-based number of the failed attempt to the
            seconds to wait before the next one
        initial_delay: Seconds to wait before the first attempt
        retry_on: Exception types that count as a failed attempt
        sleep: Sleep function, replaced in tests
    """
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=lambda: fixed_backoff(1.0))
    initial_delay: float = 0.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def run(self, func: Callable[[], T], description: str = "operation") -> T:
        """
        Call ``func`` until it returns or the attempts are used up

        Args:
            func: Zero-argument callable
            description: Name used in log messages

        Returns:
            Whatever ``func`` returned on its first successful attempt

        Raises:
            RetryExhausted: If every attempt raised one of ``retry_on``
        """
        if self.initial_delay > 0:
            self.sleep(self.initial_delay)

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except self.retry_on as e:
                last_error = e
                logger.warning("%s failed (attempt %d/%d): %s", description, attempt, self.max_attempts, e)
                if attempt < self.max_attempts:
                    delay = self.backoff(attempt)
                    if delay > 0:
                        self.sleep(delay)

        raise RetryExhausted(self.max_attempts, last_error)
