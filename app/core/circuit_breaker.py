"""
Circuit breaker guarding ledger-mutating operations
One instance is created per process in the application lifespan and injected
"""

from typing import Callable, Optional
import logging
import time

from .config import settings
from .exceptions import ServiceUnavailableError

logger = logging.getLogger(__name__)

class CircuitBreaker:
    """Failure counter that opens after a threshold and resets after a timeout"""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        threshold: Optional[int] = None,
        reset_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.threshold = threshold if threshold is not None else settings.CIRCUIT_BREAKER_THRESHOLD
        self.reset_timeout = (
            reset_timeout if reset_timeout is not None else settings.CIRCUIT_BREAKER_RESET_SECONDS
        )
        self._clock = clock
        self.failures = 0
        self.opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self.opened_at is None:
            return self.CLOSED
        if self._clock() - self.opened_at >= self.reset_timeout:
            return self.HALF_OPEN
        return self.OPEN

    def allow_request(self) -> bool:
        """True unless the breaker is open and the reset timeout has not elapsed"""
        return self.state != self.OPEN

    def check(self) -> None:
        """
        Raise when the breaker is open

        Raises:
            ServiceUnavailableError: If calls are being short-circuited
        """
        if not self.allow_request():
            raise ServiceUnavailableError(
                f"{self.name} is temporarily unavailable, please retry shortly"
            )

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == self.HALF_OPEN or self.failures >= self.threshold:
            if self.opened_at is None or self.state == self.HALF_OPEN:
                logger.warning(f"Circuit breaker '{self.name}' opened after {self.failures} failures")
            self.opened_at = self._clock()

    def record_success(self) -> None:
        if self.failures or self.opened_at is not None:
            logger.info(f"Circuit breaker '{self.name}' closed")
        self.reset()

    def reset(self) -> None:
        self.failures = 0
        self.opened_at = None
