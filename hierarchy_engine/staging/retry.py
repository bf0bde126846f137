"""Retry/backoff policy owned by the I/O collaborators."""

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, Field

from hierarchy_engine.errors import StagingWriteError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Exponential backoff with jitter. The core's pure functions never retry."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=0.1, ge=0.0)
    max_delay_seconds: float = Field(default=2.0, ge=0.0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)     # Fraction of the delay

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        base = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))
        spread = (rng or random).uniform(-self.jitter, self.jitter)
        return max(0.0, base * (1.0 + spread))

    def run(
        self,
        fn: Callable[[], T],
        retry_on: Tuple[Type[BaseException], ...],
        context: str = "",
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> T:
        """Call fn until it succeeds or attempts run out, then raise StagingWriteError."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except retry_on as exc:
                if attempt >= self.max_attempts:
                    raise StagingWriteError(
                        message=f"{context or 'operation'} failed after {attempt} attempts: {exc}",
                        details={"attempts": attempt, "error": str(exc)},
                    ) from exc
                delay = self.delay_for(attempt, rng)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    context or "operation", attempt, self.max_attempts, delay, exc,
                )
                sleep(delay)
