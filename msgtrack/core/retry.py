import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import TransientStoreError
from ..utils.config import Settings
from ..utils.logger import setup_logger

logger = setup_logger('msgtrack.retry')

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient store errors.

    Attributes:
        max_attempts (int): Total attempts, including the first one
        base_delay (float): Delay before the second attempt, in seconds
        multiplier (float): Growth factor between consecutive delays
        max_delay (float): Upper bound for a single delay
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(max_attempts=max(1, settings.retry_attempts), base_delay=settings.retry_base_delay)

    def delay(self, attempt: int) -> float:
        """Backoff before retrying after failed attempt number `attempt` (1-based)."""
        return min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))

    async def run(self, op: Callable[[], Awaitable[T]], what: str = "store call",
                  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> T:
        """Run `op`, retrying TransientStoreError with backoff.

        Args:
            op: Zero-argument coroutine factory, called once per attempt
            what (str): Description used in log lines
            sleep: Awaitable sleep, replaceable in tests

        Returns:
            Result of the first successful attempt

        Raises:
            TransientStoreError: The last error once attempts are exhausted
        """
        attempt = 1
        while True:
            try:
                return await op()
            except TransientStoreError as e:
                if attempt >= self.max_attempts:
                    logger.warning(f"{what} failed after {attempt} attempts: {e}")
                    raise
                wait = self.delay(attempt)
                logger.debug(f"{what} attempt {attempt} failed ({e}), retrying in {wait:.2f}s")
                attempt += 1
                await sleep(wait)
