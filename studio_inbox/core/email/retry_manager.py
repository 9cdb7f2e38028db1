"""
Retry Manager - Exponential Backoff for outbound mail operations

Manages retry logic with exponential backoff and permanent error detection.
The same backoff curve drives the sync scheduler after failed passes.
"""
import asyncio
from typing import Any, Callable, Optional
import logging

from .errors import InboxValidationError

logger = logging.getLogger(__name__)

PERMANENT_ERROR_PATTERNS = (
    'authentication failed',
    'authenticationfailed',
    'invalid credentials',
    'username and password not accepted',
    'login failed',
    'permission denied',
    'unauthorized',
    'forbidden',
    'mailbox unavailable',
    'recipient address rejected',
    '535',
    '550',
    '553',
)


def backoff_delay(attempt: int, base_delay: float, max_delay: Optional[float] = None) -> float:
    """
    Exponential delay for a 0-indexed attempt: base, 2*base, 4*base ...

    Capped at max_delay when given.
    """
    delay = (2 ** max(attempt, 0)) * base_delay
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


class RetryManager:
    """
    Retries async operations with exponential backoff (2s, 4s, 8s...) and
    stops early on errors that retrying cannot fix.
    """

    def __init__(self, max_retries: int = 3, base_delay: float = 2.0):
        """
        Initialize retry manager.

        Args:
            max_retries: Maximum number of retry attempts (default: 3)
            base_delay: Base delay in seconds for exponential backoff (default: 2.0)
        """
        self.max_retries = max_retries
        self.base_delay = base_delay

    async def execute_with_retry(self,
                                 operation: Callable,
                                 operation_name: str,
                                 *args,
                                 **kwargs) -> Any:
        """
        Await operation(*args, **kwargs), retrying on failure.

        Returns:
            The operation's result

        Raises:
            The last exception once retries are exhausted, or the first
            permanent one
        """
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.calculate_delay(attempt - 1)
                logger.info(f"Retry attempt {attempt}/{self.max_retries} for {operation_name} "
                            f"after {delay}s delay...")
                await asyncio.sleep(delay)

            try:
                result = await operation(*args, **kwargs)
            except Exception as e:
                if self.is_permanent_error(e):
                    logger.error(f"Permanent error in {operation_name}, not retrying: {e}")
                    raise
                if attempt == self.max_retries:
                    logger.error(f"{operation_name} failed after {self.max_retries + 1} attempts: {e}")
                    raise
                logger.warning(f"{operation_name} failed on attempt {attempt + 1}: {e}")
                continue

            if attempt > 0:
                logger.info(f"{operation_name} succeeded on attempt {attempt + 1}")
            return result

    def is_permanent_error(self, error: Any) -> bool:
        """
        Check if error is permanent (should not retry).

        Args:
            error: Exception or error message
        """
        if error is None:
            return False
        if isinstance(error, InboxValidationError):
            return True
        details = getattr(error, 'details', None) or {}
        if details.get('permanent'):
            return True

        error_lower = str(error).lower()
        return any(pattern in error_lower for pattern in PERMANENT_ERROR_PATTERNS)

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay in seconds for given attempt number.

        Args:
            attempt: Attempt number (0-indexed)
        """
        return backoff_delay(attempt, self.base_delay)
