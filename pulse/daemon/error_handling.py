"""Error taxonomy and retry handling for the Now engine and its daemon.

Ambiguity, low confidence and cooldown are valid engine outcomes, not errors.
Exceptions here cover the surrounding I/O:
- Malformed bundles supplied by a caller
- Transient failures while assembling a bundle from the store
- Item store read/write problems
"""

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from loguru import logger


class PulseError(Exception):
    """Base class for all Pulse errors."""


class MalformedBundleError(PulseError, ValueError):
    """A signal bundle payload is missing required fields or has bad values."""


class StoreError(PulseError):
    """The work item store could not be read or written."""


class BundleFetchError(PulseError):
    """Assembling a bundle failed; the caller may retry."""

    retryable = True

    def __init__(self, user_id: str, message: str, attempts: int = 1):
        super().__init__(f"Failed to assemble bundle for {user_id}: {message}")
        self.user_id = user_id
        self.attempts = attempts


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


@dataclass
class ErrorEvent:
    """A recorded failure, published on the bus for diagnostics."""
    service: str
    error_type: str
    message: str
    severity: ErrorSeverity
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(
        cls,
        service: str,
        error: BaseException,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        **context: Any
    ) -> "ErrorEvent":
        return cls(
            service=service,
            error_type=type(error).__name__,
            message=str(error),
            severity=severity,
            context=context,
        )

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'service': self.service,
            'error_type': self.error_type,
            'message': self.message,
            'severity': self.severity.value,
            'context': self.context
        }


class RetryPolicy:
    """Retry policy with exponential backoff."""

    def __init__(self,
                 max_retries: int = 2,
                 base_delay: float = 0.1,
                 max_delay: float = 2.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 retry_on: Tuple[Type[BaseException], ...] = (OSError, StoreError)):
        """
        Initialize retry policy.

        Args:
            max_retries: Maximum retry attempts
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff
            jitter: Whether to add jitter
            retry_on: Exception types considered transient
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retry_on = retry_on

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for attempt.

        Args:
            attempt: Attempt number (0-based)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay = delay * (0.5 + random.random())

        return delay

    async def execute(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute a coroutine function with retries on transient errors.

        Non-transient exceptions propagate immediately.

        Raises:
            RetryExhausted: If every attempt failed with a transient error
        """
        last_exception: Optional[BaseException] = None

        for attempt in range(self.max_retries + 1):
            try:
                return await func(*args, **kwargs)
            except self.retry_on as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self.calculate_delay(attempt)
                    logger.debug(f"Retry {attempt + 1}/{self.max_retries} after {delay:.2f}s: {e}")
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"All retries failed: {e}")

        raise RetryExhausted(self.max_retries + 1, last_exception)


class RetryExhausted(PulseError):
    """Every attempt of a RetryPolicy failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"{attempts} attempts failed: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
