"""
Retry strategy for Railway CLI invocations.

Transient failures (process timeouts, connection resets, gateway errors) are
retried with exponential backoff up to a fixed attempt ceiling. Permanent
failures (build errors, validation errors) are never retried.
"""

import re
import logging

from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    wait_none,
    retry_if_exception,
    before_sleep_log,
)

from ..exceptions import (
    CommandValidationError,
    CliExecutionError,
    TransientError,
)

logger = logging.getLogger(__name__)


# Transient errors that should be retried automatically
_RETRYABLE_EXCEPTION_TYPES = (
    TransientError,      # CLI timeout, network-class CLI exit
    ConnectionError,     # Network issues
    TimeoutError,        # Request timeouts
)

# Errors that indicate configuration or logic problems
NON_RETRYABLE_EXCEPTIONS = (
    CommandValidationError,  # Disallowed command or malformed argument
    CliExecutionError,       # CLI binary missing or not executable
    ValueError,
    TypeError,
    KeyError,
)

# stderr signatures of network-class failures reported by the CLI
TRANSIENT_STDERR_PATTERN = re.compile(
    r"ECONNRESET|ECONNREFUSED|ETIMEDOUT|EAI_AGAIN|"
    r"connection (?:reset|refused|closed)|socket hang up|"
    r"\btimed? ?out\b|network (?:error|is unreachable)|temporary failure|"
    r"\b(?:502|503|504)\b|bad gateway|service unavailable|gateway timeout|"
    r"too many requests|rate limit",
    re.IGNORECASE,
)


def is_retryable_error(exception: BaseException) -> bool:
    """
    Check if an exception should trigger a retry.

    Example:
        >>> is_retryable_error(ConnectionError())
        True
        >>> is_retryable_error(CommandValidationError("ssh"))
        False
    """
    if isinstance(exception, NON_RETRYABLE_EXCEPTIONS):
        return False
    return isinstance(exception, _RETRYABLE_EXCEPTION_TYPES)


def is_transient_stderr(stderr: str) -> bool:
    """True when CLI error output looks like a network-class failure."""
    return bool(stderr) and TRANSIENT_STDERR_PATTERN.search(stderr) is not None


def create_retrying(
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 10.0,
    exponential_base: float = 2.0
) -> AsyncRetrying:
    """
    Build an AsyncRetrying controller for one CLI operation.

    Uses exponential backoff between attempts:
    - 1st retry: wait ~min_wait
    - 2nd retry: wait ~2 * min_wait
    - bounded by max_wait

    A min_wait of 0 retries immediately.

    Args:
        max_attempts: Total attempts including the first one (default: 3)
        min_wait: Minimum wait time in seconds (default: 1.0)
        max_wait: Maximum wait time in seconds (default: 10.0)
        exponential_base: Base for exponential backoff (default: 2.0)

    Example:
        >>> async for attempt in create_retrying(max_attempts=3):
        ...     with attempt:
        ...         result = await executor.execute(options)
    """
    if min_wait <= 0:
        wait = wait_none()
    else:
        wait = wait_exponential(
            multiplier=min_wait,
            min=min_wait,
            max=max_wait,
            exp_base=exponential_base
        )

    return AsyncRetrying(
        # Stop after N attempts
        stop=stop_after_attempt(max_attempts),
        wait=wait,
        # Only retry on transient exceptions
        retry=retry_if_exception(is_retryable_error),
        # Log before each retry attempt
        before_sleep=before_sleep_log(logger, logging.WARNING),
        # Re-raise the last exception once attempts are exhausted
        reraise=True
    )
