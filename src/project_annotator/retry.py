"""
Bounded retry with exponential backoff for remote lookups.
"""

import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .context import RequestContext
from .k8s_client import is_retryable_error

T = TypeVar('T')

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for remote calls"""
    max_retries: int = 3
    initial_delay: float = 0.1  # seconds
    max_delay: float = 2.0  # seconds
    retry_jitter: bool = False  # Add random jitter to prevent thundering herd
    per_attempt_timeout: float = 5.0  # seconds


def calculate_exponential_backoff(attempt: int, base_delay: float, max_delay: float,
                                  jitter: bool = False) -> float:
    """Calculate exponential backoff delay with optional jitter"""
    delay = base_delay * (2 ** attempt)

    if jitter:
        delay += random.uniform(0, delay * 0.1)  # Add up to 10% jitter

    return min(delay, max_delay)


def execute_with_retry(func: Callable[[Optional[float]], T],
                       ctx: RequestContext,
                       policy: RetryPolicy,
                       operation: str,
                       retryable: Callable[[Exception], bool] = is_retryable_error) -> T:
    """
    Call ``func`` until it succeeds, fails terminally or retries run out.

    ``func`` receives the timeout for the attempt, which is the per-attempt
    timeout of the policy clipped to what is left of the context deadline.
    At most ``policy.max_retries + 1`` attempts are made. Waiting between
    attempts is aborted as soon as the context finishes.

    Args:
        func: Remote call taking the attempt timeout
        ctx: Request context bounding all attempts and waits
        policy: Retry policy
        operation: Name of the operation for logging
        retryable: Classifier deciding whether an error is retried

    Returns:
        The result of the first successful call

    Raises:
        ContextError: If the context finished before or between attempts
        Exception: The last error from ``func`` when it is terminal or retries are exhausted
    """
    for attempt in range(policy.max_retries + 1):
        ctx.check()

        timeout = policy.per_attempt_timeout
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)

        try:
            return func(timeout)
        except Exception as e:
            if not retryable(e) or attempt == policy.max_retries:
                raise

            delay = calculate_exponential_backoff(
                attempt, policy.initial_delay, policy.max_delay, policy.retry_jitter
            )
            logger.debug(
                f"Retry attempt {attempt + 1} for {operation} in {delay:.2f}s due to {type(e).__name__}: {e}",
                extra={'context': {
                    'operation': operation,
                    'attempt': attempt + 1,
                    'backoff': delay,
                    'error': str(e),
                }}
            )
            ctx.wait(delay)

    # Unreachable: the final attempt either returns or raises
    raise RuntimeError(f"retry loop for {operation} exited without a result")
