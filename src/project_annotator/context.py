"""
Request context for the admission path.

A RequestContext carries the deadline and cancellation signal of one inbound
admission request. Remote lookups and the waits between retry attempts are
bound to it so that a caller that gives up stops all work on its behalf.
"""

import threading
import time
from typing import Optional


class ContextError(Exception):
    """Base class for errors raised when a request context is no longer live"""
    pass


class ContextCancelledError(ContextError):
    """The request context was cancelled explicitly"""
    pass


class ContextDeadlineExceededError(ContextError):
    """The request context deadline has passed"""
    pass


class RequestContext:
    """
    Deadline and cancellation token for a single request.

    Deadlines are expressed on the monotonic clock. A context without a
    deadline never expires on its own but can still be cancelled.
    """

    def __init__(self, deadline: Optional[float] = None):
        self._deadline = deadline
        self._cancelled = threading.Event()

    @classmethod
    def background(cls) -> 'RequestContext':
        """Create a context with no deadline."""
        return cls()

    @classmethod
    def with_timeout(cls, timeout: float) -> 'RequestContext':
        """Create a context that expires ``timeout`` seconds from now."""
        return cls(deadline=time.monotonic() + timeout)

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def cancel(self) -> None:
        """Cancel the context, waking up any pending wait."""
        self._cancelled.set()

    def remaining(self) -> Optional[float]:
        """
        Seconds left until the deadline.

        Returns:
            Optional[float]: Remaining time (never negative) or None without a deadline
        """
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def err(self) -> Optional[ContextError]:
        """Return the error describing why the context is done, or None while it is live."""
        if self._cancelled.is_set():
            return ContextCancelledError("context cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return ContextDeadlineExceededError("context deadline exceeded")
        return None

    def done(self) -> bool:
        return self.err() is not None

    def check(self) -> None:
        """
        Raise if the context is done.

        Raises:
            ContextCancelledError: If the context was cancelled
            ContextDeadlineExceededError: If the deadline has passed
        """
        error = self.err()
        if error is not None:
            raise error

    def wait(self, seconds: float) -> None:
        """
        Sleep for ``seconds`` unless the context finishes first.

        The wait returns early as soon as the context is cancelled or its
        deadline passes, in which case the corresponding error is raised.

        Args:
            seconds: Time to wait

        Raises:
            ContextError: If the context finished before or during the wait
        """
        self.check()

        timeout = seconds
        remaining = self.remaining()
        if remaining is not None and remaining < timeout:
            timeout = remaining

        if self._cancelled.wait(max(0.0, timeout)):
            raise ContextCancelledError("context cancelled")

        if remaining is not None and remaining < seconds:
            raise ContextDeadlineExceededError("context deadline exceeded")
