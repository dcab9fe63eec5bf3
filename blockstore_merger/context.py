"""Cancellation and deadline context passed to every blocking operation."""

import threading
import time

from .errors import CancelledError


class Context:
    """Carries a cancellation flag and an optional monotonic deadline.

    Operations call ``check()`` at their blocking points; once the context is
    cancelled or its deadline has passed, ``check()`` raises CancelledError so
    the in-flight call returns promptly instead of running to completion.
    """

    def __init__(self, deadline: float | None = None):
        self.deadline = deadline
        self._cancelled = threading.Event()
        self._reason = "operation cancelled"

    @classmethod
    def background(cls) -> "Context":
        """A context that is never cancelled and has no deadline."""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float) -> "Context":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self, reason: str = "operation cancelled") -> None:
        self._reason = reason
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self) -> None:
        """Raise CancelledError if the context is done."""
        if not self.cancelled:
            return
        if self._cancelled.is_set():
            raise CancelledError(self._reason)
        raise CancelledError("deadline exceeded")


def ensure_context(ctx: Context | None) -> Context:
    return ctx if ctx is not None else Context.background()
