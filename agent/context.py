"""Cancellation scopes for agent steps.

A ``CancelContext`` is a cancellable scope with an optional deadline.
Contexts form a tree: cancelling a parent cancels every context derived from
it, while cancelling a child leaves the parent alone.  The App keeps one root
context for its lifetime and derives a fresh child per step, so closing the
App cancels whatever step is in flight.

Waiting code polls ``cancelled`` (or blocks on ``wait``) instead of being
interrupted, the same way the interruptible API call in the agent loop works.
"""

import threading
import time
from typing import List, Optional


class StepCancelledError(Exception):
    """The step (or the whole App) was cancelled."""

    def __init__(self, message: str = "context canceled"):
        super().__init__(message)


class DeadlineExceededError(StepCancelledError):
    """The context's deadline passed before the work finished."""

    def __init__(self, message: str = "context deadline exceeded"):
        super().__init__(message)


class CancelContext:
    """Cancellable scope, optionally bounded by a timeout."""

    def __init__(self, parent: Optional["CancelContext"] = None, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List["CancelContext"] = []
        self._error: Optional[StepCancelledError] = None
        self._timer: Optional[threading.Timer] = None
        self.parent = parent
        self.deadline: Optional[float] = None

        if timeout is not None:
            self.deadline = time.monotonic() + max(0.0, timeout)
        if parent is not None and parent.deadline is not None:
            if self.deadline is None or parent.deadline < self.deadline:
                self.deadline = parent.deadline

        if parent is not None:
            parent.attach(self)
        if self.deadline is not None and not self._event.is_set():
            remaining = self.deadline - time.monotonic()
            if remaining <= 0:
                self._cancel(DeadlineExceededError())
            else:
                self._timer = threading.Timer(remaining, self._cancel, args=(DeadlineExceededError(),))
                self._timer.daemon = True
                self._timer.start()

    def attach(self, child: "CancelContext") -> None:
        """Cancel ``child`` whenever this context is cancelled."""
        with self._lock:
            if self._error is None:
                self._children.append(child)
                return
            err = self._error
        child._cancel(err)

    def detach(self, child: "CancelContext") -> None:
        with self._lock:
            try:
                self._children.remove(child)
            except ValueError:
                pass

    def _cancel(self, err: StepCancelledError) -> None:
        with self._lock:
            if self._error is not None:
                return
            self._error = err
            children = list(self._children)
            self._children.clear()
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
        for child in children:
            child._cancel(err)
        if self.parent is not None:
            self.parent.detach(self)

    def cancel(self) -> None:
        """Cancel this context and all of its descendants. Idempotent."""
        self._cancel(StepCancelledError())

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def error(self) -> Optional[StepCancelledError]:
        """Why the context ended, or None while it is still live."""
        with self._lock:
            return self._error

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns ``cancelled``."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        err = self.error
        if err is not None:
            raise err

    def child(self, timeout: Optional[float] = None) -> "CancelContext":
        return CancelContext(parent=self, timeout=timeout)

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None when there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


def background() -> CancelContext:
    """A root context that is only ever cancelled explicitly."""
    return CancelContext()
