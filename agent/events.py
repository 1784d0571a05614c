"""Events published by the App.

Everything the presentation layer learns about a running step arrives as one
of the event dataclasses below, in the order it happened, through a single
``EventBus``.  The only thing that flows back the other way is the answer to
a ``ToolApprovalNeededEvent``, delivered through its ``ApprovalRequest``.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from agent.context import CancelContext

logger = logging.getLogger(__name__)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    estimated: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "Usage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.estimated = self.estimated or other.estimated


class ApprovalRequest:
    """Response channel for one approval query. The first answer wins."""

    def __init__(self):
        self._answer: "queue.Queue[bool]" = queue.Queue(maxsize=1)

    def respond(self, approved: bool) -> bool:
        """Deliver the answer. Returns False if one was already given."""
        try:
            self._answer.put_nowait(bool(approved))
            return True
        except queue.Full:
            return False

    def wait(self, ctx: Optional[CancelContext] = None, timeout: Optional[float] = None) -> bool:
        """Block for the answer.

        Raises the context's error if it is cancelled first; returns False
        (deny) when ``timeout`` elapses with no answer.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if ctx is not None:
                ctx.raise_if_cancelled()
            step = 0.1
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                step = min(step, remaining)
            try:
                return self._answer.get(timeout=step)
            except queue.Empty:
                continue


@dataclass(frozen=True)
class SpinnerEvent:
    show: bool


@dataclass(frozen=True)
class StreamChunkEvent:
    content: str


@dataclass(frozen=True)
class ToolCallStartedEvent:
    tool_name: str
    tool_args: str


@dataclass(frozen=True)
class ToolExecutionEvent:
    tool_name: str
    is_starting: bool


@dataclass(frozen=True)
class ToolResultEvent:
    tool_name: str
    tool_args: str
    result: str
    is_error: bool


@dataclass(frozen=True)
class ToolCallContentEvent:
    """Assistant text that accompanied a batch of tool calls."""

    content: str


@dataclass(frozen=True)
class ResponseCompleteEvent:
    """Final assistant text of a non-streamed response."""

    content: str


@dataclass(frozen=True)
class ToolApprovalNeededEvent:
    tool_name: str
    tool_args: str
    request: ApprovalRequest = field(compare=False, repr=False)


@dataclass(frozen=True)
class MessageCreatedEvent:
    role: str
    content: str


@dataclass(frozen=True)
class StepCompleteEvent:
    response: str
    usage: Usage


@dataclass(frozen=True)
class StepErrorEvent:
    error: BaseException
    cancelled: bool = False


@dataclass(frozen=True)
class QueueUpdatedEvent:
    length: int


@dataclass(frozen=True)
class HookBlockedEvent:
    message: str


@dataclass(frozen=True)
class CompactionEvent:
    """Older history was replaced by a summary."""

    summary: str
    original_tokens: int
    compacted_tokens: int
    messages_removed: int
    auto: bool = False


class EventBus:
    """Ordered fan-out of events to subscribers.

    Queue subscribers are drained by their own thread; callback subscribers
    run synchronously on the publishing thread.  A lock around ``publish``
    keeps every subscriber seeing the same order.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._publish_lock = threading.RLock()
        self._queues: List["queue.Queue[Any]"] = []
        self._callbacks: List[Callable[[Any], None]] = []

    def subscribe(self) -> "queue.Queue[Any]":
        q: "queue.Queue[Any]" = queue.Queue()
        with self._lock:
            self._queues.append(q)
        return q

    def subscribe_callback(self, callback: Callable[[Any], None]) -> Callable[[Any], None]:
        with self._lock:
            self._callbacks.append(callback)
        return callback

    def unsubscribe(self, subscriber) -> None:
        with self._lock:
            for registry in (self._queues, self._callbacks):
                if subscriber in registry:
                    registry.remove(subscriber)

    def publish(self, event: Any) -> None:
        with self._publish_lock:
            with self._lock:
                queues = list(self._queues)
                callbacks = list(self._callbacks)
            for q in queues:
                q.put(event)
            for callback in callbacks:
                try:
                    callback(event)
                except Exception as e:
                    logger.warning("Event subscriber error on %s: %s", type(event).__name__, e)
