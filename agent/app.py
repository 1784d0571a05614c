"""
App -- the agent orchestrator.

Owns the conversation history and runs one step at a time:

    Idle --run()--> Busy --step done, queue empty--> Idle
                     |  ^
                     +--+  step done, next queued prompt

Prompts submitted while a step is running go to a FIFO queue and run
automatically, in order, once the current step finishes.  Everything that
happens is published as events on ``app.events``; the presentation layer
subscribes there and answers tool-approval requests through the request
object carried by ``ToolApprovalNeededEvent``.

``_lock`` guards the queue, the busy flag and the active step's cancel
handle.  It is never held across model calls, tool calls, the approval
wait or event delivery.  Queue-length events are published under
``_publish_lock`` instead, so subscribers see them in mutation order and
may call back into the App.

Usage:
    app = App(AppOptions(step_runner=runner, interactive=True))
    events = app.events.subscribe()
    app.run("list the files in /tmp")
    ...
    app.close()
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from agent.compaction import CompactionResult
from agent.context import CancelContext, StepCancelledError, background
from agent.events import (
    ApprovalRequest,
    CompactionEvent,
    EventBus,
    HookBlockedEvent,
    MessageCreatedEvent,
    QueueUpdatedEvent,
    ResponseCompleteEvent,
    SpinnerEvent,
    StepCompleteEvent,
    StepErrorEvent,
    StreamChunkEvent,
    ToolApprovalNeededEvent,
    ToolCallContentEvent,
    ToolCallStartedEvent,
    ToolResultEvent,
    Usage,
)
from agent.extensions import (
    STOP_CANCELLED,
    STOP_COMPLETED,
    STOP_ERROR,
    ExtensionRunner,
)
from agent.message_store import MessageStore
from agent.session_persister import SessionPersister
from agent.step_runner import StepRunner
from tools.approval import clear_session, is_session_approved

logger = logging.getLogger(__name__)

ApprovalFunc = Callable[[CancelContext, str, str], bool]

# Events after which the "thinking" indicator is no longer useful
_SPINNER_STOPPERS = (
    StreamChunkEvent,
    ResponseCompleteEvent,
    ToolCallContentEvent,
    ToolCallStartedEvent,
)


@dataclass
class AppOptions:
    """Wiring for an App.

    ``tool_approval_func`` is consulted in non-interactive mode (and by
    ``run_once``); when unset every tool call is approved.
    ``approval_timeout`` bounds the interactive approval wait; ``None``
    waits until the user answers or the step is cancelled.  A timed-out
    approval counts as a denial.
    """

    step_runner: StepRunner
    interactive: bool = False
    tool_approval_func: Optional[ApprovalFunc] = None
    approval_timeout: Optional[float] = None
    step_timeout: Optional[float] = None
    extensions: Optional[ExtensionRunner] = None
    persister: Optional[SessionPersister] = None
    session_key: str = field(default_factory=lambda: uuid.uuid4().hex)


class AppClosedError(RuntimeError):
    """The App was closed."""


class App:
    """Single-flight agent orchestrator with a prompt queue."""

    def __init__(self, options: AppOptions, initial_messages: Optional[List[Dict[str, Any]]] = None):
        if options.step_runner is None:
            raise ValueError("AppOptions.step_runner is required")
        self.options = options
        self.events = EventBus()
        self.messages = MessageStore(initial_messages, persister=options.persister)
        self._extensions = options.extensions or ExtensionRunner()

        self._lock = threading.Lock()
        self._publish_lock = threading.RLock()
        self._queue: List[str] = []
        self._busy = False
        self._closed = False
        self._cancel_step: Optional[CancelContext] = None
        self._root = background()
        self._workers: List[threading.Thread] = []
        self._usage = Usage()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, prompt: str) -> None:
        """Run ``prompt`` now, or queue it if a step is in flight."""
        with self._lock:
            if self._closed:
                return
        if self._prompt_blocked(prompt):
            return
        with self._publish_lock:
            with self._lock:
                if self._closed:
                    return
                if not self._busy:
                    self._busy = True
                    self._start_worker(prompt)
                    return
                self._queue.append(prompt)
                length = len(self._queue)
            self.events.publish(QueueUpdatedEvent(length))

    def run_once(self, ctx: Optional[CancelContext], prompt: str) -> str:
        """Run a single non-interactive step on the calling thread.

        Returns the final response text; raises the step's error.  Events
        are still published for anyone subscribed.  Prompts queued by
        ``run()`` meanwhile start on a worker once this step is done.
        """
        if self._prompt_blocked(prompt):
            raise RuntimeError("prompt blocked by extension")
        with self._lock:
            if self._closed:
                raise AppClosedError("app is closed")
            if self._busy:
                raise RuntimeError("app is busy running another step")
            self._busy = True
        try:
            response, error = self._execute_step(prompt, parent=ctx, interactive=False)
        finally:
            queued = self._next_prompt()
            if queued is not None:
                with self._lock:
                    self._start_worker(queued)
        if error is not None:
            raise error
        return response

    def cancel_current_step(self) -> None:
        """Cancel the in-flight step, if any."""
        with self._lock:
            step = self._cancel_step
        if step is not None:
            step.cancel()

    def queue_length(self) -> int:
        with self._lock:
            return len(self._queue)

    def clear_queue(self) -> None:
        """Drop every queued prompt; none of them will run."""
        with self._publish_lock:
            with self._lock:
                self._queue.clear()
            self.events.publish(QueueUpdatedEvent(0))

    def clear_messages(self) -> None:
        self.messages.clear()

    def compact(self, custom_instructions: str = "") -> Optional[CompactionResult]:
        """Summarize older history on the calling thread.

        Returns None when there was nothing to summarize.  Raises if a step
        is running; ``cancel_current_step`` interrupts the summary call.
        """
        with self._lock:
            if self._closed:
                raise AppClosedError("app is closed")
            if self._busy:
                raise RuntimeError("app is busy running another step")
            self._busy = True
            ctx = self._root.child(timeout=self.options.step_timeout)
            self._cancel_step = ctx
        try:
            result, messages = self.options.step_runner.compact(
                ctx, self.messages.get_all(), custom_instructions,
            )
            if result is not None:
                self.messages.replace(messages)
                self.events.publish(CompactionEvent(
                    result.summary, result.original_tokens,
                    result.compacted_tokens, result.messages_removed,
                ))
            return result
        finally:
            with self._lock:
                if self._cancel_step is ctx:
                    self._cancel_step = None
            ctx.cancel()
            queued = self._next_prompt()
            if queued is not None:
                with self._lock:
                    self._start_worker(queued)

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    @property
    def usage(self) -> Usage:
        """Cumulative token usage across completed steps."""
        with self._lock:
            return Usage(self._usage.input_tokens, self._usage.output_tokens, self._usage.estimated)

    def close(self) -> None:
        """Cancel everything and wait for background work. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            step = self._cancel_step
            workers = list(self._workers)
        if step is not None:
            step.cancel()
        self._root.cancel()
        current = threading.current_thread()
        for worker in workers:
            if worker is not current:
                worker.join()
        clear_session(self.options.session_key)

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    def _prompt_blocked(self, prompt: str) -> bool:
        decision = self._extensions.prompt_submit(prompt)
        if decision is None:
            return False
        self.events.publish(HookBlockedEvent(decision.reason or "prompt blocked by extension"))
        return True

    def _start_worker(self, prompt: str) -> None:
        # Caller holds _lock and has already set _busy.
        worker = threading.Thread(
            target=self._drain_queue, args=(prompt,), daemon=True, name="app-step",
        )
        self._workers = [w for w in self._workers if w.is_alive()]
        self._workers.append(worker)
        worker.start()

    def _next_prompt(self) -> Optional[str]:
        """Pop the queue head, or go idle when there is nothing left to run."""
        with self._publish_lock:
            with self._lock:
                if self._closed or not self._queue:
                    self._busy = False
                    return None
                prompt = self._queue.pop(0)
                length = len(self._queue)
            self.events.publish(QueueUpdatedEvent(length))
        return prompt

    def _drain_queue(self, prompt: str) -> None:
        try:
            while prompt is not None:
                self._execute_step(prompt, parent=None, interactive=self.options.interactive)
                prompt = self._next_prompt()
        except BaseException:
            with self._lock:
                self._busy = False
            raise

    def _execute_step(
        self, prompt: str, parent: Optional[CancelContext], interactive: bool,
    ) -> Tuple[str, Optional[BaseException]]:
        with self._lock:
            if self._closed:
                return "", AppClosedError("app is closed")
            ctx = self._root.child(timeout=self.options.step_timeout)
            self._cancel_step = ctx
        if parent is not None:
            parent.attach(ctx)

        user_message = {"role": "user", "content": prompt}
        messages = self.messages.get_all() + [user_message]
        self.events.publish(MessageCreatedEvent("user", prompt))

        spinner = {"shown": True}
        self.events.publish(SpinnerEvent(True))

        def hide_spinner():
            if spinner["shown"]:
                spinner["shown"] = False
                self.events.publish(SpinnerEvent(False))

        def emit(event):
            if ctx.cancelled:
                return
            if isinstance(event, _SPINNER_STOPPERS):
                hide_spinner()
            if isinstance(event, ToolResultEvent) and self._extensions.tool_result(
                event.tool_name, event.tool_args, event.result, event.is_error,
            ):
                return
            self.events.publish(event)

        def approve(tool_name: str, tool_args: str) -> bool:
            return self._approve(ctx, tool_name, tool_args, interactive)

        response = ""
        error: Optional[BaseException] = None
        reason = STOP_COMPLETED
        try:
            result = self.options.step_runner.generate_step(ctx, messages, emit, approve)
            ctx.raise_if_cancelled()
        except Exception as e:
            error = e
            cancelled = ctx.cancelled or isinstance(e, StepCancelledError)
            reason = STOP_CANCELLED if cancelled else STOP_ERROR
            if cancelled:
                logger.debug("Step cancelled: %s", e)
            else:
                logger.warning("Step failed: %s", e, exc_info=logger.isEnabledFor(logging.DEBUG))
            hide_spinner()
            self.events.publish(StepErrorEvent(e, cancelled=cancelled))
        else:
            hide_spinner()
            self.messages.replace(result.messages)
            with self._lock:
                self._usage.add(result.usage)
            response = result.final_response
            self.events.publish(MessageCreatedEvent("assistant", response))
            self.events.publish(StepCompleteEvent(response, result.usage))
        finally:
            with self._lock:
                if self._cancel_step is ctx:
                    self._cancel_step = None
            if parent is not None:
                parent.detach(ctx)
            ctx.cancel()
            self._extensions.stop(response, reason)
        return response, error

    def _approve(self, ctx: CancelContext, tool_name: str, tool_args: str, interactive: bool) -> bool:
        decision = self._extensions.tool_call(tool_name, tool_args)
        if decision is not None:
            self.events.publish(HookBlockedEvent(decision.reason or f"tool '{tool_name}' blocked by extension"))
            return False

        if not interactive:
            func = self.options.tool_approval_func
            if func is None:
                return True
            return bool(func(ctx, tool_name, tool_args))

        if is_session_approved(self.options.session_key, tool_name):
            return True

        request = ApprovalRequest()
        self.events.publish(ToolApprovalNeededEvent(tool_name, tool_args, request))
        approved = request.wait(ctx, timeout=self.options.approval_timeout)
        if not approved:
            logger.info("Tool call '%s' denied", tool_name)
        return approved
