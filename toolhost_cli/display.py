"""Terminal presentation of App events, rendered with rich."""

import json
import logging
import threading
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.markdown import Markdown
from rich.prompt import Prompt
from rich.table import Table

from agent.events import (
    CompactionEvent,
    HookBlockedEvent,
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
)
from tools.approval import approve_session

logger = logging.getLogger(__name__)

MAX_RESULT_PREVIEW = 600

_APPROVAL_ANSWERS = {
    "y": "y", "yes": "y",
    "n": "n", "no": "n",
    "a": "a", "always": "a",
}
_APPROVAL_HINT = "Answer y (yes), n (no) or a (always for this session)."


def format_tool_args(tool_args: str, limit: int = 200) -> str:
    """Compact one-line rendering of JSON tool arguments."""
    try:
        text = json.dumps(json.loads(tool_args), ensure_ascii=False) if tool_args else "{}"
    except (TypeError, ValueError):
        text = tool_args
    return text if len(text) <= limit else text[: limit - 3] + "..."


def format_tool_result(result: str, limit: int = MAX_RESULT_PREVIEW) -> str:
    """Pull the text blocks out of a ``tools/call`` result for display."""
    text = result
    try:
        payload = json.loads(result)
    except (TypeError, ValueError):
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("content"), list):
        texts = [
            block.get("text", "")
            for block in payload["content"]
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        if texts:
            text = "\n".join(texts)
    if len(text) > limit:
        text = text[:limit] + f"... ({len(result):,} chars)"
    return text


class EventPrinter:
    """Renders events to the console; answers approval requests interactively.

    With ``inline_approval`` the printer does not block on a prompt of its
    own: it remembers the pending request and the REPL hands the next input
    line to ``answer_approval``.  Use it when events are rendered off the
    input thread.
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        session_key: Optional[str] = None,
        spinner: bool = True,
        inline_approval: bool = False,
    ):
        self.console = console or Console()
        self.session_key = session_key
        self.spinner = spinner
        self.inline_approval = inline_approval
        self._status = None
        self._streaming = False
        self._pending: Optional[ToolApprovalNeededEvent] = None
        self._pending_lock = threading.Lock()

    @property
    def pending_approval(self) -> Optional[ToolApprovalNeededEvent]:
        with self._pending_lock:
            return self._pending

    def handle(self, event: Any) -> None:
        if isinstance(event, SpinnerEvent):
            self._set_spinner(event.show)
        elif isinstance(event, StreamChunkEvent):
            self._streaming = True
            self.console.print(event.content, end="", markup=False, highlight=False)
        elif isinstance(event, ToolCallContentEvent):
            was_streaming = self._streaming
            self._end_stream()
            if not was_streaming:
                self.console.print(Markdown(event.content))
        elif isinstance(event, ResponseCompleteEvent):
            self.console.print(Markdown(event.content))
        elif isinstance(event, ToolCallStartedEvent):
            self._end_stream()
            self.console.print(
                f"[bold cyan]⚙ {escape(event.tool_name)}[/] [dim]{escape(format_tool_args(event.tool_args))}[/]",
                highlight=False,
            )
        elif isinstance(event, ToolResultEvent):
            style = "red" if event.is_error else "dim"
            self.console.print(
                f"  [{style}]↳ {escape(format_tool_result(event.result))}[/]",
                markup=True, highlight=False,
            )
        elif isinstance(event, ToolApprovalNeededEvent):
            if self.inline_approval:
                self._queue_approval(event)
            else:
                self.ask_approval(event)
        elif isinstance(event, StepCompleteEvent):
            self._drop_pending()
            self._end_stream()
            usage = event.usage
            if usage.total_tokens:
                approx = "~" if usage.estimated else ""
                self.console.print(
                    f"[dim]{approx}{usage.input_tokens:,} in / {approx}{usage.output_tokens:,} out tokens[/]"
                )
        elif isinstance(event, StepErrorEvent):
            self._drop_pending()
            self._end_stream()
            if event.cancelled:
                self.console.print("[yellow]Cancelled.[/]")
            else:
                self.console.print(f"[bold red]Error:[/] {escape(str(event.error))}", highlight=False)
        elif isinstance(event, QueueUpdatedEvent):
            if event.length:
                self.console.print(f"[dim]{event.length} prompt(s) queued[/]")
        elif isinstance(event, HookBlockedEvent):
            self.console.print(f"[yellow]Blocked:[/] {escape(event.message)}", highlight=False)
        elif isinstance(event, CompactionEvent):
            self._end_stream()
            lead = "Context nearly full; compacted" if event.auto else "Compacted"
            self.console.print(
                f"[dim]{lead} {event.messages_removed} message(s): "
                f"~{event.original_tokens:,} -> ~{event.compacted_tokens:,} tokens[/]"
            )

    def ask_approval(self, event: ToolApprovalNeededEvent) -> bool:
        self._set_spinner(False)
        self._describe_call(event)
        answer = Prompt.ask(
            "  [y]es / [n]o / [a]lways for this session",
            choices=["y", "n", "a"],
            default="y",
            console=self.console,
        )
        return self._resolve(event, answer)

    def _describe_call(self, event: ToolApprovalNeededEvent) -> None:
        self.console.print(
            f"[bold yellow]Allow tool call[/] [cyan]{escape(event.tool_name)}[/] "
            f"[dim]{escape(format_tool_args(event.tool_args, limit=500))}[/]?",
            highlight=False,
        )

    def answer_approval(self, line: str) -> bool:
        """Resolve the pending approval from a typed answer.

        Returns False when nothing is pending or the answer is not
        recognized; the request then stays pending.
        """
        answer = _APPROVAL_ANSWERS.get(line.strip().lower())
        with self._pending_lock:
            event = self._pending
            if event is not None and answer is not None:
                self._pending = None
        if event is None:
            return False
        if answer is None:
            self.console.print(f"[dim]{_APPROVAL_HINT}[/]")
            return False
        self._resolve(event, answer)
        return True

    def _queue_approval(self, event: ToolApprovalNeededEvent) -> None:
        self._end_stream()
        self._describe_call(event)
        self.console.print(f"  [dim]{_APPROVAL_HINT}[/]")
        with self._pending_lock:
            self._pending = event

    def _drop_pending(self) -> None:
        with self._pending_lock:
            self._pending = None

    def _resolve(self, event: ToolApprovalNeededEvent, answer: str) -> bool:
        approved = answer in ("y", "a")
        if answer == "a" and self.session_key:
            approve_session(self.session_key, event.tool_name)
        event.request.respond(approved)
        return approved

    def _set_spinner(self, show: bool) -> None:
        if not self.spinner:
            return
        if show and self._status is None:
            self._status = self.console.status("[dim]Thinking...[/]")
            self._status.start()
        elif not show and self._status is not None:
            self._status.stop()
            self._status = None

    def _end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    def close(self) -> None:
        self._set_spinner(False)
        self._end_stream()


def render_tools_table(descriptors) -> Table:
    table = Table(title="Tools", show_lines=False)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Description")
    for descriptor in descriptors:
        table.add_row(descriptor.name, (descriptor.description or "").strip().split("\n")[0])
    return table


def render_server_table(status: dict) -> Table:
    table = Table(title="MCP servers")
    table.add_column("Server", style="cyan")
    table.add_column("Transport")
    table.add_column("State")
    table.add_column("Tools", justify="right")
    for name, info in status.get("servers", {}).items():
        if info.get("error"):
            state = f"[red]failed[/] {escape(str(info['error']))}"
        elif info.get("connected"):
            state = f"[green]{info.get('health') or 'connected'}[/]"
        else:
            state = "[dim]idle[/]"
        table.add_row(name, info.get("transport", "?"), state, str(info.get("tools", 0)))
    return table
