"""Tests for toolhost_cli.display -- event rendering and the approval prompt."""

import io
import json
from unittest.mock import patch

from rich.console import Console

from agent.events import (
    ApprovalRequest,
    CompactionEvent,
    HookBlockedEvent,
    QueueUpdatedEvent,
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
from agent.context import StepCancelledError
from tools.approval import clear_session, is_session_approved
from toolhost_cli.display import (
    EventPrinter,
    format_tool_args,
    format_tool_result,
    render_server_table,
)


def make_printer(session_key=None, **kwargs):
    out = io.StringIO()
    console = Console(file=out, force_terminal=False, color_system=None, width=120)
    return EventPrinter(console, session_key=session_key, **kwargs), out


class TestFormatting:
    def test_tool_args_compacted(self):
        assert format_tool_args('{\n  "path": "/tmp"\n}') == '{"path": "/tmp"}'
        assert format_tool_args("") == "{}"
        assert format_tool_args("not json") == "not json"

    def test_tool_args_truncated(self):
        text = format_tool_args(json.dumps({"q": "x" * 500}), limit=50)
        assert len(text) == 50
        assert text.endswith("...")

    def test_tool_result_extracts_text_blocks(self):
        result = json.dumps({"content": [
            {"type": "text", "text": "line one"},
            {"type": "image", "data": "..."},
            {"type": "text", "text": "line two"},
        ]})
        assert format_tool_result(result) == "line one\nline two"

    def test_tool_result_passthrough_and_limit(self):
        assert format_tool_result("plain error") == "plain error"
        preview = format_tool_result("y" * 1000, limit=10)
        assert preview.startswith("yyyyyyyyyy... (1,000 chars)")


class TestEventPrinter:
    def test_stream_then_usage(self):
        printer, out = make_printer()
        printer.handle(StreamChunkEvent("Hel"))
        printer.handle(StreamChunkEvent("lo"))
        printer.handle(StepCompleteEvent("Hello", Usage(1200, 30)))
        text = out.getvalue()
        assert "Hello\n" in text
        assert "1,200 in / 30 out tokens" in text

    def test_tool_lines(self):
        printer, out = make_printer()
        printer.handle(ToolCallStartedEvent("fs__read", '{"path": "a.txt"}'))
        printer.handle(ToolResultEvent("fs__read", "{}", "boom", True))
        text = out.getvalue()
        assert 'fs__read {"path": "a.txt"}' in text
        assert "boom" in text

    def test_errors_and_cancellation(self):
        printer, out = make_printer()
        printer.handle(StepErrorEvent(RuntimeError("model exploded")))
        printer.handle(StepErrorEvent(StepCancelledError(), cancelled=True))
        text = out.getvalue()
        assert "Error: model exploded" in text
        assert "Cancelled." in text

    def test_streamed_text_not_repeated_before_tool_call(self):
        printer, out = make_printer()
        printer.handle(StreamChunkEvent("Let me look that up."))
        printer.handle(ToolCallContentEvent("Let me look that up."))
        printer.handle(ToolCallStartedEvent("web__search", "{}"))
        assert out.getvalue().count("Let me look that up.") == 1

    def test_tool_call_text_rendered_when_not_streamed(self):
        printer, out = make_printer()
        printer.handle(ToolCallContentEvent("Checking the file."))
        assert "Checking the file." in out.getvalue()

    def test_queue_and_blocked(self):
        printer, out = make_printer()
        printer.handle(QueueUpdatedEvent(0))
        printer.handle(QueueUpdatedEvent(2))
        printer.handle(HookBlockedEvent("no secrets"))
        text = out.getvalue()
        assert text.count("queued") == 1
        assert "2 prompt(s) queued" in text
        assert "Blocked: no secrets" in text

    def test_compaction(self):
        printer, out = make_printer()
        printer.handle(CompactionEvent("summary", 42000, 3100, 12))
        printer.handle(CompactionEvent("summary", 90000, 5000, 30, auto=True))
        text = out.getvalue()
        assert "Compacted 12 message(s): ~42,000 -> ~3,100 tokens" in text
        assert "Context nearly full; compacted 30 message(s)" in text


class TestApprovalPrompt:
    def test_yes_approves_once(self):
        printer, _ = make_printer(session_key="s-yes")
        request = ApprovalRequest()
        with patch("toolhost_cli.display.Prompt.ask", return_value="y"):
            assert printer.ask_approval(ToolApprovalNeededEvent("fs__rm", "{}", request))
        assert request.wait(timeout=1) is True
        assert not is_session_approved("s-yes", "fs__rm")

    def test_no_denies(self):
        printer, _ = make_printer()
        request = ApprovalRequest()
        with patch("toolhost_cli.display.Prompt.ask", return_value="n"):
            printer.handle(ToolApprovalNeededEvent("fs__rm", "{}", request))
        assert request.wait(timeout=1) is False

    def test_always_remembers_for_session(self):
        printer, _ = make_printer(session_key="s-always")
        request = ApprovalRequest()
        try:
            with patch("toolhost_cli.display.Prompt.ask", return_value="a"):
                printer.ask_approval(ToolApprovalNeededEvent("fs__rm", "{}", request))
            assert request.wait(timeout=1) is True
            assert is_session_approved("s-always", "fs__rm")
        finally:
            clear_session("s-always")


class TestInlineApproval:
    def test_pending_until_answered(self):
        printer, out = make_printer(inline_approval=True)
        request = ApprovalRequest()
        event = ToolApprovalNeededEvent("fs__rm", '{"path": "x"}', request)
        with patch("toolhost_cli.display.Prompt.ask") as ask:
            printer.handle(event)
        ask.assert_not_called()
        assert printer.pending_approval is event
        assert "Allow tool call" in out.getvalue()

        assert printer.answer_approval("maybe") is False
        assert printer.pending_approval is event
        assert "Answer y (yes)" in out.getvalue()

        assert printer.answer_approval(" YES ") is True
        assert printer.pending_approval is None
        assert request.wait(timeout=1) is True

    def test_no_and_always(self):
        printer, _ = make_printer(session_key="s-inline", inline_approval=True)
        denied = ApprovalRequest()
        printer.handle(ToolApprovalNeededEvent("fs__rm", "{}", denied))
        assert printer.answer_approval("n")
        assert denied.wait(timeout=1) is False

        allowed = ApprovalRequest()
        try:
            printer.handle(ToolApprovalNeededEvent("fs__write", "{}", allowed))
            assert printer.answer_approval("always")
            assert allowed.wait(timeout=1) is True
            assert is_session_approved("s-inline", "fs__write")
        finally:
            clear_session("s-inline")

    def test_nothing_pending(self):
        printer, _ = make_printer(inline_approval=True)
        assert printer.answer_approval("y") is False

    def test_step_end_drops_pending(self):
        printer, _ = make_printer(inline_approval=True)
        printer.handle(ToolApprovalNeededEvent("fs__rm", "{}", ApprovalRequest()))
        printer.handle(StepErrorEvent(StepCancelledError(), cancelled=True))
        assert printer.pending_approval is None


def test_spinner_disabled():
    printer, _ = make_printer(spinner=False)
    printer.handle(SpinnerEvent(True))
    assert printer._status is None


def test_server_table_states():
    table = render_server_table({"servers": {
        "ok": {"transport": "stdio", "connected": True, "health": "healthy", "tools": 3},
        "bad": {"transport": "sse", "connected": False, "tools": 0, "error": "refused"},
    }})
    assert table.row_count == 2
