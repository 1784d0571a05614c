"""Tests for agent.extensions -- hook runner, local tools, loading."""

import json
from unittest.mock import MagicMock, patch

import pytest

from agent.extensions import (
    ENTRY_POINT_GROUP,
    Extension,
    ExtensionError,
    ExtensionRunner,
    HookDecision,
    LocalTool,
    ToolLoggerExtension,
    load_extensions,
)
from tools.mcp_tool import ToolCall


class Broken(Extension):
    name = "broken"

    def on_prompt_submit(self, prompt):
        raise RuntimeError("bug in extension")

    def on_stop(self, response, reason):
        raise RuntimeError("bug in extension")


class Blocker(Extension):
    name = "blocker"

    def on_prompt_submit(self, prompt):
        return HookDecision(block=True, reason="blocked")

    def commands(self):
        return {"/ping": lambda arg: "pong"}

    def tools(self):
        return [LocalTool("local__upper", "Uppercase text", lambda args: args["text"].upper())]


class TestExtensionRunner:
    def test_empty_runner_is_falsey(self):
        assert not ExtensionRunner()
        assert ExtensionRunner([Extension()])

    def test_failing_extension_isolated(self):
        runner = ExtensionRunner([Broken(), Blocker()])
        decision = runner.prompt_submit("hi")
        assert decision == HookDecision(block=True, reason="blocked")
        runner.stop("", "completed")

    def test_non_blocking_decision_ignored(self):
        class Allow(Extension):
            def on_tool_call(self, tool_name, tool_args):
                return HookDecision(block=False)

        assert ExtensionRunner([Allow()]).tool_call("t", "{}") is None

    def test_commands_and_tools_collected(self):
        runner = ExtensionRunner([Blocker()])
        assert runner.commands()["ping"]("") == "pong"
        assert [t.name for t in runner.tools()] == ["local__upper"]


class TestLocalTool:
    def test_invoke(self):
        tool = LocalTool("local__upper", "Uppercase", lambda args: args["text"].upper())
        resp = tool.invoke(None, ToolCall("1", "local__upper", '{"text": "abc"}'))
        assert resp.content == "ABC"
        assert not resp.is_error

    def test_bad_arguments(self):
        tool = LocalTool("t", "d", lambda args: "x")
        assert tool.invoke(None, ToolCall("1", "t", "[1]")).is_error

    def test_handler_error(self):
        tool = LocalTool("t", "d", lambda args: args["missing"])
        resp = tool.invoke(None, ToolCall("1", "t", ""))
        assert resp.is_error
        assert resp.content.startswith("KeyError")

    def test_descriptor(self):
        tool = LocalTool("t", "desc", lambda a: "", parameters={"q": {"type": "string"}}, required=["q"])
        assert tool.descriptor.input_schema()["required"] == ["q"]


class TestToolLogger:
    def test_writes_jsonl(self, tmp_path):
        path = tmp_path / "logs" / "calls.jsonl"
        ext = ToolLoggerExtension(path)
        ext.on_tool_result("fs__ls", "{}", "[]", False)
        ext.on_stop("done", "completed")
        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert lines[0]["tool"] == "fs__ls"
        assert lines[1] == {"event": "stop", "reason": "completed", "ts": lines[1]["ts"]}


class TestLoadExtensions:
    def test_builtin(self, tmp_path):
        with patch("agent.extensions.entry_points", return_value=[]):
            loaded = load_extensions(["tool_logger"])
        assert isinstance(loaded[0], ToolLoggerExtension)

    def test_entry_point(self):
        ep = MagicMock()
        ep.name = "custom"
        ep.load.return_value = Blocker
        with patch("agent.extensions.entry_points", return_value=[ep]) as eps:
            loaded = load_extensions(["custom"])
        eps.assert_called_once_with(group=ENTRY_POINT_GROUP)
        assert isinstance(loaded[0], Blocker)

    def test_unknown(self):
        with patch("agent.extensions.entry_points", return_value=[]):
            with pytest.raises(ExtensionError):
                load_extensions(["nope"])

    def test_empty_names_skip_discovery(self):
        with patch("agent.extensions.entry_points") as eps:
            assert load_extensions([]) == []
        eps.assert_not_called()
