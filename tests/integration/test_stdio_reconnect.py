"""Integration tests for the MCP tool layer over real stdio subprocesses.

Spawns tests/fakes/fake_mcp_server.py with the current interpreter and
drives it through MCPToolManager end to end: discovery, prefixed names,
invocation, and recovery after the server process dies.

Run with:  pytest tests/integration/test_stdio_reconnect.py -v
"""

import json
import os
import signal
import sys
from pathlib import Path

import pytest

pytestmark = pytest.mark.integration

from agent.context import CancelContext, StepCancelledError
from tools.mcp_config import MCPServerConfig
from tools.mcp_manager import MCPToolManager
from tools.mcp_pool import ConnectionPoolConfig, UNHEALTHY
from tools.mcp_tool import MCPInvocationError, ToolCall

FAKE_SERVER = str(Path(__file__).parent.parent / "fakes" / "fake_mcp_server.py")


def _server(name, **extra):
    return MCPServerConfig.from_dict(name, {"command": [sys.executable, FAKE_SERVER], **extra})


@pytest.fixture
def manager():
    mgr = MCPToolManager(pool_config=ConnectionPoolConfig(connect_timeout=15, request_timeout=15))
    yield mgr
    mgr.close()


def _text(content):
    return json.loads(content)["content"][0]["text"]


class TestDiscovery:
    def test_two_servers_get_distinct_prefixes(self, manager):
        manager.load_tools(None, {"A": _server("A"), "B": _server("B")})

        names = {d.name for d in manager.list_tools()}
        assert {"A__search", "B__search", "A__echo", "B__echo"} <= names
        assert manager.get_loaded_server_names() == ["A", "B"]

        status = manager.get_status()
        assert status["connected"] == 2
        assert status["servers"]["A"]["transport"] == "stdio"

    def test_schema_is_normalized(self, manager):
        manager.load_tools(None, {"A": _server("A")})
        limit = manager.get_tool("A__search").descriptor.input_schema()["properties"]["limit"]
        assert limit["minimum"] == 0
        assert limit["maximum"] == 100
        assert limit["exclusiveMinimum"] is True

    def test_allowed_tools_filter(self, manager):
        manager.load_tools(None, {"A": _server("A", allowedTools=["echo"])})
        assert [d.name for d in manager.list_tools()] == ["A__echo"]


class TestInvocation:
    def test_echo_and_tool_error(self, manager):
        manager.load_tools(None, {"A": _server("A")})

        content, is_error = manager.call_tool("A", "echo", '{"text": "hello"}')
        assert not is_error
        assert _text(content) == "hello"

        content, is_error = manager.call_tool("A", "fail")
        assert is_error
        assert _text(content) == "this tool always fails"

    def test_cancel_during_slow_call(self, manager):
        manager.load_tools(None, {"A": _server("A")})
        ctx = CancelContext(timeout=0.3)
        with pytest.raises(StepCancelledError):
            manager.get_tool("A__slow").invoke(ctx, ToolCall("1", "A__slow", '{"seconds": 5}'))
        assert manager.pool.get_clients()["A"].health != UNHEALTHY


class TestReconnect:
    def test_killed_server_is_replaced_on_next_call(self, manager):
        manager.load_tools(None, {"A": _server("A")})
        conn = manager.pool.get_clients()["A"]
        transport = conn.client.transport
        old_pid = transport.pid

        os.kill(old_pid, signal.SIGKILL)
        transport._process.wait(timeout=10)

        with pytest.raises(MCPInvocationError):
            manager.call_tool("A", "echo", '{"text": "lost"}')
        assert conn.health == UNHEALTHY

        content, is_error = manager.call_tool("A", "echo", '{"text": "back"}')
        assert not is_error
        assert _text(content) == "back"
        new_conn = manager.pool.get_clients()["A"]
        assert new_conn is not conn
        assert new_conn.client.transport.pid != old_pid
