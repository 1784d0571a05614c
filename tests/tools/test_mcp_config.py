"""Tests for tools.mcp_config -- MCP server entry parsing."""

from tools.mcp_config import (
    MCPServerConfig,
    TRANSPORT_BUILTIN,
    TRANSPORT_SSE,
    TRANSPORT_STDIO,
    TRANSPORT_STREAMABLE,
    parse_server_configs,
)


class TestStdioEntries:
    def test_command_list(self):
        cfg = MCPServerConfig.from_dict("fs", {
            "type": "local",
            "command": ["npx", "-y", "@mcp/server-fs", "/tmp"],
            "environment": {"DEBUG": 1},
        })
        assert cfg.transport_type == TRANSPORT_STDIO
        assert cfg.command == "npx"
        assert cfg.args == ("-y", "@mcp/server-fs", "/tmp")
        assert cfg.env == {"DEBUG": "1"}
        assert cfg.enabled

    def test_command_string_with_args(self):
        cfg = MCPServerConfig.from_dict("gh", {
            "command": "npx",
            "args": ["-y", "server-github"],
            "env": {"GITHUB_TOKEN": "t"},
            "cwd": "/work",
        })
        assert cfg.transport_type == TRANSPORT_STDIO
        assert (cfg.command, cfg.args) == ("npx", ("-y", "server-github"))
        assert cfg.env == {"GITHUB_TOKEN": "t"}
        assert cfg.cwd == "/work"

    def test_empty_command_disabled(self):
        cfg = MCPServerConfig.from_dict("bad", {"type": "local", "command": []})
        assert not cfg.enabled


class TestRemoteEntries:
    def test_remote_with_header_list(self):
        cfg = MCPServerConfig.from_dict("search", {
            "type": "remote",
            "url": "https://example.com/mcp",
            "headers": ["Authorization: Bearer abc", "malformed"],
        })
        assert cfg.transport_type == TRANSPORT_STREAMABLE
        assert cfg.url == "https://example.com/mcp"
        assert cfg.headers == {"Authorization": "Bearer abc"}

    def test_url_without_type_is_streamable(self):
        cfg = MCPServerConfig.from_dict("docs", {"url": "https://d/mcp", "headers": {"X": "1"}})
        assert cfg.transport_type == TRANSPORT_STREAMABLE
        assert cfg.headers == {"X": "1"}

    def test_sse(self):
        cfg = MCPServerConfig.from_dict("legacy", {"type": "sse", "url": "http://localhost/sse"})
        assert cfg.transport_type == TRANSPORT_SSE

    def test_remote_without_url_disabled(self):
        assert not MCPServerConfig.from_dict("x", {"type": "remote"}).enabled


class TestDisabledAndInvalid:
    def test_explicitly_disabled(self):
        cfg = MCPServerConfig.from_dict("off", {"command": "srv", "enabled": False})
        assert cfg.command == "srv"
        assert not cfg.enabled

    def test_builtin_is_inert(self):
        cfg = MCPServerConfig.from_dict("inproc", {"type": "builtin"})
        assert cfg.transport_type == TRANSPORT_BUILTIN
        assert not cfg.enabled

    def test_unknown_type(self):
        assert not MCPServerConfig.from_dict("x", {"type": "carrier-pigeon", "url": "u"}).enabled

    def test_not_a_dict(self):
        assert not MCPServerConfig.from_dict("x", "npx server").enabled

    def test_neither_command_nor_url(self):
        assert not MCPServerConfig.from_dict("x", {"env": {}}).enabled


class TestToolFilters:
    def test_allow_list_then_deny_list(self):
        cfg = MCPServerConfig.from_dict("fs", {
            "command": "srv",
            "allowedTools": ["read", "write"],
            "excluded_tools": ["write"],
        })
        assert cfg.allows_tool("read")
        assert not cfg.allows_tool("write")
        assert not cfg.allows_tool("delete")

    def test_no_allow_list_allows_everything_not_denied(self):
        cfg = MCPServerConfig.from_dict("fs", {"command": "srv", "excludedTools": "rm"})
        assert cfg.allows_tool("ls")
        assert not cfg.allows_tool("rm")


def test_parse_server_configs_preserves_order():
    servers = parse_server_configs({
        "b": {"command": "b"},
        "a": {"url": "http://a"},
    })
    assert list(servers) == ["b", "a"]
    assert servers["a"].name == "a"


def test_parse_server_configs_rejects_non_mapping():
    assert parse_server_configs(["a"]) == {}
    assert parse_server_configs(None) == {}
