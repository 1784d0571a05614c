"""
MCP Tool Manager -- turns configured MCP servers into one flat tool catalog.

Responsibilities:
  - Connect to every enabled server through the connection pool
  - Discover tools, apply per-server allow/deny lists
  - Normalize input schemas into the dialect model APIs accept
  - Give every tool a globally unique ``<server>__<tool>`` name
  - Dispatch calls by prefixed name back to the owning server

A server that fails to connect or list its tools is logged and skipped; the
load only fails when *every* configured server failed.

Usage:
    manager = MCPToolManager()
    manager.load_tools(ctx, servers)      # Dict[str, MCPServerConfig]
    for descriptor in manager.list_tools():
        ...
    result_json, is_error = manager.call_tool("fs", "read_file", '{"path": "x"}')
    manager.close()
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from agent.context import CancelContext, StepCancelledError
from tools.mcp_client import sanitize_error
from tools.mcp_config import MCPServerConfig
from tools.mcp_pool import ConnectionPoolConfig, MCPConnectionPool
from tools.mcp_schema import normalize_schema
from tools.mcp_tool import MCPTool, MCPToolset, ToolCall
from toolhost_constants import TOOL_NAME_SEPARATOR

logger = logging.getLogger(__name__)


class MCPLoadError(Exception):
    """No configured MCP server could be loaded."""


def make_tool_name(server_name: str, tool_name: str) -> str:
    """Model-facing tool name: ``<server>__<tool>``."""
    return f"{server_name}{TOOL_NAME_SEPARATOR}{tool_name}"


@dataclass(frozen=True)
class ToolMapping:
    prefixed_name: str
    original_name: str
    server_name: str
    server_config: MCPServerConfig = field(repr=False, compare=False)
    pool: MCPConnectionPool = field(repr=False, compare=False)


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    required: List[str] = field(default_factory=list)

    def input_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": "object", "properties": self.parameters}
        if self.required:
            schema["required"] = list(self.required)
        return schema

    def to_openai_tool(self) -> Dict[str, Any]:
        """Chat-completions ``tools`` entry."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema(),
            },
        }


def build_descriptor(prefixed_name: str, mcp_tool: dict) -> ToolDescriptor:
    """Build a ToolDescriptor from a raw ``tools/list`` entry."""
    schema = normalize_schema(mcp_tool.get("inputSchema") or {})
    properties = schema.get("properties")
    if not isinstance(properties, dict):
        properties = {}
    required = [r for r in schema.get("required", []) if isinstance(r, str)]
    return ToolDescriptor(
        name=prefixed_name,
        description=str(mcp_tool.get("description") or ""),
        parameters=properties,
        required=required,
    )


class MCPToolManager:
    """Loads MCP tools and routes calls to them."""

    def __init__(
        self,
        pool: Optional[MCPConnectionPool] = None,
        pool_config: Optional[ConnectionPoolConfig] = None,
    ):
        self.pool = pool or MCPConnectionPool(pool_config)
        self._lock = threading.Lock()
        self._tools: Dict[str, MCPTool] = {}
        self._servers: Dict[str, MCPServerConfig] = {}
        self._loaded_servers: List[str] = []
        self._errors: Dict[str, str] = {}

    def load_tools(
        self,
        ctx: Optional[CancelContext],
        servers: Dict[str, MCPServerConfig],
    ) -> List[ToolDescriptor]:
        """Connect to each enabled server and register its tools.

        Raises MCPLoadError when every enabled server failed.  Having no
        servers configured is not an error.
        """
        failures: List[str] = []
        attempted = 0
        for name, server_config in servers.items():
            if not server_config.enabled:
                logger.debug("MCP server '%s' is disabled -- skipping", name)
                continue
            attempted += 1
            with self._lock:
                self._servers[name] = server_config
            try:
                count = self._load_server_tools(ctx, name, server_config)
            except StepCancelledError:
                raise
            except Exception as e:
                msg = sanitize_error(str(e))
                logger.warning("Failed to load MCP tools from '%s': %s", name, msg)
                failures.append(f"{name}: {msg}")
                with self._lock:
                    self._errors[name] = msg
                continue
            with self._lock:
                self._errors.pop(name, None)
                if name not in self._loaded_servers:
                    self._loaded_servers.append(name)
            logger.info("Loaded %d tools from MCP server '%s'", count, name)

        if attempted and len(failures) == attempted:
            raise MCPLoadError(
                "all MCP servers failed to load: " + "; ".join(failures)
            )
        return self.list_tools()

    def _load_server_tools(
        self, ctx: Optional[CancelContext], server_name: str, server_config: MCPServerConfig,
    ) -> int:
        if ctx is not None:
            ctx.raise_if_cancelled()
        conn = self.pool.get_connection(server_name, server_config)
        try:
            raw_tools = conn.client.list_tools()
        except Exception as e:
            self.pool.handle_connection_error(server_name, e, conn)
            raise

        count = 0
        for mcp_tool in raw_tools:
            original = mcp_tool.get("name")
            if not isinstance(original, str) or not original:
                logger.debug("MCP server '%s' listed a tool without a name", server_name)
                continue
            if not server_config.allows_tool(original):
                continue

            prefixed = make_tool_name(server_name, original)
            mapping = ToolMapping(
                prefixed_name=prefixed,
                original_name=original,
                server_name=server_name,
                server_config=server_config,
                pool=self.pool,
            )
            tool = MCPTool(build_descriptor(prefixed, mcp_tool), mapping)
            with self._lock:
                existing = self._tools.get(prefixed)
                if existing is not None and existing.mapping.server_name != server_name:
                    logger.warning(
                        "Tool name '%s' from MCP server '%s' collides with server '%s' -- skipping",
                        prefixed, server_name, existing.mapping.server_name,
                    )
                    continue
                self._tools[prefixed] = tool
            count += 1
        return count

    def list_tools(self) -> List[ToolDescriptor]:
        with self._lock:
            return [tool.descriptor for tool in self._tools.values()]

    def tools(self) -> List[MCPTool]:
        with self._lock:
            return list(self._tools.values())

    def toolset(self) -> MCPToolset:
        return MCPToolset(self.tools())

    def get_tool(self, prefixed_name: str) -> Optional[MCPTool]:
        with self._lock:
            return self._tools.get(prefixed_name)

    def call_tool(
        self,
        server_name: str,
        tool_name: str,
        args_json: str = "",
        ctx: Optional[CancelContext] = None,
    ) -> Tuple[str, bool]:
        """Call a tool by server and original name.

        Returns ``(result_json, is_error)``; transport failures raise
        ``MCPInvocationError``.
        """
        prefixed = make_tool_name(server_name, tool_name)
        tool = self.get_tool(prefixed)
        if tool is None:
            return json.dumps({"error": f"tool '{prefixed}' not found"}), True
        response = tool.invoke(ctx, ToolCall(id=prefixed, name=prefixed, input=args_json))
        return response.content, response.is_error

    def get_loaded_server_names(self) -> List[str]:
        with self._lock:
            return list(self._loaded_servers)

    def get_status(self) -> Dict[str, Any]:
        """Per-server status for the ``/servers`` command."""
        live = self.pool.get_clients()
        with self._lock:
            tools_by_server: Dict[str, List[str]] = {}
            for tool in self._tools.values():
                tools_by_server.setdefault(tool.mapping.server_name, []).append(
                    tool.mapping.original_name
                )
            servers = {}
            for name, server_config in self._servers.items():
                conn = live.get(name)
                servers[name] = {
                    "transport": server_config.transport_type,
                    "connected": conn is not None,
                    "health": conn.health if conn is not None else None,
                    "tools": len(tools_by_server.get(name, [])),
                    "tool_names": tools_by_server.get(name, []),
                    "error": self._errors.get(name),
                }
        return {
            "total_servers": len(servers),
            "connected": sum(1 for s in servers.values() if s["connected"]),
            "total_tools": sum(s["tools"] for s in servers.values()),
            "servers": servers,
        }

    def close(self) -> None:
        self.pool.close()
