"""
Generic MCP tool invoker.

Every catalog entry is exposed to the model through the same ``MCPTool``
wrapper.  Two error channels are kept apart:

  - the *tool* failed (server set ``isError``, or the model sent malformed
    arguments): returned normally as ``ToolResponse(is_error=True)`` so the
    model can read it and react
  - the *transport* failed (could not acquire a connection, RPC failure):
    the pool is told via ``handle_connection_error`` and
    ``MCPInvocationError`` is raised, ending the step
"""

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from agent.context import CancelContext, StepCancelledError
from tools.mcp_client import sanitize_error

if TYPE_CHECKING:
    from tools.mcp_manager import ToolDescriptor, ToolMapping

logger = logging.getLogger(__name__)


class MCPInvocationError(Exception):
    """A tool call could not be delivered to (or answered by) its server."""

    def __init__(self, server_name: str, tool_name: str, message: str):
        self.server_name = server_name
        self.tool_name = tool_name
        super().__init__(f"{message} (server '{server_name}', tool '{tool_name}')")


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    input: str = ""


@dataclass(frozen=True)
class ToolResponse:
    content: str
    is_error: bool = False

    @classmethod
    def text(cls, content: str) -> "ToolResponse":
        return cls(content=content, is_error=False)

    @classmethod
    def error(cls, content: str) -> "ToolResponse":
        return cls(content=content, is_error=True)


def parse_arguments(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode tool-call arguments. Empty input and ``{}`` mean no arguments.

    Raises ValueError for anything that is not a JSON object.
    """
    text = (raw or "").strip()
    if not text or text == "{}":
        return None
    value = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value


class MCPTool:
    """One remote tool, invocable by its prefixed name."""

    def __init__(self, descriptor: "ToolDescriptor", mapping: "ToolMapping"):
        self.descriptor = descriptor
        self.mapping = mapping

    @property
    def name(self) -> str:
        return self.mapping.prefixed_name

    def invoke(self, ctx: Optional[CancelContext], call: ToolCall) -> ToolResponse:
        mapping = self.mapping
        try:
            args = parse_arguments(call.input)
        except ValueError as e:
            return ToolResponse.error(f"invalid JSON arguments: {e}")

        pool = mapping.pool
        try:
            conn = pool.get_connection_with_health_check(
                ctx, mapping.server_name, mapping.server_config,
            )
        except StepCancelledError:
            raise
        except Exception as e:
            raise MCPInvocationError(
                mapping.server_name, mapping.original_name,
                f"failed to get healthy connection: {sanitize_error(str(e))}",
            ) from e

        try:
            result = conn.call_tool(
                mapping.original_name,
                args,
                timeout=pool.config.request_timeout,
                cancelled=(lambda: ctx.cancelled) if ctx is not None else None,
            )
        except Exception as e:
            if ctx is not None and ctx.cancelled:
                raise ctx.error from e
            pool.handle_connection_error(mapping.server_name, e, conn)
            raise MCPInvocationError(
                mapping.server_name, mapping.original_name,
                f"tool call failed: {sanitize_error(str(e))}",
            ) from e

        payload = json.dumps(result, ensure_ascii=False)
        if result.get("isError"):
            return ToolResponse.error(payload)
        return ToolResponse.text(payload)


class MCPToolset:
    """Name-indexed collection of invocable tools handed to the step runner.

    Accepts anything with ``name``, ``descriptor`` and ``invoke(ctx, call)``,
    so extension-provided local tools sit alongside remote ones.
    """

    def __init__(self, tools: Iterable[Any] = ()):
        self._tools: Dict[str, Any] = {}
        for tool in tools:
            self.add(tool)

    def add(self, tool: Any) -> None:
        if tool.name in self._tools:
            logger.warning("Duplicate tool name '%s' -- keeping the first", tool.name)
            return
        self._tools[tool.name] = tool

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def descriptors(self) -> List["ToolDescriptor"]:
        return [tool.descriptor for tool in self._tools.values()]

    def invoke(self, ctx: Optional[CancelContext], call: ToolCall) -> ToolResponse:
        tool = self._tools.get(call.name)
        if tool is None:
            return ToolResponse.error(f"unknown tool: {call.name}")
        return tool.invoke(ctx, call)
