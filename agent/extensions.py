"""
Extension hooks.

Extensions are plain Python objects implementing (any subset of) the
``Extension`` interface.  They are selected by name at startup, either from
the built-in registry below or from installed packages that advertise an
entry point in the ``toolhost.extensions`` group:

    [project.entry-points."toolhost.extensions"]
    audit = "my_package.audit:AuditExtension"

Hook points:
  - on_prompt_submit  -- before a prompt is queued or run; may block it
  - on_tool_call      -- before a tool executes; may block (deny) it
  - on_tool_result    -- after a tool returns; may suppress the result event
  - on_stop           -- after every step, with the stop reason
  - tools / commands  -- extra local tools and slash commands

Errors raised by an extension are caught and logged; they never break the
agent loop.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from importlib.metadata import entry_points
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from agent.context import CancelContext
from tools.mcp_manager import ToolDescriptor
from tools.mcp_tool import ToolCall, ToolResponse, parse_arguments
from toolhost_constants import get_toolhost_home

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "toolhost.extensions"

STOP_COMPLETED = "completed"
STOP_ERROR = "error"
STOP_CANCELLED = "cancelled"


class ExtensionError(Exception):
    """An extension could not be found or constructed."""


@dataclass(frozen=True)
class HookDecision:
    block: bool = False
    reason: str = ""
    suppress_output: bool = False


class LocalTool:
    """A tool implemented in-process by an extension."""

    def __init__(
        self,
        name: str,
        description: str,
        handler: Callable[[Dict[str, Any]], str],
        parameters: Optional[Dict[str, Any]] = None,
        required: Optional[List[str]] = None,
    ):
        self.name = name
        self.handler = handler
        self.descriptor = ToolDescriptor(
            name=name,
            description=description,
            parameters=dict(parameters or {}),
            required=list(required or []),
        )

    def invoke(self, ctx: Optional[CancelContext], call: ToolCall) -> ToolResponse:
        try:
            args = parse_arguments(call.input) or {}
        except ValueError as e:
            return ToolResponse.error(f"invalid JSON arguments: {e}")
        try:
            return ToolResponse.text(str(self.handler(args)))
        except Exception as e:
            logger.debug("Local tool '%s' failed: %s", self.name, e)
            return ToolResponse.error(f"{type(e).__name__}: {e}")


class Extension:
    """Base class; override only the hooks you need."""

    name = "extension"

    def on_prompt_submit(self, prompt: str) -> Optional[HookDecision]:
        return None

    def on_tool_call(self, tool_name: str, tool_args: str) -> Optional[HookDecision]:
        return None

    def on_tool_result(
        self, tool_name: str, tool_args: str, result: str, is_error: bool,
    ) -> Optional[HookDecision]:
        return None

    def on_stop(self, response: str, reason: str) -> None:
        return None

    def tools(self) -> List[LocalTool]:
        return []

    def commands(self) -> Dict[str, Callable[[str], str]]:
        return {}


class ToolLoggerExtension(Extension):
    """Append every tool call and its result to a JSONL file."""

    name = "tool_logger"

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_toolhost_home() / "logs" / "tool_calls.jsonl"
        self._lock = threading.Lock()

    def _write(self, record: Dict[str, Any]) -> None:
        record["ts"] = datetime.now().isoformat(timespec="seconds")
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")

    def on_tool_result(self, tool_name, tool_args, result, is_error):
        self._write({
            "tool": tool_name,
            "args": tool_args,
            "result": result[:2000],
            "is_error": is_error,
        })
        return None

    def on_stop(self, response, reason):
        self._write({"event": "stop", "reason": reason})


BUILTIN_EXTENSIONS: Dict[str, Callable[[], Extension]] = {
    "tool_logger": ToolLoggerExtension,
}


def load_extensions(names: Iterable[str]) -> List[Extension]:
    """Instantiate extensions by name (built-ins first, then entry points)."""
    names = [n for n in names if n]
    if not names:
        return []
    discovered = {ep.name: ep for ep in entry_points(group=ENTRY_POINT_GROUP)}
    loaded: List[Extension] = []
    for name in names:
        factory = BUILTIN_EXTENSIONS.get(name)
        if factory is None:
            ep = discovered.get(name)
            if ep is None:
                raise ExtensionError(f"unknown extension '{name}'")
            try:
                factory = ep.load()
            except Exception as e:
                raise ExtensionError(f"failed to load extension '{name}': {e}") from e
        try:
            loaded.append(factory())
        except Exception as e:
            raise ExtensionError(f"failed to initialize extension '{name}': {e}") from e
        logger.info("Loaded extension '%s'", name)
    return loaded


class ExtensionRunner:
    """Calls hooks on every extension, in order, isolating failures."""

    def __init__(self, extensions: Optional[Iterable[Extension]] = None):
        self.extensions: List[Extension] = list(extensions or [])

    def __bool__(self) -> bool:
        return bool(self.extensions)

    def _call(self, ext: Extension, hook: str, *args) -> Any:
        try:
            return getattr(ext, hook)(*args)
        except Exception as e:
            logger.warning("Extension '%s' failed in %s: %s", getattr(ext, "name", ext), hook, e)
            return None

    def _first_block(self, hook: str, *args) -> Optional[HookDecision]:
        for ext in self.extensions:
            decision = self._call(ext, hook, *args)
            if isinstance(decision, HookDecision) and decision.block:
                return decision
        return None

    def prompt_submit(self, prompt: str) -> Optional[HookDecision]:
        return self._first_block("on_prompt_submit", prompt)

    def tool_call(self, tool_name: str, tool_args: str) -> Optional[HookDecision]:
        return self._first_block("on_tool_call", tool_name, tool_args)

    def tool_result(self, tool_name: str, tool_args: str, result: str, is_error: bool) -> bool:
        """True when some extension asked for the result event to be suppressed."""
        suppress = False
        for ext in self.extensions:
            decision = self._call(ext, "on_tool_result", tool_name, tool_args, result, is_error)
            if isinstance(decision, HookDecision) and decision.suppress_output:
                suppress = True
        return suppress

    def stop(self, response: str, reason: str) -> None:
        for ext in self.extensions:
            self._call(ext, "on_stop", response, reason)

    def tools(self) -> List[LocalTool]:
        result: List[LocalTool] = []
        for ext in self.extensions:
            result.extend(self._call(ext, "tools") or [])
        return result

    def commands(self) -> Dict[str, Callable[[str], str]]:
        result: Dict[str, Callable[[str], str]] = {}
        for ext in self.extensions:
            for name, handler in (self._call(ext, "commands") or {}).items():
                result.setdefault(name.lstrip("/"), handler)
        return result
