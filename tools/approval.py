"""Tool approval policy and thread-safe per-session approvals.

``ApprovalPolicy`` answers approval queries when nobody is at the keyboard
(non-interactive runs, ``--yolo``).  Interactive sessions can additionally
remember "always allow this tool" answers; those are kept here, scoped by
session key, so two Apps in one process never share approvals.
"""

import fnmatch
import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional, Tuple

logger = logging.getLogger(__name__)

MODE_ALWAYS = "always"
MODE_NEVER = "never"
MODE_ALLOWLIST = "allowlist"
_MODES = (MODE_ALWAYS, MODE_NEVER, MODE_ALLOWLIST)


_lock = threading.Lock()

# Session-scoped approved tools: session_key -> set of prefixed tool names
_session_approved: dict[str, set] = {}


def approve_session(session_key: str, tool_name: str):
    """Approve a tool for the rest of this session only."""
    with _lock:
        _session_approved.setdefault(session_key, set()).add(tool_name)


def is_session_approved(session_key: str, tool_name: str) -> bool:
    with _lock:
        return tool_name in _session_approved.get(session_key, set())


def clear_session(session_key: str):
    """Forget every approval given in a session."""
    with _lock:
        _session_approved.pop(session_key, None)


@dataclass(frozen=True)
class ApprovalPolicy:
    """Automatic approval decision for tool calls.

    ``always`` approves everything (the default), ``never`` denies
    everything, ``allowlist`` approves tools whose prefixed name matches one
    of ``allowed_tools`` (shell-style wildcards, e.g. ``filesystem__*``).
    """

    mode: str = MODE_ALWAYS
    allowed_tools: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.mode not in _MODES:
            raise ValueError(f"unknown approval mode '{self.mode}' (expected one of {', '.join(_MODES)})")

    @classmethod
    def from_config(cls, value: Any) -> "ApprovalPolicy":
        """Accept ``"always"``, ``{"mode": ..., "allowed_tools": [...]}`` or a bare list."""
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(mode=value.strip().lower())
        if isinstance(value, (list, tuple)):
            return cls(mode=MODE_ALLOWLIST, allowed_tools=tuple(str(v) for v in value))
        if isinstance(value, dict):
            allowed = value.get("allowed_tools", value.get("allowedTools")) or ()
            return cls(
                mode=str(value.get("mode", MODE_ALLOWLIST if allowed else MODE_ALWAYS)).lower(),
                allowed_tools=tuple(str(v) for v in allowed),
            )
        raise ValueError(f"invalid tool approval setting: {value!r}")

    def allows(self, tool_name: str) -> bool:
        if self.mode == MODE_ALWAYS:
            return True
        if self.mode == MODE_NEVER:
            return False
        return any(fnmatch.fnmatchcase(tool_name, pattern) for pattern in self.allowed_tools)

    def __call__(self, ctx: Optional[Any], tool_name: str, tool_args: str) -> bool:
        approved = self.allows(tool_name)
        if not approved:
            logger.info("Tool call '%s' denied by approval policy (%s)", tool_name, self.mode)
        return approved
