"""Shared constants for toolhost.

Import-safe module with no dependencies. It can be imported from anywhere
without risk of circular imports.
"""

import os
from pathlib import Path

CLIENT_NAME = "toolhost"
CLIENT_VERSION = "0.1.0"

# MCP protocol revision advertised during ``initialize``
MCP_PROTOCOL_VERSION = "2024-11-05"

# Separator between server name and tool name in model-facing tool names
TOOL_NAME_SEPARATOR = "__"

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_MODELS_URL = f"{OPENROUTER_BASE_URL}/models"


def get_toolhost_home() -> Path:
    """Return the toolhost home directory (``$TOOLHOST_HOME`` or ``~/.toolhost``)."""
    return Path(os.getenv("TOOLHOST_HOME", Path.home() / ".toolhost"))
