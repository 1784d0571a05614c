"""
MCP server configuration.

Parses one entry of the ``mcpServers`` (or ``mcp_servers``) config section.
Two spellings are accepted:

    mcpServers:
      filesystem:                      # local subprocess, argv list
        type: local
        command: ["npx", "-y", "@modelcontextprotocol/server-filesystem", "/tmp"]
        environment: {DEBUG: "1"}
        allowedTools: [read_file]
      search:                          # remote streamable HTTP
        type: remote
        url: https://example.com/mcp
        headers: ["Authorization: Bearer ${env://SEARCH_TOKEN}"]
      legacy:
        type: sse
        url: http://localhost:8000/sse

    mcp_servers:
      github:                          # command string plus args
        command: npx
        args: ["-y", "@modelcontextprotocol/server-github"]
        env: {GITHUB_TOKEN: "..."}
      docs:
        url: https://docs.example.com/mcp
        headers: {Authorization: "Bearer ..."}

Entries that cannot be used are returned disabled with a warning rather than
raising, so one bad server never prevents the others from loading.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

TRANSPORT_STDIO = "stdio"
TRANSPORT_STREAMABLE = "streamable"
TRANSPORT_SSE = "sse"
TRANSPORT_BUILTIN = "builtin"

_TRANSPORT_ALIASES = {
    "local": TRANSPORT_STDIO,
    "stdio": TRANSPORT_STDIO,
    "remote": TRANSPORT_STREAMABLE,
    "streamable": TRANSPORT_STREAMABLE,
    "streamable_http": TRANSPORT_STREAMABLE,
    "streamable-http": TRANSPORT_STREAMABLE,
    "http": TRANSPORT_STREAMABLE,
    "sse": TRANSPORT_SSE,
    "builtin": TRANSPORT_BUILTIN,
    "inprocess": TRANSPORT_BUILTIN,
}


@dataclass(frozen=True)
class MCPServerConfig:
    """Parsed configuration for a single MCP server."""

    name: str
    transport_type: str
    command: Optional[str] = None
    args: Tuple[str, ...] = ()
    url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    allowed_tools: Tuple[str, ...] = ()
    excluded_tools: Tuple[str, ...] = ()
    enabled: bool = True

    def allows_tool(self, tool_name: str) -> bool:
        """Allow-list first (when non-empty), then the deny-list."""
        if self.allowed_tools and tool_name not in self.allowed_tools:
            return False
        return tool_name not in self.excluded_tools

    @classmethod
    def disabled(cls, name: str) -> "MCPServerConfig":
        return cls(name=name, transport_type="unknown", enabled=False)

    @classmethod
    def from_dict(cls, name: str, cfg: Any) -> "MCPServerConfig":
        """Parse a server config dict from config.yaml with validation."""
        if not isinstance(cfg, dict):
            logger.warning("MCP server '%s' config is not a dict -- skipping", name)
            return cls.disabled(name)

        enabled = bool(cfg.get("enabled", True))

        env = cfg.get("environment", cfg.get("env")) or {}
        if not isinstance(env, dict):
            logger.warning("MCP server '%s': env must be a dict", name)
            env = {}
        env = {str(k): str(v) for k, v in env.items()}

        allowed = _string_list(cfg.get("allowedTools", cfg.get("allowed_tools")))
        excluded = _string_list(cfg.get("excludedTools", cfg.get("excluded_tools")))

        raw_type = str(cfg.get("type") or cfg.get("transport") or "").strip().lower()
        if raw_type:
            transport_type = _TRANSPORT_ALIASES.get(raw_type)
            if transport_type is None:
                logger.warning(
                    "MCP server '%s' has unknown transport type '%s' -- skipping",
                    name, raw_type,
                )
                return cls.disabled(name)
        elif "command" in cfg:
            transport_type = TRANSPORT_STDIO
        elif "url" in cfg:
            transport_type = TRANSPORT_STREAMABLE
        else:
            logger.warning(
                "MCP server '%s' has no 'command' or 'url' -- skipping", name
            )
            return cls.disabled(name)

        if transport_type == TRANSPORT_BUILTIN:
            # In-process servers are not supported; keep the entry visible but inert.
            logger.info("MCP server '%s' is a builtin server -- skipping", name)
            return cls(name=name, transport_type=transport_type, enabled=False)

        if transport_type == TRANSPORT_STDIO:
            command, args = _parse_command(cfg.get("command"), cfg.get("args"))
            if not command:
                logger.warning("MCP server '%s' has an empty command -- skipping", name)
                return cls.disabled(name)
            cwd = cfg.get("cwd")
            return cls(
                name=name,
                transport_type=transport_type,
                command=command,
                args=tuple(args),
                env=env,
                cwd=str(cwd) if cwd is not None else None,
                allowed_tools=allowed,
                excluded_tools=excluded,
                enabled=enabled,
            )

        url = cfg.get("url")
        if not url:
            logger.warning("MCP server '%s' has no 'url' -- skipping", name)
            return cls.disabled(name)
        return cls(
            name=name,
            transport_type=transport_type,
            url=str(url),
            headers=_parse_headers(name, cfg.get("headers")),
            env=env,
            allowed_tools=allowed,
            excluded_tools=excluded,
            enabled=enabled,
        )


def parse_server_configs(raw: Any) -> Dict[str, MCPServerConfig]:
    """Parse the whole servers mapping, preserving config-file order."""
    if not raw:
        return {}
    if not isinstance(raw, dict):
        logger.warning("MCP servers config must be a mapping, got %s", type(raw).__name__)
        return {}
    return {str(name): MCPServerConfig.from_dict(str(name), cfg) for name, cfg in raw.items()}


def _string_list(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    return ()


def _parse_command(command: Any, args: Any) -> Tuple[Optional[str], List[str]]:
    if isinstance(args, (list, tuple)):
        extra = [str(a) for a in args]
    elif args is None:
        extra = []
    else:
        extra = [str(args)]

    if isinstance(command, (list, tuple)):
        argv = [str(c) for c in command]
        if not argv:
            return None, []
        return argv[0], argv[1:] + extra
    if command is None or str(command).strip() == "":
        return None, []
    return str(command), extra


def _parse_headers(name: str, headers: Any) -> Dict[str, str]:
    if not headers:
        return {}
    if isinstance(headers, dict):
        return {str(k): str(v) for k, v in headers.items()}
    if isinstance(headers, (list, tuple)):
        parsed: Dict[str, str] = {}
        for entry in headers:
            key, sep, value = str(entry).partition(":")
            if not sep or not key.strip():
                logger.warning("MCP server '%s': ignoring malformed header %r", name, entry)
                continue
            parsed[key.strip()] = value.strip()
        return parsed
    logger.warning("MCP server '%s': headers must be a dict or list", name)
    return {}
