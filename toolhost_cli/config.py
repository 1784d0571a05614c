"""
Configuration loading for toolhost.

Sources, lowest precedence first:
  1. built-in defaults (``AgentConfig``)
  2. ``$TOOLHOST_HOME/config.yaml`` (or the file given with ``--config``)
  3. command-line flags (applied by ``toolhost_cli.main``)

Before the YAML is parsed, ``${env://VAR}`` and ``${env://VAR:-default}``
references anywhere in the file are replaced from the environment, so
secrets can stay out of the config file:

    model: openrouter/anthropic/claude-sonnet-4
    mcpServers:
      github:
        command: ["npx", "-y", "@modelcontextprotocol/server-github"]
        environment:
          GITHUB_TOKEN: ${env://GITHUB_TOKEN}
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from agent.compaction import CompactionOptions
from tools.approval import ApprovalPolicy
from tools.mcp_config import MCPServerConfig, parse_server_configs
from tools.mcp_pool import ConnectionPoolConfig
from toolhost_constants import get_toolhost_home

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "openai/gpt-4o"

_ENV_VAR_PATTERN = re.compile(r"\$\{env://([A-Za-z_][A-Za-z0-9_]*)(:-([^}]*))?\}")


class ConfigError(Exception):
    """The configuration cannot be used; fatal at startup."""


@dataclass
class AgentConfig:
    model: str = DEFAULT_MODEL
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    system_prompt: Optional[str] = None
    max_steps: int = 20
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    stream: bool = True
    approval_timeout: Optional[float] = None
    step_timeout: Optional[float] = None
    tool_approval: ApprovalPolicy = field(default_factory=ApprovalPolicy)
    extensions: List[str] = field(default_factory=list)
    mcp_servers: Dict[str, MCPServerConfig] = field(default_factory=dict)
    pool: ConnectionPoolConfig = field(default_factory=ConnectionPoolConfig)
    compaction: CompactionOptions = field(default_factory=CompactionOptions)
    debug: bool = False
    source: Optional[Path] = None


def load_env_files(cwd: Optional[Path] = None) -> List[Path]:
    """Load ``$TOOLHOST_HOME/.env`` then ``./.env`` (existing env vars win)."""
    loaded = []
    for env_path in (get_toolhost_home() / ".env", Path(cwd or Path.cwd()) / ".env"):
        if not env_path.exists():
            continue
        try:
            load_dotenv(dotenv_path=env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(dotenv_path=env_path, encoding="latin-1")
        logger.debug("Loaded environment variables from %s", env_path)
        loaded.append(env_path)
    return loaded


def substitute_env_vars(content: str, env_get: Callable[[str], Optional[str]] = os.getenv) -> str:
    """Replace ``${env://VAR}`` / ``${env://VAR:-default}`` references.

    An empty variable counts as unset.  Every missing variable without a
    default is reported in a single ConfigError.
    """
    missing: List[str] = []

    def _replace(match: "re.Match") -> str:
        name, has_default, default = match.group(1), match.group(2), match.group(3)
        value = env_get(name)
        if value:
            return value
        if has_default is not None:
            return default or ""
        missing.append(f"required environment variable {name} not set in {match.group(0)}")
        return match.group(0)

    result = _ENV_VAR_PATTERN.sub(_replace, content)
    if missing:
        raise ConfigError("environment variable substitution failed: " + ", ".join(missing))
    return result


def default_config_path() -> Path:
    return get_toolhost_home() / "config.yaml"


def _optional_number(raw: Dict[str, Any], key: str, kind, source: Path):
    value = raw.get(key)
    if value is None:
        return None
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{source}: '{key}' must be a number, got {value!r}")


def parse_config(raw: Any, source: Path = Path("<config>")) -> AgentConfig:
    """Build an AgentConfig from an already-parsed mapping."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{source}: top level must be a mapping")

    cfg = AgentConfig(source=source)
    if raw.get("model"):
        cfg.model = str(raw["model"])
    cfg.api_key = raw.get("provider_api_key") or raw.get("api_key") or None
    cfg.base_url = raw.get("provider_url") or raw.get("base_url") or None
    if raw.get("system_prompt"):
        cfg.system_prompt = str(raw["system_prompt"])

    max_steps = _optional_number(raw, "max_steps", int, source)
    if max_steps is not None:
        if max_steps < 1:
            raise ConfigError(f"{source}: 'max_steps' must be at least 1")
        cfg.max_steps = max_steps
    cfg.max_tokens = _optional_number(raw, "max_tokens", int, source)
    cfg.temperature = _optional_number(raw, "temperature", float, source)
    cfg.approval_timeout = _optional_number(raw, "approval_timeout", float, source)
    cfg.step_timeout = _optional_number(raw, "step_timeout", float, source)
    if "stream" in raw:
        cfg.stream = bool(raw["stream"])
    cfg.debug = bool(raw.get("debug", False))

    try:
        cfg.tool_approval = ApprovalPolicy.from_config(raw.get("tool_approval"))
    except ValueError as e:
        raise ConfigError(f"{source}: {e}")

    extensions = raw.get("extensions") or []
    if isinstance(extensions, str):
        extensions = [extensions]
    if not isinstance(extensions, list):
        raise ConfigError(f"{source}: 'extensions' must be a list of names")
    cfg.extensions = [str(e) for e in extensions]

    pool = raw.get("connection_pool") or {}
    if not isinstance(pool, dict):
        raise ConfigError(f"{source}: 'connection_pool' must be a mapping")
    for key in ("health_check_interval", "health_check_timeout", "connect_timeout", "request_timeout"):
        value = _optional_number(pool, key, float, source)
        if value is not None:
            setattr(cfg.pool, key, value)

    compaction = raw.get("compaction") or {}
    if not isinstance(compaction, dict):
        raise ConfigError(f"{source}: 'compaction' must be a mapping")
    cfg.compaction.auto = bool(compaction.get("auto", False))
    for key in ("reserve_tokens", "keep_recent_tokens", "max_summary_tokens"):
        value = _optional_number(compaction, key, int, source)
        if value is not None:
            if value < 1:
                raise ConfigError(f"{source}: 'compaction.{key}' must be at least 1")
            setattr(cfg.compaction, key, value)

    servers = raw.get("mcpServers", raw.get("mcp_servers"))
    if servers is not None and not isinstance(servers, dict):
        raise ConfigError(f"{source}: 'mcpServers' must be a mapping of server name to settings")
    cfg.mcp_servers = parse_server_configs(servers)
    return cfg


def load_config(
    path: Optional[str] = None,
    env_get: Callable[[str], Optional[str]] = os.getenv,
) -> AgentConfig:
    """Read, substitute and parse the config file.

    A missing default config yields defaults; a missing explicit ``path``
    is an error.
    """
    config_path = Path(path).expanduser() if path else default_config_path()
    if not config_path.exists():
        if path:
            raise ConfigError(f"config file not found: {config_path}")
        logger.debug("No config file at %s; using defaults", config_path)
        return AgentConfig()

    try:
        content = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read {config_path}: {e}")

    content = substitute_env_vars(content, env_get)
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {config_path}: {e}")
    return parse_config(raw, config_path)
