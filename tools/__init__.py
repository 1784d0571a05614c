"""
Tools Package

MCP (Model Context Protocol) tool connection and dispatch for toolhost:

- mcp_client: JSON-RPC client and the stdio / streamable HTTP / SSE transports
- mcp_config: per-server configuration parsing
- mcp_pool: one healthy connection per server, lazily reconnected
- mcp_schema: input-schema normalization for model APIs
- mcp_manager: tool catalog (``<server>__<tool>`` names) and dispatch
- mcp_tool: the generic invoker handed to the agent loop
- approval: non-interactive tool approval policy
"""
