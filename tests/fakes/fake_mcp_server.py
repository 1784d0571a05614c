#!/usr/bin/env python3
"""
Minimal MCP server for tests.

Speaks JSON-RPC 2.0 over stdin/stdout.  Tools:
  echo    -- returns its ``text`` argument
  fail    -- returns ``isError: true``
  search  -- schema with ``exclusiveMinimum``-style bounds, returns a fixed hit
  slow    -- sleeps ``seconds`` before answering

Usage: python tests/fakes/fake_mcp_server.py
"""

import json
import sys
import time


def send(msg):
    sys.stdout.write(json.dumps(msg) + "\n")
    sys.stdout.flush()


def send_response(req_id, result):
    send({"jsonrpc": "2.0", "id": req_id, "result": result})


def send_error(req_id, code, message):
    send({"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}})


TOOLS = [
    {
        "name": "echo",
        "description": "Echo the given text back",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
    {
        "name": "fail",
        "description": "Always reports a tool error",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "search",
        "description": "Search an imaginary index",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "limit": {"type": "integer", "exclusiveMinimum": 0, "exclusiveMaximum": 100},
            },
            "required": ["query"],
        },
    },
    {
        "name": "slow",
        "description": "Answer after a delay",
        "inputSchema": {"type": "object", "properties": {"seconds": {"type": "number"}}},
    },
]


def text_result(text, is_error=False):
    result = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def handle_tool_call(name, args):
    if name == "echo":
        return text_result(str(args.get("text", "")))
    if name == "fail":
        return text_result("this tool always fails", is_error=True)
    if name == "search":
        return text_result(json.dumps({"query": args.get("query"), "hits": ["doc-1"]}))
    if name == "slow":
        time.sleep(float(args.get("seconds", 1)))
        return text_result("done")
    return text_result(f"Unknown tool: {name}", is_error=True)


def main():
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            continue

        method = msg.get("method")
        req_id = msg.get("id")
        params = msg.get("params") or {}

        if req_id is None:
            # notifications/initialized and friends
            continue

        if method == "initialize":
            send_response(req_id, {
                "protocolVersion": params.get("protocolVersion", "2024-11-05"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake-mcp", "version": "1.0.0"},
            })
        elif method == "ping":
            send_response(req_id, {})
        elif method == "tools/list":
            send_response(req_id, {"tools": TOOLS})
        elif method == "tools/call":
            send_response(req_id, handle_tool_call(params.get("name", ""), params.get("arguments") or {}))
        else:
            send_error(req_id, -32601, f"Method not found: {method}")


if __name__ == "__main__":
    main()
