"""
MCP (Model Context Protocol) Client -- JSON-RPC 2.0 implementation.

Low-level protocol client with three transport backends:
  - StdioTransport: MCP server as a subprocess, newline-delimited JSON on stdin/stdout
  - StreamableHttpTransport: one HTTP POST per message (Streamable HTTP)
  - SseTransport: server-push event stream plus POSTs to the announced endpoint

Protocol lifecycle:
  1. Client sends ``initialize`` with protocolVersion + capabilities
  2. Server responds with its capabilities + serverInfo
  3. Client sends ``notifications/initialized``
  4. Client calls ``tools/list`` to discover available tools
  5. Client calls ``tools/call`` to invoke a tool
``ping`` is used as a liveness check at any point after step 3.

Stdio and SSE responses arrive asynchronously, so both route responses back to
the waiting caller by request id.  Several requests may be in flight on the
same transport at once.

Security:
  - Subprocess environment is isolated (only safe env vars passed)
  - HTTP responses are size-limited to prevent JSON bomb attacks
  - Error messages are sanitized to prevent credential leakage

Usage:
    from tools.mcp_client import MCPClient, StdioTransport

    transport = StdioTransport(command="npx", args=["-y", "@mcp/server"])
    client = MCPClient(transport)
    client.connect()
    tools = client.list_tools()
    result = client.call_tool("tool_name", {"arg": "value"})
    client.disconnect()
"""

import json
import logging
import os
import queue
import re
import subprocess
import sys
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from urllib.parse import urljoin

import httpx

from toolhost_constants import (
    CLIENT_NAME,
    CLIENT_VERSION,
    MCP_PROTOCOL_VERSION,
)

logger = logging.getLogger(__name__)

# Timeouts
CONNECT_TIMEOUT = 30
REQUEST_TIMEOUT = 60

# Granularity of cancellation checks while waiting on a response
_POLL_INTERVAL = 0.25

# Safety limits
MAX_RESPONSE_SIZE = 10 * 1024 * 1024  # 10 MB max response
MAX_CONSECUTIVE_PARSE_ERRORS = 10

# Safe environment variables to pass to MCP server subprocesses.
# Only these (plus user-specified env from config) are forwarded.
_SAFE_ENV_VARS: Set[str] = {
    "PATH", "HOME", "USER", "LOGNAME", "SHELL", "TERM",
    "LANG", "LC_ALL", "LC_CTYPE", "TZ",
    "TMPDIR", "TEMP", "TMP",
    "SYSTEMROOT", "COMSPEC",
    "APPDATA", "LOCALAPPDATA", "USERPROFILE",
    "NODE_PATH", "NODE_ENV",
    "PYTHON", "PYTHONPATH",
    "XDG_CONFIG_HOME", "XDG_DATA_HOME",
}


class MCPTransportError(Exception):
    """Raised when transport-level communication fails."""


class MCPProtocolError(Exception):
    """Raised when the MCP server returns an error response."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.error_message = message
        self.data = data
        super().__init__(f"MCP error {code}: {message}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _create_safe_env(custom_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Build a minimal environment for MCP server subprocesses.

    Only safe system vars + user-specified vars from config are included,
    so provider API keys in the host environment never reach tool servers.
    """
    safe = {}
    for var in _SAFE_ENV_VARS:
        val = os.environ.get(var)
        if val:
            safe[var] = val
    if custom_env:
        safe.update(custom_env)
    return safe


def sanitize_error(msg: str) -> str:
    """Remove credentials and tokens from error messages."""
    msg = re.sub(r'(https?://)([^:/]+):([^@]+)@', r'\1***:***@', msg)
    msg = re.sub(r'Bearer\s+[A-Za-z0-9_\-\.]{8,}', 'Bearer [redacted]', msg, flags=re.IGNORECASE)
    msg = re.sub(
        r'(api[_-]?key|token|password|secret|authorization)["\s:=]+\S+',
        r'\1=[redacted]', msg, flags=re.IGNORECASE,
    )
    return msg


def _safe_json_loads(data: str) -> Any:
    """Parse JSON with size validation."""
    if len(data) > MAX_RESPONSE_SIZE:
        raise MCPTransportError(
            f"Response too large: {len(data)} bytes (max {MAX_RESPONSE_SIZE})"
        )
    try:
        return json.loads(data)
    except json.JSONDecodeError as e:
        raise MCPTransportError(f"Invalid JSON response: {e}")


def iter_sse_events(lines: Iterable[str]):
    """Group raw event-stream lines into ``(event, data)`` pairs.

    Multi-line ``data:`` fields are joined with newlines; comment lines
    (starting with ``:``) are ignored.  Both ``data:x`` and ``data: x`` forms
    are accepted.
    """
    event = "message"
    data_lines: List[str] = []
    for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                yield event, "\n".join(data_lines)
            event = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value or "message"
        elif field == "data":
            data_lines.append(value)
    if data_lines:
        yield event, "\n".join(data_lines)


def _wait_for_response(
    response_queue: "queue.Queue[Any]",
    timeout: float,
    cancelled: Optional[Callable[[], bool]] = None,
) -> Any:
    """Block on a per-request queue, waking periodically to check cancellation."""
    remaining = timeout
    while True:
        step = min(_POLL_INTERVAL, remaining) if remaining > 0 else _POLL_INTERVAL
        try:
            return response_queue.get(timeout=max(0.01, step))
        except queue.Empty:
            pass
        if cancelled is not None and cancelled():
            raise MCPTransportError("Request cancelled")
        remaining -= step
        if remaining <= 0:
            raise MCPTransportError(
                f"Timeout waiting for MCP server response ({timeout}s)"
            )


# ---------------------------------------------------------------------------
# Response routing shared by the push-style transports
# ---------------------------------------------------------------------------

class _ResponseRouter:
    """Routes JSON-RPC responses to the request that is waiting for them."""

    def __init__(self):
        self._pending_lock = threading.Lock()
        self._pending: Dict[Any, "queue.Queue[Any]"] = {}
        self._notification_handlers: Dict[str, List[Callable]] = {}
        self._notification_lock = threading.Lock()

    def _register(self, req_id: Any) -> "queue.Queue[Any]":
        response_queue: "queue.Queue[Any]" = queue.Queue(maxsize=1)
        with self._pending_lock:
            self._pending[req_id] = response_queue
        return response_queue

    def _unregister(self, req_id: Any) -> None:
        with self._pending_lock:
            self._pending.pop(req_id, None)

    def _dispatch_message(self, msg: Any) -> None:
        if not isinstance(msg, dict):
            return
        if "id" in msg and ("result" in msg or "error" in msg):
            with self._pending_lock:
                response_queue = self._pending.pop(msg.get("id"), None)
            if response_queue is None:
                logger.debug("MCP: dropping response for unknown id %r", msg.get("id"))
                return
            response_queue.put(msg)
            return
        if "method" in msg:
            self._dispatch_notification(msg)

    def _fail_all_pending(self, reason: str) -> None:
        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for response_queue in pending:
            response_queue.put(MCPTransportError(reason))

    def on_notification(self, method: str, handler: Callable) -> None:
        """Register a handler for a specific notification method."""
        with self._notification_lock:
            self._notification_handlers.setdefault(method, []).append(handler)

    def _dispatch_notification(self, msg: dict) -> None:
        method = msg.get("method", "")
        params = msg.get("params", {})
        if method == "notifications/message":
            _log_server_message(params)
        with self._notification_lock:
            handlers = list(self._notification_handlers.get(method, []))
        for handler in handlers:
            try:
                handler(params)
            except Exception as e:
                logger.debug(
                    "MCP notification handler error (method=%s): %s",
                    method, e,
                )

    def _await(
        self, req_id: Any, response_queue: "queue.Queue[Any]",
        timeout: float, cancelled: Optional[Callable[[], bool]],
    ) -> dict:
        try:
            data = _wait_for_response(response_queue, timeout, cancelled)
        finally:
            self._unregister(req_id)
        if isinstance(data, Exception):
            raise data
        return data


# ---------------------------------------------------------------------------
# StdioTransport
# ---------------------------------------------------------------------------

class StdioTransport(_ResponseRouter):
    """Communicate with an MCP server via subprocess stdin/stdout.

    Messages are newline-delimited JSON (one JSON-RPC message per line).
    A reader thread routes stdout responses by id; a second thread drains
    stderr into the debug log so a chatty server can never block on a full
    pipe.
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ):
        super().__init__()
        self.command = command
        self.args = args or []
        self.env = env
        self.cwd = cwd
        self._process: Optional[subprocess.Popen] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None
        self._write_lock = threading.Lock()
        self._running = False
        self._closed = False
        self._parse_errors = 0

    @property
    def is_connected(self) -> bool:
        return self._running and self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def start(self) -> None:
        """Spawn the subprocess and start the reader threads."""
        if self._running:
            return

        cmd = [self.command] + self.args
        kwargs: Dict[str, Any] = dict(
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=_create_safe_env(self.env),
            bufsize=0,
        )
        if self.cwd:
            kwargs["cwd"] = self.cwd
        if sys.platform != "win32":
            kwargs["start_new_session"] = True

        try:
            self._process = subprocess.Popen(cmd, **kwargs)
        except FileNotFoundError:
            raise MCPTransportError(
                f"Command not found: {self.command}. "
                f"Make sure the MCP server is installed."
            )
        except Exception as e:
            raise MCPTransportError(f"Failed to start MCP server: {sanitize_error(str(e))}")

        self._running = True
        self._closed = False
        self._parse_errors = 0
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            daemon=True,
            name=f"mcp-stdio-reader-{os.path.basename(self.command)}",
        )
        self._reader_thread.start()
        self._stderr_thread = threading.Thread(
            target=self._stderr_loop,
            daemon=True,
            name=f"mcp-stdio-stderr-{os.path.basename(self.command)}",
        )
        self._stderr_thread.start()

    def stop(self) -> None:
        """Terminate the subprocess and fail anything still waiting on it."""
        self._closed = True
        self._running = False
        proc = self._process
        self._process = None
        if proc is not None:
            try:
                if proc.stdin and not proc.stdin.closed:
                    try:
                        proc.stdin.close()
                    except OSError:
                        pass
                if proc.poll() is None:
                    proc.terminate()
                    try:
                        proc.wait(timeout=5)
                    except subprocess.TimeoutExpired:
                        proc.kill()
                        proc.wait(timeout=2)
            except Exception as e:
                logger.debug("MCP process cleanup error: %s", e)
            finally:
                for stream in (proc.stdout, proc.stderr):
                    if stream and not stream.closed:
                        try:
                            stream.close()
                        except OSError:
                            pass
        if self._reader_thread and self._reader_thread.is_alive():
            self._reader_thread.join(timeout=2.0)
        self._fail_all_pending("MCP transport closed")

    def send(self, message: dict) -> None:
        """Write one JSON-RPC message to the server."""
        proc = self._process
        if not self.is_connected or proc is None or proc.stdin is None:
            raise MCPTransportError("Transport not connected")
        line = json.dumps(message) + "\n"
        with self._write_lock:
            try:
                proc.stdin.write(line.encode("utf-8"))
                proc.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as e:
                self._running = False
                raise MCPTransportError(f"Failed to send message: {sanitize_error(str(e))}")

    def request(
        self, message: dict, timeout: float = REQUEST_TIMEOUT,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> dict:
        req_id = message["id"]
        response_queue = self._register(req_id)
        try:
            self.send(message)
        except MCPTransportError:
            self._unregister(req_id)
            raise
        return self._await(req_id, response_queue, timeout, cancelled)

    def notify(self, message: dict) -> None:
        self.send(message)

    def _reader_loop(self) -> None:
        proc = self._process
        if proc is None or proc.stdout is None:
            return
        try:
            for raw_line in iter(proc.stdout.readline, b""):
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    self._parse_errors += 1
                    logger.debug(
                        "MCP stdio: non-JSON line (%d/%d): %s",
                        self._parse_errors, MAX_CONSECUTIVE_PARSE_ERRORS, line[:200],
                    )
                    if self._parse_errors >= MAX_CONSECUTIVE_PARSE_ERRORS:
                        self._fail_all_pending(
                            f"Too many consecutive JSON parse errors "
                            f"({self._parse_errors}). Server may be "
                            f"outputting non-JSON to stdout."
                        )
                        break
                    continue
                self._parse_errors = 0
                self._dispatch_message(msg)
        except (OSError, ValueError) as e:
            if not self._closed:
                logger.debug("MCP stdio reader error: %s", e)
        finally:
            self._running = False
            if not self._closed:
                self._fail_all_pending("MCP server stream closed")

    def _stderr_loop(self) -> None:
        proc = self._process
        if proc is None or proc.stderr is None:
            return
        try:
            for raw_line in iter(proc.stderr.readline, b""):
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                if line:
                    logger.debug("MCP server stderr (%s): %s", self.command, line)
        except (OSError, ValueError):
            pass


# ---------------------------------------------------------------------------
# StreamableHttpTransport
# ---------------------------------------------------------------------------

class StreamableHttpTransport:
    """Communicate with an MCP server via HTTP POST (Streamable HTTP).

    Each JSON-RPC message is sent as an HTTP POST.  The server answers with
    either a JSON body or a short event stream carrying the response.
    Session tracking via the ``Mcp-Session-Id`` header.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.headers = headers or {}
        self._session_id: Optional[str] = None
        self._session_lock = threading.Lock()
        self._client = client
        self._owns_client = client is None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def start(self) -> None:
        if self._client is None:
            self._client = httpx.Client(follow_redirects=True)
        self._connected = True

    def stop(self) -> None:
        self._connected = False
        with self._session_lock:
            session_id = self._session_id
        if session_id and self._client is not None:
            try:
                self._client.delete(self.url, headers=self._build_headers(), timeout=5)
            except httpx.HTTPError as e:
                logger.debug("MCP HTTP session teardown failed: %s", e)
        with self._session_lock:
            self._session_id = None
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def _build_headers(self) -> Dict[str, str]:
        req_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "User-Agent": f"{CLIENT_NAME}/{CLIENT_VERSION} MCP-Client",
        }
        req_headers.update(self.headers)
        with self._session_lock:
            if self._session_id:
                req_headers["Mcp-Session-Id"] = self._session_id
        return req_headers

    def _post(self, message: dict, timeout: float) -> httpx.Response:
        if not self._connected or self._client is None:
            raise MCPTransportError("Transport not connected")
        try:
            resp = self._client.post(
                self.url, json=message, headers=self._build_headers(), timeout=timeout,
            )
        except httpx.TimeoutException:
            raise MCPTransportError(f"Timeout waiting for MCP server response ({timeout}s)")
        except httpx.HTTPError as e:
            raise MCPTransportError(f"Connection failed: {sanitize_error(str(e))}")

        sid = resp.headers.get("Mcp-Session-Id")
        with self._session_lock:
            if sid:
                self._session_id = sid
            expired = resp.status_code == 404 and self._session_id is not None
            if expired:
                self._session_id = None
        if expired:
            logger.warning("MCP HTTP session expired (404), clearing session")
            raise MCPTransportError("MCP session expired (HTTP 404). Reconnection needed.")
        if resp.status_code >= 400:
            raise MCPTransportError(f"HTTP {resp.status_code}: {resp.reason_phrase}")
        if len(resp.content) > MAX_RESPONSE_SIZE:
            raise MCPTransportError(f"Response too large: {len(resp.content)} bytes")
        return resp

    def request(
        self, message: dict, timeout: float = REQUEST_TIMEOUT,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> dict:
        if cancelled is None:
            return self._exchange(message, timeout)

        # The POST runs on a helper thread; the caller waits in cancellable slices.
        result: "queue.Queue[Any]" = queue.Queue(maxsize=1)

        def _call():
            try:
                result.put(self._exchange(message, timeout))
            except Exception as e:
                result.put(e)

        threading.Thread(target=_call, daemon=True, name="mcp-http-request").start()
        msg = _wait_for_response(result, timeout, cancelled)
        if isinstance(msg, Exception):
            raise msg
        return msg

    def _exchange(self, message: dict, timeout: float) -> dict:
        resp = self._post(message, timeout)
        content_type = resp.headers.get("Content-Type", "")
        if content_type.startswith("text/event-stream"):
            for _event, data in iter_sse_events(resp.text.splitlines()):
                msg = _safe_json_loads(data)
                if isinstance(msg, dict) and msg.get("id") == message.get("id"):
                    return msg
            raise MCPTransportError("Event stream ended without a response")
        return _safe_json_loads(resp.text)

    def notify(self, message: dict) -> None:
        self._post(message, timeout=10)


# ---------------------------------------------------------------------------
# SseTransport
# ---------------------------------------------------------------------------

class SseTransport(_ResponseRouter):
    """Communicate with an MCP server via the legacy HTTP+SSE transport.

    A long-lived GET on ``url`` delivers server messages as ``message``
    events.  The first ``endpoint`` event names the URL that client
    messages are POSTed to.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.Client] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        super().__init__()
        self.url = url
        self.headers = headers or {}
        self.connect_timeout = connect_timeout
        self._client = client
        self._owns_client = client is None
        self._endpoint: Optional[str] = None
        self._endpoint_ready = threading.Event()
        self._stream_error: Optional[Exception] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._running = False
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self._running and self._endpoint is not None

    @property
    def endpoint(self) -> Optional[str]:
        return self._endpoint

    def start(self) -> None:
        if self._running:
            return
        if self._client is None:
            self._client = httpx.Client(follow_redirects=True)
        self._closed = False
        self._running = True
        self._endpoint_ready.clear()
        self._reader_thread = threading.Thread(
            target=self._reader_loop, daemon=True, name="mcp-sse-reader",
        )
        self._reader_thread.start()
        if not self._endpoint_ready.wait(self.connect_timeout):
            self.stop()
            raise MCPTransportError(
                f"Timed out waiting for SSE endpoint event ({self.connect_timeout}s)"
            )
        if self._endpoint is None:
            err = self._stream_error
            self.stop()
            raise MCPTransportError(
                f"SSE stream failed: {sanitize_error(str(err)) if err else 'closed before endpoint'}"
            )

    def stop(self) -> None:
        self._closed = True
        self._running = False
        self._endpoint = None
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None
        self._fail_all_pending("MCP transport closed")

    def _reader_loop(self) -> None:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        headers.update(self.headers)
        try:
            with self._client.stream(
                "GET", self.url, headers=headers,
                timeout=httpx.Timeout(self.connect_timeout, read=None),
            ) as response:
                if response.status_code >= 400:
                    raise MCPTransportError(
                        f"HTTP {response.status_code}: {response.reason_phrase}"
                    )
                for event, data in iter_sse_events(response.iter_lines()):
                    if self._closed:
                        break
                    if event == "endpoint":
                        self._endpoint = urljoin(self.url, data.strip())
                        self._endpoint_ready.set()
                        continue
                    try:
                        msg = _safe_json_loads(data)
                    except MCPTransportError as e:
                        logger.debug("MCP SSE: bad event payload: %s", e)
                        continue
                    self._dispatch_message(msg)
        except Exception as e:
            if not self._closed:
                self._stream_error = e
                logger.debug("MCP SSE stream error: %s", sanitize_error(str(e)))
        finally:
            self._running = False
            self._endpoint_ready.set()
            if not self._closed:
                self._fail_all_pending("MCP SSE stream closed")

    def _post(self, message: dict, timeout: float) -> None:
        if not self.is_connected or self._client is None:
            raise MCPTransportError("Transport not connected")
        headers = {"Content-Type": "application/json"}
        headers.update(self.headers)
        try:
            resp = self._client.post(self._endpoint, json=message, headers=headers, timeout=timeout)
        except httpx.HTTPError as e:
            raise MCPTransportError(f"Connection failed: {sanitize_error(str(e))}")
        if resp.status_code >= 400:
            raise MCPTransportError(f"HTTP {resp.status_code}: {resp.reason_phrase}")

    def request(
        self, message: dict, timeout: float = REQUEST_TIMEOUT,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> dict:
        req_id = message["id"]
        response_queue = self._register(req_id)
        try:
            self._post(message, timeout)
        except MCPTransportError:
            self._unregister(req_id)
            raise
        return self._await(req_id, response_queue, timeout, cancelled)

    def notify(self, message: dict) -> None:
        self._post(message, timeout=10)


# ---------------------------------------------------------------------------
# MCPClient
# ---------------------------------------------------------------------------

class MCPClient:
    """High-level MCP client.

    Wraps a transport and implements the MCP protocol lifecycle:
    connect (initialize) -> list_tools -> call_tool -> disconnect.
    """

    def __init__(self, transport):
        self.transport = transport
        self._request_id = 0
        self._id_lock = threading.Lock()
        self._server_info: Optional[dict] = None
        self._server_capabilities: Optional[dict] = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self.transport.is_connected

    @property
    def server_capabilities(self) -> dict:
        return dict(self._server_capabilities or {})

    def _next_id(self) -> int:
        with self._id_lock:
            self._request_id += 1
            return self._request_id

    def _send_request(
        self, method: str, params: Optional[dict] = None,
        timeout: Optional[float] = None,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> dict:
        """Send a JSON-RPC request and wait for the response.

        Raises MCPProtocolError for a JSON-RPC error response and
        MCPTransportError for anything that prevents getting one.
        """
        msg_id = self._next_id()
        msg: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": msg_id,
            "method": method,
        }
        if params is not None:
            msg["params"] = params

        response = self.transport.request(
            msg, timeout=timeout or REQUEST_TIMEOUT, cancelled=cancelled,
        )
        if not isinstance(response, dict):
            raise MCPTransportError(f"Malformed response to {method}")

        if "error" in response:
            err = response["error"] or {}
            raise MCPProtocolError(
                code=err.get("code", -1),
                message=err.get("message", "Unknown error"),
                data=err.get("data"),
            )

        result = response.get("result")
        return result if isinstance(result, dict) else {}

    def _send_notification(self, method: str, params: Optional[dict] = None) -> None:
        """Send a JSON-RPC notification (no id, no response expected)."""
        msg: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        self.transport.notify(msg)

    def on_notification(self, method: str, handler: Callable) -> None:
        """Register a handler for server notifications (push transports only)."""
        if hasattr(self.transport, "on_notification"):
            self.transport.on_notification(method, handler)

    def connect(self, timeout: float = CONNECT_TIMEOUT) -> dict:
        """Start the transport and run the initialize handshake.

        Returns the server's ``serverInfo`` and ``capabilities``.
        """
        self.transport.start()

        result = self._send_request("initialize", {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {
                "name": CLIENT_NAME,
                "version": CLIENT_VERSION,
            },
        }, timeout=timeout)

        self._server_info = result.get("serverInfo", {})
        self._server_capabilities = result.get("capabilities", {})

        self._send_notification("notifications/initialized")

        self._connected = True
        logger.info(
            "MCP connected to %s (version %s)",
            self._server_info.get("name", "unknown"),
            self._server_info.get("version", "?"),
        )

        return {
            "serverInfo": self._server_info,
            "capabilities": self._server_capabilities,
        }

    def ping(self, timeout: float = 5.0) -> None:
        """Liveness check. Raises on any failure."""
        if not self.is_connected:
            raise MCPTransportError("Not connected")
        self._send_request("ping", timeout=timeout)

    def list_tools(self, timeout: Optional[float] = None) -> List[dict]:
        """Discover available tools from the server, following pagination.

        Each tool definition has ``name``, ``description`` and ``inputSchema``.
        """
        if not self.is_connected:
            raise MCPTransportError("Not connected")

        tools: List[dict] = []
        cursor = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            result = self._send_request("tools/list", params, timeout=timeout)
            tools.extend(t for t in result.get("tools", []) if isinstance(t, dict))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    def call_tool(
        self, name: str, arguments: Optional[dict] = None,
        timeout: Optional[float] = None,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> dict:
        """Call a tool on the MCP server.

        Returns the raw result dict (``content`` list and ``isError`` flag).
        """
        if not self.is_connected:
            raise MCPTransportError("Not connected")

        params: Dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments

        return self._send_request("tools/call", params, timeout=timeout, cancelled=cancelled)

    def disconnect(self) -> None:
        """Close the connection. Safe to call more than once."""
        self._connected = False
        try:
            self.transport.stop()
        except Exception as e:
            logger.debug("MCP disconnect error: %s", e)

    @property
    def server_name(self) -> str:
        if self._server_info:
            return self._server_info.get("name", "unknown")
        return "unknown"


# ---------------------------------------------------------------------------
# MCP Log Level mapping
# ---------------------------------------------------------------------------

_MCP_LOG_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}


def _log_server_message(params: Any) -> None:
    """Forward a ``notifications/message`` log entry into our logging tree."""
    if not isinstance(params, dict):
        return
    level = _MCP_LOG_LEVELS.get(str(params.get("level", "info")).lower(), logging.INFO)
    server_logger = logging.getLogger(f"{__name__}.server.{params.get('logger') or 'default'}")
    server_logger.log(level, "%s", params.get("data"))
