"""
MCP connection pool -- one canonical live connection per configured server.

Connections are created lazily on first use, checked with ``ping`` when they
have been idle for longer than ``health_check_interval``, and replaced
transparently once they are known to be broken.  The pool never reconnects
on its own: a failed call only marks the connection unhealthy
(``handle_connection_error``) and the *next* acquisition through
``get_connection_with_health_check`` swaps in a fresh one.

Locking:
  - ``_lock`` guards the registry dict and is never held across I/O
  - one creation lock per server name, so two callers never start two
    processes for the same server while different servers connect in
    parallel
  - replacement swaps the registry entry; a connection object is never
    reused after it has been discarded
  - each connection has a call lock, so calls to one server run one at a
    time; health pings skip a connection whose call lock is taken

Usage:
    pool = MCPConnectionPool(ConnectionPoolConfig())
    conn = pool.get_connection_with_health_check(ctx, "fs", server_config)
    result = conn.call_tool("read_file", {"path": "/tmp/x"})
    pool.close()
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from agent.context import CancelContext
from tools.mcp_client import (
    CONNECT_TIMEOUT,
    REQUEST_TIMEOUT,
    MCPClient,
    SseTransport,
    StdioTransport,
    StreamableHttpTransport,
    MCPTransportError,
    sanitize_error,
)
from tools.mcp_config import (
    MCPServerConfig,
    TRANSPORT_SSE,
    TRANSPORT_STDIO,
    TRANSPORT_STREAMABLE,
)

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
UNKNOWN = "unknown"

_CALL_LOCK_POLL = 0.1


class MCPConnectionError(Exception):
    """A connection to an MCP server could not be established."""

    def __init__(self, server_name: str, error: Exception):
        self.server_name = server_name
        self.error = error
        super().__init__(
            f"failed to connect to MCP server '{server_name}': {sanitize_error(str(error))}"
        )


@dataclass
class ConnectionPoolConfig:
    health_check_interval: float = 30.0
    health_check_timeout: float = 5.0
    connect_timeout: float = CONNECT_TIMEOUT
    request_timeout: float = REQUEST_TIMEOUT


class MCPConnection:
    """A live client plus its bookkeeping."""

    def __init__(self, server_name: str, client: MCPClient):
        self.server_name = server_name
        self.client = client
        self.created_at = time.time()
        self.last_used = self.created_at
        self.last_health_check = self.created_at
        self._health = HEALTHY
        self._lock = threading.Lock()
        self._call_lock = threading.Lock()

    @property
    def health(self) -> str:
        with self._lock:
            return self._health

    def mark(self, health: str) -> None:
        with self._lock:
            self._health = health
            if health == HEALTHY:
                self.last_health_check = time.time()

    def touch(self) -> None:
        with self._lock:
            self.last_used = time.time()

    def idle_for(self) -> float:
        """Seconds since the connection last proved itself alive."""
        with self._lock:
            return time.time() - max(self.last_used, self.last_health_check)

    def call_tool(
        self, name: str, arguments: Optional[dict] = None,
        timeout: Optional[float] = None,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> dict:
        """Call a tool on this connection; calls run one at a time."""
        while not self._call_lock.acquire(timeout=_CALL_LOCK_POLL):
            if cancelled is not None and cancelled():
                raise MCPTransportError("Request cancelled")
        try:
            return self.client.call_tool(name, arguments, timeout=timeout, cancelled=cancelled)
        finally:
            self._call_lock.release()

    def ping(self, timeout: float) -> None:
        """Ping the server unless a call is already in flight on it."""
        if not self._call_lock.acquire(blocking=False):
            return
        try:
            self.client.ping(timeout=timeout)
        finally:
            self._call_lock.release()

    def close(self) -> None:
        self.client.disconnect()


def create_client(server_config: MCPServerConfig) -> MCPClient:
    """Build an unconnected client for a server config."""
    if server_config.transport_type == TRANSPORT_STDIO:
        transport = StdioTransport(
            command=server_config.command,
            args=list(server_config.args),
            env=server_config.env or None,
            cwd=server_config.cwd,
        )
    elif server_config.transport_type == TRANSPORT_STREAMABLE:
        transport = StreamableHttpTransport(url=server_config.url, headers=server_config.headers)
    elif server_config.transport_type == TRANSPORT_SSE:
        transport = SseTransport(url=server_config.url, headers=server_config.headers)
    else:
        raise MCPTransportError(f"Unknown transport type: {server_config.transport_type}")
    return MCPClient(transport)


class MCPConnectionPool:
    """Keeps one connection per server and heals broken ones on acquisition."""

    def __init__(
        self,
        config: Optional[ConnectionPoolConfig] = None,
        client_factory: Optional[Callable[[MCPServerConfig], MCPClient]] = None,
    ):
        self.config = config or ConnectionPoolConfig()
        self._client_factory = client_factory or create_client
        self._lock = threading.Lock()
        self._connections: Dict[str, MCPConnection] = {}
        self._creation_locks: Dict[str, threading.Lock] = {}
        self._closed = False

    def _creation_lock(self, server_name: str) -> threading.Lock:
        with self._lock:
            lock = self._creation_locks.get(server_name)
            if lock is None:
                lock = self._creation_locks[server_name] = threading.Lock()
            return lock

    def _lookup(self, server_name: str) -> Optional[MCPConnection]:
        with self._lock:
            return self._connections.get(server_name)

    def _create(self, server_name: str, server_config: MCPServerConfig) -> MCPConnection:
        client = None
        try:
            client = self._client_factory(server_config)
            client.connect(timeout=self.config.connect_timeout)
        except Exception as e:
            if client is not None:
                client.disconnect()
            raise MCPConnectionError(server_name, e) from e

        conn = MCPConnection(server_name, client)
        with self._lock:
            if self._closed:
                closed = True
            else:
                closed = False
                self._connections[server_name] = conn
        if closed:
            conn.close()
            raise MCPConnectionError(server_name, MCPTransportError("connection pool is closed"))
        logger.debug("MCP pool: connected '%s'", server_name)
        return conn

    def _discard(self, conn: MCPConnection) -> None:
        with self._lock:
            if self._connections.get(conn.server_name) is conn:
                del self._connections[conn.server_name]
        conn.close()

    def _check_open(self, server_name: str) -> None:
        if self._closed:
            raise MCPConnectionError(server_name, MCPTransportError("connection pool is closed"))

    def get_connection(self, server_name: str, server_config: MCPServerConfig) -> MCPConnection:
        """Return the canonical connection, creating it if absent.

        No health probing and no retry; creation failures raise
        ``MCPConnectionError``.
        """
        self._check_open(server_name)
        conn = self._lookup(server_name)
        if conn is not None:
            return conn
        with self._creation_lock(server_name):
            self._check_open(server_name)
            conn = self._lookup(server_name)
            if conn is None:
                conn = self._create(server_name, server_config)
            return conn

    def get_connection_with_health_check(
        self,
        ctx: Optional[CancelContext],
        server_name: str,
        server_config: MCPServerConfig,
    ) -> MCPConnection:
        """Return a connection that is believed healthy.

        Unhealthy connections, and idle ones that fail a ``ping``, are
        discarded and replaced with a freshly initialized connection.
        """
        if ctx is not None:
            ctx.raise_if_cancelled()
        self._check_open(server_name)
        with self._creation_lock(server_name):
            self._check_open(server_name)
            conn = self._lookup(server_name)
            if conn is not None and conn.health == UNHEALTHY:
                logger.info("MCP pool: replacing unhealthy connection to '%s'", server_name)
                self._discard(conn)
                conn = None
            elif conn is not None and conn.idle_for() >= self.config.health_check_interval:
                try:
                    conn.ping(timeout=self.config.health_check_timeout)
                    conn.mark(HEALTHY)
                except Exception as e:
                    logger.info(
                        "MCP pool: health check failed for '%s' (%s), reconnecting",
                        server_name, sanitize_error(str(e)),
                    )
                    self._discard(conn)
                    conn = None
            if ctx is not None:
                ctx.raise_if_cancelled()
            if conn is None:
                conn = self._create(server_name, server_config)
            conn.touch()
            return conn

    def handle_connection_error(
        self, server_name: str, err: Exception, conn: Optional[MCPConnection] = None,
    ) -> None:
        """Mark the server's connection unhealthy; the next acquisition replaces it.

        When the failed ``conn`` is given and has already been replaced, the
        current connection is left alone.
        """
        current = self._lookup(server_name)
        if current is None:
            return
        if conn is not None and conn is not current:
            logger.debug("MCP pool: ignoring error from replaced connection to '%s'", server_name)
            return
        current.mark(UNHEALTHY)
        logger.warning(
            "MCP server '%s' connection marked unhealthy: %s",
            server_name, sanitize_error(str(err)),
        )

    def get_clients(self) -> Dict[str, MCPConnection]:
        with self._lock:
            return dict(self._connections)

    def close(self) -> None:
        """Close every connection. Safe to call more than once."""
        with self._lock:
            self._closed = True
            conns = list(self._connections.values())
            self._connections.clear()
        for conn in conns:
            try:
                conn.close()
            except Exception as e:
                logger.debug("MCP pool: close error for '%s': %s", conn.server_name, e)
