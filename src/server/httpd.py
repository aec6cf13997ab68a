"""Connector management and server lifecycle.

A ServerProcess owns one listening socket per ConnectorSpec, plaintext or
TLS, all attached to the same Pipeline. Each connector runs its own accept
loop thread and hands every connection to a worker thread; the TLS
handshake happens on the worker so a slow client cannot stall accepting.
"""

import logging
import socket
import ssl
import threading
import time
from dataclasses import dataclass
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterable, Optional
from urllib.parse import urlsplit

from server.errors import BindError, ParameterError
from server.pipeline import Pipeline, Request, log_access
from server.tls import TLSContext

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_HTTP_PORT = 3544
DEFAULT_HTTPS_PORT = 3545
DEFAULT_BIND = "0.0.0.0"
DEFAULT_GRACE_PERIOD = 5.0
CONNECTION_TIMEOUT = 30.0
SERVER_VERSION = "dualserve/0.1"


class Protocol(Enum):
    """Connector wire protocol."""

    PLAIN = "http"
    TLS = "https"


class LifecycleState(Enum):
    """ServerProcess lifecycle: CREATED -> STARTING -> RUNNING -> STOPPING -> STOPPED."""

    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class ConnectorSpec:
    """One listener to bind: protocol, address and (for TLS) its context."""

    protocol: Protocol
    port: int
    host: str = DEFAULT_BIND
    tls_context: Optional[TLSContext] = None

    def validate(self) -> None:
        """Raise ParameterError for an unusable connector definition."""
        if not isinstance(self.port, int) or not 0 <= self.port <= 65535:
            raise ParameterError(f"Connector port must be within 0-65535, got {self.port!r}")
        if self.protocol is Protocol.TLS and self.tls_context is None:
            raise ParameterError(f"TLS connector on port {self.port} requires a TLS context")
        if self.protocol is Protocol.PLAIN and self.tls_context is not None:
            raise ParameterError(f"Plaintext connector on port {self.port} must not carry a TLS context")


class ServerHandler(BaseHTTPRequestHandler):
    """Translates HTTP requests to pipeline calls."""

    server_version = SERVER_VERSION
    timeout = CONNECTION_TIMEOUT

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.debug("%s - %s", self.address_string(), format % args)

    def handle_one_request(self):
        self._started = time.monotonic()
        super().handle_one_request()

    def send_error(self, code, message=None, explain=None):
        """Answer a request the pipeline never saw, and log it as access.

        Covers malformed request lines, methods without a do_* handler
        (501) and an invalid Content-Length (400).
        """
        log_access(
            self.server.name,
            self.client_address[0],
            getattr(self, "command", None),
            urlsplit(getattr(self, "path", "") or "").path or None,
            code,
            time.monotonic() - getattr(self, "_started", time.monotonic()),
        )
        super().send_error(code, message, explain)

    def _dispatch(self):
        parsed = urlsplit(self.path)

        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            self.send_error(400, "Invalid Content-Length")
            return
        body = self.rfile.read(length) if length > 0 else b""

        request = Request(
            method=self.command,
            path=parsed.path or "/",
            query=parsed.query,
            headers=dict(self.headers.items()),
            body=body,
            client=self.client_address[0],
            connector=self.server.name,
        )
        response = self.server.pipeline.handle(request)

        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        if self.server.stopping.is_set():
            self.send_header("Connection", "close")
            self.close_connection = True
        self.end_headers()
        if self.command != "HEAD" and response.body:
            self.wfile.write(response.body)

    do_GET = _dispatch
    do_HEAD = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_PATCH = _dispatch
    do_DELETE = _dispatch
    do_OPTIONS = _dispatch


class ConnectorServer(ThreadingHTTPServer):
    """Listening socket for one connector, serving through the shared pipeline."""

    daemon_threads = True
    block_on_close = False
    allow_reuse_address = True
    allow_reuse_port = False

    def __init__(self, spec: ConnectorSpec, pipeline: Pipeline, stopping: threading.Event):
        self.spec = spec
        self.pipeline = pipeline
        self.stopping = stopping
        self._connections: dict = {}
        self._idle = threading.Condition()
        self.address_family = socket.AF_INET6 if ":" in spec.host else socket.AF_INET
        super().__init__((spec.host, spec.port), ServerHandler)

    @property
    def port(self) -> int:
        return self.server_address[1]

    @property
    def name(self) -> str:
        return f"{self.spec.protocol.value}:{self.port}"

    def process_request(self, request, client_address):
        with self._idle:
            self._connections[id(request)] = request
        super().process_request(request, client_address)

    def process_request_thread(self, request, client_address):
        conn = request
        try:
            if self.spec.tls_context is not None:
                conn = self._handshake(request, client_address)
            if conn is not None:
                self.finish_request(conn, client_address)
        except Exception:
            self.handle_error(conn, client_address)
        finally:
            self.shutdown_request(conn if conn is not None else request)
            with self._idle:
                self._connections.pop(id(request), None)
                self._idle.notify_all()

    def _handshake(self, request: socket.socket, client_address) -> Optional[ssl.SSLSocket]:
        request.settimeout(CONNECTION_TIMEOUT)
        tls_sock = self.spec.tls_context.ssl_context.wrap_socket(
            request, server_side=True, do_handshake_on_connect=False
        )
        with self._idle:
            self._connections[id(request)] = tls_sock
        try:
            tls_sock.do_handshake()
        except (ssl.SSLError, OSError) as e:
            logger.debug("TLS handshake with %s failed on %s: %s", client_address[0], self.name, e)
            tls_sock.close()
            return None
        return tls_sock

    def handle_error(self, request, client_address):
        logger.exception("Error handling connection from %s on %s", client_address[0], self.name)

    def wait_idle(self, timeout: float) -> bool:
        """Wait until no connection is in flight. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._connections, timeout=max(timeout, 0))

    def close_connections(self) -> int:
        """Force-close connections still in flight. Returns how many were closed."""
        with self._idle:
            remaining = list(self._connections.values())
        for conn in remaining:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()
        return len(remaining)


@dataclass
class Connector:
    """A bound connector and its accept-loop thread."""

    spec: ConnectorSpec
    server: ConnectorServer
    thread: Optional[threading.Thread] = None

    @property
    def protocol(self) -> Protocol:
        return self.spec.protocol

    @property
    def port(self) -> int:
        return self.server.port

    def url(self, host: Optional[str] = None) -> str:
        return f"{self.protocol.value}://{host or self.spec.host}:{self.port}"


class ServerProcess:
    """Running set of connectors sharing one pipeline."""

    def __init__(self, pipeline: Pipeline, grace_period: float = DEFAULT_GRACE_PERIOD):
        self.pipeline = pipeline
        self.grace_period = grace_period
        self.connectors: list[Connector] = []
        self.state = LifecycleState.CREATED
        self._lock = threading.RLock()
        self._stopping = threading.Event()
        self._stopped = threading.Event()

    def _transition(self, state: LifecycleState) -> None:
        logger.debug("Server %s -> %s", self.state.value, state.value)
        self.state = state

    def start(self, specs: Iterable[ConnectorSpec]) -> None:
        """Bind every connector, then start serving.

        Binding is all-or-nothing: when any connector fails to bind, the
        ones bound so far are closed and the process ends up STOPPED.

        Raises:
            BindError: If a port cannot be bound
            RuntimeError: If the process was started before
        """
        with self._lock:
            if self.state is not LifecycleState.CREATED:
                raise RuntimeError(f"Server cannot start from state {self.state.value}")
            self._transition(LifecycleState.STARTING)

            bound: list[ConnectorServer] = []
            try:
                for spec in specs:
                    try:
                        bound.append(ConnectorServer(spec, self.pipeline, self._stopping))
                    except OSError as e:
                        raise BindError(spec.port, e.strerror or str(e), spec.host) from e
            except BindError as e:
                for server in bound:
                    server.server_close()
                logger.error("Startup aborted: %s", e.message)
                self._transition(LifecycleState.STOPPED)
                self._stopped.set()
                raise

            for server in bound:
                thread = threading.Thread(
                    target=server.serve_forever,
                    name=f"connector-{server.spec.protocol.value}-{server.port}",
                    daemon=True,
                )
                thread.start()
                connector = Connector(spec=server.spec, server=server, thread=thread)
                self.connectors.append(connector)
                logger.info("Listening on %s", connector.url())

            self._transition(LifecycleState.RUNNING)

    def stop(self, grace_period: Optional[float] = None) -> None:
        """Stop every connector. Safe to call repeatedly.

        Accept loops stop and listening sockets close first; in-flight
        requests then get up to grace_period seconds before their
        connections are closed.
        """
        with self._lock:
            if self.state in (LifecycleState.STOPPED, LifecycleState.STOPPING):
                return
            if self.state is LifecycleState.CREATED:
                self._transition(LifecycleState.STOPPED)
                self._stopped.set()
                return

            self._transition(LifecycleState.STOPPING)
            self._stopping.set()
            grace = self.grace_period if grace_period is None else grace_period

            for connector in self.connectors:
                connector.server.shutdown()
                connector.server.server_close()

            deadline = time.monotonic() + grace
            for connector in self.connectors:
                if not connector.server.wait_idle(deadline - time.monotonic()):
                    closed = connector.server.close_connections()
                    logger.warning(
                        "Closed %d connection(s) on %s after %.1fs grace period",
                        closed, connector.server.name, grace,
                    )

            for connector in self.connectors:
                if connector.thread is not None:
                    connector.thread.join(timeout=1.0)

            self._transition(LifecycleState.STOPPED)
            self._stopped.set()
            logger.info("Server stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the process is STOPPED. Returns False on timeout."""
        return self._stopped.wait(timeout)

    def urls(self, host: Optional[str] = None) -> list[str]:
        return [connector.url(host) for connector in self.connectors]

    def connector(self, protocol: Protocol) -> Optional[Connector]:
        """First connector using protocol, if any."""
        for connector in self.connectors:
            if connector.protocol is protocol:
                return connector
        return None


def _check_distinct(specs: list[ConnectorSpec]) -> None:
    seen = set()
    for spec in specs:
        if spec.port == 0:
            continue
        key = (spec.host, spec.port)
        if key in seen:
            raise BindError(spec.port, "port assigned to more than one connector", spec.host)
        seen.add(key)


class ServerBootstrap:
    """Builds ServerProcesses from connector specs and a pipeline."""

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD):
        self.grace_period = grace_period

    def start(self, specs: Iterable[ConnectorSpec], pipeline: Pipeline) -> ServerProcess:
        """Bind all connectors and start serving pipeline on them.

        Args:
            specs: Connectors to bind (zero or more of each protocol)
            pipeline: Shared request pipeline

        Returns:
            ServerProcess in RUNNING state

        Raises:
            ParameterError: If a connector spec is invalid
            BindError: If any connector cannot bind (nothing is left running)
        """
        specs = list(specs)
        for spec in specs:
            spec.validate()
        _check_distinct(specs)

        process = ServerProcess(pipeline, grace_period=self.grace_period)
        process.start(specs)
        return process

    def stop(self, process: ServerProcess) -> None:
        process.stop()
