"""Broker process lifecycle.

Binds the HTTP side-channel on the first free loopback port at or above the
configured base port, serves it with uvicorn next to the MCP stdio session
and stops on any of: SIGINT/SIGTERM, stdin closing, POST /api/shutdown, or
the idle watchdog. Stopping resolves every waiting tool call with None
before the transports go away.

Port collisions are resolved by moving up one port at a time; an
incumbent broker is never asked to leave, so brokers for different
projects coexist.
"""

import asyncio
import contextlib
import signal
import socket
from typing import Any, Optional

import structlog
import uvicorn
from mcp.server.stdio import stdio_server

from feedback_relay.broker.http import create_app
from feedback_relay.broker.rendezvous import FeedbackBroker
from feedback_relay.broker.tools import FeedbackTools, build_mcp_server
from feedback_relay.config import MAX_PORT, RelayConfig
from feedback_relay.core.errors import PortBindError, classify_error, is_address_in_use
from feedback_relay.core.timing import PeriodicTask

log = structlog.get_logger()

LOOPBACK = "127.0.0.1"


def bind_loopback(port: int, host: str = LOOPBACK) -> socket.socket:
    """Bind a listening socket, moving up past ports that are in use.

    Args:
        port: First candidate port
        host: Interface to bind (loopback only in practice)

    Returns:
        A bound, listening socket

    Raises:
        PortBindError: On any bind failure other than address-in-use, or
            when the port space is exhausted
    """
    candidate = port
    while True:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((host, candidate))
            sock.listen(128)
        except OSError as e:
            sock.close()
            if not is_address_in_use(e):
                raise PortBindError(candidate, e) from e
            log.info("port_in_use", port=candidate, next_port=candidate + 1)
            candidate += 1
            if candidate > MAX_PORT:
                raise PortBindError(candidate, e) from e
            continue
        return sock


class EmbeddedServer(uvicorn.Server):
    """Uvicorn server that leaves signal handling to the broker process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class BrokerProcess:
    """One broker: rendezvous state, HTTP side-channel and stdio tool surface."""

    def __init__(self, config: Optional[RelayConfig] = None):
        self.config = config or RelayConfig()
        self.broker = FeedbackBroker(self.config)
        self.tools = FeedbackTools(self.broker)
        self.app = create_app(self.broker)
        self.exit_reason: Optional[str] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._http_server: Optional[EmbeddedServer] = None
        self._watchdog = PeriodicTask(
            self.check_idle,
            self.config.idle_check_interval_seconds,
            name="idle-watchdog",
        )

    @property
    def port(self) -> int:
        return self.broker.port

    def bind(self) -> socket.socket:
        """Bind the side-channel socket and record the port on the broker."""
        sock = bind_loopback(self.config.base_port)
        self.broker.port = sock.getsockname()[1]
        log.info("http_server_bound", host=LOOPBACK, port=self.broker.port)
        return sock

    def stop(self, reason: str) -> None:
        """Request process shutdown; the first reason wins."""
        if self._stop_event is None or self._stop_event.is_set():
            return
        self.exit_reason = reason
        log.info("broker_stopping", reason=reason)
        self._stop_event.set()

    async def check_idle(self) -> None:
        """Stop when idle past the threshold with nothing pending."""
        if self.broker.should_self_terminate():
            log.info("broker_idle_exit", idle_seconds=round(self.broker.idle_seconds(), 1))
            self.stop("idle")

    async def serve_http(self, sock: socket.socket) -> None:
        uv_config = uvicorn.Config(
            self.app,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._http_server = EmbeddedServer(uv_config)
        await self._http_server.serve(sockets=[sock])

    async def serve_stdio(self) -> None:
        """Run the MCP session until the AI side closes stdin."""
        server = build_mcp_server(self.tools)
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())

    async def run(self, stdio: bool = True) -> str:
        """Serve until stopped and return the stop reason."""
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)
        self._stop_event = asyncio.Event()
        self.broker.set_shutdown_hook(lambda: self.stop("shutdown_requested"))
        self._install_signal_handlers(loop)

        sock = self.bind()
        http_task = asyncio.create_task(self.serve_http(sock), name="http")
        http_task.add_done_callback(lambda t: self._on_transport_done("http_stopped", t))

        stdio_task: Optional[asyncio.Task] = None
        if stdio:
            stdio_task = asyncio.create_task(self.serve_stdio(), name="stdio")
            stdio_task.add_done_callback(lambda t: self._on_transport_done("stdin_closed", t))

        self._watchdog.start()
        log.info("broker_started", port=self.port, pid=self.broker.pid, stdio=stdio)

        try:
            await self._stop_event.wait()
        finally:
            await self._shutdown(http_task, stdio_task)
        return self.exit_reason or "stopped"

    async def _shutdown(
        self,
        http_task: asyncio.Task,
        stdio_task: Optional[asyncio.Task],
    ) -> None:
        await self._watchdog.wait_stopped()

        # Waiting tool calls answer with the timeout sentinel before stdio goes away
        self.broker.close()
        if stdio_task is not None and not stdio_task.done():
            await asyncio.wait({stdio_task}, timeout=self.config.shutdown_grace_seconds)
            stdio_task.cancel()

        if self._http_server is not None:
            self._http_server.should_exit = True
        await asyncio.wait({http_task}, timeout=5)
        if not http_task.done():
            http_task.cancel()

        for task in (http_task, stdio_task):
            if task is not None:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
        log.info("broker_stopped", reason=self.exit_reason, port=self.port)

    def _on_transport_done(self, reason: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            classified = classify_error(error)
            log.error(
                "transport_failed",
                transport=task.get_name(),
                category=classified.category.value,
                error=classified.message,
            )
            self.stop(f"{task.get_name()}_error")
        else:
            self.stop(reason)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop, f"signal_{sig.name.lower()}")
            except (NotImplementedError, RuntimeError, ValueError):
                log.debug("signal_handler_unavailable", signal=sig.name)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        # Logged only; the loop keeps serving
        error = context.get("exception")
        log.error(
            "unhandled_loop_exception",
            message=context.get("message"),
            error=str(error) if error else None,
        )


async def run_broker(config: Optional[RelayConfig] = None) -> str:
    """Run one broker process on stdio until it stops."""
    process = BrokerProcess(config)
    return await process.run(stdio=True)
