"""Discovery poller: finds the broker that serves this editor window.

Every scan queries all candidate ports in parallel, keeps the brokers that
belong to this window's workspace, and surfaces the newest request it has
not surfaced before. Brokers are found purely by probing; nothing is shared
between processes except the loopback HTTP side-channel.
"""

import asyncio
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from feedback_relay.config import RelayConfig
from feedback_relay.core.errors import BrokerUnavailableError
from feedback_relay.core.timing import PeriodicTask, age_seconds
from feedback_relay.poller.client import BrokerClient
from feedback_relay.poller.messages import (
    CheckServerMessage,
    DebugInfoPayload,
    FilesSelected,
    FilesSelectedPayload,
    PollerMessage,
    ReadyMessage,
    SelectFileMessage,
    SelectFolderMessage,
    ServerStatus,
    ServerStatusPayload,
    ShowFeedbackRequest,
    ShowWaiting,
    SubmitFeedbackMessage,
    UpdateDebugInfo,
    parse_form_message,
)
from feedback_relay.poller.seen import SeenRequests
from feedback_relay.protocol import BrokerSnapshot, FeedbackRequest, FeedbackResponse
from feedback_relay.workspace import broker_belongs, matches_workspace, normalize_workspaces

log = structlog.get_logger()

NO_WORKSPACE = "."


class EditorHost:
    """The editor window a poller runs in.

    Subclasses connect these hooks to a real UI. The defaults do nothing,
    which is what a headless window needs.
    """

    def workspace_paths(self) -> list[str]:
        """Absolute paths of the folders open in this window."""
        return []

    async def post_message(self, message: PollerMessage) -> None:
        """Deliver a message to the feedback form."""

    async def focus_panel(self) -> None:
        """Bring the feedback form to the front."""

    async def notify_info(self, text: str) -> None:
        """Show a transient informational notification."""

    async def notify_error(self, text: str) -> None:
        """Show a transient error notification."""

    async def pick_paths(self, folders: bool) -> list[str]:
        """Let the human choose files (or folders) to reference."""
        return []


class DiscoveryPoller:
    """Scans for brokers and relays requests and answers for one window."""

    def __init__(
        self,
        host: EditorHost,
        config: Optional[RelayConfig] = None,
        client: Optional[BrokerClient] = None,
    ):
        self.host = host
        self.config = config or RelayConfig()
        self.client = client or BrokerClient(self.config)
        self.base_port = self.config.base_port
        self.scan_range = self.config.scan_range
        self.active_port: Optional[int] = None
        self.current_request: Optional[FeedbackRequest] = None
        self.latest_start_time: Optional[int] = None
        self.connected_ports: list[int] = []
        self.last_status = "idle"
        self.seen = SeenRequests(self.config.seen_capacity, self.config.seen_retain)
        self._current_start_time = 0
        self._poll_task = PeriodicTask(
            self.poll_once,
            self.config.poll_interval_seconds,
            name="feedback-poll",
        )

    @property
    def ports(self) -> range:
        return self.config.port_range

    @property
    def polling(self) -> bool:
        return self._poll_task.running

    # ===== Lifecycle =====

    def start_polling(self) -> bool:
        """Start the scan loop (first scan runs immediately). No-op if running."""
        started = self._poll_task.start()
        if started:
            log.info("polling_started", base_port=self.base_port, scan_range=self.scan_range)
        return started

    def stop_polling(self) -> bool:
        """Stop the scan loop. No-op if not running."""
        stopped = self._poll_task.stop()
        if stopped:
            log.info("polling_stopped")
        return stopped

    async def close(self) -> None:
        await self._poll_task.wait_stopped()
        await self.client.aclose()

    # ===== Scanning =====

    def _workspace_param(self, workspaces: list[str]) -> str:
        folders = normalize_workspaces(workspaces)
        return folders[0] if folders else NO_WORKSPACE

    async def scan(self, workspaces: list[str]) -> list[BrokerSnapshot]:
        """Poll every candidate port in parallel; returns responding brokers."""
        workspace = self._workspace_param(workspaces)
        results = await asyncio.gather(
            *(
                self.client.fetch_current(port, workspace, self.latest_start_time)
                for port in self.ports
            )
        )
        return [snapshot for snapshot in results if snapshot is not None]

    async def poll_once(self) -> Optional[FeedbackRequest]:
        """Run one discovery scan.

        Returns:
            The request newly surfaced by this scan, if any
        """
        workspaces = self.host.workspace_paths()
        responding = await self.scan(workspaces)
        self.connected_ports = [s.port for s in responding]

        matching = [s for s in responding if broker_belongs(s.owner_workspace, workspaces)]
        start_times = [s.start_time for s in matching if s.start_time]
        if start_times:
            self.latest_start_time = max(start_times)

        current_present = self.current_request is not None and any(
            s.request is not None and s.request.id == self.current_request.id
            for s in matching
        )

        candidates = [
            (s.request, s)
            for s in matching
            if s.request is not None
            and s.request.id not in self.seen
            and matches_workspace(s.request.project_directory, workspaces)
        ]

        surfaced: Optional[FeedbackRequest] = None
        if candidates:
            request, snapshot = max(
                candidates, key=lambda pair: (pair[0].created_at, pair[1].start_time)
            )
            newer_than_current = (request.created_at, snapshot.start_time) > (
                self.current_request.created_at if self.current_request else 0,
                self._current_start_time,
            )
            if not current_present or newer_than_current:
                await self._show_request(request, snapshot)
                surfaced = request

        if surfaced is None and self.current_request is not None and not current_present:
            log.info("feedback_request_gone", request_id=self.current_request.id)
            self.current_request = None
            self._current_start_time = 0
            await self.host.post_message(ShowWaiting())

        self.last_status = self._status_text()
        await self.host.post_message(self.debug_info(workspaces))
        return surfaced

    async def _show_request(self, request: FeedbackRequest, snapshot: BrokerSnapshot) -> None:
        self.seen.add(request.id)
        self.current_request = request
        self._current_start_time = snapshot.start_time
        self.active_port = snapshot.port

        fresh = age_seconds(request.created_at) < self.config.freshness_seconds
        log.info(
            "feedback_request_discovered",
            request_id=request.id,
            port=snapshot.port,
            fresh=fresh,
        )
        await self.host.post_message(ShowFeedbackRequest.for_request(request))
        if fresh:
            await self.host.focus_panel()
            await self.host.notify_info("AI is waiting for your feedback")

    def _status_text(self) -> str:
        if self.current_request is not None:
            return f"showing {self.current_request.id} from port {self.active_port}"
        if self.connected_ports:
            return "waiting for a request"
        return "no broker found"

    def debug_info(self, workspaces: Optional[list[str]] = None) -> UpdateDebugInfo:
        workspaces = self.host.workspace_paths() if workspaces is None else workspaces
        return UpdateDebugInfo(
            payload=DebugInfoPayload(
                port_range=f"{self.ports.start}-{self.ports.stop - 1}",
                workspace_path=", ".join(workspaces) if workspaces else "(none)",
                active_port=self.active_port,
                connected_ports=self.connected_ports,
                last_status=self.last_status,
            )
        )

    # ===== Answers =====

    def _clear_current(self, request_id: str) -> bool:
        if self.current_request is None or self.current_request.id != request_id:
            return False
        self.current_request = None
        self._current_start_time = 0
        return True

    async def submit_answer(self, response: FeedbackResponse, port: Optional[int] = None) -> bool:
        """Deliver the human's answer to the broker that owns the request.

        On a network failure or a rejected submit the displayed request is
        kept so the human can retry. A 404 means someone else answered or
        the request expired; the form goes back to waiting.

        Args:
            response: The answer to deliver
            port: Broker port; defaults to the port of the displayed request
        """
        port = port or self.active_port or self.base_port
        try:
            result = await self.client.submit(port, response)
        except BrokerUnavailableError as e:
            log.warning("feedback_submit_unreachable", port=port, error=str(e))
            await self.host.notify_error("Submit failed: cannot connect to the feedback server")
            return False

        if result.success:
            log.info("feedback_submitted", request_id=response.request_id, port=port)
            self._clear_current(response.request_id)
            await self.host.post_message(ShowWaiting())
            await self.host.notify_info("Feedback submitted")
            return True

        if result.not_found:
            log.info("feedback_submit_stale", request_id=response.request_id, port=port)
            self._clear_current(response.request_id)
            await self.host.post_message(ShowWaiting())
            await self.host.notify_error("Submit failed: the request was already answered or has expired")
            return False

        log.warning("feedback_submit_rejected", port=port, status=result.status_code, error=result.error)
        await self.host.notify_error(f"Submit failed: {result.error}")
        return False

    # ===== Connectivity =====

    async def check_health(self) -> ServerStatus:
        """Report whether any broker answers, ignoring ownership."""
        results = await asyncio.gather(*(self.client.health(port) for port in self.ports))
        status = ServerStatus(payload=ServerStatusPayload(connected=False))
        for port, health in zip(self.ports, results):
            if health is not None:
                status = ServerStatus(payload=ServerStatusPayload(connected=True, port=port, **health))
                break
        await self.host.post_message(status)
        return status

    # ===== Form messages =====

    async def handle_form_message(self, raw: Any) -> None:
        """Validate and dispatch one message posted by the form."""
        try:
            message = parse_form_message(raw)
        except ValidationError as e:
            log.warning("form_message_invalid", error=str(e))
            return

        if isinstance(message, ReadyMessage):
            if self.current_request is not None:
                await self.host.post_message(ShowFeedbackRequest.for_request(self.current_request))
            else:
                await self.host.post_message(ShowWaiting())
        elif isinstance(message, SubmitFeedbackMessage):
            try:
                response = message.payload.to_response()
            except ValueError as e:
                log.warning("form_submit_invalid", error=str(e))
                await self.host.notify_error(f"Submit failed: {e}")
                return
            await self.submit_answer(response)
        elif isinstance(message, CheckServerMessage):
            await self.check_health()
        elif isinstance(message, (SelectFileMessage, SelectFolderMessage)):
            folders = isinstance(message, SelectFolderMessage)
            paths = await self.host.pick_paths(folders=folders)
            if paths:
                await self.host.post_message(
                    FilesSelected(payload=FilesSelectedPayload(paths=paths, is_folder=folders))
                )
