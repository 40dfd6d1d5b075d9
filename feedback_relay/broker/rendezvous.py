"""Request/answer rendezvous state for one broker process.

`FeedbackBroker` is the single context object shared by the HTTP surface and
the tool-call surface. It owns:

- the broker identity (owner workspace, start time, bound port)
- the single current-request slot that polls observe
- the pending map from request id to a future plus its expiry timer

Everything here runs on the broker's event loop. Removing an entry from the
pending map is the claim: whichever of submit / expiry / cleanup pops the
entry first is the only one allowed to resolve its future, and the current
slot is cleared in the same synchronous step.
"""

import asyncio
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from feedback_relay import __version__
from feedback_relay.config import RelayConfig
from feedback_relay.core.errors import RequestNotFoundError
from feedback_relay.core.timing import now_ms
from feedback_relay.protocol import (
    BrokerSnapshot,
    FeedbackRequest,
    FeedbackResponse,
    generate_request_id,
)
from feedback_relay.workspace import broker_belongs, normalize_path

log = structlog.get_logger()


@dataclass
class PendingFeedback:
    """Completion handle for one outstanding tool call."""

    request: FeedbackRequest
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None


class FeedbackBroker:
    """Holds at most one visible feedback request and pairs it with its answer."""

    def __init__(self, config: Optional[RelayConfig] = None, port: int = 0):
        self.config = config or RelayConfig()
        self.port = port
        self.pid = os.getpid()
        self.start_time = now_ms()
        self.owner_workspace: Optional[str] = None
        self.current_request: Optional[FeedbackRequest] = None
        self.last_activity = time.monotonic()
        self.closed = False
        self._pending: dict[str, PendingFeedback] = {}
        self._shutdown_hook: Optional[Callable[[], None]] = None

    # Identity

    @property
    def has_pending_request(self) -> bool:
        return self.current_request is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def claim_workspace(self, project_directory: str) -> str:
        """Pin (or re-pin) ownership to the normalized project directory."""
        owner = normalize_path(project_directory)
        if owner != self.owner_workspace:
            log.info("broker_workspace_claimed", owner=owner, previous=self.owner_workspace)
        self.owner_workspace = owner
        return owner

    # Request lifecycle

    def open_request(
        self,
        project_directory: str,
        summary: str,
        timeout_seconds: float,
    ) -> FeedbackRequest:
        """Create a request, make it current and arm its expiry timer.

        Must be called from the running event loop. A previous request that
        is still waiting keeps its own pending entry but is no longer visible
        to pollers.
        """
        if self.closed:
            raise RuntimeError("broker is shut down")

        loop = asyncio.get_running_loop()
        self.claim_workspace(project_directory)

        request = FeedbackRequest(
            id=generate_request_id(),
            summary=summary,
            project_directory=project_directory,
            timeout_seconds=timeout_seconds,
        )
        pending = PendingFeedback(request=request, future=loop.create_future())
        pending.timer = loop.call_later(timeout_seconds, self._expire, request.id)

        replaced = self.current_request
        self._pending[request.id] = pending
        self.current_request = request
        self.touch()

        if replaced is not None:
            log.warning("feedback_request_replaced", previous=replaced.id, request_id=request.id)
        log.info(
            "feedback_request_created",
            request_id=request.id,
            project=project_directory,
            timeout=timeout_seconds,
        )
        return request

    async def wait_for(self, request_id: str) -> Optional[FeedbackResponse]:
        """Wait for the answer to a request; None means timed out or cancelled."""
        pending = self._pending.get(request_id)
        if pending is None:
            return None
        return await pending.future

    async def request_feedback(
        self,
        project_directory: str,
        summary: str,
        timeout_seconds: float,
    ) -> Optional[FeedbackResponse]:
        """Open a request and wait for its answer, always cleaning up."""
        request = self.open_request(project_directory, summary, timeout_seconds)
        try:
            return await self.wait_for(request.id)
        finally:
            self.finish(request.id)

    def submit(self, request_id: str, response: FeedbackResponse) -> FeedbackRequest:
        """Resolve a pending request with the human's answer.

        Raises:
            RequestNotFoundError: If no pending request has this id
        """
        pending = self._claim(request_id)
        if pending is None:
            log.info("feedback_submit_unknown", request_id=request_id)
            raise RequestNotFoundError(request_id)

        self.touch()
        if not pending.future.done():
            pending.future.set_result(response)
        log.info(
            "feedback_received",
            request_id=request_id,
            text_length=len(response.text),
            images=len(response.images),
            attached=len(response.attached_paths),
        )
        return pending.request

    def finish(self, request_id: str) -> None:
        """Release a request after its tool call returned, however it ended."""
        pending = self._claim(request_id)
        if pending is not None and not pending.future.done():
            pending.future.set_result(None)
        self.touch()

    def cancel_all(self) -> int:
        """Resolve every waiting tool call with None (shutdown path)."""
        count = 0
        for request_id in list(self._pending):
            pending = self._claim(request_id)
            if pending is not None and not pending.future.done():
                pending.future.set_result(None)
                count += 1
        self.current_request = None
        if count:
            log.info("pending_requests_cancelled", count=count)
        return count

    def close(self) -> None:
        """Refuse new requests and release everything still waiting."""
        self.closed = True
        self.cancel_all()

    def _expire(self, request_id: str) -> None:
        pending = self._claim(request_id)
        if pending is None:
            return
        log.info("feedback_request_timed_out", request_id=request_id)
        if not pending.future.done():
            pending.future.set_result(None)

    def _claim(self, request_id: str) -> Optional[PendingFeedback]:
        """Remove a pending entry; only the caller that gets it may resolve it."""
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return None
        if pending.timer is not None:
            pending.timer.cancel()
        if self.current_request is not None and self.current_request.id == request_id:
            self.current_request = None
        return pending

    # Polling and activity

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def record_poll(
        self,
        workspace: Optional[str] = None,
        latest_start_time: Optional[int] = None,
    ) -> bool:
        """Count a poll as activity when it comes from a window this broker serves.

        A poll refreshes the activity clock only if the polling window matches
        this broker's owner (or the broker is unclaimed) and the window has not
        seen a newer broker for the same workspace. Stale leftovers therefore
        age out even while windows keep polling them. Polls without a
        workspace come from older windows and always count.
        """
        if workspace is None:
            self.touch()
            return True

        if not broker_belongs(self.owner_workspace, [workspace]):
            return False
        if latest_start_time is not None and latest_start_time > self.start_time:
            return False

        self.touch()
        return True

    def snapshot(
        self,
        workspace: Optional[str] = None,
        latest_start_time: Optional[int] = None,
    ) -> BrokerSnapshot:
        """Answer a poll and record it as activity when appropriate."""
        self.record_poll(workspace, latest_start_time)
        return BrokerSnapshot(
            port=self.port,
            request=self.current_request,
            owner_workspace=self.owner_workspace,
            start_time=self.start_time,
        )

    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_activity

    def should_self_terminate(self) -> bool:
        """Idle past the threshold with nothing pending."""
        if self.has_pending_request or self._pending:
            return False
        return self.idle_seconds() > self.config.idle_timeout_seconds

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "version": __version__,
            "hasCurrentRequest": self.has_pending_request,
            "pid": self.pid,
        }

    # Shutdown

    def set_shutdown_hook(self, hook: Callable[[], None]) -> None:
        """Register the callback that stops the hosting process."""
        self._shutdown_hook = hook

    def request_shutdown(self) -> bool:
        """Ask the hosting process to stop; False when nothing is listening."""
        log.info("broker_shutdown_requested", pending=len(self._pending))
        if self._shutdown_hook is None:
            return False
        self._shutdown_hook()
        return True
