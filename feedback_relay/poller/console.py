"""Terminal editor host for `feedback-relay watch`.

Renders requests with rich and reads answers from stdin, so a poller can
run without an IDE attached.
"""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt

from feedback_relay.core.timing import PeriodicTask
from feedback_relay.poller.messages import (
    FilesSelected,
    PollerMessage,
    ServerStatus,
    ShowFeedbackRequest,
    ShowWaiting,
    UpdateDebugInfo,
)
from feedback_relay.poller.poller import DiscoveryPoller, EditorHost
from feedback_relay.protocol import FeedbackResponse

log = structlog.get_logger()


def split_answer(line: str) -> tuple[str, list[str]]:
    """Separate `@path` tokens from the answer text.

    >>> split_answer("looks good @src/app.py")
    ('looks good', ['src/app.py'])
    """
    words: list[str] = []
    paths: list[str] = []
    for token in line.split():
        if token.startswith("@") and len(token) > 1:
            paths.append(token[1:])
        else:
            words.append(token)
    return " ".join(words), paths


class ConsoleHost(EditorHost):
    """Editor host backed by a rich console."""

    def __init__(self, workspaces: list[str], console: Optional[Console] = None):
        self.workspaces = [str(Path(w).resolve()) for w in workspaces]
        self.console = console or Console()
        self._waiting_shown = False
        self._connected: Optional[bool] = None

    def workspace_paths(self) -> list[str]:
        return list(self.workspaces)

    async def post_message(self, message: PollerMessage) -> None:
        if isinstance(message, ShowFeedbackRequest):
            payload = message.payload
            self._waiting_shown = False
            self.console.print(
                Panel(
                    Markdown(payload.summary),
                    title=f"Feedback requested for {payload.project_dir}",
                    subtitle=f"{payload.request_id} · {payload.timeout:g}s",
                    border_style="cyan",
                )
            )
        elif isinstance(message, ShowWaiting):
            if not self._waiting_shown:
                self.console.print("[dim]Waiting for feedback requests...[/dim]")
                self._waiting_shown = True
        elif isinstance(message, ServerStatus):
            status = message.payload
            if status.connected == self._connected:
                return
            self._connected = status.connected
            if status.connected:
                self.console.print(f"[green]● Broker on port {status.port}[/]")
            else:
                self.console.print("[yellow]○ No broker running[/]")
        elif isinstance(message, FilesSelected):
            for path in message.payload.paths:
                self.console.print(f"  [dim]@{path}[/dim]")
        elif isinstance(message, UpdateDebugInfo):
            log.debug("poller_status", **message.payload.to_dict())

    async def focus_panel(self) -> None:
        self.console.bell()

    async def notify_info(self, text: str) -> None:
        self.console.print(f"[green]✓ {text}[/]")

    async def notify_error(self, text: str) -> None:
        self.console.print(f"[red]✗ {text}[/]")


class ConsoleSession:
    """Couples a poller with a console host and answers from stdin."""

    def __init__(self, poller: DiscoveryPoller, host: ConsoleHost):
        self.poller = poller
        self.host = host

    async def read_answer(self) -> str:
        return await asyncio.to_thread(Prompt.ask, "[bold]Your feedback[/]", default="")

    async def answer_current(self) -> Optional[bool]:
        """Prompt for the displayed request and submit the answer.

        Returns:
            The submit outcome, or None when nothing was displayed
        """
        request = self.poller.current_request
        port = self.poller.active_port
        if request is None:
            return None

        line = await self.read_answer()
        text, paths = split_answer(line)
        response = FeedbackResponse(
            request_id=request.id,
            text=text,
            attached_paths=paths,
            origin_directory=self.host.workspaces[0] if self.host.workspaces else None,
        )
        return await self.poller.submit_answer(response, port=port)

    async def run(self) -> None:
        """Poll until cancelled, prompting whenever a request is displayed."""
        health = PeriodicTask(
            self.poller.check_health,
            self.poller.config.health_interval_seconds,
            name="health-check",
        )
        self.poller.start_polling()
        health.start()
        try:
            while True:
                if self.poller.current_request is None:
                    await asyncio.sleep(self.poller.config.poll_interval_seconds)
                    continue
                await self.answer_current()
        finally:
            await health.wait_stopped()
            await self.poller.close()
