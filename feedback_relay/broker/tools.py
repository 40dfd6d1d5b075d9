"""Tool-call surface of a broker.

Advertises two tools to the AI side of the stdio transport:

- interactive_feedback: block until the human answers or the timeout elapses
- get_system_info: static process/platform information

Tool handlers never raise. Every failure is returned as a text content
item so the transport session stays alive.
"""

import base64
import binascii
import json
import platform
import socket
import sys
from typing import Any, Optional, Union

import structlog
from mcp import types
from mcp.server import Server

from feedback_relay import __version__
from feedback_relay.broker.rendezvous import FeedbackBroker
from feedback_relay.core.errors import InvalidParamsError
from feedback_relay.protocol import DEFAULT_SUMMARY, FeedbackResponse

log = structlog.get_logger()

SERVER_NAME = "feedback-relay"

TOOL_INTERACTIVE_FEEDBACK = "interactive_feedback"
TOOL_SYSTEM_INFO = "get_system_info"

FEEDBACK_HEADER = "=== User Feedback ==="
ATTACHMENTS_HEADER = "=== Attached Files ==="
NO_FEEDBACK_TEXT = "User did not provide any feedback."
TIMEOUT_TEXT = "User cancelled the feedback or timeout."
AUTO_RETRY_TEXT = (
    "No feedback was received before the timeout. The user may still be "
    "reviewing. Call the interactive_feedback tool again with the same "
    "project_directory to keep waiting."
)
ERROR_PREFIX = "[error]"

INTERACTIVE_FEEDBACK_DESCRIPTION = """Interactive feedback collection tool for LLM agents.

USAGE RULES:
1. During any process, task, or conversation, whether asking, replying, or completing phased tasks, you must call this tool to ask for feedback.
2. Unless receiving termination instructions, all steps must repeatedly call this tool.
3. Whenever user feedback is received, if the feedback content is not empty, you must call this tool again and adjust behavior based on the feedback content.
4. If the call times out without feedback, call this tool again.
5. Only when the user explicitly indicates "end" or "no more interaction needed" can you stop calling this tool, and the process is considered complete.
6. Summarize what you have done (Markdown is rendered) and pass the absolute project directory so the right editor window shows the request.

Args:
    project_directory: Absolute path of the project the work belongs to
    summary: Summary of AI work completed for user review
    timeout: Timeout in seconds for waiting user feedback (default: 300 seconds)

Returns:
    Text content with the user's feedback, followed by any images they attached"""

ContentItem = Union[types.TextContent, types.ImageContent]


def text_item(text: str) -> types.TextContent:
    return types.TextContent(type="text", text=text)


def error_item(message: str) -> types.TextContent:
    return text_item(f"{ERROR_PREFIX} {message}")


def _strip_data_url(payload: str) -> str:
    """Drop a `data:<mime>;base64,` prefix if the form left one on."""
    if payload.startswith("data:") and "," in payload:
        return payload.split(",", 1)[1]
    return payload


def encode_feedback(response: FeedbackResponse) -> list[ContentItem]:
    """Turn an answer into ordered tool-result content.

    Text first (feedback, then attached paths), then one item per image.
    """
    text = response.text.strip() if response.text else ""
    images: list[types.ImageContent] = []

    for index, image in enumerate(response.images, start=1):
        payload = _strip_data_url(image.base64_payload)
        try:
            base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            log.warning("feedback_image_invalid", name=image.name, error=str(e))
            warning = f"[warning] Image {index} ({image.name}) could not be decoded and was skipped."
            text = f"{text}\n\n{warning}" if text else warning
            continue
        images.append(
            types.ImageContent(type="image", data=payload, mimeType=image.mime_type)
        )

    items: list[ContentItem] = []
    if text:
        items.append(text_item(f"{FEEDBACK_HEADER}\n{text}"))
    if response.attached_paths:
        listing = "\n".join(response.attached_paths)
        items.append(text_item(f"{ATTACHMENTS_HEADER}\n{listing}"))
    items.extend(images)

    if not items:
        items.append(text_item(NO_FEEDBACK_TEXT))
    return items


class FeedbackTools:
    """Tool handlers bound to one broker."""

    def __init__(self, broker: FeedbackBroker):
        self.broker = broker

    @property
    def config(self):
        return self.broker.config

    def list_tools(self) -> list[types.Tool]:
        """Tool definitions with their input schemas."""
        return [
            types.Tool(
                name=TOOL_INTERACTIVE_FEEDBACK,
                description=INTERACTIVE_FEEDBACK_DESCRIPTION,
                inputSchema={
                    "type": "object",
                    "properties": {
                        "project_directory": {
                            "type": "string",
                            "description": "Absolute project directory path; selects which editor window answers",
                        },
                        "summary": {
                            "type": "string",
                            "description": "Summary of AI work completed for user review (Markdown)",
                            "default": DEFAULT_SUMMARY,
                        },
                        "timeout": {
                            "type": "number",
                            "description": "Timeout in seconds for waiting user feedback (default: 300 seconds)",
                            "default": 300,
                        },
                    },
                    "required": ["project_directory"],
                },
            ),
            types.Tool(
                name=TOOL_SYSTEM_INFO,
                description="Get system environment information",
                inputSchema={"type": "object", "properties": {}},
            ),
        ]

    async def call(self, name: str, arguments: Optional[dict[str, Any]]) -> list[ContentItem]:
        """Dispatch a tool call by name."""
        if name == TOOL_INTERACTIVE_FEEDBACK:
            return await self.interactive_feedback(arguments or {})
        if name == TOOL_SYSTEM_INFO:
            return self.get_system_info()
        log.warning("unknown_tool_called", name=name)
        return [error_item(f"Unknown tool: {name}")]

    def _parse_arguments(self, arguments: dict[str, Any]) -> tuple[str, str, float]:
        """Validate interactive_feedback arguments.

        Raises:
            InvalidParamsError: If project_directory is missing or not a string
        """
        project_directory = arguments.get("project_directory")
        if not isinstance(project_directory, str) or not project_directory.strip():
            raise InvalidParamsError("project_directory is required")

        summary = arguments.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            summary = DEFAULT_SUMMARY

        requested = arguments.get("timeout")
        if isinstance(requested, bool) or not isinstance(requested, (int, float)):
            requested = None
        timeout = self.config.effective_timeout(requested)

        return project_directory.strip(), summary, timeout

    async def interactive_feedback(self, arguments: dict[str, Any]) -> list[ContentItem]:
        """Ask the human and wait for the answer."""
        try:
            project_directory, summary, timeout = self._parse_arguments(arguments)
        except InvalidParamsError as e:
            log.info("interactive_feedback_invalid_params", error=str(e))
            return [error_item(str(e))]

        try:
            response = await self.broker.request_feedback(project_directory, summary, timeout)
        except Exception as e:
            log.error("interactive_feedback_failed", error=str(e), exc_info=True)
            return [error_item(f"Error collecting feedback: {e}")]

        if response is None:
            text = AUTO_RETRY_TEXT if self.config.auto_retry else TIMEOUT_TEXT
            return [text_item(text)]

        return encode_feedback(response)

    def system_info(self) -> dict[str, Any]:
        return {
            "platform": sys.platform,
            "system": platform.system(),
            "pythonVersion": platform.python_version(),
            "arch": platform.machine(),
            "hostname": socket.gethostname(),
            "interfaceType": "Editor Extension",
            "serverVersion": __version__,
            "mcpServerPort": self.broker.port,
            "pid": self.broker.pid,
            "startTime": self.broker.start_time,
            "ownerWorkspace": self.broker.owner_workspace,
        }

    def get_system_info(self) -> list[ContentItem]:
        """Static process/platform info plus the bound port."""
        return [text_item(json.dumps(self.system_info(), indent=2))]


def build_mcp_server(tools: FeedbackTools) -> Server:
    """Create the MCP server that exposes the tools over stdio."""
    server = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return tools.list_tools()

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[ContentItem]:
        return await tools.call(name, arguments)

    return server
