"""Feedback Relay - ask the human from inside an AI tool call.

A broker process serves `interactive_feedback` tool calls over stdio and
exposes the pending request on a loopback HTTP side-channel; a poller
running beside each editor window discovers brokers, shows their requests
and carries the human's answer back.
"""

__version__ = "0.1.0"

from feedback_relay.config import RelayConfig
from feedback_relay.protocol import FeedbackRequest, FeedbackResponse, ImageAttachment

__all__ = [
    "__version__",
    "RelayConfig",
    "FeedbackRequest",
    "FeedbackResponse",
    "ImageAttachment",
]
