"""Poller: discovers brokers from an editor window and relays answers back.

Usage:
    feedback-relay watch       # terminal poller for the current directory
"""

from feedback_relay.poller.seen import SeenRequests
from feedback_relay.poller.client import BrokerClient, SubmitResult
from feedback_relay.poller.poller import DiscoveryPoller, EditorHost
from feedback_relay.poller.console import ConsoleHost, ConsoleSession

__all__ = [
    "SeenRequests",
    "BrokerClient",
    "SubmitResult",
    "DiscoveryPoller",
    "EditorHost",
    "ConsoleHost",
    "ConsoleSession",
]
