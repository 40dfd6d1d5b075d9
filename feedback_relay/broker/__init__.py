"""Broker: one pending feedback request, a stdio tool surface and a loopback HTTP side-channel.

Usage:
    feedback-relay broker      # run as an MCP stdio server
"""

from feedback_relay.broker.rendezvous import FeedbackBroker
from feedback_relay.broker.http import create_app
from feedback_relay.broker.tools import FeedbackTools, build_mcp_server
from feedback_relay.broker.process import BrokerProcess, bind_loopback, run_broker

__all__ = [
    "FeedbackBroker",
    "create_app",
    "FeedbackTools",
    "build_mcp_server",
    "BrokerProcess",
    "bind_loopback",
    "run_broker",
]
