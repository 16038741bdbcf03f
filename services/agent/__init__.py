"""
Agent runtime service exports.

Clean interface for the outbound dispatcher to import agent components.
"""

from .base import AgentDispatcher, AgentReply, AgentRequest, AgentStatus
from .http import HttpAgentDispatcher
from .stub import NoOpAgentDispatcher, StubAgentDispatcher

__all__ = [
    "AgentDispatcher",
    "AgentReply",
    "AgentRequest",
    "AgentStatus",
    "HttpAgentDispatcher",
    "NoOpAgentDispatcher",
    "StubAgentDispatcher",
]
