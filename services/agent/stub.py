"""
Stub agent runtime for testing and offline development.

Deterministic, fast, and never fails silently.
"""

from typing import List

from .base import AgentDispatcher, AgentReply, AgentRequest


class StubAgentDispatcher(AgentDispatcher):
    """
    Deterministic fake agent for testing and CI.

    Echoes the input and remembers every request it saw.
    """

    def __init__(self, prefix: str = "Echo: "):
        self.prefix = prefix
        self.requests: List[AgentRequest] = []

    async def dispatch(self, request: AgentRequest) -> AgentReply:
        self.requests.append(request)
        if not request.text.strip() and not request.image_paths:
            return AgentReply(
                status="recoverable_error",
                error_type="invalid_input",
                metadata={"backend": "stub_agent", "trace_id": request.trace_id},
            )
        return AgentReply(
            status="success",
            text=f"{self.prefix}{request.text}",
            metadata={
                "backend": "stub_agent",
                "agent_id": request.agent_id,
                "trace_id": request.trace_id,
            },
        )


class NoOpAgentDispatcher(AgentDispatcher):
    """Agent that always fails gracefully (for disabled mode)."""

    async def dispatch(self, request: AgentRequest) -> AgentReply:
        return AgentReply(
            status="fatal_error",
            error_type="backend_unavailable",
            metadata={
                "backend": "noop_agent",
                "trace_id": request.trace_id,
                "reason": "Agent runtime disabled",
            },
        )
