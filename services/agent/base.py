"""
Agent runtime abstract interface.

Role: hand one aggregated user turn to the agent runtime and return its reply.

Rules:
- The gateway never generates replies itself
- The agent never sees transport metadata beyond the conversation id
- All failures are explicit and typed (status + error_type), never raised
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


AgentStatus = Literal["success", "recoverable_error", "fatal_error"]


@dataclass
class AgentRequest:
    """One user turn for the agent runtime."""

    agent_id: str                  # "main" for paired users, the customer-service agent otherwise
    conversation_id: str           # subject id, accountId:openId
    text: str
    account_id: str
    open_id: str
    paired: bool = False
    image_paths: List[str] = field(default_factory=list)
    timeout_s: Optional[float] = 120
    trace_id: Optional[str] = None


@dataclass
class AgentReply:
    """Agent runtime reply."""

    status: AgentStatus
    text: Optional[str] = None
    image_urls: List[str] = field(default_factory=list)  # data:, http(s) or local paths
    error_type: Optional[str] = None  # timeout | invalid_output | backend_unavailable
    metadata: Optional[Dict[str, Any]] = None


class AgentDispatcher(ABC):
    """
    Abstract agent boundary.
    The outbound dispatcher depends ONLY on this interface.
    """

    @abstractmethod
    async def dispatch(self, request: AgentRequest) -> AgentReply:
        """
        Run one turn.

        Args:
            request: AgentRequest with the user's text and attachments

        Returns:
            AgentReply with text/images or an explicit error status
        """
        raise NotImplementedError
