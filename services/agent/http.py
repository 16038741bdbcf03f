"""
HTTP agent runtime client.

Posts the turn to an ``/invoke`` endpoint and reads ``output`` (text) and an
optional ``images`` list from the JSON reply.
"""

import logging
from typing import Optional

import httpx

from .base import AgentDispatcher, AgentReply, AgentRequest

logger = logging.getLogger(__name__)


class HttpAgentDispatcher(AgentDispatcher):

    def __init__(self, invoke_url: str, client: Optional[httpx.AsyncClient] = None, timeout_s: float = 120.0):
        """
        Args:
            invoke_url: Full URL of the agent's invoke endpoint
            client: Shared AsyncClient; a private one is created per call if omitted
            timeout_s: Default per-request timeout
        """
        self.invoke_url = invoke_url
        self.client = client
        self.timeout_s = timeout_s

    async def _post(self, payload: dict, timeout_s: float) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(self.invoke_url, json=payload, timeout=timeout_s)
        async with httpx.AsyncClient() as client:
            return await client.post(self.invoke_url, json=payload, timeout=timeout_s)

    async def dispatch(self, request: AgentRequest) -> AgentReply:
        base_metadata = {"backend": "http_agent", "agent_id": request.agent_id, "trace_id": request.trace_id}
        payload = {
            "input": request.text,
            "conversation_id": request.conversation_id,
            "agent_id": request.agent_id,
            "images": request.image_paths,
        }

        try:
            response = await self._post(payload, request.timeout_s or self.timeout_s)
        except httpx.TimeoutException:
            logger.error("Agent invoke timed out", extra={"agent_id": request.agent_id})
            return AgentReply(status="recoverable_error", error_type="timeout", metadata=base_metadata)
        except httpx.RequestError as e:
            logger.error(f"Agent invoke failed: {e}", extra={"agent_id": request.agent_id})
            return AgentReply(status="fatal_error", error_type="backend_unavailable", metadata=base_metadata)

        if response.status_code != 200:
            logger.error(
                f"Agent (/invoke) returned error: {response.status_code}",
                extra={"status_code": response.status_code, "agent_id": request.agent_id},
            )
            return AgentReply(status="recoverable_error", error_type="backend_error", metadata=base_metadata)

        try:
            result = response.json()
        except ValueError:
            return AgentReply(status="recoverable_error", error_type="invalid_output", metadata=base_metadata)
        if not isinstance(result, dict):
            return AgentReply(status="recoverable_error", error_type="invalid_output", metadata=base_metadata)

        images = result.get("images") or []
        return AgentReply(
            status="success",
            text=result.get("output") or None,
            image_urls=[str(i) for i in images if i] if isinstance(images, list) else [],
            metadata=base_metadata,
        )
