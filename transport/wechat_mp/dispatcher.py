"""
Outbound Dispatcher

Routes one user turn to the right agent and relays the reply.
Agent choice is the only decision made here: paired subjects get the personal
assistant, everyone else the customer-service agent.
"""

import logging
from typing import Optional, Sequence

from access.pairing import PairingResolver
from services.agent import AgentDispatcher, AgentReply, AgentRequest
from state.subject import make_subject_id

from .schemas import WechatMpAccount
from .sender import ChannelApiError, WechatMpClient

logger = logging.getLogger(__name__)


class OutboundDispatcher:

    def __init__(
        self,
        sender: WechatMpClient,
        agent: AgentDispatcher,
        resolver: PairingResolver,
        agent_paired: str = "main",
        agent_unpaired: str = "wemp-cs",
        agent_timeout_s: Optional[float] = None,
    ):
        self.sender = sender
        self.agent = agent
        self.resolver = resolver
        self.agent_paired = agent_paired
        self.agent_unpaired = agent_unpaired
        self.agent_timeout_s = agent_timeout_s

    def agent_for(self, paired: bool) -> str:
        return self.agent_paired if paired else self.agent_unpaired

    async def dispatch(
        self,
        account: WechatMpAccount,
        open_id: str,
        text: str,
        image_paths: Sequence[str] = (),
        trace_id: Optional[str] = None,
    ) -> AgentReply:
        """
        Run one turn end to end.

        Failures are logged and reported in the returned AgentReply; nothing
        propagates to the webhook caller.
        """
        paired = await self.resolver.is_paired(account.account_id, open_id)
        agent_id = self.agent_for(paired)
        logger.info(
            f"[wemp:{account.account_id}] Dispatching to agent {agent_id}",
            extra={"open_id": open_id, "paired": paired, "images": len(image_paths)},
        )

        await self.sender.send_typing(account, open_id)

        request = AgentRequest(
            agent_id=agent_id,
            conversation_id=make_subject_id(account.account_id, open_id),
            text=text,
            account_id=account.account_id,
            open_id=open_id,
            paired=paired,
            image_paths=list(image_paths),
            trace_id=trace_id,
        )
        if self.agent_timeout_s is not None:
            request.timeout_s = self.agent_timeout_s

        reply = await self.agent.dispatch(request)
        if reply.status != "success":
            logger.warning(
                f"[wemp:{account.account_id}] Agent returned {reply.status}",
                extra={"error_type": reply.error_type, "agent_id": agent_id},
            )
            return reply

        await self.deliver(account, open_id, reply)
        return reply

    async def deliver(self, account: WechatMpAccount, open_id: str, reply: AgentReply) -> None:
        """Send reply text, then each image. One failed part does not stop the rest."""
        if reply.text and reply.text.strip():
            try:
                await self.sender.send_text(account, open_id, reply.text)
            except ChannelApiError as e:
                logger.error(f"[wemp:{account.account_id}] Failed to send reply text: {e}")

        for source in reply.image_urls:
            try:
                await self.sender.send_image_by_url(account, open_id, source)
            except ChannelApiError as e:
                logger.error(f"[wemp:{account.account_id}] Failed to send reply image: {e}")
