"""
Outbound Dispatcher Tests

Sender and agent are mocked; the resolver is real.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from access.pairing import PairingResolver
from services.agent import AgentReply
from services.allowlist import StaticAllowListSource
from state.opt_out import OptOutStore
from transport.wechat_mp.dispatcher import OutboundDispatcher
from transport.wechat_mp.sender import ChannelApiError


@pytest.fixture
def sender():
    mock = MagicMock()
    mock.send_typing = AsyncMock(return_value=True)
    mock.send_text = AsyncMock(return_value=1)
    mock.send_image_by_url = AsyncMock()
    return mock


def make_dispatcher(data_dir, sender, reply, allow=(), **kwargs):
    agent = MagicMock()
    agent.dispatch = AsyncMock(return_value=reply)
    resolver = PairingResolver(StaticAllowListSource(allow), OptOutStore(data_dir))
    return OutboundDispatcher(sender, agent, resolver, **kwargs), agent


class TestOutboundDispatcher:

    @pytest.mark.asyncio
    async def test_request_carries_subject_and_timeout(self, data_dir, sender, account):
        dispatcher, agent = make_dispatcher(
            data_dir, sender, AgentReply(status="success", text="ok"), allow=["default:oA"], agent_timeout_s=30
        )

        await dispatcher.dispatch(account, "oA", "hi", image_paths=["/img/a.jpg"], trace_id="t-1")

        request = agent.dispatch.await_args.args[0]
        assert request.agent_id == "main"
        assert request.paired is True
        assert request.conversation_id == "default:oA"
        assert request.image_paths == ["/img/a.jpg"]
        assert request.timeout_s == 30
        assert request.trace_id == "t-1"
        sender.send_typing.assert_awaited_once_with(account, "oA")
        sender.send_text.assert_awaited_once_with(account, "oA", "ok")

    @pytest.mark.asyncio
    async def test_custom_agent_ids(self, data_dir, sender, account):
        dispatcher, agent = make_dispatcher(
            data_dir, sender, AgentReply(status="success", text="ok"), agent_unpaired="support"
        )
        await dispatcher.dispatch(account, "oB", "hi")
        assert agent.dispatch.await_args.args[0].agent_id == "support"

    @pytest.mark.asyncio
    async def test_agent_failure_sends_nothing(self, data_dir, sender, account):
        dispatcher, _ = make_dispatcher(
            data_dir, sender, AgentReply(status="recoverable_error", error_type="timeout")
        )

        reply = await dispatcher.dispatch(account, "oA", "hi")

        assert reply.status == "recoverable_error"
        sender.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_text_does_not_stop_images(self, data_dir, sender, account):
        sender.send_text.side_effect = ChannelApiError("45015 - response out of time limit", errcode=45015)
        reply = AgentReply(status="success", text="看图", image_urls=["https://img.example.com/a.png", "data:image/png;base64,AA=="])
        dispatcher, _ = make_dispatcher(data_dir, sender, reply)

        await dispatcher.dispatch(account, "oA", "hi")

        assert sender.send_image_by_url.await_count == 2

    @pytest.mark.asyncio
    async def test_blank_reply_text_skipped(self, data_dir, sender, account):
        dispatcher, _ = make_dispatcher(data_dir, sender, AgentReply(status="success", text="  "))
        await dispatcher.dispatch(account, "oA", "hi")
        sender.send_text.assert_not_awaited()
