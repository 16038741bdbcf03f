"""
Inbound Message Handler

Runs after the webhook has answered "success". One verified event in, zero or
more channel API calls out.

Pipeline:
1. Dedup (provider retries)
2. Events: subscribe welcome, unsubscribe, menu clicks
3. Images: download and park until the next text
4. Voice with recognition is treated as text
5. Special commands (pairing, status, AI toggle)
6. AI assistant gate
7. Debounce (plain text only)
8. Dispatch
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from access.pairing import PairingResolver
from infra.debounce import DebounceItem, DebounceRegistry
from infra.dedup import MessageDeduplicator, build_dedup_key
from infra.safe_fetch import SafeFetchError
from state.ai_assistant import AiAssistantStateStore
from state.menu_payload import MenuPayloadStore, payload_id_from_event_key
from state.pending_images import PendingImageStore
from state.subject import make_subject_id

from .commands import SpecialCommand, is_command, match_special_command
from .dispatcher import OutboundDispatcher
from .schemas import InboundEvent, WechatMpAccount
from .sender import ChannelApiError, WechatMpClient

logger = logging.getLogger(__name__)


# Click keys of the built-in menu
MENU_COMMAND_KEYS = {
    "CMD_PAIR": SpecialCommand.PAIR,
    "CMD_UNPAIR": SpecialCommand.UNPAIR,
    "CMD_STATUS": SpecialCommand.STATUS,
    "CMD_AI_ON": SpecialCommand.AI_ON,
    "CMD_AI_OFF": SpecialCommand.AI_OFF,
}
MENU_SLASH_KEYS = {
    "CMD_NEW": "/new",
    "CMD_CLEAR": "/clear",
    "CMD_RESET": "/reset",
    "CMD_HELP": "/help",
    "CMD_UNDO": "/undo",
    "CMD_USAGE": "/usage",
    "CMD_STOP": "/stop",
}


@dataclass
class ReplyTexts:
    """User-facing canned replies. Channel config may override each one."""

    welcome: str = (
        "欢迎关注！我是 AI 助手 🌊\n\n"
        "你可以直接发消息和我聊天。\n\n"
        "💡 小提示：\n"
        "• 发送「配对」绑定账号，解锁完整功能\n"
        "• 发送「状态」查看当前模式\n"
        "• 发送「解除配对」取消绑定"
    )
    welcome_paired: str = "欢迎回来！🌊 你已经配对过了，可以直接开始对话。"
    ai_enabled: str = "AI 助手已开启 ✅"
    ai_disabled: str = "AI 助手已关闭。发送「开启AI」可以重新开启。"
    ai_disabled_hint: str = "AI 助手当前处于关闭状态，发送「开启AI」即可开启。"

    @classmethod
    def from_channel_config(cls, cfg) -> "ReplyTexts":
        texts = cls()
        if cfg is None:
            return texts
        for attr, value in (
            ("welcome", cfg.welcome_message),
            ("ai_enabled", cfg.ai_enabled_message),
            ("ai_disabled", cfg.ai_disabled_message),
            ("ai_disabled_hint", cfg.ai_disabled_hint),
        ):
            if value is not None:
                setattr(texts, attr, value)
        return texts


@dataclass
class InboundTurn:
    """What a debounced batch needs to be dispatched later."""

    account: WechatMpAccount
    event: InboundEvent


class MessageHandler:

    def __init__(
        self,
        sender: WechatMpClient,
        dispatcher: OutboundDispatcher,
        resolver: PairingResolver,
        deduplicator: MessageDeduplicator,
        ai_state: AiAssistantStateStore,
        menu_payloads: MenuPayloadStore,
        pending_images: PendingImageStore,
        texts: Optional[ReplyTexts] = None,
    ):
        self.sender = sender
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.deduplicator = deduplicator
        self.ai_state = ai_state
        self.menu_payloads = menu_payloads
        self.pending_images = pending_images
        self.texts = texts or ReplyTexts()
        self.debounce = DebounceRegistry(self._flush_debounced)

    # ========================================================================
    # ENTRY POINT
    # ========================================================================

    async def handle(self, account: WechatMpAccount, event: InboundEvent) -> None:
        key = build_dedup_key(account.account_id, event.open_id, event.msg_id, event.create_time)
        if not self.deduplicator.check_and_mark(key):
            logger.debug(f"[wemp:{account.account_id}] Duplicate delivery dropped: {key}")
            return

        logger.info(
            f"[wemp:{account.account_id}] Message received",
            extra={"msg_type": event.msg_type, "open_id": event.open_id},
        )

        if event.msg_type == "event":
            await self._handle_event(account, event)
        elif event.msg_type == "image":
            await self._handle_image(account, event)
        elif event.msg_type == "text" and event.content:
            await self._handle_text(account, event, event.content)
        elif event.msg_type == "voice" and event.recognition:
            await self._handle_text(account, event, event.recognition)
        else:
            logger.info(f"[wemp:{account.account_id}] Unsupported message type: {event.msg_type}")

    async def _reply(self, account: WechatMpAccount, open_id: str, text: str) -> None:
        if not text:
            return
        try:
            await self.sender.send_text(account, open_id, text)
        except ChannelApiError as e:
            logger.error(f"[wemp:{account.account_id}] Failed to send reply: {e}")

    # ========================================================================
    # EVENTS
    # ========================================================================

    async def _handle_event(self, account: WechatMpAccount, event: InboundEvent) -> None:
        name = (event.event or "").lower()
        open_id = event.open_id

        if name == "subscribe":
            logger.info(f"[wemp:{account.account_id}] User subscribed: {open_id}")
            paired = await self.resolver.is_paired(account.account_id, open_id)
            await self._reply(account, open_id, self.texts.welcome_paired if paired else self.texts.welcome)
        elif name == "unsubscribe":
            logger.info(f"[wemp:{account.account_id}] User unsubscribed: {open_id}")
        elif name == "click":
            await self._handle_click(account, event)
        else:
            logger.debug(f"[wemp:{account.account_id}] Unhandled event: {event.event}")

    async def _handle_click(self, account: WechatMpAccount, event: InboundEvent) -> None:
        key = event.event_key or ""
        open_id = event.open_id

        command = MENU_COMMAND_KEYS.get(key)
        if command is not None:
            await self._handle_command(account, open_id, command)
            return

        slash = MENU_SLASH_KEYS.get(key)
        if slash is not None:
            await self._handle_text(account, event, slash)
            return

        payload_id = payload_id_from_event_key(key)
        payload = self.menu_payloads.get(account.account_id, payload_id) if payload_id else None
        if payload is None:
            logger.info(f"[wemp:{account.account_id}] Unknown menu key: {key}")
            return
        await self._send_menu_payload(account, open_id, payload)

    async def _send_menu_payload(self, account: WechatMpAccount, open_id: str, payload: dict) -> None:
        kind = payload.get("kind")
        try:
            if kind == "text":
                await self.sender.send_text(account, open_id, payload.get("text", ""))
            elif kind == "news":
                article = {"title": payload.get("title", ""), "description": "", "url": payload.get("contentUrl", "")}
                await self.sender.send_news(account, open_id, [article])
            elif kind == "image":
                await self.sender.send_image(account, open_id, payload["mediaId"])
            elif kind == "voice":
                await self.sender.send_custom_message(
                    account, {"touser": open_id, "msgtype": "voice", "voice": {"media_id": payload["mediaId"]}}
                )
            else:
                fallback = payload.get("value") or payload.get("url")
                if fallback:
                    await self.sender.send_text(account, open_id, fallback)
                else:
                    logger.info(f"[wemp:{account.account_id}] Menu payload kind {kind} has nothing to send")
        except KeyError as e:
            logger.error(f"[wemp:{account.account_id}] Menu payload missing field {e}")
        except ChannelApiError as e:
            logger.error(f"[wemp:{account.account_id}] Failed to send menu payload: {e}")

    # ========================================================================
    # IMAGES
    # ========================================================================

    async def _handle_image(self, account: WechatMpAccount, event: InboundEvent) -> None:
        if not event.pic_url:
            logger.info(f"[wemp:{account.account_id}] Image message without PicUrl")
            return
        try:
            path = await self.sender.download_image_to_file(event.pic_url)
        except (SafeFetchError, ChannelApiError, OSError) as e:
            logger.warning(f"[wemp:{account.account_id}] Image download failed: {e}")
            return
        self.pending_images.remember(account.account_id, event.open_id, str(path))
        logger.info(f"[wemp:{account.account_id}] Image stored as pending for {event.open_id}")

    # ========================================================================
    # TEXT
    # ========================================================================

    async def _handle_text(self, account: WechatMpAccount, event: InboundEvent, text: str) -> None:
        trimmed = text.strip()
        if not trimmed:
            return
        open_id = event.open_id
        # consumed by the next text whether or not it is dispatched
        image = self.pending_images.take(account.account_id, open_id)

        command = match_special_command(trimmed)
        if command is not None:
            await self._handle_command(account, open_id, command)
            return

        if not self.ai_state.is_enabled(account.account_id, open_id):
            logger.info(f"[wemp:{account.account_id}] AI assistant disabled for {open_id}; not dispatching")
            await self._reply(account, open_id, self.texts.ai_disabled_hint)
            return

        image_paths: List[str] = [image.file_path] if image else []

        subject = make_subject_id(account.account_id, open_id)
        coordinator = self.debounce.get(account.debounce_ms)
        if coordinator is not None:
            if not image_paths and not is_command(trimmed):
                coordinator.enqueue(subject, DebounceItem(text=trimmed, carrier=InboundTurn(account, event)))
                return
            # Anything bypassing the queue goes after what is already queued.
            await coordinator.flush(subject)

        await self.dispatcher.dispatch(account, open_id, trimmed, image_paths)

    async def _flush_debounced(self, key: str, combined: str, item: DebounceItem) -> None:
        turn: InboundTurn = item.carrier
        await self.dispatcher.dispatch(turn.account, turn.event.open_id, combined)

    async def flush_pending(self) -> None:
        """Dispatch everything still queued (shutdown path)."""
        await self.debounce.flush_all()

    # ========================================================================
    # COMMANDS
    # ========================================================================

    async def _handle_command(self, account: WechatMpAccount, open_id: str, command: SpecialCommand) -> None:
        account_id = account.account_id
        logger.info(f"[wemp:{account_id}] Command {command.value} from {open_id}")

        if command is SpecialCommand.PAIR:
            await self._command_pair(account, open_id)
        elif command is SpecialCommand.UNPAIR:
            if await self.resolver.is_paired(account_id, open_id):
                await self.resolver.set_opt_out(account_id, open_id, True)
                await self._reply(
                    account, open_id,
                    "已解除配对 ✅\n\n你现在使用的是客服模式，功能有所限制。发送「配对」可以重新绑定。",
                )
            else:
                await self._reply(account, open_id, "你还没有配对过哦，发送「配对」开始绑定。")
        elif command is SpecialCommand.STATUS:
            await self._reply(account, open_id, await self._status_text(account_id, open_id))
        elif command is SpecialCommand.AI_ON:
            await self.ai_state.set_enabled(account_id, open_id, True)
            await self._reply(account, open_id, self.texts.ai_enabled)
        elif command is SpecialCommand.AI_OFF:
            await self.ai_state.set_enabled(account_id, open_id, False)
            await self._reply(account, open_id, self.texts.ai_disabled)

    async def _command_pair(self, account: WechatMpAccount, open_id: str) -> None:
        account_id = account.account_id
        if await self.resolver.is_allow_listed(account_id, open_id):
            if self.resolver.opt_out.is_opted_out(account_id, open_id):
                await self.resolver.set_opt_out(account_id, open_id, False)
                await self._reply(account, open_id, "已恢复配对 ✅\n\n你现在可以使用完整的 AI 助手功能了。")
            else:
                await self._reply(account, open_id, "你已经配对过了 ✅\n\n发送「解除配对」可以取消绑定。")
            return

        code = await self.resolver.request_pairing(account_id, open_id)
        if code is None:
            await self._reply(account, open_id, "配对服务暂时不可用，请稍后再试。")
            return
        await self._reply(
            account, open_id,
            f"🔗 配对码: {code.code}\n\n"
            f"请在 5 分钟内将配对码交给管理员完成配对。\n\n"
            f"配对后，你将获得完整的 AI 助手功能。",
        )

    async def _status_text(self, account_id: str, open_id: str) -> str:
        paired = await self.resolver.is_paired(account_id, open_id)
        mode = "🔓 完整模式（个人助理）" if paired else "🔒 客服模式"
        ai = "开启" if self.ai_state.is_enabled(account_id, open_id) else "关闭"
        hint = "查看配对信息" if paired else "绑定账号获取完整功能"
        return (
            f"当前状态: {mode}\n"
            f"Agent: {self.dispatcher.agent_for(paired)}\n"
            f"AI 助手: {ai}\n\n"
            f"发送「配对」可以{hint}。"
        )
