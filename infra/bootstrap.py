"""
Runtime initialization and bootstrap.

Builds the WebhookRuntime: every piece of shared state the webhook needs,
created once at startup and stored on ``app.state.runtime``. Nothing here is
a module-level singleton, so tests build as many runtimes as they like.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import httpx

from access.pairing import PairingResolver
from config import Config
from services.agent import AgentDispatcher, HttpAgentDispatcher, NoOpAgentDispatcher
from services.allowlist import AllowListSource, JsonFileAllowListSource, PairedSubjectsAllowListSource
from services.approval import CommandPairingApprover, LocalPairingApprover, PairingApprover
from state.ai_assistant import AiAssistantStateStore
from state.menu_payload import MenuPayloadStore
from state.opt_out import OptOutStore
from state.pairing_codes import PairedSubjectStore, PairingCodeStore
from state.pending_images import PendingImageStore
from transport.wechat_mp.dispatcher import OutboundDispatcher
from transport.wechat_mp.handler import MessageHandler, ReplyTexts
from transport.wechat_mp.routing import WebhookTargetRegistry
from transport.wechat_mp.schemas import InboundEvent, WechatMpAccount
from transport.wechat_mp.sender import ChannelApiError, WechatMpClient

from .config import ChannelConfig, get_channel_config, resolve_all_accounts
from .dedup import MessageDeduplicator
from .rate_limit import FixedWindowRateLimiter
from .safe_fetch import Resolver, SafeFetcher
from .storage import ensure_dir

logger = logging.getLogger(__name__)


@dataclass
class RuntimeSettings:
    """Process-wide settings; defaults come from Config."""

    data_dir: Path = field(default_factory=lambda: Path(Config.WEMP_DATA_DIR))
    agent_paired: str = Config.WEMP_AGENT_PAIRED
    agent_unpaired: str = Config.WEMP_AGENT_UNPAIRED
    agent_invoke_url: str = Config.AGENT_INVOKE_URL
    agent_timeout_s: float = Config.AGENT_TIMEOUT_S
    debounce_ms: int = Config.WEMP_DEBOUNCE_MS
    pairing_api_token: str = Config.WEMP_PAIRING_API_TOKEN
    pairing_approval: str = Config.WEMP_PAIRING_APPROVAL
    allowlist_file: str = Config.WEMP_ALLOWLIST_FILE
    ai_default_enabled: bool = Config.WEMP_AI_DEFAULT_ENABLED
    fetch_timeout_s: float = Config.FETCH_TIMEOUT_S
    max_image_bytes: int = Config.MAX_IMAGE_BYTES
    prewarm_tokens: bool = Config.WEMP_PREWARM_TOKENS

    @property
    def images_dir(self) -> Path:
        return self.data_dir / "images"


class WebhookRuntime:
    """
    Owns the shared state of the gateway.

    Collaborators (agent, allow-list, approver, DNS resolver, HTTP transport)
    can be injected; anything omitted is built from settings.
    """

    def __init__(
        self,
        settings: Optional[RuntimeSettings] = None,
        channel_config: Optional[ChannelConfig] = None,
        *,
        agent: Optional[AgentDispatcher] = None,
        allow_list: Optional[AllowListSource] = None,
        approver: Optional[PairingApprover] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        dns_resolver: Optional[Resolver] = None,
    ):
        self.settings = settings or RuntimeSettings()
        self.channel_config = channel_config or ChannelConfig()
        data_dir = ensure_dir(self.settings.data_dir)
        ensure_dir(self.settings.images_dir)

        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient()

        # Stores
        self.opt_out = OptOutStore(data_dir)
        self.ai_state = AiAssistantStateStore(data_dir, default_enabled=self.settings.ai_default_enabled)
        self.menu_payloads = MenuPayloadStore(data_dir)
        self.pairing_codes = PairingCodeStore(data_dir)
        self.paired_subjects = PairedSubjectStore(data_dir)
        self.pending_images = PendingImageStore()

        # Access control
        self.allow_list = allow_list or self._build_allow_list()
        self.approver = approver or self._build_approver()
        self.resolver = PairingResolver(self.allow_list, self.opt_out, self.approver)

        # Transport
        self.registry = WebhookTargetRegistry()
        self.deduplicator = MessageDeduplicator()
        self.pairing_rate_limiter = FixedWindowRateLimiter()
        self.fetcher = SafeFetcher(
            self.http_client,
            timeout_s=self.settings.fetch_timeout_s,
            max_bytes=self.settings.max_image_bytes,
            resolver=dns_resolver,
        )
        self.sender = WechatMpClient(self.http_client, self.fetcher, self.settings.images_dir)

        self.agent = agent or self._build_agent()
        cfg = self.channel_config
        self.dispatcher = OutboundDispatcher(
            self.sender,
            self.agent,
            self.resolver,
            agent_paired=cfg.agent_paired or self.settings.agent_paired,
            agent_unpaired=cfg.agent_unpaired or self.settings.agent_unpaired,
            agent_timeout_s=self.settings.agent_timeout_s,
        )
        self.handler = MessageHandler(
            sender=self.sender,
            dispatcher=self.dispatcher,
            resolver=self.resolver,
            deduplicator=self.deduplicator,
            ai_state=self.ai_state,
            menu_payloads=self.menu_payloads,
            pending_images=self.pending_images,
            texts=ReplyTexts.from_channel_config(cfg),
        )
        self.accounts: List[WechatMpAccount] = []
        self._unregister: List[Callable[[], None]] = []

    # ========================================================================
    # COLLABORATOR FACTORIES
    # ========================================================================

    def _build_allow_list(self) -> AllowListSource:
        if self.settings.allowlist_file:
            return JsonFileAllowListSource(self.settings.allowlist_file)
        return PairedSubjectsAllowListSource(self.paired_subjects)

    def _build_approver(self) -> PairingApprover:
        if self.settings.pairing_approval == "command":
            return CommandPairingApprover(self.paired_subjects)
        return LocalPairingApprover(self.pairing_codes, self.paired_subjects)

    def _build_agent(self) -> AgentDispatcher:
        if self.settings.agent_invoke_url:
            return HttpAgentDispatcher(
                self.settings.agent_invoke_url, client=self.http_client, timeout_s=self.settings.agent_timeout_s
            )
        logger.warning("AGENT_INVOKE_URL not set; inbound messages will not be answered")
        return NoOpAgentDispatcher()

    # ========================================================================
    # ACCOUNTS
    # ========================================================================

    def register_account(self, account: WechatMpAccount) -> None:
        self.accounts.append(account)
        self._unregister.append(self.registry.register(account.webhook_path, account, self.channel_config))

    def register_accounts(self, accounts: List[WechatMpAccount]) -> int:
        """Register every enabled and configured account. Returns how many were registered."""
        count = 0
        for account in accounts:
            if not account.enabled:
                logger.info(f"[wemp:{account.account_id}] Account disabled; not registering")
                continue
            if not account.configured:
                logger.error(f"[wemp:{account.account_id}] Missing required config (appId, appSecret, token)")
                continue
            self.register_account(account)
            count += 1
        return count

    def _apply_channel_defaults(self, account: WechatMpAccount) -> WechatMpAccount:
        updates = {}
        if not account.pairing_api_token and self.settings.pairing_api_token:
            updates["pairing_api_token"] = self.settings.pairing_api_token
        if not account.debounce_ms and self.settings.debounce_ms:
            updates["debounce_ms"] = self.settings.debounce_ms
        return account.model_copy(update=updates) if updates else account

    async def start(self) -> None:
        accounts = [self._apply_channel_defaults(a) for a in resolve_all_accounts(self.channel_config)]
        registered = self.register_accounts(accounts)
        logger.info(f"[wemp] {registered} account(s) registered on {', '.join(self.registry.paths()) or 'no paths'}")

        if self.settings.prewarm_tokens:
            for account in self.accounts:
                try:
                    await self.sender.get_access_token(account)
                except ChannelApiError as e:
                    logger.warning(f"[wemp:{account.account_id}] Failed to get access token: {e}")

    async def aclose(self) -> None:
        await self.handler.flush_pending()
        for unregister in self._unregister:
            unregister()
        self._unregister.clear()
        if self._owns_client:
            await self.http_client.aclose()

    # ========================================================================
    # POST-RESPONSE PROCESSING
    # ========================================================================

    async def process_event(self, account: WechatMpAccount, event: InboundEvent) -> None:
        """Background task body; failures are logged, never raised."""
        try:
            await self.handler.handle(account, event)
        except Exception as e:
            logger.error(f"[wemp:{account.account_id}] Failed to process message: {e}", exc_info=True)

    def __repr__(self) -> str:
        return (
            f"WebhookRuntime(accounts={[a.account_id for a in self.accounts]}, "
            f"paths={self.registry.paths()}, approver={type(self.approver).__name__}, "
            f"agent={type(self.agent).__name__})"
        )


async def bootstrap_runtime(
    settings: Optional[RuntimeSettings] = None,
    channel_config: Optional[ChannelConfig] = None,
    **collaborators,
) -> WebhookRuntime:
    """
    Build and start a runtime.

    Args:
        settings: Optional settings (defaults from Config)
        channel_config: Optional channel config (defaults to WEMP_CONFIG_FILE)
        **collaborators: Injected collaborators, see WebhookRuntime

    Returns:
        Started WebhookRuntime with all enabled accounts registered
    """
    runtime = WebhookRuntime(settings, channel_config or get_channel_config(), **collaborators)
    await runtime.start()
    return runtime
