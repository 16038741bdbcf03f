"""
Channel configuration.

Resolves per-account WeChat MP credentials from the channel config file
("channels.wemp" section of a JSON document) with environment fallbacks for
the default account.

Config example:
{
  "channels": {
    "wemp": {
      "enabled": true,
      "appId": "wx...", "appSecret": "...", "token": "...", "encodingAESKey": "...",
      "webhookPath": "/wemp",
      "pairingApiToken": "...",
      "accounts": {
        "second": {"enabled": true, "appId": "wx...", "appSecretFile": "/run/secrets/wx2", ...}
      }
    }
  }
}
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from transport.wechat_mp.schemas import WechatMpAccount

from .storage import read_json

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_ID = "default"
DEFAULT_WEBHOOK_PATH = "/wechat-mp"
CHANNEL_KEYS = ("wemp", "wechat-mp")


class AccountConfig(BaseModel):
    """One account block as written in the config file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: Optional[bool] = None
    app_id: Optional[str] = Field(None, alias="appId")
    app_secret: Optional[str] = Field(None, alias="appSecret", repr=False)
    app_secret_file: Optional[str] = Field(None, alias="appSecretFile")
    token: Optional[str] = Field(None, repr=False)
    encoding_aes_key: Optional[str] = Field(None, alias="encodingAESKey", repr=False)
    name: Optional[str] = None
    webhook_path: Optional[str] = Field(None, alias="webhookPath")
    pairing_api_token: Optional[str] = Field(None, alias="pairingApiToken", repr=False)
    debounce_ms: Optional[int] = Field(None, alias="debounceMs")


class ChannelConfig(AccountConfig):
    """The channel section: top-level (default) account plus named accounts."""

    accounts: Dict[str, AccountConfig] = Field(default_factory=dict)

    agent_paired: Optional[str] = Field(None, alias="agentPaired")
    agent_unpaired: Optional[str] = Field(None, alias="agentUnpaired")
    welcome_message: Optional[str] = Field(None, alias="welcomeMessage")
    ai_enabled_message: Optional[str] = Field(None, alias="aiEnabledMessage")
    ai_disabled_message: Optional[str] = Field(None, alias="aiDisabledMessage")
    ai_disabled_hint: Optional[str] = Field(None, alias="aiDisabledHint")

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "ChannelConfig":
        """Pick the channel section out of a full config document."""
        raw = raw or {}
        channels = raw.get("channels") if isinstance(raw.get("channels"), dict) else {}
        section = {}
        for key in CHANNEL_KEYS:
            if isinstance(channels.get(key), dict):
                section = channels[key]
                break
        try:
            return cls.model_validate(section)
        except ValidationError as e:
            logger.error(f"Invalid channel configuration, ignoring it: {e}")
            return cls()

    @classmethod
    def from_file(cls, path: Union[str, Path, None]) -> "ChannelConfig":
        if not path:
            return cls()
        return cls.from_dict(read_json(path, {}))


def list_account_ids(cfg: ChannelConfig) -> List[str]:
    """Account ids in config order; always at least the default account."""
    ids: List[str] = []
    if cfg.app_id:
        ids.append(DEFAULT_ACCOUNT_ID)
    for account_id in cfg.accounts:
        if account_id not in ids:
            ids.append(account_id)
    return ids or [DEFAULT_ACCOUNT_ID]


def _read_secret_file(path: str) -> Optional[str]:
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.warning(f"Could not read appSecretFile {path}: {e}")
        return None


def resolve_account(
    cfg: ChannelConfig,
    account_id: str,
    env: Optional[Dict[str, str]] = None,
) -> WechatMpAccount:
    """
    Resolve one account's credentials.

    The app secret comes from the config value, else ``appSecretFile``, else
    (default account only) the WECHAT_MP_APP_ID / WECHAT_MP_APP_SECRET /
    WECHAT_MP_TOKEN environment variables.
    """
    env = os.environ if env is None else env
    is_default = account_id == DEFAULT_ACCOUNT_ID

    if is_default:
        account_cfg = AccountConfig.model_validate(cfg.model_dump(exclude={"accounts"}))
    else:
        account_cfg = cfg.accounts.get(account_id, AccountConfig())

    app_id = account_cfg.app_id or ""
    token = account_cfg.token or ""
    app_secret = account_cfg.app_secret or ""
    secret_source = None

    if app_secret:
        secret_source = "config"
    elif account_cfg.app_secret_file:
        file_secret = _read_secret_file(account_cfg.app_secret_file)
        if file_secret:
            app_secret = file_secret
            secret_source = "file"
    elif is_default:
        env_app_id = (env.get("WECHAT_MP_APP_ID") or "").strip()
        env_secret = (env.get("WECHAT_MP_APP_SECRET") or "").strip()
        env_token = (env.get("WECHAT_MP_TOKEN") or "").strip()
        if env_app_id and env_secret:
            app_id = app_id or env_app_id
            app_secret = env_secret
            token = token or env_token
            secret_source = "env"

    # Named accounts inherit channel-wide pairing token and debounce when unset.
    pairing_token = account_cfg.pairing_api_token or cfg.pairing_api_token or ""
    debounce_ms = account_cfg.debounce_ms if account_cfg.debounce_ms is not None else (cfg.debounce_ms or 0)

    return WechatMpAccount(
        account_id=account_id,
        enabled=bool(account_cfg.enabled) if account_cfg.enabled is not None else (secret_source == "env"),
        app_id=app_id,
        app_secret=app_secret,
        token=token,
        encoding_aes_key=account_cfg.encoding_aes_key or "",
        name=account_cfg.name,
        webhook_path=account_cfg.webhook_path or DEFAULT_WEBHOOK_PATH,
        pairing_api_token=pairing_token,
        debounce_ms=max(0, int(debounce_ms)),
        secret_source=secret_source,
    )


def resolve_all_accounts(cfg: ChannelConfig, env: Optional[Dict[str, str]] = None) -> List[WechatMpAccount]:
    return [resolve_account(cfg, account_id, env) for account_id in list_account_ids(cfg)]


def get_channel_config(path: Union[str, Path, None] = None) -> ChannelConfig:
    """Load the channel configuration named by WEMP_CONFIG_FILE (or ``path``)."""
    return ChannelConfig.from_file(path if path is not None else os.getenv("WEMP_CONFIG_FILE", ""))
