"""
WeChat MP Transport Layer - Pydantic Schemas

PURE DATA MODELS - NO LOGIC
Defines the contract between the WeChat Official Account platform and the gateway.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


SecretSource = Literal["config", "file", "env"]


# ============================================================================
# ACCOUNT (ONE CREDENTIAL SET)
# ============================================================================

class WechatMpAccount(BaseModel):
    """
    Resolved credentials for one Official Account.

    Created once at startup and never mutated. Several accounts may share a
    webhook path; the signature tells them apart.
    """

    model_config = ConfigDict(frozen=True)

    account_id: str = Field(..., description="Stable local id ('default' for the top-level account)")
    enabled: bool = False
    app_id: str = ""
    app_secret: str = Field("", repr=False)
    token: str = Field("", repr=False, description="Server verification token")
    encoding_aes_key: str = Field("", repr=False, description="43-char EncodingAESKey")
    name: Optional[str] = None
    webhook_path: str = "/wechat-mp"
    pairing_api_token: str = Field("", repr=False)
    debounce_ms: int = 0
    secret_source: Optional[SecretSource] = None

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.app_secret and self.token)


# ============================================================================
# INBOUND EVENT (DECODED ENVELOPE)
# ============================================================================

class InboundEvent(BaseModel):
    """
    A decoded webhook message or event.

    Field names follow the provider's XML element names in snake_case.
    """

    model_config = ConfigDict(frozen=True)

    to_user: str = Field(..., description="ToUserName - the Official Account id")
    from_user: str = Field(..., description="FromUserName - sender openid")
    create_time: str = Field(..., description="CreateTime - unix seconds as sent")
    msg_type: str = Field(..., description="MsgType: text, image, voice, video, event, ...")

    content: Optional[str] = None
    msg_id: Optional[str] = None
    event: Optional[str] = None
    event_key: Optional[str] = None

    pic_url: Optional[str] = None
    media_id: Optional[str] = None
    format: Optional[str] = None
    recognition: Optional[str] = None
    thumb_media_id: Optional[str] = None

    location_x: Optional[str] = None
    location_y: Optional[str] = None
    scale: Optional[str] = None
    label: Optional[str] = None

    title: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None

    @property
    def open_id(self) -> str:
        return self.from_user


# ============================================================================
# PAIRING API (INPUT / OUTPUT)
# ============================================================================

class PairingApiRequest(BaseModel):
    """POST <webhook>/api/pair body."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    code: Optional[str] = None
    token: Optional[str] = None


class PairingApiResponse(BaseModel):
    """Successful pairing approval."""

    success: bool = True
    id: Optional[str] = None
    accountId: Optional[str] = None
    openId: Optional[str] = None


# ============================================================================
# CHANNEL API RESPONSE
# ============================================================================

class ChannelApiResult(BaseModel):
    """Generic errcode/errmsg envelope returned by api.weixin.qq.com."""

    model_config = ConfigDict(extra="allow")

    errcode: int = 0
    errmsg: str = ""

