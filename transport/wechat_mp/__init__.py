"""
WeChat Official Account transport.

Pure transport: envelope verification, decoding and routing. The FastAPI router
lives in ``transport.wechat_mp.webhook`` and is imported by the application.
"""

from .normalize import normalize_event, parse_envelope_fields
from .routing import RouteMatch, WebhookTarget, WebhookTargetRegistry, normalize_path
from .schemas import InboundEvent, WechatMpAccount
from .security import (
    AuthenticationFailure,
    EnvelopeError,
    MalformedPayload,
    compute_signature,
    process_envelope,
    verify_signature,
)

__all__ = [
    "normalize_event",
    "parse_envelope_fields",
    "RouteMatch",
    "WebhookTarget",
    "WebhookTargetRegistry",
    "normalize_path",
    "InboundEvent",
    "WechatMpAccount",
    "AuthenticationFailure",
    "EnvelopeError",
    "MalformedPayload",
    "compute_signature",
    "process_envelope",
    "verify_signature",
]
