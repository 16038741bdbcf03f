"""
Pairing Approval API

POST <webhook path>/api/pair  {"code": "...", "token": "..."}

Disabled (404) unless at least one account on the path has a pairing API
token. Rate limited per client address; tokens compared in constant time.
"""

import hmac
import json
import logging
from typing import List, Optional, Sequence

from fastapi import Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from access.pairing import PairingResolver
from infra.rate_limit import FixedWindowRateLimiter

from .request_body import MAX_PAIRING_API_BODY_BYTES, BodyTooLargeError, read_body_limited
from .schemas import PairingApiRequest, PairingApiResponse, WechatMpAccount
from .sender import ChannelApiError, WechatMpClient

logger = logging.getLogger(__name__)

PAIRING_API_SUFFIX = "/api/pair"

PAIRED_NOTICE = "🎉 配对成功！\n\n现在你可以使用完整的 AI 助手功能了。"


def timing_safe_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(str(a).encode("utf-8"), str(b).encode("utf-8"))


def find_account_by_token(accounts: Sequence[WechatMpAccount], token: str) -> Optional[WechatMpAccount]:
    """Every configured token is compared, whatever the outcome."""
    match = None
    for account in accounts:
        if account.pairing_api_token and timing_safe_equal(token, account.pairing_api_token):
            match = match or account
    return match


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    body = {"error": message}
    body.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=status_code, content=body)


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def handle_pairing_api(
    request: Request,
    accounts: List[WechatMpAccount],
    limiter: FixedWindowRateLimiter,
    resolver: PairingResolver,
    sender: Optional[WechatMpClient] = None,
) -> JSONResponse:
    """
    Approve a pairing code submitted by an operator.

    Status codes:
        404 no account on this path has a pairing token
        429 rate limited (Retry-After header set)
        413 body over 32 KiB
        400 malformed body, missing code, invalid or expired code
        401 missing or wrong token
        501 no approval mechanism available
        200 {"success": true, "id", "accountId", "openId"}
    """
    if not any(a.pairing_api_token for a in accounts):
        return _error(status.HTTP_404_NOT_FOUND, "Not Found")

    address = client_address(request)
    decision = limiter.check(address)
    if not decision.ok:
        logger.warning(f"[wemp] Pairing API rate limited for {address}")
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"error": "Too Many Requests"},
            headers={"Retry-After": str(decision.retry_after_sec)},
        )

    try:
        raw = await read_body_limited(request, MAX_PAIRING_API_BODY_BYTES)
    except BodyTooLargeError:
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "Payload Too Large")

    try:
        body = PairingApiRequest.model_validate(json.loads(raw or b"{}"))
    except (ValueError, ValidationError):
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON")

    account = find_account_by_token(accounts, body.token) if body.token else None
    if account is None:
        logger.warning(f"[wemp] Pairing API unauthorized request from {address}")
        return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    code = (body.code or "").strip()
    if not code:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing code")

    approval = await resolver.approve_code(code)
    result = approval.result
    if result.status == "unavailable":
        return _error(status.HTTP_501_NOT_IMPLEMENTED, result.error or "Pairing approval runtime not available")
    if not result.approved:
        return _error(status.HTTP_400_BAD_REQUEST, result.error or "Invalid or expired code", details=result.details)

    subject = approval.subject
    logger.info(f"[wemp:{account.account_id}] Pairing approved through API", extra={"subject_id": result.subject_id})

    if subject is not None and sender is not None and not resolver.approver.notifies_subject:
        target = next((a for a in accounts if a.account_id == subject.account_id), None)
        if target is not None:
            try:
                await sender.send_text(target, subject.open_id, PAIRED_NOTICE)
            except ChannelApiError as e:
                logger.warning(f"[wemp:{target.account_id}] Could not notify paired user: {e}")

    response = PairingApiResponse(
        success=True,
        id=result.subject_id,
        accountId=subject.account_id if subject else None,
        openId=subject.open_id if subject else None,
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=response.model_dump(exclude_none=True))
