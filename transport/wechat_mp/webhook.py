"""
WeChat MP Webhook Receiver

Catch-all FastAPI router. Every request whose path resolves to a registered
webhook target is handled here; everything else gets 404.

GET  <path>           server verification handshake (echo echostr)
POST <path>           message delivery; answers "success" before processing
POST <path>/api/pair  pairing approval API

The router holds no state: the WebhookRuntime on app.state owns the registry,
stores and clients.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Request, status
from fastapi.responses import PlainTextResponse, Response

from .pairing_api import PAIRING_API_SUFFIX, handle_pairing_api
from .request_body import MAX_WEBHOOK_BODY_BYTES, BodyTooLargeError, read_body_limited
from .security import AuthenticationFailure, MalformedPayload, VerifiedEnvelope, process_envelope, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["WeChat MP Transport"])

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _text(body: str, status_code: int = status.HTTP_200_OK) -> PlainTextResponse:
    return PlainTextResponse(body, status_code=status_code, media_type="text/plain; charset=utf-8")


@router.api_route("/{full_path:path}", methods=ALL_METHODS, include_in_schema=False)
async def wechat_mp_webhook(request: Request, background_tasks: BackgroundTasks, full_path: str) -> Response:
    """
    Dispatch one webhook request.

    Status codes:
        200 handshake echo / "success"
        400 malformed envelope
        403 signature or appid mismatch
        404 no webhook target for this path
        405 unsupported method
        413 body over 1 MiB
    """
    runtime = request.app.state.runtime
    path = request.url.path
    match = runtime.registry.resolve(path)
    if match is None:
        logger.debug(f"[wemp] No webhook target for {path}")
        return _text("Not Found", status.HTTP_404_NOT_FOUND)

    if request.method == "POST" and match.subpath(path) == PAIRING_API_SUFFIX:
        return await handle_pairing_api(
            request, match.accounts, runtime.pairing_rate_limiter, runtime.resolver, runtime.sender
        )

    if request.method == "GET":
        return _handshake(request, match)

    if request.method == "POST":
        return await _receive(request, background_tasks, match, runtime)

    return _text("Method Not Allowed", status.HTTP_405_METHOD_NOT_ALLOWED)


# ============================================================================
# HANDSHAKE
# ============================================================================

def _handshake(request: Request, match) -> Response:
    query = request.query_params
    signature = query.get("signature", "")
    timestamp = query.get("timestamp", "")
    nonce = query.get("nonce", "")

    for target in match.candidates():
        if verify_signature(target.account.token, signature, timestamp, nonce):
            logger.info(f"[wemp:{target.account.account_id}] Server verification succeeded")
            return _text(query.get("echostr", ""))

    logger.warning(f"[wemp] Server verification failed on {match.path}")
    return _text("Forbidden", status.HTTP_403_FORBIDDEN)


# ============================================================================
# MESSAGE DELIVERY
# ============================================================================

async def _receive(request: Request, background_tasks: BackgroundTasks, match, runtime) -> Response:
    try:
        body = await read_body_limited(request, MAX_WEBHOOK_BODY_BYTES)
    except BodyTooLargeError as e:
        logger.warning(f"[wemp] {e}")
        return _text("Payload Too Large", status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)

    query = dict(request.query_params)
    verified: Optional[VerifiedEnvelope] = None
    account = None
    malformed: Optional[MalformedPayload] = None
    auth_failure: Optional[AuthenticationFailure] = None

    for target in match.candidates():
        try:
            verified = process_envelope(target.account, body, query)
            account = target.account
            break
        except MalformedPayload as e:
            malformed = malformed or e
        except AuthenticationFailure as e:
            auth_failure = auth_failure or e

    if verified is None:
        if malformed is not None:
            logger.warning(f"[wemp] Malformed webhook payload on {match.path}: {malformed}")
            return _text("Bad Request", status.HTTP_400_BAD_REQUEST)
        logger.warning(f"[wemp] Webhook authentication failed on {match.path}: {auth_failure}")
        return _text("Forbidden", status.HTTP_403_FORBIDDEN)

    event = verified.event
    logger.info(
        f"[wemp:{account.account_id}] Webhook accepted",
        extra={"msg_type": event.msg_type, "open_id": event.open_id, "encrypted": verified.encrypted},
    )

    # WeChat expects an answer within 5 s; processing continues after the response.
    background_tasks.add_task(runtime.process_event, account, event)
    return _text("success")
