"""WeCom webhook endpoint.

Every path under ``/webhook/wecom/`` is served here; the target registry
decides which account a path belongs to.

GET (URL verification):
    - No ``echostr``: 200 "ok"
    - Token configured and signature invalid: 401
    - AES key configured: decrypt ``echostr`` (400 on failure) and return the
      plaintext exactly as decrypted
    - Otherwise echo ``echostr``

POST (message delivery):
    1. Resolve the target for the path (404 if nobody listens)
    2. Read the body with a 1 MiB ceiling (413 when exceeded)
    3. Parse JSON or XML, locate ``Encrypt``
    4. Token configured: verify the signature (400 without ``Encrypt``, 401 if invalid)
    5. AES key configured: decrypt and parse the inner message (400 on failure)
    6. Text messages are processed in the background; everything else is ignored
    7. Acknowledge with 200 "ok"

Other methods on a registered path get 405 with ``Allow: GET, POST``.

Important:
    WeCom retries callbacks that are not acknowledged quickly, so message
    processing never happens inside the request.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import PlainTextResponse, Response

from wecomos.bridge import WeComBridge
from wecomos.channels.wecom.crypto import decrypt_message, verify_signature
from wecomos.channels.wecom.payload import WeComMessage, extract_encrypt, parse_body
from wecomos.channels.wecom.targets import WebhookTarget, normalize_webhook_path
from wecomos.clock import utc_now_ms
from wecomos.config import DEFAULT_MAX_BODY_BYTES, ResolvedWeComAccount

logger = logging.getLogger(__name__)

router = APIRouter()

WEBHOOK_PREFIX = "/webhook/wecom"
ALLOWED_METHODS = "GET, POST"


class BodyTooLarge(Exception):
    pass


def _text(content: str, status_code: int = 200) -> PlainTextResponse:
    return PlainTextResponse(content, status_code=status_code)


async def read_body_limited(request: Request, max_bytes: int) -> bytes:
    """Read the request body incrementally, failing once it exceeds max_bytes.

    Raises:
        BodyTooLarge: If the declared or actual size is above the ceiling
    """
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise BodyTooLarge()

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise BodyTooLarge()
    return bytes(body)


def verify_echostr(
    account: Optional[ResolvedWeComAccount],
    echostr: str,
    signature: Optional[str],
    timestamp: Optional[str],
    nonce: Optional[str],
) -> Response:
    """Answer a URL verification request for ``account`` (None: echo back)."""
    if account is not None and account.webhook_token:
        if not verify_signature(account.webhook_token, timestamp, nonce, echostr, signature):
            logger.warning(f"[wecom:{account.account_id}] URL verification signature invalid")
            return _text("unauthorized", 401)

    if account is not None and account.encoding_aes_key:
        decrypted = decrypt_message(echostr, account.encoding_aes_key, account.corp_id)
        if decrypted is None:
            logger.warning(f"[wecom:{account.account_id}] URL verification decrypt failed")
            return _text("decrypt failed", 400)
        return _text(decrypted.message)

    return _text(echostr)


async def _process_message_async(bridge: WeComBridge, message: WeComMessage, target: WebhookTarget):
    """Run inbound processing after the response has been sent.

    Args:
        bridge: Bridge owning the inbound processor
        message: Canonical text message
        target: Binding the message arrived on
    """
    try:
        await bridge.handle_message(message, target)
    except Exception as e:
        logger.exception(f"[{target.account_id}] WeCom webhook failed: {e}")


async def _handle_get(request: Request, bridge: WeComBridge, path: str) -> Response:
    params = request.query_params
    echostr = params.get("echostr")
    if not echostr:
        return _text("ok")

    target = bridge.resolve_target(path, params.get("token"))
    # URL verification may arrive before the account has been started
    account = target.account if target is not None else bridge.fallback_account()
    return verify_echostr(
        account,
        echostr,
        params.get("msg_signature"),
        params.get("timestamp"),
        params.get("nonce"),
    )


async def _handle_post(
    request: Request,
    background_tasks: BackgroundTasks,
    bridge: WeComBridge,
    target: WebhookTarget,
) -> Response:
    account = target.account
    params = request.query_params
    max_bytes = getattr(request.app.state, "max_body_bytes", DEFAULT_MAX_BODY_BYTES)

    try:
        raw = await read_body_limited(request, max_bytes)
    except BodyTooLarge:
        logger.warning(f"[wecom:{account.account_id}] Payload too large")
        return _text("payload too large", 413)

    if not raw.strip():
        return _text("empty payload", 400)

    payload = parse_body(raw.decode("utf-8", errors="replace"))
    if payload is None:
        logger.debug(f"[wecom:{account.account_id}] Unreadable callback body")
        return _text("invalid payload", 400)

    encrypted = extract_encrypt(payload)

    if account.webhook_token:
        if not encrypted:
            logger.debug(f"[wecom:{account.account_id}] Signed callback without Encrypt")
            return _text("missing Encrypt", 400)
        if not verify_signature(
            account.webhook_token,
            params.get("timestamp"),
            params.get("nonce"),
            encrypted,
            params.get("msg_signature"),
        ):
            logger.warning(f"[wecom:{account.account_id}] Webhook signature verification failed")
            return _text("unauthorized", 401)

    if account.encoding_aes_key and encrypted:
        decrypted = decrypt_message(encrypted, account.encoding_aes_key, account.corp_id)
        if decrypted is None:
            logger.warning(f"[wecom:{account.account_id}] Message decryption failed")
            return _text("decrypt failed", 400)
        payload = parse_body(decrypted.message)
        if payload is None:
            logger.warning(f"[wecom:{account.account_id}] Decrypted message parse failed")
            return _text("parse failed", 400)

    target.report(last_inbound_at=utc_now_ms())

    message = WeComMessage.from_payload(payload)
    if message.is_text:
        background_tasks.add_task(_process_message_async, bridge, message, target)
    else:
        logger.debug(
            f"[wecom:{account.account_id}] Ignoring unsupported msg_type: {message.msg_type or 'unknown'}"
        )

    return _text("ok")


@router.api_route(
    WEBHOOK_PREFIX + "/{rest:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"],
)
async def wecom_webhook(request: Request, background_tasks: BackgroundTasks, rest: str = ""):
    """Webhook endpoint for WeCom application callbacks."""
    bridge: WeComBridge = request.app.state.bridge
    path = normalize_webhook_path(request.url.path)

    if request.method == "GET":
        return await _handle_get(request, bridge, path)

    target = bridge.resolve_target(path, request.query_params.get("token"))
    if target is None:
        logger.debug(f"No WeCom target for {path}; registered: {', '.join(bridge.registry.paths())}")
        return _text("not found", 404)

    if request.method != "POST":
        return PlainTextResponse(
            "Method Not Allowed", status_code=405, headers={"Allow": ALLOWED_METHODS}
        )

    return await _handle_post(request, background_tasks, bridge, target)
