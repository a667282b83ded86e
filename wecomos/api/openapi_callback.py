"""WeCom "receive messages via API" callback endpoint.

A fixed path used when WeCom verifies the callback URL of the API receive
mode. GET mirrors the webhook URL verification but always requires a fully
configured default account; POSTs are acknowledged with the vendor-style
JSON envelope and not processed further.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from wecomos.bridge import WeComBridge
from wecomos.channels.wecom.crypto import decrypt_message, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter()

OPENAPI_CALLBACK_PATH = "/wecom/openapi-callback"


def _envelope(errcode: int, errmsg: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"errcode": errcode, "errmsg": errmsg}, status_code=status_code)


@router.get(OPENAPI_CALLBACK_PATH)
async def openapi_callback_verify(request: Request):
    """URL verification for the API receive mode.

    Returns:
        200 with the decrypted echostr as text/plain, or a JSON error envelope
        (500 not configured, 401 signature invalid, 400 decrypt failed)
    """
    bridge: WeComBridge = request.app.state.bridge
    params = request.query_params
    echostr = params.get("echostr")
    if not echostr:
        return _envelope(0, "ok")

    try:
        account = bridge.config.account()
    except Exception as e:
        logger.error(f"OpenAPI callback config error: {e}")
        return _envelope(-1, "config error", 500)

    if not account.configured or not account.webhook_token or not account.encoding_aes_key:
        return _envelope(-1, "not configured", 500)

    if not verify_signature(
        account.webhook_token,
        params.get("timestamp"),
        params.get("nonce"),
        echostr,
        params.get("msg_signature"),
    ):
        logger.warning("OpenAPI callback signature invalid")
        return _envelope(-1, "signature invalid", 401)

    decrypted = decrypt_message(echostr, account.encoding_aes_key, account.corp_id)
    if decrypted is None:
        logger.warning("OpenAPI callback decrypt failed")
        return _envelope(-1, "decrypt failed", 400)

    return PlainTextResponse(decrypted.message)


@router.post(OPENAPI_CALLBACK_PATH)
async def openapi_callback_receive(request: Request):
    """Acknowledge API-mode callbacks; delivery is handled by the webhook."""
    body = await request.body()
    logger.debug(f"OpenAPI callback POST ({len(body)} bytes) acknowledged")
    return _envelope(0, "ok")
