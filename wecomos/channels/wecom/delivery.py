"""Reply delivery.

Turns one host reply block into WeCom sends. Media replies send the text
first (best effort) and then every media item in order; text replies are
chunked to the account limit. A failed item is logged and the remaining
items still go out.
"""

from __future__ import annotations

import logging
from typing import Awaitable

from wecomos.channels.wecom.send import OutboundSender, SendResult
from wecomos.channels.wecom.targets import WebhookTarget
from wecomos.clock import utc_now_ms
from wecomos.host import HostRuntime, ReplyPayload

logger = logging.getLogger(__name__)


async def _send(target: WebhookTarget, what: str, to: str, send: Awaitable[SendResult]) -> None:
    try:
        result = await send
    except Exception:
        logger.exception(f"[{target.account_id}] WeCom {what} send to {to} crashed")
        return

    if result.ok:
        target.report(last_outbound_at=utc_now_ms())
    else:
        logger.error(f"[{target.account_id}] WeCom {what} send to {to} failed: {result.error}")


async def deliver_reply(
    payload: ReplyPayload,
    to: str,
    target: WebhookTarget,
    sender: OutboundSender,
    runtime: HostRuntime,
    table_mode: str = "code",
    chunk_mode: str = "length",
) -> None:
    """Deliver one reply block to ``to``."""
    account_id = target.account_id
    text = runtime.text.convert_tables(payload.text or "", table_mode)
    media = payload.media_list()

    if media:
        if text.strip():
            await _send(target, "text", to, sender.send_text(to, text, account_id))
        for media_url in media:
            await _send(target, "media", to, sender.send_media(to, media_url, account_id))
        return

    if not text.strip():
        return

    for chunk in runtime.text.chunk(text, target.account.text_chunk_limit, chunk_mode):
        await _send(target, "message", to, sender.send_text(to, chunk, account_id))
