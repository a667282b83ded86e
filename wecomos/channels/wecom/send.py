"""Outbound WeCom sends.

Entry points return a SendResult instead of raising, so callers can log
per-item failures and carry on with the remaining chunks or media.

Targets:
    - ``userid`` or ``@userid``: a single user
    - ``party:<id>``: a department
    - ``tag:<id>``: a tag
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import unquote, urlparse

import httpx

from wecomos.channels.wecom.client import (
    MediaBody,
    MediaKind,
    SendMessageParams,
    TextBody,
    WeComApiError,
    WeComClient,
)
from wecomos.channels.wecom.token_cache import AccessTokenCache
from wecomos.clock import utc_now_ms
from wecomos.config import ConfigProvider, ResolvedWeComAccount

logger = logging.getLogger(__name__)

# WeCom text message ceiling
TEXT_LIMIT = 2048
MEDIA_DOWNLOAD_TIMEOUT = 30.0


class MediaError(Exception):
    """Raised when media cannot be loaded for upload."""
    pass


@dataclass
class SendResult:
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class LoadedMedia:
    data: bytes
    content_type: Optional[str]
    filename: str


def normalize_target(target: str) -> Dict[str, str]:
    """Turn a target string into WeCom addressing fields.

    Example:
        >>> normalize_target("party:2")
        {'toparty': '2'}
        >>> normalize_target("@bob")
        {'touser': 'bob'}
    """
    trimmed = target.strip()
    if trimmed.startswith("party:"):
        return {"toparty": trimmed[len("party:"):]}
    if trimmed.startswith("tag:"):
        return {"totag": trimmed[len("tag:"):]}
    return {"touser": trimmed[1:] if trimmed.startswith("@") else trimmed}


def resolve_media_type(content_type: Optional[str]) -> MediaKind:
    """Map a MIME type onto a WeCom media message type."""
    ct = (content_type or "").lower()
    if ct.startswith("image/"):
        return "image"
    if ct.startswith("audio/") or ct.startswith("voice/"):
        return "voice"
    if ct.startswith("video/"):
        return "video"
    return "file"


def _agent_id(account: ResolvedWeComAccount):
    return int(account.agent_id) if account.agent_id.isdigit() else account.agent_id


def _not_configured(account: ResolvedWeComAccount) -> SendResult:
    return SendResult(
        ok=False,
        error=(
            f'WeCom account "{account.account_id}" is not configured. '
            "Please configure corp_id, agent_id, and secret."
        ),
    )


def _guess_type(filename: str) -> Optional[str]:
    guessed, _ = mimetypes.guess_type(filename)
    return guessed


async def load_media(
    source: str,
    max_bytes: int,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LoadedMedia:
    """Load media from an http(s) URL or a local path.

    Raises:
        MediaError: If the media is missing, unreachable or larger than max_bytes
    """
    parsed = urlparse(source)

    if parsed.scheme in ("http", "https"):
        filename = Path(unquote(parsed.path)).name or "file"
        try:
            async with httpx.AsyncClient(
                timeout=MEDIA_DOWNLOAD_TIMEOUT, follow_redirects=True, transport=transport
            ) as client:
                async with client.stream("GET", source) as response:
                    if response.status_code >= 400:
                        raise MediaError(f"Media download failed: HTTP {response.status_code}")
                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > max_bytes:
                        raise MediaError(f"Media exceeds {max_bytes} bytes")
                    buffer = bytearray()
                    async for chunk in response.aiter_bytes():
                        buffer.extend(chunk)
                        if len(buffer) > max_bytes:
                            raise MediaError(f"Media exceeds {max_bytes} bytes")
                    header_type = response.headers.get("content-type", "").split(";")[0].strip()
        except httpx.HTTPError as e:
            raise MediaError(f"Media download failed: {e}")
        return LoadedMedia(
            data=bytes(buffer),
            content_type=header_type or _guess_type(filename),
            filename=filename,
        )

    path = Path(unquote(parsed.path) if parsed.scheme == "file" else source).expanduser()
    try:
        size = path.stat().st_size
    except OSError as e:
        raise MediaError(f"Media not found: {path}: {e}")
    if size > max_bytes:
        raise MediaError(f"Media exceeds {max_bytes} bytes")
    try:
        data = path.read_bytes()
    except OSError as e:
        raise MediaError(f"Cannot read media {path}: {e}")
    return LoadedMedia(data=data, content_type=_guess_type(path.name), filename=path.name)


class OutboundSender:
    """Sends text and media through the WeCom API for a configured account."""

    def __init__(
        self,
        client: WeComClient,
        token_cache: AccessTokenCache,
        config: ConfigProvider,
        media_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = client
        self.token_cache = token_cache
        self.config = config
        self._media_transport = media_transport

    async def send_text(
        self, to: str, text: str, account_id: Optional[str] = None
    ) -> SendResult:
        """Send one text message (truncated to the WeCom text ceiling)."""
        if not to or not to.strip():
            return SendResult(ok=False, error="No target provided")
        if not text or not text.strip():
            return SendResult(ok=False, error="No message text provided")

        account = self.config.account(account_id)
        if not account.configured:
            return _not_configured(account)

        try:
            token = await self.token_cache.get_token(account.corp_id, account.secret)
            params = SendMessageParams(
                **normalize_target(to),
                msgtype="text",
                agentid=_agent_id(account),
                text=TextBody(content=text[:TEXT_LIMIT]),
                safe=0,
            )
            result = await self.client.send_message(token, params)
        except (WeComApiError, ValueError) as e:
            logger.debug(f"WeCom text send to {to} failed: {e}")
            return SendResult(ok=False, error=str(e))

        return SendResult(ok=True, message_id=result.get("msgid") or f"wecom-{utc_now_ms()}")

    async def send_media(
        self,
        to: str,
        media_url: str,
        account_id: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> SendResult:
        """Upload one media item and send it; a caption goes out first as text."""
        if not to or not to.strip():
            return SendResult(ok=False, error="No target provided")
        if not media_url or not media_url.strip():
            return SendResult(ok=False, error="No media URL provided")

        account = self.config.account(account_id)
        if not account.configured:
            return _not_configured(account)

        target = normalize_target(to)
        try:
            token = await self.token_cache.get_token(account.corp_id, account.secret)
            media = await load_media(
                media_url.strip(),
                int(account.media_max_mb * 1024 * 1024),
                transport=self._media_transport,
            )
            media_type = resolve_media_type(media.content_type)
            media_id = await self.client.upload_media(
                token, media_type, media.data, media.filename, media.content_type
            )

            if caption:
                await self.client.send_message(token, SendMessageParams(
                    **target,
                    msgtype="text",
                    agentid=_agent_id(account),
                    text=TextBody(content=caption[:TEXT_LIMIT]),
                    safe=0,
                ))

            params = SendMessageParams(
                **target,
                msgtype=media_type,
                agentid=_agent_id(account),
                safe=0,
                **{media_type: MediaBody(media_id=media_id)},
            )
            result = await self.client.send_message(token, params)
        except (WeComApiError, MediaError, ValueError) as e:
            logger.debug(f"WeCom media send to {to} failed: {e}")
            return SendResult(ok=False, error=str(e))

        return SendResult(ok=True, message_id=result.get("msgid") or f"wecom-{utc_now_ms()}")
