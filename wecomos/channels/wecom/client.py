"""WeCom API Client.

This module provides a low-level async client for the WeCom server API:
access token issuance, agent and user lookup, message send and media upload.

Every call goes to the fixed API host and interprets the vendor envelope:
``errcode == 0`` means success, any other value raises WeComApiError carrying
the vendor code and message. Timeouts and network failures raise the same
error with the sentinel code ``-1``.

Design:
    WeComClient only talks HTTP. Token caching lives in AccessTokenCache,
    chunking and addressing live in the outbound sender.

Reference:
    https://developer.work.weixin.qq.com/document/path/90664
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)

WECOM_API_BASE = "https://qyapi.weixin.qq.com/cgi-bin"
DEFAULT_TIMEOUT = 10.0
DEFAULT_TOKEN_EXPIRES_IN = 7200

# Sentinel vendor code for transport failures and client-side validation
TRANSPORT_ERROR_CODE = -1

_ENVELOPE_KEYS = ("errcode", "errmsg", "access_token", "expires_in")

MessageKind = Literal["text", "image", "voice", "video", "file"]
MediaKind = Literal["image", "voice", "video", "file"]


class WeComApiError(Exception):
    """Raised when a WeCom API call fails."""

    def __init__(self, message: str, error_code: int, error_msg: str = ""):
        super().__init__(message)
        self.error_code = error_code
        self.error_msg = error_msg


@dataclass
class AccessToken:
    """Token issued by ``gettoken``."""
    access_token: str
    expires_in: int


class TextBody(BaseModel):
    content: str


class MediaBody(BaseModel):
    media_id: str
    title: Optional[str] = None
    description: Optional[str] = None


class SendMessageParams(BaseModel):
    """Body of ``message/send``.

    Exactly one addressing mode (``touser``, ``toparty``, ``totag``) must be
    set, and the body field matching ``msgtype`` must be present.
    """

    touser: Optional[str] = None
    toparty: Optional[str] = None
    totag: Optional[str] = None
    msgtype: MessageKind
    agentid: Union[int, str]
    text: Optional[TextBody] = None
    image: Optional[MediaBody] = None
    voice: Optional[MediaBody] = None
    video: Optional[MediaBody] = None
    file: Optional[MediaBody] = None
    safe: int = Field(0, description="1 marks the message confidential")

    @model_validator(mode="after")
    def check_shape(self) -> "SendMessageParams":
        targets = [t for t in (self.touser, self.toparty, self.totag) if t]
        if len(targets) != 1:
            raise ValueError("exactly one of touser, toparty, totag is required")
        if getattr(self, self.msgtype) is None:
            raise ValueError(f"msgtype '{self.msgtype}' requires a '{self.msgtype}' body")
        for kind in ("text", "image", "voice", "video", "file"):
            if kind != self.msgtype and getattr(self, kind) is not None:
                raise ValueError(f"unexpected '{kind}' body for msgtype '{self.msgtype}'")
        return self

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AgentInfo(BaseModel):
    """Subset of ``agent/get`` the bridge uses."""

    model_config = ConfigDict(extra="allow")

    agentid: Optional[Union[int, str]] = None
    name: Optional[str] = None
    square_logo_url: Optional[str] = None
    description: Optional[str] = None


class WeComClient:
    """Async client for the WeCom server API.

    Attributes:
        base_url: API base (defaults to the public WeCom host)
        timeout: Per-call timeout in seconds
    """

    def __init__(
        self,
        base_url: str = WECOM_API_BASE,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API base URL
            timeout: Default timeout in seconds for every call
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _http(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint}"
        try:
            async with self._http(timeout) as client:
                response = await client.request(
                    method, url, params=params, json=json_body, files=files
                )
        except httpx.TimeoutException:
            raise WeComApiError(
                f"WeCom API timeout: {endpoint}", TRANSPORT_ERROR_CODE, "timeout"
            )
        except httpx.HTTPError as e:
            raise WeComApiError(
                f"WeCom API request failed: {endpoint}: {e}", TRANSPORT_ERROR_CODE, str(e)
            )

        try:
            data = response.json()
        except ValueError:
            raise WeComApiError(
                f"WeCom API returned non-JSON response: {endpoint} (HTTP {response.status_code})",
                TRANSPORT_ERROR_CODE,
                f"HTTP {response.status_code}",
            )
        if not isinstance(data, dict):
            raise WeComApiError(
                f"WeCom API returned unexpected payload: {endpoint}",
                TRANSPORT_ERROR_CODE,
                "unexpected payload",
            )

        errcode = data.get("errcode", 0)
        if errcode not in (0, None, "0"):
            errmsg = str(data.get("errmsg", ""))
            raise WeComApiError(
                f"WeCom API error: {endpoint}: {errcode} {errmsg}",
                int(errcode) if str(errcode).lstrip("-").isdigit() else TRANSPORT_ERROR_CODE,
                errmsg,
            )
        return data

    async def get_access_token(
        self, corp_id: str, secret: str, timeout: Optional[float] = None
    ) -> AccessToken:
        """Exchange corp id and application secret for an access token.

        Raises:
            WeComApiError: On missing credentials, vendor error or transport failure
        """
        if not corp_id or not secret:
            raise WeComApiError(
                "WeCom corp id and secret are required", TRANSPORT_ERROR_CODE, "missing credentials"
            )

        data = await self._request(
            "GET", "gettoken", params={"corpid": corp_id, "corpsecret": secret}, timeout=timeout
        )
        token = data.get("access_token")
        if not token:
            raise WeComApiError(
                "WeCom gettoken returned no access_token", TRANSPORT_ERROR_CODE, "missing token"
            )
        expires_in = data.get("expires_in") or DEFAULT_TOKEN_EXPIRES_IN
        logger.debug(f"Fetched WeCom access token for corp {corp_id} (expires_in={expires_in})")
        return AccessToken(access_token=str(token), expires_in=int(expires_in))

    async def get_agent_info(
        self, token: str, agent_id: str, timeout: Optional[float] = None
    ) -> AgentInfo:
        data = await self._request(
            "GET", "agent/get", params={"access_token": token, "agentid": agent_id}, timeout=timeout
        )
        return AgentInfo.model_validate(data)

    async def get_user_info(self, token: str, user_id: str) -> Dict[str, Any]:
        data = await self._request(
            "GET", "user/get", params={"access_token": token, "userid": user_id}
        )
        return {k: v for k, v in data.items() if k not in _ENVELOPE_KEYS}

    async def send_message(self, token: str, params: SendMessageParams) -> Dict[str, Any]:
        """Send one message through ``message/send``.

        Returns:
            Vendor response (``msgid``, ``invaliduser``, ...)
        """
        return await self._request(
            "POST", "message/send", params={"access_token": token}, json_body=params.to_wire()
        )

    async def upload_media(
        self,
        token: str,
        media_type: MediaKind,
        data: bytes,
        filename: str,
        content_type: Optional[str] = None,
    ) -> str:
        """Upload a temporary media file.

        Size limits are enforced by callers before the upload.

        Returns:
            media_id for use in ``message/send``
        """
        files = {
            "media": (filename, data, content_type or "application/octet-stream"),
        }
        result = await self._request(
            "POST",
            "media/upload",
            params={"access_token": token, "type": media_type},
            files=files,
        )
        media_id = result.get("media_id")
        if not media_id:
            raise WeComApiError(
                "WeCom media/upload returned no media_id", TRANSPORT_ERROR_CODE, "missing media_id"
            )
        return str(media_id)

    async def call_api(
        self, method: str, token: str, body: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Call an arbitrary API method (``department/list``, ...).

        POSTs when a body is given, GETs otherwise. Envelope keys are stripped
        from the result.
        """
        endpoint = method.strip("/")
        if body is None:
            data = await self._request("GET", endpoint, params={"access_token": token})
        else:
            data = await self._request(
                "POST", endpoint, params={"access_token": token}, json_body=body
            )
        return {k: v for k, v in data.items() if k not in _ENVELOPE_KEYS}
