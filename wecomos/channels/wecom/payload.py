"""WeCom payload normalization.

WeCom delivers callbacks as XML (classic receive mode) or JSON (newer API
receive mode). Field names arrive in three casings depending on the
response shape: PascalCase (``FromUserName``), camelCase (``fromUserName``)
and all-lowercase (``fromusername``). Everything in this module accepts any
of them and produces one canonical PascalCase view.

The XML reader is a tolerant tag scanner, not a full XML parser: it reads
flat ``<Tag>value</Tag>`` and ``<Tag><![CDATA[value]]></Tag>`` pairs and
unwraps an outer ``<xml>`` element once.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional
from xml.sax.saxutils import unescape

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(
    r"<(\w+)><!\[CDATA\[(.*?)\]\]></\1>|<(\w+)>(.*?)</\3>",
    re.DOTALL,
)
# Canonical numbers only: "007" stays a string so ids are not corrupted
_NUMBER_RE = re.compile(r"^-?(0|[1-9]\d*)(\.\d+)?$")

CANONICAL_KEYS = (
    "ToUserName",
    "FromUserName",
    "CreateTime",
    "MsgType",
    "Content",
    "MsgId",
    "AgentID",
    "Encrypt",
    "Event",
    "ChatInfo",
    "ChatId",
)

CHATROOM_SUFFIX = "@chatroom"


def _coerce(value: str) -> Any:
    if _NUMBER_RE.match(value):
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            return value
    return value


def _scan(xml: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for match in _TAG_RE.finditer(xml):
        if match.group(1) is not None:
            result[match.group(1)] = match.group(2)
        elif match.group(3).lower() == "xml":
            # Unwrapped by the caller; keep entities intact for the inner scan
            result[match.group(3)] = match.group(4)
        else:
            result[match.group(3)] = _coerce(unescape(match.group(4).strip()))
    return result


def parse_xml(xml: Optional[str]) -> Dict[str, Any]:
    """Read a WeCom XML document into a flat key/value record.

    Example:
        >>> parse_xml("<xml><ToUserName><![CDATA[a]]></ToUserName>"
        ...           "<CreateTime>123</CreateTime></xml>")
        {'ToUserName': 'a', 'CreateTime': 123}

    Returns an empty dict when nothing can be read.
    """
    if not xml or not isinstance(xml, str):
        return {}

    result = _scan(xml)
    wrapper_key = next((k for k in result if k.lower() == "xml"), None)
    if wrapper_key is not None:
        inner = result.pop(wrapper_key)
        if isinstance(inner, str) and "<" in inner:
            for key, value in _scan(inner).items():
                result.setdefault(key, value)
    return result


def parse_body(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a callback body, trying JSON first and XML second.

    Returns:
        Flat record, or None if the body is empty or unreadable
    """
    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None

    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None

    if isinstance(parsed, dict):
        return parsed

    record = parse_xml(text)
    if not record:
        logger.debug("Callback body is neither a JSON object nor readable XML")
        return None
    return record


def lookup(payload: Dict[str, Any], key: str) -> Any:
    """Case-insensitive field lookup (PascalCase, camelCase, lowercase)."""
    if key in payload:
        return payload[key]
    lowered = key.lower()
    for candidate, value in payload.items():
        if isinstance(candidate, str) and candidate.lower() == lowered:
            return value
    return None


def canonicalize_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy with canonical PascalCase keys backfilled."""
    canonical = dict(payload)
    for key in CANONICAL_KEYS:
        if key not in canonical:
            value = lookup(payload, key)
            if value is not None:
                canonical[key] = value
    return canonical


def extract_encrypt(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return the ``Encrypt`` envelope of a callback body, if any."""
    if not payload:
        return None
    value = lookup(payload, "Encrypt")
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


class WeComMessage(BaseModel):
    """Canonical inbound WeCom message.

    Attributes:
        to_user_name: Recipient (the corp id for app messages)
        from_user_name: Sender user id
        create_time: Vendor timestamp in epoch seconds
        msg_type: Message type (``text``, ``image``, ``event``, ...)
        content: Text content (empty for non-text messages)
        msg_id: Vendor message id
        agent_id: Application id the message was delivered to
        chat_id: Group chat id, when the payload carries one
        chat_info: Group metadata object, when present
        raw: Canonicalized source record
    """

    to_user_name: Optional[str] = Field(None, description="Recipient id")
    from_user_name: str = Field("", description="Sender user id")
    create_time: Optional[int] = Field(None, description="Epoch seconds")
    msg_type: str = Field("", description="Vendor message type")
    content: str = Field("", description="Text content")
    msg_id: Optional[str] = Field(None, description="Vendor message id")
    agent_id: Optional[str] = Field(None, description="Target application id")
    chat_id: Optional[str] = Field(None, description="Group chat id")
    chat_info: Optional[Dict[str, Any]] = Field(None, description="Group metadata")
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WeComMessage":
        """Build the canonical message from any casing variant."""
        data = canonicalize_payload(payload)

        create_time = data.get("CreateTime")
        try:
            create_time = int(create_time) if create_time is not None else None
        except (TypeError, ValueError):
            create_time = None

        chat_info = data.get("ChatInfo")
        if isinstance(chat_info, str):
            try:
                chat_info = json.loads(chat_info)
            except ValueError:
                chat_info = None

        content = data.get("Content")
        return cls(
            to_user_name=_as_str(data.get("ToUserName")),
            from_user_name=_as_str(data.get("FromUserName")) or "",
            create_time=create_time,
            msg_type=(_as_str(data.get("MsgType")) or "").lower(),
            content=content if isinstance(content, str) else (_as_str(content) or ""),
            msg_id=_as_str(data.get("MsgId")),
            agent_id=_as_str(data.get("AgentID")),
            chat_id=_as_str(data.get("ChatId")),
            chat_info=chat_info if isinstance(chat_info, dict) else None,
            raw=data,
        )

    @property
    def is_text(self) -> bool:
        return self.msg_type == "text"

    @property
    def is_group(self) -> bool:
        """True for chat-room messages (suffix, group metadata or type marker)."""
        if self.from_user_name.endswith(CHATROOM_SUFFIX):
            return True
        if self.chat_info is not None or self.chat_id:
            return True
        return "chatroom" in self.msg_type
