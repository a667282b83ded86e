"""Host runtime interface.

The bridge hands authorized messages to a conversational-agent host. This
module defines everything the bridge is allowed to ask of that host, grouped
by capability:

- pairing: allow-list store and pairing-code issuance
- commands: control-command detection and authorization
- routing: agent route and session key resolution
- session: session bookkeeping
- reply: envelope formatting, context finalization and reply dispatch
- text: Markdown table conversion and chunking

The bridge only calls these operations; it never reaches into host internals.
``wecomos.host_local.LocalHostRuntime`` is a standalone implementation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_pascal

CHANNEL_ID = "wecom"
CHANNEL_LABEL = "WeCom"

PeerKind = Literal["group", "dm"]
ChatType = Literal["group", "direct"]


@dataclass
class Peer:
    """Conversation partner used for routing."""
    kind: PeerKind
    id: str


@dataclass
class AgentRoute:
    """Resolved agent route.

    Attributes:
        agent_id: Agent handling the conversation
        account_id: WeCom account the message arrived on
        session_key: Key of the host session for this conversation
    """
    agent_id: str
    account_id: str
    session_key: str


@dataclass
class PairingResult:
    code: str
    created: bool


@dataclass
class Authorizer:
    """One source of command authorization (an allow-list)."""
    configured: bool
    allowed: bool


class InboundContext(BaseModel):
    """Finalized inbound context handed to the host (PascalCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)

    body: str
    raw_body: str
    command_body: str
    from_address: str = Field(alias="From")
    to_address: str = Field(alias="To")
    session_key: str
    account_id: str
    chat_type: ChatType
    conversation_label: str
    sender_name: str
    sender_id: str
    command_authorized: Optional[bool] = None
    provider: str = CHANNEL_ID
    surface: str = CHANNEL_ID
    message_sid: Optional[str] = None
    originating_channel: str = CHANNEL_ID
    originating_to: Optional[str] = None
    timestamp: Optional[int] = None

    def to_host(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ReplyPayload(BaseModel):
    """One reply block produced by the host."""

    text: Optional[str] = None
    media_url: Optional[str] = None
    media_urls: List[str] = Field(default_factory=list)

    def media_list(self) -> List[str]:
        if self.media_urls:
            return list(self.media_urls)
        return [self.media_url] if self.media_url else []


DeliverCallback = Callable[[ReplyPayload], Awaitable[None]]
ErrorCallback = Callable[[Exception, str], None]


class PairingService(Protocol):
    async def read_allow_from(self, channel: str) -> List[str]:
        """Return sender ids approved through pairing."""
        ...

    async def upsert_request(
        self, channel: str, sender_id: str, meta: Optional[Dict[str, str]] = None
    ) -> PairingResult:
        """Issue or reuse the pending pairing code for a sender."""
        ...

    def build_reply(self, channel: str, id_line: str, code: str) -> str:
        ...


class CommandService(Protocol):
    def should_compute_authorization(self, text: str) -> bool:
        ...

    def is_control_command(self, text: str) -> bool:
        ...

    def resolve_authorized(self, use_access_groups: bool, authorizers: List[Authorizer]) -> bool:
        ...


class RoutingService(Protocol):
    def resolve_agent_route(self, channel: str, account_id: str, peer: Peer) -> AgentRoute:
        ...


class SessionService(Protocol):
    def read_updated_at(self, session_key: str) -> Optional[int]:
        """Epoch ms of the previous inbound message in the session, if any."""
        ...

    async def record_inbound(self, session_key: str, ctx: InboundContext) -> None:
        ...


class ReplyService(Protocol):
    def format_envelope(
        self,
        channel: str,
        sender_label: str,
        timestamp_ms: Optional[int],
        previous_timestamp_ms: Optional[int],
        body: str,
    ) -> str:
        ...

    def finalize_context(self, ctx: InboundContext) -> InboundContext:
        ...

    async def dispatch(
        self, ctx: InboundContext, deliver: DeliverCallback, on_error: ErrorCallback
    ) -> None:
        """Produce replies for ``ctx`` and call ``deliver`` once per block."""
        ...


class TextService(Protocol):
    def convert_tables(self, text: str, mode: str) -> str:
        ...

    def chunk(self, text: str, limit: int, mode: str) -> List[str]:
        ...


@dataclass
class HostRuntime:
    """Capability bag injected into the bridge."""
    pairing: PairingService
    commands: CommandService
    routing: RoutingService
    session: SessionService
    reply: ReplyService
    text: TextService
