"""Standalone host runtime.

In-memory implementations of every host capability, so the bridge can run
(and be tested) without an external agent gateway. Replies come from a
pluggable async handler::

    async def handler(ctx: InboundContext):
        return f"You said: {ctx.raw_body}"

    runtime = LocalHostRuntime(reply_handler=handler)

Pairing codes are held in memory only; approve them with
``runtime.pairing.approve("wecom", code)``.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from wecomos.clock import from_epoch_s, utc_now_ms
from wecomos.host import (
    AgentRoute,
    Authorizer,
    DeliverCallback,
    ErrorCallback,
    HostRuntime,
    InboundContext,
    PairingResult,
    Peer,
    ReplyPayload,
)
from wecomos.text import chunk_text_with_mode, convert_markdown_tables

logger = logging.getLogger(__name__)

PAIRING_CODE_LENGTH = 8
# No 0/O/1/I so codes survive being read aloud
PAIRING_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

CONTROL_COMMANDS = frozenset({
    "/new",
    "/reset",
    "/stop",
    "/status",
    "/model",
    "/config",
    "/allow",
    "/approve",
    "/restart",
})

ReplyResult = Union[None, str, ReplyPayload, List[Union[str, ReplyPayload]]]
ReplyHandler = Callable[[InboundContext], Awaitable[ReplyResult]]


@dataclass
class PendingPairing:
    sender_id: str
    code: str
    created_at_ms: int
    meta: Dict[str, str] = field(default_factory=dict)


class InMemoryPairingStore:
    """Pairing requests and approved senders, per channel."""

    def __init__(self):
        self._pending: Dict[Tuple[str, str], PendingPairing] = {}
        self._approved: Dict[str, Set[str]] = {}

    async def read_allow_from(self, channel: str) -> List[str]:
        return sorted(self._approved.get(channel, set()))

    async def upsert_request(
        self, channel: str, sender_id: str, meta: Optional[Dict[str, str]] = None
    ) -> PairingResult:
        key = (channel, sender_id)
        existing = self._pending.get(key)
        if existing is not None:
            return PairingResult(code=existing.code, created=False)

        code = "".join(secrets.choice(PAIRING_CODE_ALPHABET) for _ in range(PAIRING_CODE_LENGTH))
        self._pending[key] = PendingPairing(
            sender_id=sender_id, code=code, created_at_ms=utc_now_ms(), meta=dict(meta or {})
        )
        logger.info(f"Pairing request created: channel={channel} sender={sender_id}")
        return PairingResult(code=code, created=True)

    def build_reply(self, channel: str, id_line: str, code: str) -> str:
        return "\n".join([
            "Access not configured.",
            "",
            id_line,
            "",
            f"Pairing code: {code}",
            "",
            "Ask the bot owner to approve this code.",
        ])

    def approve(self, channel: str, code: str) -> Optional[str]:
        """Approve a pending code; returns the sender id or None."""
        wanted = code.strip().upper()
        for key, pending in list(self._pending.items()):
            if key[0] == channel and pending.code == wanted:
                del self._pending[key]
                self._approved.setdefault(channel, set()).add(pending.sender_id)
                logger.info(f"Pairing approved: channel={channel} sender={pending.sender_id}")
                return pending.sender_id
        return None

    def pending(self, channel: str) -> List[PendingPairing]:
        return [p for (ch, _), p in self._pending.items() if ch == channel]


class SlashCommands:
    """Slash-prefixed control commands (``/reset``, ``/status`` ...)."""

    def __init__(self, control_commands: frozenset = CONTROL_COMMANDS):
        self.control_commands = control_commands

    def should_compute_authorization(self, text: str) -> bool:
        return text.strip().startswith("/")

    def is_control_command(self, text: str) -> bool:
        stripped = text.strip()
        if not stripped.startswith("/"):
            return False
        return stripped.split()[0].lower() in self.control_commands

    def resolve_authorized(self, use_access_groups: bool, authorizers: List[Authorizer]) -> bool:
        if not use_access_groups:
            return True
        return any(a.configured and a.allowed for a in authorizers)


class LocalRouter:
    """Routes every conversation to one agent."""

    def __init__(self, default_agent: str = "main"):
        self.default_agent = default_agent

    def resolve_agent_route(self, channel: str, account_id: str, peer: Peer) -> AgentRoute:
        session_key = f"agent:{self.default_agent}:{channel}:{peer.kind}:{peer.id}".lower()
        return AgentRoute(agent_id=self.default_agent, account_id=account_id, session_key=session_key)


@dataclass
class SessionRecord:
    updated_at_ms: int
    last_context: InboundContext
    message_count: int = 1


class InMemorySessionStore:
    def __init__(self):
        self._sessions: Dict[str, SessionRecord] = {}

    def read_updated_at(self, session_key: str) -> Optional[int]:
        record = self._sessions.get(session_key)
        return record.updated_at_ms if record else None

    async def record_inbound(self, session_key: str, ctx: InboundContext) -> None:
        now = ctx.timestamp or utc_now_ms()
        record = self._sessions.get(session_key)
        if record is None:
            self._sessions[session_key] = SessionRecord(updated_at_ms=now, last_context=ctx)
        else:
            record.updated_at_ms = now
            record.last_context = ctx
            record.message_count += 1

    def get(self, session_key: str) -> Optional[SessionRecord]:
        return self._sessions.get(session_key)


def _format_elapsed(ms: int) -> str:
    seconds = max(0, ms // 1000)
    if seconds < 60:
        return f"+{seconds}s"
    if seconds < 3600:
        return f"+{seconds // 60}m"
    if seconds < 86400:
        return f"+{seconds // 3600}h"
    return f"+{seconds // 86400}d"


def _as_payloads(result: ReplyResult) -> List[ReplyPayload]:
    if result is None:
        return []
    items = result if isinstance(result, list) else [result]
    return [ReplyPayload(text=item) if isinstance(item, str) else item for item in items]


class LocalReplyService:
    """Formats envelopes and dispatches replies from a reply handler."""

    def __init__(self, handler: Optional[ReplyHandler] = None):
        self.handler = handler

    def format_envelope(
        self,
        channel: str,
        sender_label: str,
        timestamp_ms: Optional[int],
        previous_timestamp_ms: Optional[int],
        body: str,
    ) -> str:
        parts = [channel, sender_label]
        if timestamp_ms is not None:
            if previous_timestamp_ms is not None:
                parts.append(_format_elapsed(timestamp_ms - previous_timestamp_ms))
            stamp = from_epoch_s(timestamp_ms / 1000).strftime("%Y-%m-%dT%H:%M:%SZ")
            parts.append(stamp)
        return f"[{' '.join(parts)}] {body}"

    def finalize_context(self, ctx: InboundContext) -> InboundContext:
        return ctx.model_copy(update={"command_authorized": ctx.command_authorized is True})

    async def dispatch(
        self, ctx: InboundContext, deliver: DeliverCallback, on_error: ErrorCallback
    ) -> None:
        if self.handler is None:
            logger.debug(f"No reply handler configured, dropping session {ctx.session_key}")
            return

        payloads = _as_payloads(await self.handler(ctx))
        for index, payload in enumerate(payloads):
            kind = "final" if index == len(payloads) - 1 else "block"
            try:
                await deliver(payload)
            except Exception as e:
                on_error(e, kind)


class LocalTextService:
    def convert_tables(self, text: str, mode: str) -> str:
        return convert_markdown_tables(text, mode)

    def chunk(self, text: str, limit: int, mode: str) -> List[str]:
        return chunk_text_with_mode(text, limit, mode)


class LocalHostRuntime(HostRuntime):
    """HostRuntime backed entirely by in-memory services."""

    def __init__(self, reply_handler: Optional[ReplyHandler] = None, default_agent: str = "main"):
        super().__init__(
            pairing=InMemoryPairingStore(),
            commands=SlashCommands(),
            routing=LocalRouter(default_agent),
            session=InMemorySessionStore(),
            reply=LocalReplyService(reply_handler),
            text=LocalTextService(),
        )


async def echo_reply(ctx: InboundContext) -> str:
    """Reply handler that echoes the message back (for local testing)."""
    return f"Echo: {ctx.raw_body}"
