"""Inbound message processing.

Runs after the webhook has been acknowledged. For each text message:

1. Drop messages addressed to another agent
2. Drop empty bodies
3. Classify the conversation (group or direct)
4. Apply the DM policy (group policy for groups), pairing unknown senders
5. Drop unauthorized control commands in groups
6. Resolve the agent route
7. Build the envelope and the inbound context
8. Record the session (failures logged)
9. Dispatch to the host; every reply block goes through deliver_reply
"""

from __future__ import annotations

import logging
from typing import List, Optional

from wecomos.channels.wecom.delivery import deliver_reply
from wecomos.channels.wecom.payload import WeComMessage
from wecomos.channels.wecom.policy import (
    DropReason,
    PolicyDrop,
    check_group_policy,
    is_sender_allowed,
)
from wecomos.channels.wecom.send import OutboundSender
from wecomos.channels.wecom.targets import WebhookTarget
from wecomos.clock import epoch_s_to_ms, utc_now_ms
from wecomos.config import ConfigProvider, DmPolicy
from wecomos.host import (
    CHANNEL_ID,
    CHANNEL_LABEL,
    Authorizer,
    HostRuntime,
    InboundContext,
    Peer,
    ReplyPayload,
)

logger = logging.getLogger(__name__)


class WeComInboundProcessor:
    """Applies access policy and hands authorized messages to the host."""

    def __init__(self, sender: OutboundSender, config: ConfigProvider):
        self.sender = sender
        self.config = config

    async def process(self, message: WeComMessage, target: WebhookTarget) -> Optional[PolicyDrop]:
        """Process one text message.

        Returns:
            PolicyDrop if the message was dropped, None if it was dispatched
        """
        account = target.account
        runtime = target.runtime
        sender_id = message.from_user_name

        def drop(reason: DropReason, details: str = "") -> PolicyDrop:
            result = PolicyDrop(reason, account.account_id, sender_id, details)
            result.log()
            return result

        if runtime is None:
            logger.warning(f"[{account.account_id}] WeCom message received without a host runtime")
            return None

        agent_id = message.agent_id or account.agent_id
        if agent_id != account.agent_id:
            return drop(DropReason.AGENT_MISMATCH, f"agent_id={agent_id}")

        raw_body = message.content.strip()
        if not raw_body:
            return drop(DropReason.EMPTY_BODY)

        is_group = message.is_group
        cfg = self.config.get()

        dm_policy = account.dm_policy
        should_compute_auth = runtime.commands.should_compute_authorization(raw_body)
        store_allow_from: List[str] = []
        if not is_group and (dm_policy != DmPolicy.OPEN or should_compute_auth):
            try:
                store_allow_from = await runtime.pairing.read_allow_from(CHANNEL_ID)
            except Exception as e:
                logger.warning(f"WeCom: reading pairing allow-list failed: {e}")
        effective_allow_from = list(account.allow_from) + list(store_allow_from)
        sender_allowed = is_sender_allowed(sender_id, effective_allow_from)

        command_authorized: Optional[bool] = None
        if should_compute_auth:
            command_authorized = runtime.commands.resolve_authorized(
                cfg.commands.use_access_groups,
                [Authorizer(configured=len(effective_allow_from) > 0, allowed=sender_allowed)],
            )

        if not is_group:
            if dm_policy == DmPolicy.DISABLED:
                return drop(DropReason.DM_DISABLED)
            if dm_policy != DmPolicy.OPEN and not sender_allowed:
                if dm_policy == DmPolicy.PAIRING:
                    await self._request_pairing(target, runtime, sender_id)
                    return drop(DropReason.PAIRING_REQUIRED)
                return drop(DropReason.NOT_ALLOWLISTED, f"dm_policy={dm_policy.value}")
        else:
            group_reason = check_group_policy(account, sender_id)
            if group_reason is not None:
                return drop(group_reason)

        if (
            is_group
            and runtime.commands.is_control_command(raw_body)
            and command_authorized is not True
        ):
            return drop(DropReason.UNAUTHORIZED_COMMAND)

        route = runtime.routing.resolve_agent_route(
            CHANNEL_ID,
            account.account_id,
            Peer(kind="group" if is_group else "dm", id=sender_id),
        )

        from_label = f"group:{sender_id}" if is_group else f"user:{sender_id}"
        timestamp_ms = epoch_s_to_ms(message.create_time) if message.create_time else utc_now_ms()
        previous_ms = runtime.session.read_updated_at(route.session_key)
        body = runtime.reply.format_envelope(
            CHANNEL_LABEL, from_label, timestamp_ms, previous_ms, raw_body
        )

        ctx = runtime.reply.finalize_context(InboundContext(
            body=body,
            raw_body=raw_body,
            command_body=raw_body,
            from_address=f"wecom:group:{sender_id}" if is_group else f"wecom:{sender_id}",
            to_address=f"wecom:group:{sender_id}" if is_group else f"wecom:{account.corp_id}",
            session_key=route.session_key,
            account_id=route.account_id,
            chat_type="group" if is_group else "direct",
            conversation_label=from_label,
            sender_name=sender_id,
            sender_id=sender_id,
            command_authorized=command_authorized,
            message_sid=message.msg_id,
            originating_to=f"wecom:{sender_id}",
            timestamp=timestamp_ms,
        ))

        try:
            await runtime.session.record_inbound(ctx.session_key or route.session_key, ctx)
        except Exception as e:
            logger.error(f"WeCom: failed updating session meta: {e}")

        async def deliver(payload: ReplyPayload) -> None:
            await deliver_reply(
                payload,
                sender_id,
                target,
                self.sender,
                runtime,
                table_mode=cfg.text.table_mode,
                chunk_mode=cfg.text.chunk_mode,
            )

        def on_error(err: Exception, kind: str) -> None:
            logger.error(f"[{account.account_id}] WeCom {kind} reply failed: {err}")

        await runtime.reply.dispatch(ctx, deliver, on_error)
        return None

    async def _request_pairing(self, target: WebhookTarget, runtime: HostRuntime, sender_id: str) -> None:
        account = target.account
        try:
            pairing = await runtime.pairing.upsert_request(
                CHANNEL_ID, sender_id, {"name": sender_id}
            )
        except Exception:
            logger.exception(f"[{account.account_id}] WeCom pairing request failed for {sender_id}")
            return

        if not pairing.created:
            return

        logger.debug(f"WeCom pairing request sender={sender_id}")
        reply = runtime.pairing.build_reply(
            CHANNEL_ID, f"Your WeCom user id: {sender_id}", pairing.code
        )
        result = await self.sender.send_text(sender_id, reply, account.account_id)
        if result.ok:
            target.report(last_outbound_at=utc_now_ms())
        else:
            logger.debug(f"WeCom pairing reply failed for {sender_id}: {result.error}")
