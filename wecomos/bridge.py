"""WeCom bridge composition root.

WeComBridge owns every piece of mutable process state (the access token
cache and the webhook target registry) together with the API client, the
outbound sender, the inbound processor and the host runtime. The HTTP layer
and the CLI receive the bridge explicitly; nothing is module-global, so tests
can build as many isolated bridges as they need.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

import httpx

from wecomos.channels.wecom.client import WeComClient
from wecomos.channels.wecom.inbound import WeComInboundProcessor
from wecomos.channels.wecom.monitor import ProviderHandle, monitor_provider
from wecomos.channels.wecom.payload import WeComMessage
from wecomos.channels.wecom.policy import PolicyDrop
from wecomos.channels.wecom.probe import ProbeResult, probe_account
from wecomos.channels.wecom.send import OutboundSender, SendResult
from wecomos.channels.wecom.targets import StatusSink, WebhookTarget, WebhookTargetRegistry
from wecomos.channels.wecom.token_cache import AccessTokenCache
from wecomos.config import ConfigProvider, ResolvedWeComAccount, list_enabled_accounts
from wecomos.host import HostRuntime
from wecomos.host_local import LocalHostRuntime

logger = logging.getLogger(__name__)


class WeComBridge:
    """Wires configuration, vendor API, registry and host runtime together.

    Attributes:
        config: Configuration provider (re-read on every account resolution)
        runtime: Host runtime receiving authorized messages
        registry: Webhook path -> bindings
        token_cache: Access tokens per corp/secret
        status: Last inbound/outbound timestamps per account (epoch ms)
    """

    def __init__(
        self,
        config: ConfigProvider,
        runtime: Optional[HostRuntime] = None,
        client: Optional[WeComClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        media_transport: Optional[httpx.AsyncBaseTransport] = None,
        probe_on_start: bool = False,
    ):
        self.config = config
        self.runtime = runtime or LocalHostRuntime(default_agent=config.get().default_agent)
        self.client = client or WeComClient(transport=transport)
        self.token_cache = AccessTokenCache(self.client)
        self.registry = WebhookTargetRegistry()
        self.sender = OutboundSender(
            self.client, self.token_cache, config, media_transport=media_transport
        )
        self.inbound = WeComInboundProcessor(self.sender, config)
        self.probe_on_start = probe_on_start
        self.handles: Dict[str, ProviderHandle] = {}
        self.status: Dict[str, Dict[str, int]] = {}

    def _status_sink(self, account_id: str) -> StatusSink:
        def sink(fields: Dict[str, int]) -> None:
            self.status.setdefault(account_id, {}).update(fields)
        return sink

    async def start_account(
        self, account_id: Optional[str] = None, abort: Optional[asyncio.Event] = None
    ) -> ProviderHandle:
        """Start listening for one account.

        Raises:
            AccountNotConfiguredError: If the account lacks credentials
        """
        account = self.config.account(account_id)
        existing = self.handles.get(account.account_id)
        if existing is not None and not existing.stopped:
            return existing

        if self.probe_on_start and account.configured:
            result = await self.probe(account.account_id)
            if result.ok and result.agent is not None:
                logger.info(f"[wecom:{account.account_id}] Agent: {result.agent.name or account.agent_id}")
            else:
                logger.warning(f"[wecom:{account.account_id}] Probe failed: {result.error}")

        handle = await monitor_provider(
            self.registry,
            account,
            runtime=self.runtime,
            abort=abort,
            webhook_path=account.webhook_path,
            status_sink=self._status_sink(account.account_id),
        )
        self.handles[account.account_id] = handle
        return handle

    async def start_all(self) -> List[ProviderHandle]:
        """Start every enabled and configured account."""
        started = []
        for account in list_enabled_accounts(self.config.wecom()):
            if not account.configured:
                logger.warning(f"[wecom:{account.account_id}] Skipped: not configured")
                continue
            started.append(await self.start_account(account.account_id))
        return started

    async def stop_all(self) -> None:
        for handle in list(self.handles.values()):
            handle.stop()
        self.handles.clear()

    def resolve_target(self, path: str, token: Optional[str] = None) -> Optional[WebhookTarget]:
        return self.registry.resolve(path, token)

    def fallback_account(self) -> Optional[ResolvedWeComAccount]:
        """Default account from live configuration, for URL verification before start."""
        try:
            account = self.config.account()
        except Exception as e:
            logger.debug(f"Config fallback for URL verification failed: {e}")
            return None
        return account if account.configured else None

    async def handle_message(self, message: WeComMessage, target: WebhookTarget) -> Optional[PolicyDrop]:
        return await self.inbound.process(message, target)

    async def send_text(self, to: str, text: str, account_id: Optional[str] = None) -> SendResult:
        return await self.sender.send_text(to, text, account_id)

    async def send_media(
        self,
        to: str,
        media_url: str,
        account_id: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> SendResult:
        return await self.sender.send_media(to, media_url, account_id, caption)

    async def probe(self, account_id: Optional[str] = None) -> ProbeResult:
        account = self.config.account(account_id)
        return await probe_account(self.client, account.corp_id, account.agent_id, account.secret)

    def reset(self) -> None:
        """Drop cached tokens and registered webhooks."""
        self.token_cache.clear()
        self.registry.clear()
        self.handles.clear()
