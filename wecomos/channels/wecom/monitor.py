"""Provider lifecycle.

A running provider is one account registered on its webhook path. Stopping
it (directly or by setting its abort event) removes the binding; messages
already past the registry lookup finish normally.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from wecomos.channels.wecom.targets import (
    StatusSink,
    WebhookTarget,
    WebhookTargetRegistry,
    normalize_webhook_path,
)
from wecomos.config import AccountNotConfiguredError, ResolvedWeComAccount

if TYPE_CHECKING:
    from wecomos.host import HostRuntime

logger = logging.getLogger(__name__)


class ProviderHandle:
    """Handle of a running provider; ``stop()`` is idempotent."""

    def __init__(self, registry: WebhookTargetRegistry, target: WebhookTarget):
        self.registry = registry
        self.target = target
        self.stopped = False
        self._watcher: Optional[asyncio.Task] = None

    @property
    def account_id(self) -> str:
        return self.target.account_id

    @property
    def path(self) -> str:
        return self.target.path

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        self.registry.unregister(self.path, self.account_id)
        if self._watcher is not None and not self._watcher.done():
            if self._watcher is not asyncio.current_task():
                self._watcher.cancel()
        logger.info(f"[wecom:{self.account_id}] Provider stopped")

    async def _watch(self, abort: asyncio.Event) -> None:
        await abort.wait()
        self.stop()


async def monitor_provider(
    registry: WebhookTargetRegistry,
    account: ResolvedWeComAccount,
    runtime: Optional["HostRuntime"] = None,
    abort: Optional[asyncio.Event] = None,
    webhook_path: Optional[str] = None,
    status_sink: Optional[StatusSink] = None,
) -> ProviderHandle:
    """Register an account's webhook binding.

    Args:
        registry: Target registry to register in
        account: Resolved account (must be configured)
        runtime: Host runtime that processes messages
        abort: Optional event; setting it stops the provider
        webhook_path: Path override (default ``/webhook/wecom/<account_id>``)
        status_sink: Optional callback for inbound/outbound timestamps

    Raises:
        AccountNotConfiguredError: If the account lacks credentials
    """
    if not account.configured:
        raise AccountNotConfiguredError(account.account_id)

    path = normalize_webhook_path(webhook_path or account.default_webhook_path)
    target = WebhookTarget(account=account, path=path, runtime=runtime, status_sink=status_sink)
    registry.register(path, target)
    handle = ProviderHandle(registry, target)

    if abort is not None:
        if abort.is_set():
            handle.stop()
        else:
            handle._watcher = asyncio.get_running_loop().create_task(handle._watch(abort))

    logger.info(f"[wecom:{account.account_id}] Webhook path registered: {path}")
    return handle
