"""Webhook target registry.

Maps a normalized webhook path to the bindings listening on it. Several
accounts may share a path (for example while a webhook is being migrated);
``resolve`` picks the binding whose webhook token matches the ``token``
query parameter, falling back to the first registered one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from wecomos.config import ResolvedWeComAccount

if TYPE_CHECKING:
    from wecomos.host import HostRuntime

logger = logging.getLogger(__name__)

StatusSink = Callable[[Dict[str, int]], None]


def normalize_webhook_path(path: Optional[str]) -> str:
    """Normalize a webhook path: leading slash, no trailing slash, ``/`` if empty."""
    trimmed = (path or "").strip()
    if not trimmed:
        return "/"
    if not trimmed.startswith("/"):
        trimmed = f"/{trimmed}"
    return trimmed.rstrip("/") or "/"


@dataclass
class WebhookTarget:
    """One account listening on a webhook path."""
    account: ResolvedWeComAccount
    path: str
    runtime: Optional["HostRuntime"] = None
    status_sink: Optional[StatusSink] = None

    @property
    def account_id(self) -> str:
        return self.account.account_id

    @property
    def token(self) -> Optional[str]:
        return self.account.webhook_token

    def report(self, **fields: int) -> None:
        """Forward status fields (``last_inbound_at`` ...) to the sink."""
        if self.status_sink is None:
            return
        try:
            self.status_sink(dict(fields))
        except Exception:
            logger.exception(f"Status sink failed for WeCom account {self.account_id}")


class WebhookTargetRegistry:
    """In-memory path -> bindings map owned by the bridge."""

    def __init__(self):
        self._targets: Dict[str, List[WebhookTarget]] = {}

    def register(self, path: str, target: WebhookTarget) -> Callable[[], None]:
        """Append a binding under ``path``.

        Returns:
            A callable removing this account from the path
        """
        key = normalize_webhook_path(path)
        target.path = key
        self._targets.setdefault(key, []).append(target)
        logger.info(f"Registered WeCom webhook {key} for account {target.account_id}")

        def _unregister() -> None:
            self.unregister(key, target.account_id)

        return _unregister

    def unregister(self, path: str, account_id: str) -> None:
        key = normalize_webhook_path(path)
        remaining = [t for t in self._targets.get(key, []) if t.account_id != account_id]
        if remaining:
            self._targets[key] = remaining
        elif key in self._targets:
            del self._targets[key]
            logger.info(f"Unregistered WeCom webhook {key}")

    def get(self, path: str) -> List[WebhookTarget]:
        return list(self._targets.get(normalize_webhook_path(path), []))

    def resolve(self, path: str, token: Optional[str] = None) -> Optional[WebhookTarget]:
        """Pick the binding for a request.

        Args:
            path: Request path
            token: ``token`` query parameter, if the request carried one

        Returns:
            Matching binding, the first binding, or None if nothing listens
        """
        targets = self._targets.get(normalize_webhook_path(path))
        if not targets:
            return None
        if token:
            for target in targets:
                if target.token == token:
                    return target
        return targets[0]

    def paths(self) -> List[str]:
        return sorted(self._targets)

    def clear(self) -> None:
        self._targets.clear()

    def __len__(self) -> int:
        return sum(len(targets) for targets in self._targets.values())
