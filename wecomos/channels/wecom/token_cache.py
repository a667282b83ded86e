"""Access token cache.

Tokens are memoized per ``corp_id:secret`` and refreshed once they are within
five minutes of expiry. Concurrent callers for an expired key may each fetch
a token; the last fetch wins the cache slot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict

from wecomos.channels.wecom.client import WeComClient
from wecomos.clock import utc_now_ms

logger = logging.getLogger(__name__)

REFRESH_MARGIN_MS = 5 * 60 * 1000


@dataclass
class TokenCacheEntry:
    token: str
    expires_at_ms: int


class AccessTokenCache:
    """In-memory access token cache owned by the bridge."""

    def __init__(
        self,
        client: WeComClient,
        clock: Callable[[], int] = utc_now_ms,
        refresh_margin_ms: int = REFRESH_MARGIN_MS,
    ):
        self.client = client
        self._clock = clock
        self._margin = refresh_margin_ms
        self._entries: Dict[str, TokenCacheEntry] = {}

    @staticmethod
    def _key(corp_id: str, secret: str) -> str:
        return f"{corp_id}:{secret}"

    async def get_token(self, corp_id: str, secret: str) -> str:
        """Return a token valid for at least the refresh margin.

        Raises:
            WeComApiError: If a fetch is needed and fails
        """
        key = self._key(corp_id, secret)
        entry = self._entries.get(key)
        now = self._clock()
        if entry and entry.expires_at_ms - now > self._margin:
            return entry.token

        fetched = await self.client.get_access_token(corp_id, secret)
        self._entries[key] = TokenCacheEntry(
            token=fetched.access_token,
            expires_at_ms=self._clock() + fetched.expires_in * 1000,
        )
        logger.debug(f"Cached WeCom access token for corp {corp_id}")
        return fetched.access_token

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
