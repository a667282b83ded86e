"""Credential probe.

Fetches an access token and the agent metadata to prove that corp id,
agent id and secret work together. Never raises.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from wecomos.channels.wecom.client import (
    DEFAULT_TIMEOUT,
    AgentInfo,
    WeComApiError,
    WeComClient,
)

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    ok: bool
    elapsed_ms: int
    agent: Optional[AgentInfo] = None
    error: Optional[str] = None


async def probe_account(
    client: WeComClient,
    corp_id: str,
    agent_id: str,
    secret: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> ProbeResult:
    """Check WeCom credentials.

    Args:
        client: API client
        corp_id: Corp id
        agent_id: Application id
        secret: Application secret
        timeout: Per-call timeout in seconds

    Returns:
        ProbeResult with the agent metadata on success
    """
    if not (corp_id or "").strip() or not (agent_id or "").strip() or not (secret or "").strip():
        return ProbeResult(ok=False, elapsed_ms=0, error="corp_id, agent_id, and secret are required")

    started = time.monotonic()

    def elapsed() -> int:
        return int((time.monotonic() - started) * 1000)

    try:
        token = await client.get_access_token(corp_id.strip(), secret.strip(), timeout=timeout)
        agent = await client.get_agent_info(token.access_token, agent_id.strip(), timeout=timeout)
    except WeComApiError as e:
        if e.error_msg == "timeout":
            return ProbeResult(ok=False, elapsed_ms=elapsed(), error=f"Request timed out ({timeout}s)")
        return ProbeResult(
            ok=False,
            elapsed_ms=elapsed(),
            error=f"{e.error_msg} (errcode: {e.error_code})",
        )

    logger.debug(f"WeCom probe ok for agent {agent_id} in {elapsed()}ms")
    return ProbeResult(ok=True, elapsed_ms=elapsed(), agent=agent)
