"""Access policy for inbound WeCom messages.

Direct messages are gated by ``dm_policy``:

- disabled: every DM is dropped
- open: every DM proceeds
- allowlist: sender must match ``allow_from`` or the pairing store
- pairing: like allowlist, but unknown senders get a pairing code

Group messages are gated by ``group_policy`` only when it is set, and
control commands in groups always require an authorized sender.

Allow-list matching: ``*`` admits everyone; entries are compared
case-insensitively with an optional ``wecom:``/``wc:`` prefix removed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from wecomos.config import GroupPolicy, ResolvedWeComAccount

logger = logging.getLogger(__name__)

WILDCARD = "*"
_PREFIX_RE = re.compile(r"^(wecom|wc):", re.IGNORECASE)


class DropReason(str, Enum):
    """Why an inbound message was not dispatched."""
    AGENT_MISMATCH = "agent_mismatch"
    EMPTY_BODY = "empty_body"
    DM_DISABLED = "dm_disabled"
    NOT_ALLOWLISTED = "not_allowlisted"
    PAIRING_REQUIRED = "pairing_required"
    GROUP_DISABLED = "group_disabled"
    GROUP_NOT_ALLOWLISTED = "group_not_allowlisted"
    UNAUTHORIZED_COMMAND = "unauthorized_command"


@dataclass
class PolicyDrop:
    """A dropped message, for logging and tests."""
    reason: DropReason
    account_id: str
    sender_id: str
    details: str = ""

    def log(self) -> None:
        # Policy drops are routine; keep them at debug to avoid log floods
        logger.debug(
            f"WeCom drop: {self.reason.value} - "
            f"{self.account_id}:{self.sender_id} - {self.details}"
        )


def normalize_allow_entry(entry: object) -> str:
    return _PREFIX_RE.sub("", str(entry).strip().lower())


def is_sender_allowed(sender_id: str, allow_from: Iterable[object]) -> bool:
    """Check a sender against an allow-list.

    Example:
        >>> is_sender_allowed("Bob", ["wecom:bob"])
        True
        >>> is_sender_allowed("alice", ["bob"])
        False
    """
    entries = [str(e).strip() for e in allow_from]
    if WILDCARD in entries:
        return True
    sender = sender_id.strip().lower()
    if not sender:
        return False
    return any(normalize_allow_entry(entry) == sender for entry in entries)


def check_group_policy(account: ResolvedWeComAccount, sender_id: str) -> Optional[DropReason]:
    """Apply ``group_policy`` when configured; None means the message may proceed."""
    policy = account.group_policy
    if policy is None or policy == GroupPolicy.OPEN:
        return None
    if policy == GroupPolicy.DISABLED:
        return DropReason.GROUP_DISABLED
    if is_sender_allowed(sender_id, account.group_allow_from):
        return None
    return DropReason.GROUP_NOT_ALLOWLISTED
