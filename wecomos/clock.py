"""
Clock helpers.

Internal time is always UTC. Vendor payloads carry epoch seconds
(``CreateTime``), the host runtime and status sinks use epoch milliseconds.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def utc_now_ms() -> int:
    """
    Current time in epoch milliseconds.

    Returns:
        int: milliseconds since 1970-01-01T00:00:00Z
    """
    return int(utc_now().timestamp() * 1000)


def from_epoch_s(s: float) -> datetime:
    """
    Convert epoch seconds to an aware UTC datetime.

    Example:
        >>> from_epoch_s(1769860800).year
        2026
    """
    return datetime.fromtimestamp(s, tz=timezone.utc)


def epoch_s_to_ms(s: float) -> int:
    return int(s * 1000)
