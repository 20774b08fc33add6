"""
Per-minute session billing.

Started minutes are billed in full: 61 seconds is two minutes.
"""

from datetime import datetime, timedelta

_MINUTE_MS = 60_000


def billable_minutes(started_at: datetime, ended_at: datetime) -> int:
    """Whole minutes between two instants, rounded up; never negative."""
    elapsed_ms = (ended_at - started_at) // timedelta(milliseconds=1)
    if elapsed_ms <= 0:
        return 0
    return -(-elapsed_ms // _MINUTE_MS)


def session_cost(started_at: datetime, ended_at: datetime, price_per_minute: int) -> int:
    """Cost of a session: billable minutes × rate."""
    return billable_minutes(started_at, ended_at) * price_per_minute
