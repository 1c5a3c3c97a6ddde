"""Campaign enrollment windows.

An order can only be attributed to a campaign when it was created inside the
campaign's enrollment window: the closed interval
[start_date, start_date + window_days]. Campaigns outside the window are
skipped entirely for that order (no match attempt, no placeholder fallback).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

DEFAULT_WINDOW_DAYS = 60


def window_for(campaign, window_days: int = DEFAULT_WINDOW_DAYS) -> Optional[Tuple[datetime, datetime]]:
    """Return (start, end) of the campaign's window, or None without a start date."""
    if campaign.start_date is None:
        return None
    start = campaign.start_date
    return start, start + timedelta(days=window_days)


def is_in_window(created_at: datetime, campaign, window_days: int = DEFAULT_WINDOW_DAYS) -> bool:
    window = window_for(campaign, window_days)
    if window is None:
        return False
    start, end = window
    return start <= created_at <= end


def campaigns_for_order(order, campaigns: Iterable, window_days: int = DEFAULT_WINDOW_DAYS) -> List:
    """Campaigns whose window contains the order's creation time, in input order."""
    return [c for c in campaigns if is_in_window(order.created_at, c, window_days)]
