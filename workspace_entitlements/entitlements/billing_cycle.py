"""
Billing cycle arithmetic.

Cycles are monthly and anchored on the base package's billing_cycle_anchor:
cycle n starts at anchor + n months. Each boundary is computed from the
anchor directly (never from the previous boundary) so that month-end
anchors clamp per month without drifting, e.g. an anchor on Jan 31 gives
boundaries Feb 28 (or 29), Mar 31, Apr 30.

Workspaces without a base package fall back to calendar months.
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

from workspace_entitlements.models.base import as_utc


def cycle_index(anchor: datetime, now: datetime) -> int:
    """
    Zero-based index of the cycle containing `now`.

    Negative when `now` precedes the anchor.
    """
    anchor = as_utc(anchor)
    now = as_utc(now)
    months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    if anchor + relativedelta(months=months) > now:
        months -= 1
    return months


def cycle_bounds(anchor: datetime, now: datetime) -> Tuple[datetime, datetime]:
    """Return [start, end) of the cycle containing `now`."""
    anchor = as_utc(anchor)
    index = cycle_index(anchor, now)
    return (
        anchor + relativedelta(months=index),
        anchor + relativedelta(months=index + 1),
    )


def cycle_start(anchor: datetime, now: datetime) -> datetime:
    return cycle_bounds(anchor, now)[0]


def cycle_end(anchor: datetime, now: datetime) -> datetime:
    return cycle_bounds(anchor, now)[1]


def previous_cycle_start(anchor: datetime, now: datetime) -> datetime:
    anchor = as_utc(anchor)
    return anchor + relativedelta(months=cycle_index(anchor, now) - 1)


def calendar_month_start(now: datetime) -> datetime:
    now = as_utc(now)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def calendar_month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    start = calendar_month_start(now)
    return start, start + relativedelta(months=1)


def workspace_cycle_bounds(
    anchor: Optional[datetime],
    now: datetime,
) -> Tuple[datetime, datetime]:
    """Cycle bounds for a workspace, calendar month when there is no anchor."""
    if anchor is None:
        return calendar_month_bounds(now)
    return cycle_bounds(anchor, now)


def rolling_window_start(now: datetime, days: int) -> datetime:
    return as_utc(now) - timedelta(days=days)
