"""Dashboard aggregation over the full renewal and activity collections.

Every function here is pure: callers pass the records and the reference time,
and nothing is cached between calls.

Revenue definitions
-------------------
- MTD: paid renewals whose ``created_at`` lies between the first day of the
  current month and ``now``.
- YTD: paid renewals whose ``end_date`` falls within the current calendar year.
- Projected: all renewals, paid or not, with ``end_date`` between today and the
  same day twelve months ahead.
- Monthly series: paid renewals bucketed by the month of ``created_at``.
"""

from __future__ import annotations

import datetime as dt
from typing import Iterable

from .errors import ValidationError
from .status import as_date

UPCOMING_WINDOW_DAYS = 30
PROJECTION_MONTHS = 12
RECENT_ACTIVITY_LIMIT = 10
DEFAULT_REVENUE_MONTHS = 6


def add_months(start: dt.date, months: int) -> dt.date:
    """
    Add months while keeping day in valid range (e.g., Jan 31 + 1 month => Feb 28/29).
    """
    y = start.year + (start.month - 1 + months) // 12
    m = (start.month - 1 + months) % 12 + 1
    if m == 12:
        next_month = dt.date(y + 1, 1, 1)
    else:
        next_month = dt.date(y, m + 1, 1)
    last_day = next_month - dt.timedelta(days=1)
    day = min(start.day, last_day.day)
    return dt.date(y, m, day)


def _created_at(record: dict) -> dt.datetime:
    value = record["created_at"]
    if isinstance(value, dt.datetime):
        return value
    return dt.datetime.fromisoformat(str(value))


def _total(renewals: Iterable[dict]) -> float:
    return round(sum(float(renewal["amount"]) for renewal in renewals), 2)


def is_upcoming(renewal: dict, today: dt.date, days: int = UPCOMING_WINDOW_DAYS) -> bool:
    """Return True for unpaid renewals due between today and ``days`` ahead."""

    if renewal["is_paid"]:
        return False
    due = as_date(renewal["end_date"])
    return today <= due <= today + dt.timedelta(days=days)


def upcoming_renewals(
    renewals: Iterable[dict], today: dt.date, days: int = UPCOMING_WINDOW_DAYS
) -> list[dict]:
    if days < 0:
        raise ValidationError("days must not be negative")
    selected = [renewal for renewal in renewals if is_upcoming(renewal, today, days)]
    return sorted(selected, key=lambda renewal: (as_date(renewal["end_date"]), renewal["id"]))


def revenue_summary(renewals: list[dict], now: dt.datetime) -> dict:
    today = now.date()
    month_start = dt.datetime(now.year, now.month, 1)
    paid = [renewal for renewal in renewals if renewal["is_paid"]]

    mtd = _total(r for r in paid if month_start <= _created_at(r) <= now)
    ytd = _total(r for r in paid if as_date(r["end_date"]).year == now.year)
    horizon = add_months(today, PROJECTION_MONTHS)
    projected = _total(r for r in renewals if today <= as_date(r["end_date"]) <= horizon)
    return {"mtd": mtd, "ytd": ytd, "projected": projected}


def monthly_revenue(
    renewals: Iterable[dict],
    months: int = DEFAULT_REVENUE_MONTHS,
    now: dt.datetime | None = None,
) -> list[dict]:
    """Return paid revenue for the trailing ``months`` calendar months, oldest first."""

    if months < 1:
        raise ValidationError("months must be at least 1")
    now = now or dt.datetime.now()
    buckets: dict[tuple[int, int], float] = {}
    order: list[tuple[int, int]] = []
    current = now.year * 12 + now.month - 1
    for offset in range(months - 1, -1, -1):
        year, month_index = divmod(current - offset, 12)
        key = (year, month_index + 1)
        buckets[key] = 0.0
        order.append(key)

    for renewal in renewals:
        if not renewal["is_paid"]:
            continue
        created = _created_at(renewal)
        key = (created.year, created.month)
        if key in buckets and created <= now:
            buckets[key] += float(renewal["amount"])

    return [
        {
            "month": dt.date(year, month, 1).strftime("%b %Y"),
            "amount": round(buckets[(year, month)], 2),
        }
        for year, month in order
    ]


def recent_activities(activities: Iterable[dict], limit: int = RECENT_ACTIVITY_LIMIT) -> list[dict]:
    ordered = sorted(
        activities,
        key=lambda activity: (_created_at(activity), activity["id"]),
        reverse=True,
    )
    return ordered[:limit]


def compute_stats(
    renewals: list[dict],
    activities: list[dict],
    *,
    total_clients: int,
    active_services: int,
    now: dt.datetime | None = None,
    window_days: int = UPCOMING_WINDOW_DAYS,
    months: int = DEFAULT_REVENUE_MONTHS,
) -> dict:
    """Build the dashboard snapshot from enriched renewals and the activity feed."""

    now = now or dt.datetime.now()
    upcoming = upcoming_renewals(renewals, now.date(), window_days)
    return {
        "total_clients": total_clients,
        "active_services": active_services,
        "pending_renewals": len(upcoming),
        "revenue": revenue_summary(renewals, now),
        "upcoming_renewals": upcoming,
        "recent_activities": recent_activities(activities),
        "monthly_revenue": monthly_revenue(renewals, months, now),
    }
