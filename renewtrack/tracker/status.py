"""Urgency classification for renewals."""

from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass

DUE_SOON_DAYS = 7
DUE_WARNING_DAYS = 15


class Tier(str, enum.Enum):
    PAID = "paid"
    OVERDUE = "overdue"
    DUE_SOON = "due_soon"
    DUE_WARNING = "due_warning"
    UPCOMING = "upcoming"

    @property
    def colour(self) -> str:
        return _COLOURS[self]


_COLOURS = {
    Tier.PAID: "green",
    Tier.OVERDUE: "red",
    Tier.DUE_SOON: "red",
    Tier.DUE_WARNING: "yellow",
    Tier.UPCOMING: "blue",
}


@dataclass(frozen=True)
class RenewalStatus:
    label: str
    tier: Tier
    days_remaining: int | None = None

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "tier": self.tier.value,
            "colour": self.tier.colour,
            "days_remaining": self.days_remaining,
        }


def as_date(value: dt.date | dt.datetime | str) -> dt.date:
    """Truncate a date, datetime or ISO string to its calendar day."""

    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    return dt.date.fromisoformat(str(value)[:10])


def classify(
    end_date: dt.date | dt.datetime | str,
    is_paid: bool,
    today: dt.date | dt.datetime | None = None,
) -> RenewalStatus:
    """Map a renewal's due date and paid flag to a status label and tier.

    Payment wins over any date. Otherwise the number of whole calendar days
    until ``end_date`` decides the tier, so a renewal does not change tier
    during the day it is viewed.
    """

    if is_paid:
        return RenewalStatus("Paid", Tier.PAID)

    due = as_date(end_date)
    current = as_date(today) if today is not None else dt.date.today()
    if due < current:
        return RenewalStatus("Overdue", Tier.OVERDUE, (due - current).days)

    days = (due - current).days
    if days == 0:
        label = "Due today"
    elif days == 1:
        label = "Due in 1 day"
    else:
        label = f"Due in {days} days"

    if days <= DUE_SOON_DAYS:
        tier = Tier.DUE_SOON
    elif days <= DUE_WARNING_DAYS:
        tier = Tier.DUE_WARNING
    else:
        tier = Tier.UPCOMING
    return RenewalStatus(label, tier, days)
