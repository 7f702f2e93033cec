"""Request and response models for the JSON API.

Payloads use camelCase keys on the wire; the models also accept the
snake_case field names so store records validate directly.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, StrictBool, model_validator
from pydantic.alias_generators import to_camel

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


def error_message(exc: pydantic.ValidationError) -> str:
    """Flatten pydantic errors into one readable line."""

    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)


def dump(model: type[BaseModel], record: dict) -> dict:
    return model.model_validate(record).model_dump(mode="json", by_alias=True)


def _check_date_order(start: dt.date | None, end: dt.date | None) -> None:
    if start is not None and end is not None and end < start:
        raise ValueError("End date must not be before start date")


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------
class ClientCreate(Schema):
    name: str = Field(min_length=1)
    email: str = Field(pattern=EMAIL_PATTERN)
    phone: Optional[str] = None
    company: Optional[str] = None
    address: Optional[str] = None
    gst: Optional[str] = None
    notes: Optional[str] = None


class ClientUpdate(Schema):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)
    phone: Optional[str] = None
    company: Optional[str] = None
    address: Optional[str] = None
    gst: Optional[str] = None
    notes: Optional[str] = None


class ServiceCreate(Schema):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    default_duration: int = Field(ge=1)
    default_price: float = Field(ge=0)


class ServiceUpdate(Schema):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    default_duration: Optional[int] = Field(default=None, ge=1)
    default_price: Optional[float] = Field(default=None, ge=0)


class RenewalCreate(Schema):
    client_id: int
    service_id: int
    start_date: dt.date
    end_date: dt.date
    amount: float = Field(gt=0)
    is_paid: bool = False
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _dates_in_order(self) -> "RenewalCreate":
        _check_date_order(self.start_date, self.end_date)
        return self


class RenewalUpdate(Schema):
    client_id: Optional[int] = None
    service_id: Optional[int] = None
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    amount: Optional[float] = Field(default=None, gt=0)
    is_paid: Optional[bool] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _dates_in_order(self) -> "RenewalUpdate":
        _check_date_order(self.start_date, self.end_date)
        return self


class NotificationUpdate(Schema):
    notification_sent: StrictBool


class ActivityCreate(Schema):
    type: str = Field(min_length=1)
    description: str = Field(min_length=1)
    metadata: Optional[str] = None


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------
class ClientOut(Schema):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    company: Optional[str] = None
    address: Optional[str] = None
    gst: Optional[str] = None
    notes: Optional[str] = None
    created_at: dt.datetime


class ServiceOut(Schema):
    id: int
    name: str
    description: Optional[str] = None
    default_duration: int
    default_price: float
    created_at: dt.datetime


class StatusOut(Schema):
    label: str
    tier: str
    colour: str
    days_remaining: Optional[int] = None


class RenewalOut(Schema):
    id: int
    client_id: int
    service_id: int
    start_date: dt.date
    end_date: dt.date
    amount: float
    is_paid: bool
    notification_sent: bool
    notes: Optional[str] = None
    created_at: dt.datetime
    status: StatusOut


class ClientSummary(Schema):
    id: int
    name: str
    email: str
    company: Optional[str] = None


class ServiceSummary(Schema):
    id: int
    name: str


class RenewalWithRelationsOut(RenewalOut):
    client: ClientSummary
    service: ServiceSummary


class ActivityOut(Schema):
    id: int
    type: str
    description: str
    metadata: Optional[str] = None
    created_at: dt.datetime


class RevenueOut(Schema):
    mtd: float
    ytd: float
    projected: float


class MonthlyRevenueOut(Schema):
    month: str
    amount: float


class DashboardStatsOut(Schema):
    total_clients: int
    active_services: int
    pending_renewals: int
    revenue: RevenueOut
    upcoming_renewals: list[RenewalWithRelationsOut]
    recent_activities: list[ActivityOut]
    monthly_revenue: list[MonthlyRevenueOut]


def updates(model: BaseModel) -> dict[str, Any]:
    """Return only the fields the client actually sent, keyed by field name."""

    return model.model_dump(exclude_unset=True)
