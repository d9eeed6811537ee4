# crm_outreach/models.py
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- Upstream CRM tables (read-only here, except lead bookkeeping) ----------


class Lead(SQLModel, table=True):
    __tablename__ = "lead"

    id: str = Field(primary_key=True)
    lead_code: Optional[str] = Field(default=None, index=True)
    status: str = Field(default="new", max_length=40)
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    destination_city: Optional[str] = None
    destination_country: Optional[str] = None
    travel_start_date: Optional[str] = None
    travel_end_date: Optional[str] = None
    # do_not_contact, outreach_count, last_outreach_at, pipeline_stage, ...
    meta: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: Optional[datetime] = Field(default=None, index=True)


class Booking(SQLModel, table=True):
    __tablename__ = "booking"

    id: str = Field(primary_key=True)
    booking_code: Optional[str] = None
    lead_id: Optional[str] = Field(default=None, index=True)
    payment_status: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)


class Payment(SQLModel, table=True):
    __tablename__ = "payment"

    id: str = Field(primary_key=True)
    booking_id: Optional[str] = Field(default=None, index=True)
    status: Optional[str] = Field(default=None, index=True)
    raw_payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)


# ---------- Outreach ledger (append-only) ----------


class OutreachLog(SQLModel, table=True):
    """
    One row per outreach event. `reservation_key` is only set on `reserved`
    rows and is UNIQUE, so two schedulers can never reserve the same attempt.
    """
    __tablename__ = "outreach_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    event: str = Field(index=True)  # reserved | sent | skipped | failed | tagging_failed | bookkeeping_failed
    status: str = Field(default="info")  # success | failed | skipped | info
    dedup_key: Optional[str] = Field(default=None, index=True)
    lead_id: Optional[str] = Field(default=None, index=True)
    type: Optional[str] = None
    step: Optional[str] = None
    message: str = ""
    reason: Optional[str] = None
    attempt: int = 1
    reservation_key: Optional[str] = Field(default=None, unique=True)
    schema_version: int = 2
    meta: dict = Field(default_factory=dict, sa_column=Column(JSON))


class AutomationFailure(SQLModel, table=True):
    __tablename__ = "automation_failure"

    id: Optional[int] = Field(default=None, primary_key=True)
    lead_id: Optional[str] = Field(default=None, index=True)
    booking_id: Optional[str] = None
    event: str = Field(index=True)  # crm_outreach:<type>:<lead>:<step>
    kind: str = Field(default="dispatch")  # dispatch | tagging
    status: str = Field(default="open", index=True)  # open | resolved
    attempts: int = 1
    last_error: Optional[str] = None
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
