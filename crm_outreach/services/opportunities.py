# crm_outreach/services/opportunities.py
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlmodel import Session, select

from crm_outreach import config, store
from crm_outreach.models import Booking, Lead, Payment
from crm_outreach.services import rules
from crm_outreach.utils.phone import normalize_phone


def _s(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands datetimes back naive; everything here is UTC
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _to_int(value: Any) -> int:
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        return 0


def parse_stage(status: str, meta: dict) -> str:
    pipeline = _s(meta.get("pipeline_stage")).lower()
    if pipeline:
        return pipeline
    s = _s(status).lower()
    if s == "lead_created":
        return "new"
    if s == "quotation_sent":
        return "quote_sent"
    return s or "new"


@dataclass
class LeadContext:
    id: str
    lead_code: Optional[str]
    stage: str
    customer_name: Optional[str]
    customer_email: Optional[str]
    customer_phone: Optional[str]
    destination: Optional[str]
    travel_start: Optional[str]
    travel_end: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    meta: Dict[str, Any] = field(default_factory=dict)
    row: Optional[Lead] = None

    @property
    def do_not_contact(self) -> bool:
        return bool(self.meta.get("do_not_contact"))

    @property
    def outreach_count(self) -> int:
        return _to_int(self.meta.get("outreach_count"))

    @property
    def base_time(self) -> Optional[datetime]:
        return self.updated_at or self.created_at

    @property
    def excluded(self) -> bool:
        return self.stage in rules.EXCLUDED_STAGES or self.do_not_contact


@dataclass
class BookingContext:
    id: str
    booking_code: Optional[str]
    lead_id: Optional[str]
    payment_status: Optional[str]


@dataclass
class PaymentContext:
    id: str
    booking_id: Optional[str]
    status: Optional[str]
    created_at: Optional[datetime]
    payment_link: Optional[str]


@dataclass
class Opportunity:
    type: str
    step: str
    dedup_key: str
    due_at: datetime
    template: Optional[str]
    lead: LeadContext
    booking: Optional[BookingContext] = None
    payment: Optional[PaymentContext] = None

    @property
    def booking_ref(self) -> Optional[str]:
        if not self.booking:
            return None
        return self.booking.booking_code or self.booking.id

    def variables(self) -> Dict[str, str]:
        lead = self.lead
        return {
            "name": lead.customer_name or "Traveler",
            "destination": lead.destination or "your trip",
            "start_date": lead.travel_start or "",
            "end_date": lead.travel_end or "",
            "lead_id": lead.lead_code or lead.id,
            "payment_link": (self.payment.payment_link if self.payment else None) or "",
            "booking_id": self.booking_ref or "",
        }


# ------------------------------ row mapping ------------------------------

def map_lead(row: Lead) -> Optional[LeadContext]:
    lead_id = _s(row.id)
    if not lead_id:
        return None
    meta = row.meta if isinstance(row.meta, dict) else {}
    city, country = _s(row.destination_city), _s(row.destination_country)
    destination = f"{city}, {country}" if city and country else (city or country or None)
    phone_raw = _s(meta.get("customer_phone")) or _s(row.customer_phone)
    return LeadContext(
        id=lead_id,
        lead_code=_s(row.lead_code) or None,
        stage=parse_stage(row.status, meta),
        customer_name=_s(meta.get("customer_name")) or _s(row.customer_name) or None,
        customer_email=_s(meta.get("customer_email")) or _s(row.customer_email) or None,
        customer_phone=normalize_phone(phone_raw, config.settings.PHONE_REGION),
        destination=destination,
        travel_start=_s(row.travel_start_date) or None,
        travel_end=_s(row.travel_end_date) or None,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        meta=dict(meta),
        row=row,
    )


def map_booking(row: Booking) -> Optional[BookingContext]:
    if not _s(row.id):
        return None
    return BookingContext(
        id=row.id,
        booking_code=_s(row.booking_code) or None,
        lead_id=_s(row.lead_id) or None,
        payment_status=_s(row.payment_status) or None,
    )


def payment_link_from_payload(payload: Any) -> Optional[str]:
    payload = payload if isinstance(payload, dict) else {}
    for key in ("payment_url", "payment_link_url", "short_url"):
        val = _s(payload.get(key))
        if val:
            return val
    return None


def map_payment(row: Payment) -> Optional[PaymentContext]:
    if not _s(row.id):
        return None
    return PaymentContext(
        id=row.id,
        booking_id=_s(row.booking_id) or None,
        status=_s(row.status) or None,
        created_at=as_utc(row.created_at),
        payment_link=payment_link_from_payload(row.raw_payload),
    )


# -------------------------------- loaders --------------------------------

def load_leads(session: Session, limit: Optional[int] = None) -> List[LeadContext]:
    stmt = select(Lead).order_by(Lead.updated_at.desc()).limit(limit or config.settings.LEAD_LIMIT)
    rows = store.select_many(session, stmt, "leads")
    return [lead for lead in map(map_lead, rows) if lead]


def load_lead(session: Session, ref: str) -> Optional[LeadContext]:
    ref = _s(ref)
    if not ref:
        return None
    stmt = select(Lead).where(or_(Lead.id == ref, Lead.lead_code == ref)).limit(2)
    rows = store.select_many(session, stmt, "lead")
    # an exact id match wins over a lead_code collision
    rows.sort(key=lambda r: r.id != ref)
    for row in rows:
        lead = map_lead(row)
        if lead:
            return lead
    return None


def load_bookings(session: Session, lead_ids: Iterable[str]) -> List[BookingContext]:
    lead_ids = [i for i in lead_ids if i]
    if not lead_ids:
        return []
    stmt = (
        select(Booking)
        .where(Booking.lead_id.in_(lead_ids))
        .order_by(Booking.created_at.desc())
        .limit(config.settings.LEAD_LIMIT)
    )
    rows = store.select_many(session, stmt, "bookings")
    return [b for b in map(map_booking, rows) if b]


def load_pending_payments(
    session: Session, now: datetime, lookback_days: Optional[int] = None
) -> List[PaymentContext]:
    since = now - timedelta(days=lookback_days or config.settings.PAYMENT_LOOKBACK_DAYS)
    stmt = (
        select(Payment)
        .where(Payment.status.in_(sorted(rules.PENDING_PAYMENT_STATUSES)))
        .where(Payment.created_at >= since)
        .order_by(Payment.created_at.desc())
        .limit(700)
    )
    rows = store.select_many(session, stmt, "payments")
    return [p for p in map(map_payment, rows) if p]


# --------------------------------- build ---------------------------------

def build_opportunities(
    leads: List[LeadContext],
    bookings: List[BookingContext],
    payments: List[PaymentContext],
    templates: Optional[Dict[str, str]] = None,
) -> List[Opportunity]:
    """Every due-or-upcoming follow-up for the snapshot. Unsorted."""
    templates = config.settings.TEMPLATES if templates is None else templates
    bookings_by_lead: Dict[str, List[BookingContext]] = defaultdict(list)
    booking_by_id: Dict[str, BookingContext] = {}
    for booking in bookings:
        booking_by_id[booking.id] = booking
        if booking.lead_id:
            bookings_by_lead[booking.lead_id].append(booking)

    out: List[Opportunity] = []

    def push(lead, rule, base, booking=None, payment=None):
        if base is None:
            return
        out.append(Opportunity(
            type=rule.type,
            step=rule.step,
            dedup_key=rules.dedup_key(rule.type, lead.id, rule.step),
            due_at=base + rule.delay,
            template=_s(templates.get(rule.step)) or None,
            lead=lead,
            booking=booking,
            payment=payment,
        ))

    for lead in leads:
        if lead.excluded:
            continue

        for rule in rules.rules_for_stage(lead.stage):
            push(lead, rule, lead.base_time)

        booking_ids = {b.id for b in bookings_by_lead.get(lead.id, [])}
        for payment in payments:
            if not payment.booking_id or payment.booking_id not in booking_ids:
                continue
            if not rules.payment_needs_reminder(payment.status):
                continue
            booking = booking_by_id.get(payment.booking_id)
            if booking and rules.booking_is_paid(booking.payment_status):
                continue
            for rule in rules.payment_rules():
                push(lead, rule, payment.created_at, booking, payment)

    return out
