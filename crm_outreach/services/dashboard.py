# crm_outreach/services/dashboard.py
"""Read-only outreach snapshot for the admin dashboard. Performs no writes."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlmodel import Session

from crm_outreach import config
from crm_outreach.services import failures, throttle
from crm_outreach.services import outreach_log as olog
from crm_outreach.services.opportunities import (
    Opportunity,
    build_opportunities,
    load_bookings,
    load_leads,
    load_pending_payments,
)
from crm_outreach.services.scheduler import first_due_per_type


def _preview(opp: Opportunity) -> Dict[str, Any]:
    lead = opp.lead
    return {
        "lead_id": lead.id,
        "lead_code": lead.lead_code,
        "customer_name": lead.customer_name,
        "customer_phone": lead.customer_phone,
        "destination": lead.destination,
        "type": opp.type,
        "step": opp.step,
        "template": opp.template,
        "due_at": opp.due_at.isoformat(),
        "booking_id": opp.booking_ref,
        "payment_link": opp.payment.payment_link if opp.payment else None,
    }


def _log_item(entry: olog.LogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "lead_id": entry.lead_id,
        "event": entry.event,
        "status": entry.status,
        "message": entry.message,
        "reason": entry.reason,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "dedup_key": entry.dedup_key,
        "type": entry.type,
        "step": entry.step,
    }


def upcoming_opportunities(
    opportunities: List[Opportunity], state: olog.OutreachState, now: datetime, limit: Optional[int] = None
) -> List[Opportunity]:
    """Not yet due, not excluded, not throttled, not already handled."""
    limit = limit or config.settings.UPCOMING_LIMIT
    items = [
        o for o in first_due_per_type(opportunities, state.handled)
        if o.due_at > now
        and not o.lead.excluded
        and not throttle.is_throttled(state, o.lead.id)
    ]
    return items[:limit]


def get_dashboard(session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)

    leads = load_leads(session)
    bookings = load_bookings(session, [lead.id for lead in leads])
    payments = load_pending_payments(session, now)
    opportunities = build_opportunities(leads, bookings, payments)
    state = olog.read_state(session, now, keys=[o.dedup_key for o in opportunities])

    upcoming = upcoming_opportunities(opportunities, state, now)
    recent = olog.recent_entries(session)
    open_failures = failures.list_open_failures(session)

    day_ago = now - timedelta(hours=24)
    sent_last_24h = sum(
        1 for e in recent
        if e.event == olog.SENT and e.created_at is not None and e.created_at >= day_ago
    )
    stale_before = now - timedelta(minutes=config.settings.STALE_RESERVATION_MINUTES)
    stale = sum(1 for ts in state.open_reservations.values() if ts <= stale_before)

    return {
        "upcoming": [_preview(o) for o in upcoming],
        "recent": [_log_item(e) for e in recent],
        "failures": [failures.failure_to_dict(f) for f in open_failures],
        "summary": {
            "scheduled": len(upcoming),
            "sent_last_24h": sent_last_24h,
            "failures_open": len(open_failures),
            "stale_reservations": stale,
        },
    }
