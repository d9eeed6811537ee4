# crm_outreach/services/rules.py
"""
Follow-up rule table: (stage, elapsed time) -> candidate steps.

Delays are measured from the lead's updated_at (or created_at) for
lead-driven steps and from the payment's created_at for payment reminders.
"""
from datetime import timedelta
from typing import List, NamedTuple

QUOTE_FOLLOWUP = "quote_followup"
PAYMENT_REMINDER = "payment_reminder"
REENGAGEMENT = "reengagement"
OUTREACH_TYPES = (QUOTE_FOLLOWUP, PAYMENT_REMINDER, REENGAGEMENT)

STAGES = ("new", "qualified", "quote_sent", "negotiation", "won", "lost")
EXCLUDED_STAGES = frozenset({"won", "lost"})

PENDING_PAYMENT_STATUSES = frozenset({"created", "pending", "authorized", "requires_action"})
PAID_BOOKING_STATUSES = frozenset({"paid", "captured", "success"})


class Rule(NamedTuple):
    type: str
    step: str
    delay: timedelta


_STAGE_RULES = {
    "quote_sent": (
        Rule(QUOTE_FOLLOWUP, "quote_followup_1", timedelta(hours=2)),
        Rule(QUOTE_FOLLOWUP, "quote_followup_2", timedelta(hours=24)),
        Rule(QUOTE_FOLLOWUP, "quote_followup_3", timedelta(hours=72)),
    ),
    "qualified": (
        Rule(REENGAGEMENT, "reengage_1", timedelta(hours=168)),
    ),
}

_PAYMENT_RULES = (
    Rule(PAYMENT_REMINDER, "payment_reminder_1", timedelta(minutes=30)),
    Rule(PAYMENT_REMINDER, "payment_reminder_2", timedelta(hours=6)),
    Rule(PAYMENT_REMINDER, "payment_reminder_3", timedelta(hours=24)),
)

STEPS = tuple(r.step for rules in _STAGE_RULES.values() for r in rules) + tuple(
    r.step for r in _PAYMENT_RULES
)


def rules_for_stage(stage: str) -> List[Rule]:
    if stage in EXCLUDED_STAGES:
        return []
    return list(_STAGE_RULES.get(stage, ()))


def payment_rules() -> List[Rule]:
    return list(_PAYMENT_RULES)


def payment_needs_reminder(status) -> bool:
    return str(status or "").strip().lower() in PENDING_PAYMENT_STATUSES


def booking_is_paid(payment_status) -> bool:
    return str(payment_status or "").strip().lower() in PAID_BOOKING_STATUSES


def dedup_key(outreach_type: str, lead_id: str, step: str) -> str:
    return f"crm_outreach:{outreach_type}:{lead_id}:{step}"


def parse_dedup_key(key: str):
    """Return (type, step) for a dedup key, (None, None) if it isn't one."""
    parts = (key or "").split(":")
    if len(parts) < 4 or parts[0] != "crm_outreach":
        return None, None
    outreach_type = parts[1] if parts[1] in OUTREACH_TYPES else None
    return outreach_type, ":".join(parts[3:])
