# crm_outreach/services/throttle.py
from typing import Optional

from crm_outreach import config
from crm_outreach.services.outreach_log import OutreachState


def sends_in_window(state: OutreachState, lead_id: str) -> int:
    return state.sent_by_lead.get(lead_id, 0)


def is_throttled(state: OutreachState, lead_id: str, cap: Optional[int] = None) -> bool:
    """True once the lead has `cap` sends inside the trailing window."""
    cap = config.settings.MAX_MESSAGES_PER_LEAD_7D if cap is None else cap
    return sends_in_window(state, lead_id) >= cap


def note_sent(state: OutreachState, lead_id: str) -> None:
    state.sent_by_lead[lead_id] += 1
