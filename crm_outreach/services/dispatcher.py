# crm_outreach/services/dispatcher.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Session

from crm_outreach import store
from crm_outreach.services import failures
from crm_outreach.services import outreach_log as olog
from crm_outreach.services.channel import ChannelProvider, ChannelResult
from crm_outreach.services.opportunities import Opportunity
from crm_outreach.services.tagging import TaggingProvider, TagResult, tag_for_type

log = logging.getLogger(__name__)

SENT = "sent"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class DispatchResult:
    outcome: str  # sent | skipped | failed
    reason: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.outcome == SENT

    @property
    def skipped(self) -> bool:
        return self.outcome == SKIPPED

    @property
    def failed(self) -> bool:
        return self.outcome == FAILED


def _entry(opp: Opportunity, event: str, message: str, attempt: int = 1, reason=None, **meta) -> olog.LogEntry:
    return olog.LogEntry(
        event=event,
        dedup_key=opp.dedup_key,
        lead_id=opp.lead.id,
        type=opp.type,
        step=opp.step,
        message=message,
        reason=reason,
        attempt=attempt,
        meta={k: v for k, v in meta.items() if v is not None},
    )


def _failure_payload(opp: Opportunity) -> dict:
    return {"lead_id": opp.lead.id, "type": opp.type, "step": opp.step}


def _send(channel: ChannelProvider, opp: Opportunity) -> ChannelResult:
    try:
        return channel.send(opp.lead.customer_phone, opp.template, opp.variables())
    except Exception as e:
        log.exception("channel raised for %s", opp.dedup_key)
        return ChannelResult(ok=False, error=str(e) or e.__class__.__name__)


def _tag(tagger: TaggingProvider, opp: Opportunity) -> TagResult:
    lead = opp.lead
    try:
        return tagger.upsert_contact(
            lead.customer_email, lead.customer_name, [tag_for_type(opp.type)], phone=lead.customer_phone
        )
    except Exception as e:
        log.exception("tagging raised for %s", opp.dedup_key)
        return TagResult(ok=False, error=str(e) or e.__class__.__name__)


def _update_bookkeeping(session: Session, opp: Opportunity, now: datetime, attempt: int) -> None:
    lead = opp.lead
    meta = dict(lead.meta)
    meta["outreach_count"] = lead.outreach_count + 1
    meta["last_outreach_at"] = now.isoformat()

    ok = lead.row is not None and store.update(session, lead.row, {"meta": meta}, f"lead[{lead.id}]")
    if ok:
        lead.meta = meta
        return
    log.warning("outreach sent but lead %s bookkeeping not saved", lead.id)
    olog.append(session, _entry(opp, olog.BOOKKEEPING_FAILED, "Lead outreach bookkeeping not saved", attempt))


def dispatch(
    session: Session,
    opp: Opportunity,
    channel: ChannelProvider,
    tagger: TaggingProvider,
    now: Optional[datetime] = None,
    attempt: int = 1,
) -> DispatchResult:
    """
    Send one opportunity and record the outcome in the outreach log.

    Skips are permanent (no phone, no template). Channel failures are logged
    and recorded as AutomationFailure. Tagging and bookkeeping problems after
    a successful send never change the outcome.
    """
    now = now or datetime.now(timezone.utc)
    lead = opp.lead

    if not lead.customer_phone:
        olog.append(session, _entry(opp, olog.SKIPPED, "Outreach skipped: phone missing", attempt, reason="no_contact"))
        log.info("skip %s: no usable phone", opp.dedup_key)
        return DispatchResult(SKIPPED, "no_contact")

    if not opp.template:
        olog.append(session, _entry(opp, olog.SKIPPED, "WhatsApp template missing", attempt, reason="template_missing"))
        log.warning("skip %s: no template configured for %s", opp.dedup_key, opp.step)
        return DispatchResult(SKIPPED, "template_missing")

    result = _send(channel, opp)
    if not result.ok:
        error = result.error or "send_failed"
        olog.append(session, _entry(opp, olog.FAILED, "WhatsApp outreach failed", attempt, error=error))
        failures.record_failure(
            session,
            event=opp.dedup_key,
            kind=failures.KIND_DISPATCH,
            error=f"outreach_whatsapp:{error}",
            lead_id=lead.id,
            booking_id=opp.booking_ref,
            payload=_failure_payload(opp),
        )
        log.error("dispatch failed %s: %s", opp.dedup_key, error)
        return DispatchResult(FAILED, "dispatch_failed")

    olog.append(session, _entry(opp, olog.SENT, "Outreach sent", attempt, template=opp.template, sid=result.sid))
    # an earlier failed attempt of this step is now moot
    failures.resolve_open(session, opp.dedup_key, failures.KIND_DISPATCH)

    if lead.customer_email:
        tag = _tag(tagger, opp)
        if not tag.ok and not tag.skipped:
            error = tag.error or "tagging_failed"
            olog.append(session, _entry(opp, olog.TAGGING_FAILED, "Mailchimp tagging failed", attempt, error=error))
            failures.record_failure(
                session,
                event=opp.dedup_key,
                kind=failures.KIND_TAGGING,
                error=f"outreach_mailchimp:{error}",
                lead_id=lead.id,
                booking_id=opp.booking_ref,
                payload=_failure_payload(opp),
            )

    _update_bookkeeping(session, opp, now, attempt)
    return DispatchResult(SENT, "sent")
