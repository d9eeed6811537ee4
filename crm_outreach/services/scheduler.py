# crm_outreach/services/scheduler.py
"""
Periodic outreach run and the single-lead manual trigger.

Candidates are processed one at a time against a single `OutreachState`
read at run start; the state is updated in memory as reservations and sends
happen so two opportunities for the same lead can't both slip through.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlmodel import Session

from crm_outreach import config, store
from crm_outreach.errors import StoreUnavailable
from crm_outreach.services import failures, throttle
from crm_outreach.services import outreach_log as olog
from crm_outreach.services.channel import ChannelProvider, get_channel
from crm_outreach.services.dispatcher import DispatchResult, dispatch
from crm_outreach.services.opportunities import (
    Opportunity,
    build_opportunities,
    load_bookings,
    load_lead,
    load_leads,
    load_pending_payments,
)
from crm_outreach.services.tagging import TaggingProvider, get_tagger, tag_for_type

log = logging.getLogger(__name__)


@dataclass
class RunSummary:
    ok: bool
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    run_at: str = ""
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ManualResult:
    ok: bool
    sent: bool = False
    skipped: bool = False
    failed: bool = False
    reason: Optional[str] = None
    dedup_key: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


# ------------------------------ selection ------------------------------

def first_due_per_type(opportunities: Iterable[Opportunity], handled: Set[str]) -> List[Opportunity]:
    """
    Keep only the earliest unhandled step for each (lead, type); later steps
    of a drip wait until the earlier one is handled. Sorted by due time.
    """
    grouped: Dict[Tuple[str, str], List[Opportunity]] = defaultdict(list)
    for opp in opportunities:
        grouped[(opp.lead.id, opp.type)].append(opp)

    selected = []
    for items in grouped.values():
        for opp in sorted(items, key=lambda o: o.due_at):
            if opp.dedup_key not in handled:
                selected.append(opp)
                break
    return sorted(selected, key=lambda o: o.due_at)


def select_due(opportunities: Iterable[Opportunity], now: datetime) -> List[Opportunity]:
    return [o for o in opportunities if o.due_at <= now]


# ------------------------------ processing ------------------------------

def _reserve_and_dispatch(
    session: Session,
    opp: Opportunity,
    state: olog.OutreachState,
    channel: ChannelProvider,
    tagger: TaggingProvider,
    now: datetime,
    manual: bool = False,
) -> DispatchResult:
    attempt = state.next_attempt(opp.dedup_key)
    entry = olog.LogEntry(
        event=olog.RESERVED,
        dedup_key=opp.dedup_key,
        lead_id=opp.lead.id,
        type=opp.type,
        step=opp.step,
        message="Manual outreach reserved" if manual else "Outreach reserved",
        attempt=attempt,
        meta={"manual": True} if manual else {},
    )
    if not olog.reserve(session, entry):
        state.handled.add(opp.dedup_key)
        return DispatchResult("skipped", "deduped")
    state.handled.add(opp.dedup_key)

    result = dispatch(session, opp, channel, tagger, now=now, attempt=attempt)
    if result.sent:
        throttle.note_sent(state, opp.lead.id)
    return result


def _process(
    session: Session,
    opp: Opportunity,
    state: olog.OutreachState,
    channel: ChannelProvider,
    tagger: TaggingProvider,
    now: datetime,
) -> DispatchResult:
    lead = opp.lead
    if lead.do_not_contact:
        return DispatchResult("skipped", "do_not_contact")

    if throttle.is_throttled(state, lead.id):
        if opp.dedup_key not in state.throttled_keys:
            olog.append(session, olog.LogEntry(
                event=olog.SKIPPED,
                dedup_key=opp.dedup_key,
                lead_id=lead.id,
                type=opp.type,
                step=opp.step,
                message="Outreach skipped due to throttling",
                reason=olog.REASON_THROTTLED,
            ))
            state.throttled_keys.add(opp.dedup_key)
        return DispatchResult("skipped", "throttled")

    if state.is_handled(opp.dedup_key):
        return DispatchResult("skipped", "deduped")

    return _reserve_and_dispatch(session, opp, state, channel, tagger, now)


def _preflight(session: Session) -> Optional[str]:
    if not config.channel_configured():
        return "not_configured"
    try:
        store.ping(session)
    except StoreUnavailable as e:
        log.error("outreach store unavailable: %s", e)
        return "store_unavailable"
    return None


def run_outreach(
    session: Session,
    now: Optional[datetime] = None,
    channel: Optional[ChannelProvider] = None,
    tagger: Optional[TaggingProvider] = None,
) -> RunSummary:
    now = now or datetime.now(timezone.utc)
    summary = RunSummary(ok=False, run_at=now.isoformat())

    reason = _preflight(session)
    if reason:
        summary.reason = reason
        log.info("outreach run skipped: %s", reason)
        return summary

    channel = channel or get_channel()
    tagger = tagger or get_tagger()

    leads = load_leads(session)
    bookings = load_bookings(session, [lead.id for lead in leads])
    payments = load_pending_payments(session, now)
    opportunities = build_opportunities(leads, bookings, payments)
    state = olog.read_state(session, now, keys=[o.dedup_key for o in opportunities])

    candidates = select_due(first_due_per_type(opportunities, state.handled), now)
    cap = config.settings.MAX_MESSAGES_PER_RUN

    for opp in candidates:
        if summary.processed >= cap:
            break
        summary.processed += 1
        result = _process(session, opp, state, channel, tagger, now)
        if result.sent:
            summary.sent += 1
        elif result.failed:
            summary.failed += 1
        else:
            summary.skipped += 1

    summary.ok = True
    log.info(
        "outreach run: candidates=%d processed=%d sent=%d skipped=%d failed=%d",
        len(candidates), summary.processed, summary.sent, summary.skipped, summary.failed,
    )
    return summary


def run_lead_outreach_now(
    session: Session,
    lead_ref: str,
    now: Optional[datetime] = None,
    channel: Optional[ChannelProvider] = None,
    tagger: Optional[TaggingProvider] = None,
    dedup_key: Optional[str] = None,
) -> ManualResult:
    """
    Dispatch the earliest eligible step for one lead right away, ignoring
    its due time and the run cap but not do-not-contact, throttle or dedup.
    With `dedup_key`, only that step is considered (failure retries); a step
    whose attempts are exhausted may then be tried once more.
    """
    ref = (lead_ref or "").strip()
    if not ref:
        return ManualResult(ok=False, skipped=True, reason="invalid_lead")

    reason = _preflight(session)
    if reason:
        return ManualResult(ok=False, skipped=True, reason=reason)

    now = now or datetime.now(timezone.utc)
    lead = load_lead(session, ref)
    if not lead:
        return ManualResult(ok=False, skipped=True, reason="lead_not_found")
    if lead.do_not_contact:
        return ManualResult(ok=True, skipped=True, reason="do_not_contact")

    bookings = load_bookings(session, [lead.id])
    payments = load_pending_payments(session, now)
    opportunities = build_opportunities([lead], bookings, payments)
    state = olog.read_state(session, now, keys=[o.dedup_key for o in opportunities])

    if dedup_key:
        matches = [o for o in opportunities if o.dedup_key == dedup_key]
        if matches and dedup_key in state.exhausted:
            state.handled.discard(dedup_key)
        nxt = matches[0] if matches else None
    else:
        eligible = first_due_per_type(opportunities, state.handled)
        nxt = eligible[0] if eligible else None

    if not nxt:
        return ManualResult(ok=True, skipped=True, reason="no_eligible_step")
    if throttle.is_throttled(state, lead.id):
        return ManualResult(ok=True, skipped=True, reason="throttled", dedup_key=nxt.dedup_key)
    if state.is_handled(nxt.dedup_key):
        return ManualResult(ok=True, skipped=True, reason="deduped", dedup_key=nxt.dedup_key)

    result = _reserve_and_dispatch(
        session, nxt, state, channel or get_channel(), tagger or get_tagger(), now, manual=True
    )
    if result.failed:
        reason = "dispatch_failed"
    elif result.skipped:
        reason = "deduped" if result.reason == "deduped" else "skipped"
    else:
        reason = "sent"
    log.info("manual outreach lead=%s key=%s -> %s", lead.id, nxt.dedup_key, reason)
    return ManualResult(
        ok=True, sent=result.sent, skipped=result.skipped, failed=result.failed,
        reason=reason, dedup_key=nxt.dedup_key,
    )


def retry_failure(
    session: Session,
    failure_id: int,
    now: Optional[datetime] = None,
    channel: Optional[ChannelProvider] = None,
    tagger: Optional[TaggingProvider] = None,
) -> dict:
    """
    Operator retry of a recorded failure. Dispatch failures re-run that one
    step for the lead; tagging failures only re-run the tagging call, since
    the message itself already went out.
    """
    row = failures.get_failure(session, failure_id)
    if not row:
        return {"ok": False, "failure_id": failure_id, "reason": "failure_not_found"}
    if row.status == "resolved":
        return {"ok": True, "failure_id": failure_id, "resolved": True, "reason": "already_resolved"}

    lead_ref = row.lead_id or str((row.payload or {}).get("lead_id") or "")

    if row.kind == failures.KIND_TAGGING:
        lead = load_lead(session, lead_ref)
        if not lead:
            return {"ok": False, "failure_id": failure_id, "reason": "lead_not_found"}
        outreach_type = str((row.payload or {}).get("type") or "")
        tagger = tagger or get_tagger()
        tag = tagger.upsert_contact(
            lead.customer_email, lead.customer_name, [tag_for_type(outreach_type)], phone=lead.customer_phone
        )
        if tag.ok:
            failures.resolve_failure(session, row)
            return {"ok": True, "failure_id": failure_id, "resolved": True, "reason": "tagged"}
        if not tag.skipped:
            failures.record_failure(
                session, event=row.event, kind=failures.KIND_TAGGING,
                error=f"outreach_mailchimp:{tag.error or 'tagging_failed'}", lead_id=row.lead_id,
            )
        return {"ok": True, "failure_id": failure_id, "resolved": False, "reason": tag.error or "tagging_skipped"}

    result = run_lead_outreach_now(session, lead_ref, now=now, channel=channel, tagger=tagger, dedup_key=row.event)
    # deduped here means the step already went out (e.g. a later run retried it)
    delivered = result.sent or (result.reason == "deduped" and olog.has_sent(session, row.event))
    resolved = False
    if delivered:
        resolved = row.status == "resolved" or failures.resolve_failure(session, row)
    return {
        "ok": result.ok,
        "failure_id": failure_id,
        "resolved": resolved,
        "reason": result.reason,
        "result": result.to_dict(),
    }
