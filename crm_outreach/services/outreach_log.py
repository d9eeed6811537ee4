# crm_outreach/services/outreach_log.py
"""
Outreach log: the append-only ledger that backs idempotency and throttling.

Rows are read once per run into an `OutreachState`. Reservations are plain
inserts guarded by the UNIQUE `reservation_key` column, so a concurrent
scheduler that reserves the same attempt first makes ours fail with an
IntegrityError instead of double-sending.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from crm_outreach import config, store
from crm_outreach.models import OutreachLog
from crm_outreach.services import rules
from crm_outreach.services.opportunities import as_utc

log = logging.getLogger(__name__)

LOG_SCHEMA_VERSION = 2

RESERVED = "reserved"
SENT = "sent"
SKIPPED = "skipped"
FAILED = "failed"
TAGGING_FAILED = "tagging_failed"
BOOKKEEPING_FAILED = "bookkeeping_failed"

OUTCOME_EVENTS = (RESERVED, SENT, SKIPPED, FAILED)
VISIBLE_EVENTS = (SENT, SKIPPED, FAILED, TAGGING_FAILED, BOOKKEEPING_FAILED)

REASON_THROTTLED = "throttled"

_STATUS_FOR_EVENT = {
    RESERVED: "info",
    SENT: "success",
    SKIPPED: "skipped",
    FAILED: "failed",
    TAGGING_FAILED: "failed",
    BOOKKEEPING_FAILED: "skipped",
}


@dataclass
class LogEntry:
    event: str
    dedup_key: Optional[str]
    lead_id: Optional[str]
    message: str = ""
    type: Optional[str] = None
    step: Optional[str] = None
    reason: Optional[str] = None
    attempt: int = 1
    status: str = "info"
    created_at: Optional[datetime] = None
    id: Optional[int] = None
    meta: Dict[str, Any] = field(default_factory=dict)


# ---------------------------- schema adapter ----------------------------

def entry_from_row(row: OutreachLog) -> LogEntry:
    meta = row.meta if isinstance(row.meta, dict) else {}
    # v1 rows kept the key (and type/step) inside meta only
    key = (row.dedup_key or "").strip() or (str(meta.get("dedup_key") or "").strip()) or None
    parsed_type, parsed_step = rules.parse_dedup_key(key or "")
    return LogEntry(
        id=row.id,
        event=row.event,
        status=row.status or _STATUS_FOR_EVENT.get(row.event, "info"),
        dedup_key=key,
        lead_id=row.lead_id,
        type=row.type or meta.get("type") or parsed_type,
        step=row.step or meta.get("step") or parsed_step,
        message=row.message or "",
        reason=row.reason or meta.get("reason"),
        attempt=row.attempt or 1,
        created_at=as_utc(row.created_at),
        meta=dict(meta),
    )


def row_from_entry(entry: LogEntry, reservation_key: Optional[str] = None) -> OutreachLog:
    kwargs = dict(
        event=entry.event,
        status=_STATUS_FOR_EVENT.get(entry.event, entry.status),
        dedup_key=entry.dedup_key,
        lead_id=entry.lead_id,
        type=entry.type,
        step=entry.step,
        message=entry.message,
        reason=entry.reason,
        attempt=entry.attempt,
        reservation_key=reservation_key,
        schema_version=LOG_SCHEMA_VERSION,
        meta=dict(entry.meta),
    )
    if entry.created_at is not None:
        kwargs["created_at"] = entry.created_at
    return OutreachLog(**kwargs)


# ------------------------------ run state -------------------------------

@dataclass
class OutreachState:
    """Mutable per-run context built from one read of the log."""
    handled: Set[str] = field(default_factory=set)
    sent_by_lead: Counter = field(default_factory=Counter)
    failed_attempts: Counter = field(default_factory=Counter)
    throttled_keys: Set[str] = field(default_factory=set)
    # key -> created_at of a reservation still waiting for its outcome
    open_reservations: Dict[str, datetime] = field(default_factory=dict)
    # handled only because every allowed attempt failed
    exhausted: Set[str] = field(default_factory=set)

    def is_handled(self, key: str) -> bool:
        return key in self.handled

    def next_attempt(self, key: str) -> int:
        return self.failed_attempts[key] + 1


def build_state(
    entries: List[LogEntry], max_attempts: Optional[int] = None, since: Optional[datetime] = None
) -> OutreachState:
    """
    Fold log entries into run state. Only sends at or after `since` count
    toward the per-lead throttle.

    A key is handled once it has a sent entry, a non-throttle skip, a
    reservation with no outcome yet, or `max_attempts` failures. A
    reserved+failed pair below the cap leaves the key open for retry.
    """
    max_attempts = max_attempts or config.settings.MAX_DISPATCH_ATTEMPTS
    state = OutreachState()
    reservations: Counter = Counter()
    outcomes: Counter = Counter()
    last_reserved: Dict[str, datetime] = {}

    for entry in sorted(entries, key=lambda e: (e.created_at is None, e.created_at or datetime.min)):
        key = entry.dedup_key
        in_window = since is None or (entry.created_at is not None and entry.created_at >= since)
        if entry.event == SENT and entry.lead_id and in_window:
            state.sent_by_lead[entry.lead_id] += 1
        if not key:
            continue
        if entry.event == SENT:
            state.handled.add(key)
            outcomes[key] += 1
        elif entry.event == SKIPPED:
            if entry.reason == REASON_THROTTLED:
                if in_window:
                    state.throttled_keys.add(key)
            else:
                state.handled.add(key)
                outcomes[key] += 1
        elif entry.event == FAILED:
            state.failed_attempts[key] += 1
            outcomes[key] += 1
        elif entry.event == RESERVED:
            reservations[key] += 1
            if entry.created_at:
                last_reserved[key] = entry.created_at

    for key, count in reservations.items():
        if count > outcomes[key]:
            state.handled.add(key)
            if key in last_reserved:
                state.open_reservations[key] = last_reserved[key]

    for key, count in state.failed_attempts.items():
        if count >= max_attempts and key not in state.handled:
            state.exhausted.add(key)
            state.handled.add(key)

    return state


def read_entries(session: Session, since: datetime, events=OUTCOME_EVENTS, limit: int = 5000) -> List[LogEntry]:
    stmt = (
        select(OutreachLog)
        .where(OutreachLog.event.in_(list(events)))
        .where(OutreachLog.created_at >= since)
        .order_by(OutreachLog.created_at.desc())
        .limit(limit)
    )
    return [entry_from_row(r) for r in store.select_many(session, stmt, "outreach_log")]


def read_history(session: Session, keys: Iterable[str], before: datetime, chunk: int = 500) -> List[LogEntry]:
    """Outcome entries for `keys` older than `before`."""
    keys = sorted({k for k in keys if k})
    out: List[LogEntry] = []
    for i in range(0, len(keys), chunk):
        stmt = (
            select(OutreachLog)
            .where(OutreachLog.dedup_key.in_(keys[i:i + chunk]))
            .where(OutreachLog.event.in_(list(OUTCOME_EVENTS)))
            .where(OutreachLog.created_at < before)
        )
        out.extend(entry_from_row(r) for r in store.select_many(session, stmt, "outreach_log history"))
    return out


def read_state(session: Session, now: datetime, keys: Optional[Iterable[str]] = None) -> OutreachState:
    """
    Throttle counts come from the trailing window only. Dedup also looks
    further back for `keys`, so a step sent weeks ago stays handled.
    """
    since = now - timedelta(days=config.settings.THROTTLE_WINDOW_DAYS)
    entries = read_entries(session, since)
    if keys:
        entries += read_history(session, keys, before=since)
    return build_state(entries, since=since)


# -------------------------------- writes --------------------------------

def reserve(session: Session, entry: LogEntry) -> bool:
    """
    Insert a `reserved` row; False when the same attempt was already
    reserved by anyone (now or in an earlier run).
    """
    entry.event = RESERVED
    reservation_key = f"{entry.dedup_key}#{entry.attempt}"
    row = row_from_entry(entry, reservation_key=reservation_key)
    try:
        session.add(row)
        session.commit()
        return True
    except IntegrityError:
        session.rollback()
        log.info("reservation %s already taken", reservation_key)
        return False
    except SQLAlchemyError as e:
        session.rollback()
        # can't prove nobody else holds it; don't send
        log.error("reservation %s failed: %s", reservation_key, e)
        return False


def append(session: Session, entry: LogEntry) -> bool:
    return store.insert(session, row_from_entry(entry), f"outreach_log[{entry.event}]")


def has_sent(session: Session, key: str) -> bool:
    stmt = (
        select(OutreachLog.id)
        .where(OutreachLog.dedup_key == key)
        .where(OutreachLog.event == SENT)
        .limit(1)
    )
    return bool(store.select_many(session, stmt, "outreach_log sent"))


def recent_entries(session: Session, limit: Optional[int] = None) -> List[LogEntry]:
    stmt = (
        select(OutreachLog)
        .where(OutreachLog.event.in_(list(VISIBLE_EVENTS)))
        .order_by(OutreachLog.created_at.desc(), OutreachLog.id.desc())
        .limit(limit or config.settings.RECENT_LIMIT)
    )
    return [entry_from_row(r) for r in store.select_many(session, stmt, "recent outreach_log")]
