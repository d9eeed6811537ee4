# crm_outreach/services/failures.py
import json
import logging
from typing import Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from crm_outreach import config, store
from crm_outreach.models import AutomationFailure, utcnow

log = logging.getLogger(__name__)

EVENT_PREFIX = "crm_outreach:"
KIND_DISPATCH = "dispatch"
KIND_TAGGING = "tagging"


def _truncate(value: str, limit: int = 500) -> str:
    return value if len(value) <= limit else value[: limit - 1] + "…"


def _safe_payload(payload: Any) -> dict:
    try:
        return json.loads(json.dumps(payload or {}, default=str))
    except (TypeError, ValueError):
        return {"_serialization_error": True, "raw": str(payload)}


def record_failure(
    session: Session,
    *,
    event: str,
    error: str,
    kind: str = KIND_DISPATCH,
    lead_id: Optional[str] = None,
    booking_id: Optional[str] = None,
    payload: Any = None,
) -> Optional[int]:
    """
    Persist a dispatch/tagging failure for operators. A repeat of an open
    failure (same event and kind) bumps its attempts instead of adding a row.
    Best-effort only, never raises.
    """
    error = _truncate((error or "").strip() or "unknown_error")
    try:
        row = session.exec(
            select(AutomationFailure)
            .where(AutomationFailure.event == event)
            .where(AutomationFailure.kind == kind)
            .where(AutomationFailure.status == "open")
            .limit(1)
        ).first()
        if row:
            row.attempts = (row.attempts or 0) + 1
            row.last_error = error
            row.updated_at = utcnow()
        else:
            row = AutomationFailure(
                lead_id=lead_id,
                booking_id=booking_id,
                event=event,
                kind=kind,
                status="open",
                attempts=1,
                last_error=error,
                payload=_safe_payload(payload),
            )
        session.add(row)
        session.commit()
        session.refresh(row)
        return row.id
    except SQLAlchemyError as e:
        session.rollback()
        log.error("could not record automation failure %s: %s (original error: %s)", event, e, error)
        return None


def list_open_failures(session: Session, limit: Optional[int] = None) -> List[AutomationFailure]:
    stmt = (
        select(AutomationFailure)
        .where(AutomationFailure.status == "open")
        .where(AutomationFailure.event.startswith(EVENT_PREFIX))
        .order_by(AutomationFailure.created_at.desc())
        .limit(limit or config.settings.FAILURES_LIMIT)
    )
    return store.select_many(session, stmt, "automation failures")


def get_failure(session: Session, failure_id: int) -> Optional[AutomationFailure]:
    return session.get(AutomationFailure, failure_id)


def resolve_failure(session: Session, row: AutomationFailure) -> bool:
    return store.update(
        session, row, {"status": "resolved", "updated_at": utcnow()}, f"automation_failure[{row.id}]"
    )


def resolve_open(session: Session, event: str, kind: str = KIND_DISPATCH) -> int:
    """Resolve every open failure for `event`/`kind`; returns how many were closed."""
    stmt = (
        select(AutomationFailure)
        .where(AutomationFailure.event == event)
        .where(AutomationFailure.kind == kind)
        .where(AutomationFailure.status == "open")
    )
    closed = 0
    for row in store.select_many(session, stmt, "open automation failures"):
        if resolve_failure(session, row):
            closed += 1
    if closed:
        log.info("resolved %d open %s failure(s) for %s", closed, kind, event)
    return closed


def failure_to_dict(row: AutomationFailure) -> dict:
    return {
        "id": row.id,
        "lead_id": row.lead_id,
        "booking_id": row.booking_id,
        "event": row.event,
        "kind": row.kind,
        "status": row.status,
        "attempts": row.attempts or 0,
        "last_error": row.last_error,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }
