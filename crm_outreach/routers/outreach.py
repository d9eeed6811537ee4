# crm_outreach/routers/outreach.py
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlmodel import Session

from crm_outreach.db import get_session
from crm_outreach.deps import require_admin_key
from crm_outreach.services import failures
from crm_outreach.services.dashboard import get_dashboard
from crm_outreach.services.scheduler import retry_failure, run_lead_outreach_now

router = APIRouter(prefix="/admin", tags=["outreach"], dependencies=[Depends(require_admin_key)])


@router.get("/crm/outreach")
def outreach_dashboard(session: Session = Depends(get_session)):
    return get_dashboard(session)


@router.post("/crm/leads/{lead_ref}/outreach")
def lead_outreach_now(lead_ref: str, session: Session = Depends(get_session)):
    lead_ref = (lead_ref or "").strip()
    if not lead_ref:
        raise HTTPException(status_code=404, detail="Invalid lead id")

    result = run_lead_outreach_now(session, lead_ref)
    if result.ok:
        status = 200
    elif result.reason == "lead_not_found":
        status = 404
    else:
        status = 500
    return JSONResponse(result.to_dict(), status_code=status)


@router.get("/automation/failures")
def list_failures(session: Session = Depends(get_session)):
    rows = failures.list_open_failures(session)
    return {"count": len(rows), "items": [failures.failure_to_dict(r) for r in rows]}


@router.post("/automation/failures/{failure_id}/retry")
def retry_automation_failure(failure_id: int, session: Session = Depends(get_session)):
    out = retry_failure(session, failure_id)
    if out.get("reason") == "failure_not_found":
        raise HTTPException(status_code=404, detail="Not found")
    return out
